from __future__ import annotations

import asyncio

import pytest
from pymongo.errors import AutoReconnect, OperationFailure

from chatsync.errors import NotParticipant, PersistenceFailure
from chatsync.services.gateway import RetryingGateway, _translate_errors


def test_direct_conversation_is_unique_per_pair(gateway, store):
    async def scenario():
        a = await gateway.get_or_create_direct_conversation("alice", "bob")
        b = await gateway.get_or_create_direct_conversation("bob", "alice")
        return a, b

    a, b = asyncio.run(scenario())
    assert a.id == b.id
    assert len(store.conversations) == 1
    assert store.participant(a.id, "alice") is not None
    assert store.participant(a.id, "bob") is not None


def test_group_needs_three_members(gateway):
    with pytest.raises(ValueError):
        asyncio.run(gateway.create_group_conversation("alice", ["bob"], "duo"))


def test_create_message_updates_conversation_summary(gateway, store):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        message = await gateway.create_message(convo.id, "alice", "hello")
        return convo, message

    convo, message = asyncio.run(scenario())
    stored = store.conversations[convo.id]
    assert stored.last_message.id == message.id
    assert stored.updated_at == message.created_at
    assert stored.updated_at > convo.updated_at


def test_idempotency_key_stores_one_message(gateway, store):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        first = await gateway.create_message(convo.id, "alice", "hi", idempotency_key="k1")
        second = await gateway.create_message(convo.id, "alice", "hi", idempotency_key="k1")
        return convo, first, second

    convo, first, second = asyncio.run(scenario())
    assert first.id == second.id
    assert len(store.conversation_messages(convo.id)) == 1


def test_non_member_cannot_write(gateway):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        await gateway.create_message(convo.id, "carol", "intruder")

    with pytest.raises(NotParticipant):
        asyncio.run(scenario())


def test_mark_read_is_idempotent(gateway, store):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        for n in range(3):
            await gateway.create_message(convo.id, "bob", f"m{n}")
        await gateway.mark_read(convo.id, "alice")
        once = (store.participant(convo.id, "alice"), store.conversation_messages(convo.id))
        await gateway.mark_read(convo.id, "alice")
        twice = (store.participant(convo.id, "alice"), store.conversation_messages(convo.id))
        unread = await gateway.count_unread(convo.id, "alice")
        return once, twice, unread

    once, twice, unread = asyncio.run(scenario())
    assert once == twice
    assert unread == 0
    assert once[0].last_read_at == once[1][-1].created_at


def test_count_unread_ignores_own_messages(gateway):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        await gateway.create_message(convo.id, "alice", "mine")
        await gateway.create_message(convo.id, "bob", "theirs")
        return await gateway.count_unread(convo.id, "alice"), await gateway.count_unread(convo.id, "bob")

    assert asyncio.run(scenario()) == (1, 1)


def test_list_messages_pages_backwards(gateway):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        sent = [await gateway.create_message(convo.id, "bob", f"m{n}") for n in range(5)]
        page = await gateway.list_messages(convo.id, limit=2, before=sent[3].created_at)
        return [m.content for m in page]

    assert asyncio.run(scenario()) == ["m1", "m2"]


class _Sleeps:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def test_transient_failures_are_retried_with_backoff(gateway):
    sleeps = _Sleeps()
    retrying = RetryingGateway(gateway, attempts=3, base_delay=0.2, max_delay=2.0, sleep=sleeps)
    gateway.fail_next("list_conversations", transient=True, times=2)
    assert asyncio.run(retrying.list_conversations("alice")) == []
    assert sleeps.delays == [0.2, 0.4]
    assert gateway.calls.count("list_conversations") == 3


def test_retries_give_up_after_the_last_attempt(gateway):
    retrying = RetryingGateway(gateway, attempts=2, sleep=_Sleeps())
    gateway.fail_next("list_conversations", transient=True, times=5)
    with pytest.raises(PersistenceFailure):
        asyncio.run(retrying.list_conversations("alice"))
    assert gateway.calls.count("list_conversations") == 2


def test_permanent_failures_are_not_retried(gateway):
    retrying = RetryingGateway(gateway, sleep=_Sleeps())
    gateway.fail_next("list_conversations", transient=False)
    with pytest.raises(PersistenceFailure):
        asyncio.run(retrying.list_conversations("alice"))
    assert gateway.calls.count("list_conversations") == 1


def test_create_message_retried_only_with_idempotency_key(gateway, store):
    retrying = RetryingGateway(gateway, sleep=_Sleeps())

    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        gateway.fail_next("create_message", transient=True)
        with pytest.raises(PersistenceFailure):
            await retrying.create_message(convo.id, "alice", "no key")
        gateway.fail_next("create_message", transient=True)
        keyed = await retrying.create_message(convo.id, "alice", "keyed", idempotency_key="k1")
        return convo, keyed

    convo, keyed = asyncio.run(scenario())
    assert [m.content for m in store.conversation_messages(convo.id)] == ["keyed"]
    assert keyed.client_message_id == "k1"
    assert gateway.calls.count("create_message") == 3


def test_driver_errors_become_persistence_failures():
    @_translate_errors("list_conversations")
    async def lost_connection():
        raise AutoReconnect("primary stepped down")

    @_translate_errors("create_message")
    async def rejected():
        raise OperationFailure("not authorized")

    with pytest.raises(PersistenceFailure) as transient:
        asyncio.run(lost_connection())
    assert transient.value.transient
    assert transient.value.operation == "list_conversations"
    assert isinstance(transient.value.__cause__, AutoReconnect)

    with pytest.raises(PersistenceFailure) as permanent:
        asyncio.run(rejected())
    assert not permanent.value.transient
