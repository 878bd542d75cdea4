from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

import pytest

from chatsync.errors import NotParticipant
from chatsync.models.message import DELETED_CONTENT, DurableMessage, MessageType, PendingMessage
from chatsync.services.memory import InMemoryGateway
from chatsync.services.subscriptions import SubscriptionLifecycleManager
from chatsync.services.synchronizer import MessageSynchronizer, SyncState
from chatsync.utils.change_feed import EntityKind, EventKind, FeedEvent, FeedScope, InMemoryChangeFeed


def contents(entries):
    return [e.content for e in entries]


def test_send_replaces_placeholder_in_place(gateway, make_session):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        await gateway.create_message(convo.id, "bob", "hello")
        session = make_session("alice")
        await session.start()
        assert await session.open_conversation(convo.id)
        views = []
        session.current_messages.subscribe(views.append)
        assert await session.send_message("hi bob")
        await session.settle()
        return views, session.current_messages.snapshot()

    views, final = asyncio.run(scenario())
    optimistic = views[0]
    assert contents(optimistic) == ["hello", "hi bob"]
    assert isinstance(optimistic[-1], PendingMessage)
    assert contents(final) == ["hello", "hi bob"]
    assert all(isinstance(m, DurableMessage) for m in final)
    # the feed echo of our own send never produced a second copy
    for view in views:
        assert contents(view).count("hi bob") == 1


def test_feed_echo_before_confirmation_takes_the_placeholder_slot(store, make_session):
    inline_feed = InMemoryChangeFeed(inline=True)
    inline_gateway = InMemoryGateway(store, inline_feed)

    async def scenario():
        convo = await inline_gateway.get_or_create_direct_conversation("alice", "bob")
        session = make_session("alice", gateway=inline_gateway, feed=inline_feed)
        await session.start()
        await session.open_conversation(convo.id)
        views = []
        session.current_messages.subscribe(views.append)
        assert await session.send_message("one")
        assert await session.send_message("two")
        await session.settle()
        return views, session.current_messages.snapshot()

    views, final = asyncio.run(scenario())
    assert contents(final) == ["one", "two"]
    assert all(isinstance(m, DurableMessage) for m in final)
    for view in views:
        assert contents(view).count("one") <= 1
        assert contents(view).count("two") <= 1


def test_duplicate_feed_delivery_is_ignored(gateway, feed, make_session):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        session = make_session("alice")
        await session.start()
        await session.open_conversation(convo.id)
        message = await gateway.create_message(convo.id, "bob", "once")
        await session.settle()
        event = FeedEvent(kind=EventKind.INSERT, entity=EntityKind.MESSAGE, conversation_id=convo.id, message=message)
        feed.publish_nowait(FeedScope.messages(convo.id), event)
        feed.publish_nowait(FeedScope.messages(convo.id), event)
        await session.settle()
        return session.current_messages.snapshot()

    assert contents(asyncio.run(scenario())) == ["once"]


def test_two_sessions_of_the_same_user_converge(gateway, make_session):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        phone, laptop = make_session("alice"), make_session("alice")
        for session in (phone, laptop):
            await session.start()
            await session.open_conversation(convo.id)
        await phone.send_message("from phone")
        await phone.settle()
        await laptop.settle()
        return phone.current_messages.snapshot(), laptop.current_messages.snapshot()

    on_phone, on_laptop = asyncio.run(scenario())
    assert contents(on_phone) == ["from phone"]
    assert contents(on_laptop) == ["from phone"]
    assert on_phone[0].id == on_laptop[0].id


def test_other_participant_message_arrives_live(gateway, make_session):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        alice, bob = make_session("alice"), make_session("bob")
        for session in (alice, bob):
            await session.start()
            await session.open_conversation(convo.id)
        await bob.send_message("ping")
        await alice.settle()
        await bob.settle()
        return alice.current_messages.snapshot()

    messages = asyncio.run(scenario())
    assert contents(messages) == ["ping"]
    # open conversation, so alice has read it
    assert messages[0].is_read_by("alice")


def test_failed_send_rolls_back(gateway, make_session):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        await gateway.create_message(convo.id, "bob", "hello")
        session = make_session("alice")
        await session.start()
        await session.open_conversation(convo.id)
        await session.settle()
        before = session.current_messages.snapshot()
        views = []
        session.current_messages.subscribe(views.append)
        gateway.fail_next("create_message")
        ok = await session.send_message("lost")
        return ok, before, views, session

    ok, before, views, session = asyncio.run(scenario())
    assert ok is False
    assert contents(views[0]) == ["hello", "lost"]
    assert session.current_messages.snapshot() == before
    assert session.synchronizer.last_error is not None


def test_blank_message_is_rejected(gateway, make_session):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        session = make_session("alice")
        await session.start()
        await session.open_conversation(convo.id)
        with pytest.raises(ValueError):
            await session.send_message("   ")
        return session.current_messages.snapshot()

    assert asyncio.run(scenario()) == []


def test_send_without_open_conversation_does_nothing(gateway, make_session):
    async def scenario():
        session = make_session("alice")
        await session.start()
        return await session.send_message("hi")

    assert asyncio.run(scenario()) is False
    assert "create_message" not in gateway.calls


def test_open_rejects_non_member_before_touching_state(gateway, make_session):
    async def scenario():
        mine = await gateway.get_or_create_direct_conversation("alice", "bob")
        theirs = await gateway.get_or_create_direct_conversation("bob", "carol")
        await gateway.create_message(mine.id, "bob", "hello")
        session = make_session("alice")
        await session.start()
        await session.open_conversation(mine.id)
        with pytest.raises(NotParticipant):
            await session.open_conversation(theirs.id)
        return mine, session

    mine, session = asyncio.run(scenario())
    assert session.open_conversation_id == mine.id
    assert session.synchronizer.state is SyncState.LIVE
    assert contents(session.current_messages) == ["hello"]


def test_load_failure_leaves_no_subscription(gateway, feed, make_session):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        session = make_session("alice")
        await session.start()
        gateway.fail_next("list_messages")
        ok = await session.open_conversation(convo.id)
        return ok, convo, session

    ok, convo, session = asyncio.run(scenario())
    assert ok is False
    assert session.synchronizer.state is SyncState.LOAD_FAILED
    assert session.subscriptions.messages is None
    assert feed.subscriber_count(FeedScope.messages(convo.id)) == 0


def test_history_of_a_superseded_open_is_discarded(gateway, feed, make_session):
    async def scenario():
        first = await gateway.get_or_create_direct_conversation("alice", "bob")
        second = await gateway.get_or_create_direct_conversation("alice", "carol")
        await gateway.create_message(first.id, "bob", "from first")
        await gateway.create_message(second.id, "carol", "from second")
        session = make_session("alice")
        await session.start()

        gate = gateway.hold("list_messages")
        slow = asyncio.create_task(session.open_conversation(first.id))
        await asyncio.sleep(0)
        del gateway.gates["list_messages"]
        assert await session.open_conversation(second.id)
        gate.set()
        stale = await slow
        await session.settle()
        return stale, first, second, session

    stale, first, second, session = asyncio.run(scenario())
    assert stale is False
    assert session.open_conversation_id == second.id
    assert contents(session.current_messages) == ["from second"]
    assert feed.subscriber_count(FeedScope.messages(first.id)) == 0
    assert feed.subscriber_count(FeedScope.messages(second.id)) == 1


def test_later_open_wins_over_one_still_checking_membership(gateway, feed, make_session):
    async def scenario():
        first = await gateway.get_or_create_direct_conversation("alice", "bob")
        second = await gateway.get_or_create_direct_conversation("alice", "carol")
        await gateway.create_message(second.id, "carol", "from second")
        session = make_session("alice")
        await session.start()

        gate = gateway.hold("get_conversation")
        slow = asyncio.create_task(session.open_conversation(first.id))
        await asyncio.sleep(0)
        del gateway.gates["get_conversation"]
        assert await session.open_conversation(second.id)
        gate.set()
        stale = await slow
        await session.settle()
        return stale, first, second, session

    stale, first, second, session = asyncio.run(scenario())
    assert stale is False
    assert session.open_conversation_id == second.id
    assert contents(session.current_messages) == ["from second"]
    assert feed.subscriber_count(FeedScope.messages(first.id)) == 0
    assert feed.subscriber_count(FeedScope.messages(second.id)) == 1


def test_open_pending_during_teardown_never_goes_live(gateway, feed, make_session):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        session = make_session("alice")
        await session.start()
        gate = gateway.hold("get_conversation")
        pending = asyncio.create_task(session.open_conversation(convo.id))
        await asyncio.sleep(0)
        await session.aclose()
        gate.set()
        opened = await pending
        return opened, session

    opened, session = asyncio.run(scenario())
    assert opened is False
    assert feed.subscriber_count() == 0
    assert session.synchronizer.state is SyncState.IDLE
    assert session.open_conversation_id is None


def test_local_read_receipt_uses_the_stored_timestamp(gateway, store, make_session):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        await gateway.create_message(convo.id, "bob", "hello")
        session = make_session("alice")
        await session.start()
        views = []
        session.current_messages.subscribe(views.append)
        await session.open_conversation(convo.id)
        await session.settle()
        return convo, views

    convo, views = asyncio.run(scenario())
    stored = store.conversation_messages(convo.id)[0].read_by["alice"]
    stamps = {m.read_by["alice"] for view in views for m in view if "alice" in m.read_by}
    assert stamps == {stored}


def test_background_read_receipt_rejected_for_a_non_member_is_logged(store, feed, make_session, caplog):
    class LeftConversationGateway(InMemoryGateway):
        async def mark_read(self, conversation_id, user_id):
            raise NotParticipant(conversation_id, user_id)

    left = LeftConversationGateway(store, feed)

    async def scenario():
        convo = await left.get_or_create_direct_conversation("alice", "bob")
        await left.create_message(convo.id, "bob", "still here?")
        session = make_session("alice", gateway=left)
        await session.start()
        opened = await session.open_conversation(convo.id)
        await session.settle()
        explicit = await session.mark_conversation_read()
        return opened, explicit, session

    with caplog.at_level(logging.WARNING, logger="chatsync.services.synchronizer"):
        opened, explicit, session = asyncio.run(scenario())
    assert opened is True
    assert explicit is False
    assert session.synchronizer.state is SyncState.LIVE
    assert "read failed" in caplog.text


def test_events_for_a_previous_conversation_are_ignored(gateway, make_session):
    async def scenario():
        first = await gateway.get_or_create_direct_conversation("alice", "bob")
        second = await gateway.get_or_create_direct_conversation("alice", "carol")
        session = make_session("alice")
        await session.start()
        await session.open_conversation(first.id)
        await session.open_conversation(second.id)
        await gateway.create_message(first.id, "bob", "too late")
        await session.settle()
        return session.current_messages.snapshot()

    assert asyncio.run(scenario()) == []


def test_confirmation_after_close_is_dropped(gateway, make_session):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        session = make_session("alice")
        await session.start()
        await session.open_conversation(convo.id)
        gate = gateway.hold("create_message")
        sending = asyncio.create_task(session.send_message("bye"))
        await asyncio.sleep(0)
        session.close_conversation()
        gate.set()
        ok = await sending
        await session.settle()
        return ok, session

    ok, session = asyncio.run(scenario())
    # persisted, just no longer shown
    assert ok is True
    assert session.current_messages.snapshot() == []
    assert session.synchronizer.state is SyncState.IDLE


def test_out_of_order_arrivals_are_sorted_around_pending_slot(gateway, feed, make_session):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        first = await gateway.create_message(convo.id, "bob", "first")
        await gateway.create_message(convo.id, "bob", "second")
        session = make_session("alice")
        await session.start()
        await session.open_conversation(convo.id)
        await session.settle()

        gate = gateway.hold("create_message")
        sending = asyncio.create_task(session.send_message("mine"))
        await asyncio.sleep(0)
        earlier = DurableMessage(
            id="0" * 24,
            conversation_id=convo.id,
            sender_id="bob",
            content="earliest",
            created_at=first.created_at - timedelta(seconds=30),
        )
        feed.publish_nowait(
            FeedScope.messages(convo.id),
            FeedEvent(kind=EventKind.INSERT, entity=EntityKind.MESSAGE, conversation_id=convo.id, message=earlier),
        )
        await asyncio.sleep(0)
        mid_flight = session.current_messages.snapshot()
        gate.set()
        await sending
        await session.settle()
        return mid_flight

    mid_flight = asyncio.run(scenario())
    assert isinstance(mid_flight[2], PendingMessage)
    assert mid_flight[2].content == "mine"
    durable = [m.content for m in mid_flight if isinstance(m, DurableMessage)]
    assert durable == ["earliest", "first", "second"]


def test_update_events_merge_into_existing_entry(gateway, make_session):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        message = await gateway.create_message(convo.id, "bob", "typo")
        await gateway.create_message(convo.id, "bob", "after")
        session = make_session("alice")
        await session.start()
        await session.open_conversation(convo.id)
        await session.settle()
        await gateway.edit_message(message.id, "bob", "fixed")
        await session.settle()
        return session.current_messages.snapshot()

    messages = asyncio.run(scenario())
    assert contents(messages) == ["fixed", "after"]
    assert messages[0].is_edited
    # receipts from the earlier read survive the merge
    assert messages[0].is_read_by("alice")


def test_update_for_unknown_message_is_logged_and_ignored(gateway, feed, make_session, caplog):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        known = await gateway.create_message(convo.id, "bob", "known")
        session = make_session("alice")
        await session.start()
        await session.open_conversation(convo.id)
        await session.settle()
        before = session.current_messages.snapshot()
        stranger = known.model_copy(update={"id": "f" * 24, "content": "ghost"})
        feed.publish_nowait(
            FeedScope.messages(convo.id),
            FeedEvent(kind=EventKind.UPDATE, entity=EntityKind.MESSAGE, conversation_id=convo.id, message=stranger),
        )
        await session.settle()
        return before, session.current_messages.snapshot()

    with caplog.at_level(logging.WARNING, logger="chatsync.services.synchronizer"):
        before, after = asyncio.run(scenario())
    assert after == before
    assert "unknown message" in caplog.text


def test_edit_and_delete_own_messages(gateway, make_session):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        session = make_session("alice")
        await session.start()
        await session.open_conversation(convo.id)
        await session.send_message("draft")
        await session.send_message("oops")
        await session.settle()
        draft, oops = session.current_messages.snapshot()
        assert await session.edit_message(draft.id, "final")
        assert await session.delete_message(oops.id)
        await session.settle()
        return session.current_messages.snapshot()

    final = asyncio.run(scenario())
    assert contents(final) == ["final", DELETED_CONTENT]
    assert final[0].is_edited
    assert final[1].type is MessageType.SYSTEM


def test_cannot_edit_someone_elses_message(gateway, make_session):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        message = await gateway.create_message(convo.id, "bob", "mine, not yours")
        session = make_session("alice")
        await session.start()
        await session.open_conversation(convo.id)
        ok = await session.edit_message(message.id, "hijacked")
        return ok, session.current_messages.snapshot()

    ok, messages = asyncio.run(scenario())
    assert ok is False
    assert contents(messages) == ["mine, not yours"]


def test_load_earlier_prepends_older_history(gateway, make_session):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        for n in range(5):
            await gateway.create_message(convo.id, "bob", f"m{n}")
        session = make_session("alice")
        await session.start()
        sync = session.synchronizer
        # start from a partial window, the way a paginated client would
        await session.open_conversation(convo.id)
        sync._log = sync._log[3:]
        sync._publish()
        added = await session.load_earlier(limit=2)
        again = await session.load_earlier(limit=10)
        return added, again, session.current_messages.snapshot()

    added, again, messages = asyncio.run(scenario())
    assert added == 2
    assert again == 1
    assert contents(messages) == ["m0", "m1", "m2", "m3", "m4"]


def test_synchronizer_marks_read_on_open(gateway, feed, store):
    async def scenario():
        convo = await gateway.get_or_create_direct_conversation("alice", "bob")
        await gateway.create_message(convo.id, "bob", "unread")
        reads = []
        sync = MessageSynchronizer("alice", gateway, SubscriptionLifecycleManager(feed), on_read=reads.append)
        await sync.open(convo.id)
        await sync.wait_idle()
        await sync.aclose()
        return convo, reads

    convo, reads = asyncio.run(scenario())
    assert reads == [convo.id]
    assert all(m.is_read_by("alice") for m in store.conversation_messages(convo.id))
