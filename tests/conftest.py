"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional

import pytest

# Ensure the repo root is on the import path (for local imports without installing as package)
ROOT_PATH = Path(__file__).resolve().parent.parent
if str(ROOT_PATH) not in sys.path:
    sys.path.insert(0, str(ROOT_PATH))

from chatsync.config import Settings  # noqa: E402
from chatsync.models.message import MessageType  # noqa: E402
from chatsync.services.memory import InMemoryGateway, InMemoryStore  # noqa: E402
from chatsync.services.session import ChatSession  # noqa: E402
from chatsync.utils.change_feed import InMemoryChangeFeed  # noqa: E402


class TickingClock:
    """Deterministic clock: every reading is one second after the previous one."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now = self.now + timedelta(seconds=1)
        return self.now


class GatedGateway(InMemoryGateway):
    """In-memory gateway whose calls can be held until the test releases them."""

    def __init__(self, store: InMemoryStore, feed: InMemoryChangeFeed) -> None:
        super().__init__(store, feed)
        self.gates: Dict[str, asyncio.Event] = {}

    def hold(self, operation: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[operation] = gate
        return gate

    async def _wait(self, operation: str) -> None:
        gate = self.gates.get(operation)
        if gate is not None:
            await gate.wait()

    async def get_conversation(self, conversation_id, user_id):
        await self._wait("get_conversation")
        return await super().get_conversation(conversation_id, user_id)

    async def list_messages(self, conversation_id, *, limit=None, before=None):
        await self._wait("list_messages")
        return await super().list_messages(conversation_id, limit=limit, before=before)

    async def create_message(
        self,
        conversation_id,
        sender_id,
        content,
        type=MessageType.TEXT,
        media=None,
        *,
        idempotency_key=None,
    ):
        await self._wait("create_message")
        return await super().create_message(
            conversation_id, sender_id, content, type, media, idempotency_key=idempotency_key
        )


@pytest.fixture(scope="function")
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture(scope="function")
def store(clock: TickingClock) -> InMemoryStore:
    s = InMemoryStore(clock=clock)
    for user_id, name in [("alice", "Alice"), ("bob", "Bob"), ("carol", "Carol")]:
        s.add_user(user_id, name)
    return s


@pytest.fixture(scope="function")
def feed() -> InMemoryChangeFeed:
    """Feed that delivers on the next loop iteration, after the writer's call returns."""
    return InMemoryChangeFeed()


@pytest.fixture(scope="function")
def gateway(store: InMemoryStore, feed: InMemoryChangeFeed) -> GatedGateway:
    return GatedGateway(store, feed)


@pytest.fixture(scope="function")
def settings() -> Settings:
    return Settings(directory_refresh_debounce=0)


@pytest.fixture(scope="function")
def make_session(gateway: GatedGateway, feed: InMemoryChangeFeed, settings: Settings):
    """Build sessions sharing the fixture gateway and feed."""

    def factory(user_id: Optional[str], **overrides) -> ChatSession:
        return ChatSession(
            user_id,
            overrides.get("gateway", gateway),
            overrides.get("feed", feed),
            overrides.get("settings", settings),
        )

    return factory
