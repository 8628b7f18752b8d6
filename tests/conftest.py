"""Shared test fixtures for branchchat."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from branchchat.backends.memory import MemoryStore
from branchchat.backends.sqlite import SQLiteStore
from branchchat.controller import ActiveBranchController
from branchchat.core import Chat, Message, new_id
from branchchat.transport import ContentDelta, Finish, ModelTransport, UsageUpdate

HANG = object()  # script marker: block until the transport is released


class StepClock:
    """Deterministic clock that advances one second per reading."""

    def __init__(self, start=None, step=timedelta(seconds=1)):
        self.now = start or datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        self.now = self.now + self.step
        return self.now


class ScriptedTransport(ModelTransport):
    """Replays canned event scripts and records every window it was sent.

    Each script is a list of events; an exception instance in the list is
    raised at that point, and ``HANG`` blocks until ``release`` is set.
    With no scripts left, it answers "ok".
    """

    def __init__(self, scripts=None):
        self.scripts = list(scripts or [])
        self.calls = []
        self.release = asyncio.Event()
        self.started = asyncio.Event()

    async def stream(self, messages, selector):
        self.calls.append((list(messages), selector))
        self.started.set()
        script = self.scripts.pop(0) if self.scripts else [ContentDelta("ok"), Finish()]
        for event in script:
            if event is HANG:
                await self.release.wait()
                continue
            if isinstance(event, Exception):
                raise event
            yield event


def make_message(role, content, type="text", branch_id="b1", chat_id="c1", created_at=None, **kwargs):
    return Message(
        id=kwargs.pop("id", new_id()),
        chat_id=chat_id,
        branch_id=branch_id,
        role=role,
        type=type,
        content=content,
        created_at=created_at or datetime(2025, 1, 15, tzinfo=timezone.utc),
        **kwargs,
    )


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def sqlite_store(tmp_path):
    return SQLiteStore(tmp_path / "chats.db")


@pytest.fixture
def transport():
    return ScriptedTransport([
        [ContentDelta("Hello"), ContentDelta(" there"), UsageUpdate(10, 2, 12), Finish()],
    ])


@pytest_asyncio.fixture
async def chat(memory_store, clock):
    chat = Chat(
        id="chat-1",
        title="Trip planning",
        history_type="all",
        history_count=5,
        default_provider="openai",
        default_model="gpt-4o-mini",
        created_at=clock(),
    )
    await memory_store.create_chat(chat)
    return chat


@pytest_asyncio.fixture
async def controller(memory_store, chat, transport, clock):
    ctl = ActiveBranchController(memory_store, chat.id, transport, clock=clock)
    await ctl.open()
    return ctl
