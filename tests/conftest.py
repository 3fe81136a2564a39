"""Shared test fixtures and fakes for zapbot."""

from __future__ import annotations

import random
from datetime import datetime, timedelta
from typing import Any, List, Optional

import pytest

from zapbot.broadcaster import EventBroadcaster
from zapbot.config_store import ConfigStore
from zapbot.delivery import DeliveryQueue
from zapbot.models import BotConfig, IncomingMessage
from zapbot.stats import StatsAccumulator
from zapbot.storage import Storage

# ---------------------------------------------------------------------------
# Plain helpers (importable by test files)
# ---------------------------------------------------------------------------


class FakeClock:
    """Settable wall clock for the stats accumulator."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2026, 3, 10, 14, 5, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeChat:
    """Reply handle recording every call made by the delivery queue."""

    def __init__(self, name: str = "chat", calls: Optional[List[Any]] = None,
                 fail_reply: bool = False, fail_typing: bool = False):
        self.name = name
        self.calls = calls if calls is not None else []
        self.fail_reply = fail_reply
        self.fail_typing = fail_typing

    async def send_state_typing(self) -> None:
        self.calls.append((self.name, "typing"))
        if self.fail_typing:
            raise RuntimeError("presence unavailable")

    async def clear_state(self) -> None:
        self.calls.append((self.name, "clear"))

    async def reply(self, text: str) -> None:
        self.calls.append((self.name, "reply", text))
        if self.fail_reply:
            raise RuntimeError("network down")


class FakeResponder:
    """Stands in for GeminiResponder.generate."""

    def __init__(self, reply: str = "Hello there!", error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.calls: List[tuple] = []

    async def generate(self, history, new_message, config):
        self.calls.append((list(history), new_message, config))
        if self.error is not None:
            raise self.error
        return self.reply


class RecordingSleep:
    """Async sleep replacement that records requested delays without waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_message(
    *,
    chat_id: str = "5511999998888@c.us",
    body: str = "Hi, are you open today?",
    sender_name: Optional[str] = "Maria",
    is_status: bool = False,
    chat: Any = None,
    msg_id: str = "m1",
) -> IncomingMessage:
    return IncomingMessage(
        id=msg_id,
        chat_id=chat_id,
        body=body,
        sender_name=sender_name,
        is_status=is_status,
        chat=chat if chat is not None else FakeChat(),
    )


def drain_events(queue) -> List[dict]:
    out = []
    while not queue.empty():
        out.append(queue.get_nowait())
    return out


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def storage(tmp_path) -> Storage:
    s = Storage(base=tmp_path / "data")
    s.ensure_layout()
    return s


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config_store(storage) -> ConfigStore:
    store = ConfigStore(storage)
    store.load()
    return store


@pytest.fixture
def stats(storage, clock) -> StatsAccumulator:
    acc = StatsAccumulator(storage, clock=clock)
    acc.load()
    return acc


@pytest.fixture
def open_config() -> BotConfig:
    """Active bot answering everyone."""
    return BotConfig(is_active=True, only_allowed=False)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture
def delivery_queue(recording_sleep) -> DeliveryQueue:
    return DeliveryQueue(sleep=recording_sleep, rng=random.Random(7))
