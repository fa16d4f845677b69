from __future__ import annotations

import asyncio
from typing import Callable, List, Optional, Tuple

import pytest
import pytest_asyncio

from chatcore.core import proto
from chatcore.core.auth import TokenClaims
from chatcore.core.config import Settings
from chatcore.core.pipeline import MessagePipeline
from chatcore.core.presence import PresenceTracker
from chatcore.core.registry import MembershipFilter, Session, SessionRegistry
from chatcore.core.router import FanOutRouter, MembershipCache
from chatcore.core.sink import SessionSink
from chatcore.core.store import SqliteChatRepository


# -----------------------------
# Helpers
# -----------------------------

async def eventually(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll until predicate() is true or fail after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


class Clock:
    """Settable time source for sinks and routers."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def drain_sink(session: Session) -> List[proto.Envelope]:
    """Pop everything queued for a session without a pump task."""
    out = []
    while len(session.sink):
        item = session.sink._queue.popleft()
        out.append(proto.decode_envelope(item.frame))
    session.sink.full_since = None
    return out


class FakeTransport:
    """In-memory stand-in for a websocket connection."""

    def __init__(self) -> None:
        self._inbox: asyncio.Queue = asyncio.Queue()
        self.sent: List[bytes] = []
        self.closed: Optional[Tuple[int, str]] = None

    def push(self, item) -> None:
        if isinstance(item, proto.Envelope):
            item = proto.encode(item)
        self._inbox.put_nowait(item)

    def finish(self) -> None:
        self._inbox.put_nowait(None)

    async def __aiter__(self):
        while True:
            item = await self._inbox.get()
            if item is None:
                return
            yield item

    async def send(self, message) -> None:
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed is None:
            self.closed = (code, reason)
        self._inbox.put_nowait(None)

    def envelopes(self) -> List[proto.Envelope]:
        return [proto.decode_envelope(raw) for raw in self.sent]

    def states(self, kind: str) -> List[proto.StateMessage]:
        return [e.state for e in self.envelopes() if e.state is not None and e.state.kind == kind]

    def messages(self) -> List[proto.ChatMessage]:
        return [e.message for e in self.envelopes() if e.message is not None]

    def errors(self) -> List[proto.ErrorMessage]:
        return [e.error for e in self.envelopes() if e.error is not None]


# -----------------------------
# Fixtures
# -----------------------------

@pytest.fixture(autouse=True)
def isolated_config_env(monkeypatch):
    """Keep the host's HOST, PORT, DB_* and friends out of Settings."""
    for name in Settings.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)


@pytest_asyncio.fixture
async def repo():
    repository = await SqliteChatRepository.open(":memory:")
    try:
        yield repository
    finally:
        await repository.close()


@pytest.fixture
def registry():
    return SessionRegistry(shard_count=8)


@pytest.fixture
def membership(repo):
    return MembershipCache(repo, ttl=30.0)


@pytest.fixture
def router(registry, membership):
    return FanOutRouter(registry, membership, grace_secs=5.0)


@pytest.fixture
def presence(registry):
    return PresenceTracker(registry)


@pytest.fixture
def pipeline(repo, router, presence, membership):
    return MessagePipeline(repo, router, presence, membership, persist_timeout=2.0)


@pytest.fixture
def make_session(registry):
    """Register a session directly, bypassing the stream handshake."""

    def _make(user_id: str, tag: str = proto.TAG_CHAT, peers=(), groups=(), capacity: int = 64, clock=None, echo=False):
        sink = SessionSink(capacity, clock=clock) if clock is not None else SessionSink(capacity)
        session = Session(
            user_id=user_id,
            tag=tag,
            filter=MembershipFilter.of(peers, groups),
            claims=TokenClaims(user_id=user_id, email=f"{user_id}@example.test"),
            echo=echo,
            sink=sink,
        )
        registry.register(session)
        return session

    return _make


@pytest.fixture
def claims():
    def _claims(user_id: str, role: str = "user") -> TokenClaims:
        return TokenClaims(user_id=user_id, email=f"{user_id}@example.test", role=role)

    return _claims
