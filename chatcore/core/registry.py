from __future__ import annotations

import logging
import threading
import time
import uuid
import zlib
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Set

from .auth import TokenClaims
from .errors import InvalidArgument, ShuttingDown
from .proto import is_valid_tag
from .sink import SessionSink

log = logging.getLogger("chatcore.core.registry")

EVENT_REGISTERED = "registered"
EVENT_DEREGISTERED = "deregistered"

# (event, session, reason)
Listener = Callable[[str, "Session", str], None]


@dataclass(frozen=True, slots=True)
class MembershipFilter:
    """Peer and group ids a session is interested in."""

    peers: FrozenSet[str] = frozenset()
    groups: FrozenSet[str] = frozenset()

    @classmethod
    def of(cls, peers: Iterable[str] = (), groups: Iterable[str] = ()) -> "MembershipFilter":
        return cls(frozenset(p for p in peers if p), frozenset(g for g in groups if g))

    def contains(self, chat_id: str) -> bool:
        return chat_id in self.peers or chat_id in self.groups

    @property
    def empty(self) -> bool:
        return not self.peers and not self.groups


@dataclass(slots=True)
class Session:
    user_id: str
    tag: str = "chat"
    filter: MembershipFilter = field(default_factory=MembershipFilter)
    device: str = ""
    claims: Optional[TokenClaims] = None
    echo: bool = False
    sink: SessionSink = field(default_factory=SessionSink)
    session_id: str = ""
    created_at: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)

    def touch(self, now: Optional[float] = None) -> None:
        self.last_activity = time.monotonic() if now is None else now

    def idle_for(self, now: Optional[float] = None) -> float:
        current = time.monotonic() if now is None else now
        return max(0.0, current - self.last_activity)


@dataclass(frozen=True, slots=True)
class SessionFilter:
    """Selection criteria for :meth:`SessionRegistry.snapshot`.

    ``None`` means "any" for ``user_ids`` and ``tags``.
    """

    user_ids: Optional[FrozenSet[str]] = None
    tags: Optional[FrozenSet[str]] = None
    predicate: Optional[Callable[[Session], bool]] = None

    def matches(self, session: Session) -> bool:
        if self.tags is not None and session.tag not in self.tags:
            return False
        if self.user_ids is not None and session.user_id not in self.user_ids:
            return False
        return self.predicate is None or self.predicate(session)


class _Shard:
    __slots__ = ("lock", "sessions", "by_user")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.sessions: Dict[str, Session] = {}
        self.by_user: Dict[str, Set[str]] = {}


class SessionRegistry:
    """Live session set, sharded by a CRC-32 of the user id.

    Every operation takes at most one shard lock and never awaits or sends
    while holding it. Listeners run after the lock is released.
    """

    def __init__(self, shard_count: int = 16) -> None:
        if shard_count <= 0 or shard_count & (shard_count - 1):
            raise ValueError("shard_count must be a power of two")
        self._mask = shard_count - 1
        self._shards = [_Shard() for _ in range(shard_count)]
        self._listeners: List[Listener] = []
        self._closed = False

    @property
    def shard_count(self) -> int:
        return len(self._shards)

    def shard_index(self, user_id: str) -> int:
        return zlib.crc32(user_id.encode("utf-8")) & self._mask

    def _shard_for_session(self, session_id: str) -> Optional[_Shard]:
        prefix, _, _ = session_id.partition("-")
        try:
            index = int(prefix, 16)
        except ValueError:
            return None
        if index > self._mask:
            return None
        return self._shards[index]

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def register(self, session: Session) -> str:
        if self._closed:
            raise ShuttingDown("registry is closed")
        if not session.user_id:
            raise InvalidArgument("session requires a user id")
        if not is_valid_tag(session.tag):
            raise InvalidArgument(f"unknown subscription tag {session.tag!r}")

        index = self.shard_index(session.user_id)
        shard = self._shards[index]
        session.session_id = f"{index:x}-{uuid.uuid4().hex}"
        with shard.lock:
            if self._closed:
                raise ShuttingDown("registry is closed")
            shard.sessions[session.session_id] = session
            shard.by_user.setdefault(session.user_id, set()).add(session.session_id)
        log.debug("Registered session %s user=%s tag=%s", session.session_id, session.user_id, session.tag)
        self._notify(EVENT_REGISTERED, session, "")
        return session.session_id

    def deregister(self, session_id: str, reason: str = "closed") -> Optional[Session]:
        """Remove a session; a second call for the same id returns None."""

        shard = self._shard_for_session(session_id)
        if shard is None:
            return None
        with shard.lock:
            session = shard.sessions.pop(session_id, None)
            if session is None:
                return None
            ids = shard.by_user.get(session.user_id)
            if ids is not None:
                ids.discard(session_id)
                if not ids:
                    del shard.by_user[session.user_id]
        session.sink.close(reason)
        log.debug("Deregistered session %s user=%s reason=%s", session_id, session.user_id, reason)
        self._notify(EVENT_DEREGISTERED, session, reason)
        return session

    def close(self) -> List[Session]:
        """Refuse new registrations and return the sessions still live."""

        self._closed = True
        return self.snapshot()

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def lookup(self, session_id: str) -> Optional[Session]:
        shard = self._shard_for_session(session_id)
        if shard is None:
            return None
        with shard.lock:
            return shard.sessions.get(session_id)

    def sessions_for_user(self, user_id: str, tags: Optional[Iterable[str]] = None) -> List[Session]:
        shard = self._shards[self.shard_index(user_id)]
        with shard.lock:
            sessions = [shard.sessions[sid] for sid in shard.by_user.get(user_id, ())]
        if tags is not None:
            wanted = set(tags)
            sessions = [s for s in sessions if s.tag in wanted]
        return sessions

    def count_for_user(self, user_id: str, tags: Optional[Iterable[str]] = None) -> int:
        return len(self.sessions_for_user(user_id, tags))

    def snapshot(self, selection: Optional[SessionFilter] = None) -> List[Session]:
        """Point-in-time copy of matching sessions.

        Sessions may deregister right after this returns; callers must treat a
        closed sink as a normal outcome.
        """

        if selection is not None and selection.user_ids is not None:
            candidates: List[Session] = []
            for user_id in selection.user_ids:
                candidates.extend(self.sessions_for_user(user_id))
        else:
            candidates = []
            for shard in self._shards:
                with shard.lock:
                    candidates.extend(shard.sessions.values())
        if selection is None:
            return candidates
        return [s for s in candidates if selection.matches(s)]

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.sessions)
        return total

    # ------------------------------------------------------------------
    # Heartbeat sweep
    # ------------------------------------------------------------------

    def heartbeat_sweep(
        self,
        now: Optional[float] = None,
        idle_threshold: float = 45.0,
        backpressure_budget: float = 5.0,
    ) -> List[Session]:
        """Evict sessions that are both idle and stuck behind a full sink."""

        current = time.monotonic() if now is None else now
        stale = [
            s
            for s in self.snapshot()
            if s.idle_for(current) > idle_threshold and s.sink.blocked_for(current) > backpressure_budget
        ]
        evicted = []
        for session in stale:
            blocked = session.sink.blocked_for(current)
            removed = self.deregister(session.session_id, "SlowConsumer")
            if removed is not None:
                log.warning(
                    "Evicted idle session %s user=%s blocked %.1fs",
                    session.session_id,
                    session.user_id,
                    blocked,
                )
                evicted.append(removed)
        return evicted

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def _notify(self, event: str, session: Session, reason: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, session, reason)
            except Exception:
                log.exception("Registry listener failed on %s for %s", event, session.session_id)


__all__ = [
    "EVENT_REGISTERED",
    "EVENT_DEREGISTERED",
    "MembershipFilter",
    "Session",
    "SessionFilter",
    "SessionRegistry",
]
