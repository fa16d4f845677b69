from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from .errors import SlowConsumer
from .plan import Audience, AudienceKind, DeliveryPlan
from .proto import (
    MESSAGE_TAGS,
    PRESENCE_TAGS,
    TAG_CALLS,
    TAG_CHAT,
    TAG_CHAT_EVENTS,
    TAG_LAST_MESSAGE,
    TAG_NOTIFICATIONS,
    TAG_SCREEN_SHARE,
    TAG_TYPING,
    ChatMessage,
    Envelope,
    encode,
    thread_tag,
)
from .registry import Session, SessionFilter, SessionRegistry
from .sink import OfferResult, Outbound

log = logging.getLogger("chatcore.core.router")


# ---------------------------------------------------------------------------
# Group membership cache
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class _Membership:
    version: int
    members: FrozenSet[str]
    fetched_at: float


class MembershipCache:
    """Group member sets keyed by group id, refreshed after ``ttl`` seconds.

    The repository returns ``(version, members)``; an older version never
    replaces a newer cached one.
    """

    def __init__(self, repository, ttl: float = 30.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._repository = repository
        self._ttl = ttl
        self._clock = clock
        self._entries: Dict[str, _Membership] = {}
        self._lock = threading.Lock()

    async def members(self, group_id: str) -> FrozenSet[str]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(group_id)
        if entry is not None and now - entry.fetched_at < self._ttl:
            return entry.members

        version, members = await self._repository.get_group_membership(group_id)
        with self._lock:
            current = self._entries.get(group_id)
            if current is None or version >= current.version:
                current = self._entries[group_id] = _Membership(version, frozenset(members), now)
            return current.members

    async def is_member(self, group_id: str, user_id: str) -> bool:
        return user_id in await self.members(group_id)

    def invalidate(self, group_id: Optional[str] = None) -> None:
        with self._lock:
            if group_id is None:
                self._entries.clear()
            else:
                self._entries.pop(group_id, None)


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class PlanReport:
    plan_id: str
    targeted: int = 0
    delivered: int = 0
    coalesced: int = 0
    dropped: int = 0
    evicted: List[str] = field(default_factory=list)
    failures: List[Tuple[str, str]] = field(default_factory=list)


class FanOutRouter:
    """Turns a DeliveryPlan into per-session sink offers.

    A failure on one session is logged and counted; it never stops the rest
    of the plan. Sinks that stay full past ``grace_secs`` are evicted as slow
    consumers.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        membership: MembershipCache,
        grace_secs: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.membership = membership
        self.grace_secs = grace_secs
        self._clock = clock
        self.stats: Dict[str, int] = {"plans": 0, "delivered": 0, "dropped": 0, "evicted": 0, "failures": 0}

    # ------------------------------------------------------------------
    # Audience resolution
    # ------------------------------------------------------------------

    async def participants(self, audience: Audience) -> FrozenSet[str]:
        if audience.group_id:
            return await self.membership.members(audience.group_id)
        return frozenset(uid for uid in (audience.sender_id, audience.receiver_id) if uid)

    async def participants_of(self, message: ChatMessage) -> FrozenSet[str]:
        return await self.participants(Audience.for_message(message))

    async def resolve(self, audience: Audience) -> List[Session]:
        kind = audience.kind

        if kind in (AudienceKind.DIRECT, AudienceKind.GROUP, AudienceKind.MESSAGE_UPDATE):
            users = await self.participants(audience)
            return self.registry.snapshot(
                SessionFilter(
                    user_ids=users,
                    tags=MESSAGE_TAGS,
                    predicate=lambda s: s.filter.empty or s.filter.contains(audience.chat_key_for(s.user_id)),
                )
            )

        if kind is AudienceKind.THREAD:
            users = await self.participants(audience)
            tag = thread_tag(audience.parent_id)
            return self.registry.snapshot(
                SessionFilter(
                    user_ids=users,
                    tags=frozenset({tag, TAG_CHAT}),
                    predicate=lambda s: s.tag == tag
                    or s.filter.empty
                    or s.filter.contains(audience.chat_key_for(s.user_id)),
                )
            )

        if kind is AudienceKind.PRESENCE:
            return self.registry.snapshot(
                SessionFilter(tags=PRESENCE_TAGS, predicate=lambda s: s.filter.contains(audience.subject_id))
            )

        if kind is AudienceKind.TYPING:
            if audience.group_id:
                users = await self.membership.members(audience.group_id)
                users = users - {audience.sender_id}
            else:
                users = frozenset({audience.receiver_id})
            return self.registry.snapshot(
                SessionFilter(
                    user_ids=users,
                    tags=frozenset({TAG_TYPING}),
                    predicate=lambda s: s.filter.contains(audience.chat_key_for(s.user_id)),
                )
            )

        if kind is AudienceKind.LAST_MESSAGE:
            users = await self.participants(audience)
            return self.registry.snapshot(SessionFilter(user_ids=users, tags=frozenset({TAG_LAST_MESSAGE})))

        if kind is AudienceKind.CHAT_EVENT:
            users = await self.membership.members(audience.group_id) | audience.user_ids
            return self.registry.snapshot(SessionFilter(user_ids=users, tags=frozenset({TAG_CHAT_EVENTS})))

        if kind is AudienceKind.NOTIFICATION:
            users = audience.user_ids - {audience.sender_id}
            return self.registry.snapshot(SessionFilter(user_ids=users, tags=frozenset({TAG_NOTIFICATIONS})))

        if kind in (AudienceKind.SCREEN_SHARE, AudienceKind.CALL):
            tag = TAG_SCREEN_SHARE if kind is AudienceKind.SCREEN_SHARE else TAG_CALLS
            users = await self.participants(audience)
            return self.registry.snapshot(SessionFilter(user_ids=users, tags=frozenset({tag})))

        raise ValueError(f"unhandled audience kind {kind!r}")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, plan: DeliveryPlan) -> PlanReport:
        report = PlanReport(plan_id=plan.plan_id)
        frame = encode(plan.envelope)
        sessions = await self.resolve(plan.audience)
        now = self._clock()
        for session in sessions:
            if session.session_id in plan.exclude:
                continue
            report.targeted += 1
            try:
                key = f"{plan.audience.kind.value}:{plan.audience.chat_key_for(session.user_id)}" if plan.coalesce else None
                result = session.sink.offer(Outbound(frame, essential=plan.essential, coalesce_key=key))
                if result is OfferResult.QUEUED:
                    report.delivered += 1
                elif result is OfferResult.COALESCED:
                    report.coalesced += 1
                elif result is OfferResult.DROPPED:
                    report.dropped += 1
                if session.sink.overdue(self.grace_secs, now):
                    if self.evict(session, now) is not None:
                        report.evicted.append(session.session_id)
            except Exception as exc:
                report.failures.append((session.session_id, repr(exc)))
                log.warning("Plan %s: delivery to session %s failed: %r", plan.plan_id, session.session_id, exc)

        self.stats["plans"] += 1
        self.stats["delivered"] += report.delivered
        self.stats["dropped"] += report.dropped
        self.stats["evicted"] += len(report.evicted)
        self.stats["failures"] += len(report.failures)
        log.debug(
            "Plan %s (%s): targeted=%d delivered=%d coalesced=%d dropped=%d evicted=%d failed=%d",
            plan.plan_id,
            plan.audience.kind.value,
            report.targeted,
            report.delivered,
            report.coalesced,
            report.dropped,
            len(report.evicted),
            len(report.failures),
        )
        return report

    def send_direct(self, session: Session, envelope: Envelope, essential: bool = True) -> OfferResult:
        """Queue a reply for one session only (acks, errors, subscription confirmations)."""

        return session.sink.offer(Outbound(encode(envelope), essential=essential))

    def evict(self, session: Session, now: Optional[float] = None) -> Optional[Session]:
        blocked = session.sink.blocked_for(now)
        removed = self.registry.deregister(session.session_id, SlowConsumer.kind)
        if removed is not None:
            log.warning(
                "Evicted slow consumer %s user=%s (sink full for %.1fs)", session.session_id, session.user_id, blocked
            )
        return removed

    def evict_overdue(self, now: Optional[float] = None) -> List[Session]:
        current = self._clock() if now is None else now
        evicted = []
        for session in self.registry.snapshot():
            if session.sink.overdue(self.grace_secs, current):
                removed = self.evict(session, current)
                if removed is not None:
                    evicted.append(removed)
        self.stats["evicted"] += len(evicted)
        return evicted


__all__ = ["MembershipCache", "PlanReport", "FanOutRouter"]
