from __future__ import annotations

import contextlib
import logging
import threading
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional

from .errors import InvalidArgument
from .proto import PresenceStatus, TAG_CHAT
from .registry import SessionRegistry

"""
Presence index
--------------
Derived from registry transitions:
  • first `chat` session of a user opens   -> online (or the user's preferred away/busy)
  • last `chat` session of a user closes   -> offline, last_seen = now
  • UpdatePresenceStatus(away|busy|online) -> stored as the preferred status,
    visible only while the user has live sessions

Readers get an immutable snapshot that is swapped on every write; writers for
the same user are serialised by a per-user lock.
"""

log = logging.getLogger("chatcore.core.presence")


@dataclass(frozen=True, slots=True)
class PresenceRecord:
    user_id: str
    status: PresenceStatus = PresenceStatus.OFFLINE
    custom_message: str = ""
    last_seen: float = 0.0


class PresenceTracker:
    def __init__(self, registry: SessionRegistry, clock=time.time) -> None:
        self._registry = registry
        self._clock = clock
        self._records: Mapping[str, PresenceRecord] = MappingProxyType({})
        self._preferred: Dict[str, PresenceRecord] = {}
        # user_id -> [lock, holders and waiters]; dropped when nobody needs it
        self._user_locks: Dict[str, List] = {}
        self._locks_guard = threading.Lock()
        self._publish_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> Mapping[str, PresenceRecord]:
        return self._records

    def get(self, user_id: str) -> PresenceRecord:
        record = self._records.get(user_id)
        if record is None:
            return PresenceRecord(user_id=user_id)
        return record

    def _live(self, user_id: str) -> bool:
        return self._registry.count_for_user(user_id, tags=(TAG_CHAT,)) > 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def _locked(self, user_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._user_locks.get(user_id)
            if entry is None:
                entry = self._user_locks[user_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._user_locks[user_id]

    def _publish(self, record: PresenceRecord) -> None:
        with self._publish_lock:
            updated = dict(self._records)
            updated[record.user_id] = record
            self._records = MappingProxyType(updated)

    def _transition(self, user_id: str, record: PresenceRecord) -> Optional[PresenceRecord]:
        current = self._records.get(user_id)
        if current is not None and current.status == record.status and current.custom_message == record.custom_message:
            return None
        self._publish(record)
        log.debug("Presence %s -> %s", user_id, record.status.value)
        return record

    def on_session_opened(self, user_id: str) -> Optional[PresenceRecord]:
        """Recompute after a `chat` session registered; returns the new record on a transition."""

        with self._locked(user_id):
            if not self._live(user_id):
                return None
            preferred = self._preferred.get(user_id)
            status = preferred.status if preferred is not None else PresenceStatus.ONLINE
            message = preferred.custom_message if preferred is not None else ""
            return self._transition(
                user_id,
                PresenceRecord(user_id=user_id, status=status, custom_message=message, last_seen=self._clock()),
            )

    def on_session_closed(self, user_id: str) -> Optional[PresenceRecord]:
        with self._locked(user_id):
            if self._live(user_id):
                return None
            current = self._records.get(user_id)
            message = current.custom_message if current is not None else ""
            return self._transition(
                user_id,
                PresenceRecord(
                    user_id=user_id,
                    status=PresenceStatus.OFFLINE,
                    custom_message=message,
                    last_seen=self._clock(),
                ),
            )

    def set_status(
        self, user_id: str, status: PresenceStatus, custom_message: str = ""
    ) -> Optional[PresenceRecord]:
        """Store a preferred status; it becomes visible while the user is connected.

        Offline cannot be requested, it only follows from the last session closing.
        """

        if status is PresenceStatus.OFFLINE:
            raise InvalidArgument("offline is derived from session state and cannot be set")
        with self._locked(user_id):
            preferred = PresenceRecord(user_id=user_id, status=status, custom_message=custom_message)
            self._preferred[user_id] = preferred
            if not self._live(user_id):
                return None
            return self._transition(
                user_id,
                PresenceRecord(
                    user_id=user_id, status=status, custom_message=custom_message, last_seen=self._clock()
                ),
            )

    def restore(self, record: PresenceRecord) -> None:
        """Seed a persisted record at startup; live state wins over anything restored."""

        with self._locked(record.user_id):
            if record.status is not PresenceStatus.OFFLINE:
                self._preferred[record.user_id] = record
            if self._live(record.user_id):
                return
            self._publish(
                PresenceRecord(
                    user_id=record.user_id,
                    status=PresenceStatus.OFFLINE,
                    custom_message=record.custom_message,
                    last_seen=record.last_seen,
                )
            )


__all__ = ["PresenceRecord", "PresenceTracker"]
