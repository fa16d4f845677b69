from __future__ import annotations

import threading

import pytest

from chatcore.core.errors import InvalidArgument
from chatcore.core.presence import PresenceRecord, PresenceTracker
from chatcore.core.proto import PresenceStatus
from chatcore.core.registry import Session


@pytest.fixture
def tracker(registry):
    return PresenceTracker(registry, clock=lambda: 1700000000.0)


def test_online_iff_at_least_one_chat_session(registry, tracker):
    first = Session(user_id="alice")
    second = Session(user_id="alice")
    registry.register(first)
    opened = tracker.on_session_opened("alice")
    assert opened.status is PresenceStatus.ONLINE

    registry.register(second)
    assert tracker.on_session_opened("alice") is None  # no transition

    registry.deregister(first.session_id)
    assert tracker.on_session_closed("alice") is None
    assert tracker.get("alice").status is PresenceStatus.ONLINE

    registry.deregister(second.session_id)
    closed = tracker.on_session_closed("alice")
    assert closed.status is PresenceStatus.OFFLINE
    assert closed.last_seen == 1700000000.0


def test_subscription_sessions_do_not_count_as_online(registry, tracker):
    registry.register(Session(user_id="bob", tag="presence"))
    assert tracker.on_session_opened("bob") is None
    assert tracker.get("bob").status is PresenceStatus.OFFLINE


def test_preferred_status_applies_only_while_connected(registry, tracker):
    assert tracker.set_status("carol", PresenceStatus.BUSY, "in a meeting") is None
    assert tracker.get("carol").status is PresenceStatus.OFFLINE

    session = Session(user_id="carol")
    registry.register(session)
    record = tracker.on_session_opened("carol")
    assert record.status is PresenceStatus.BUSY
    assert record.custom_message == "in a meeting"

    changed = tracker.set_status("carol", PresenceStatus.AWAY)
    assert changed.status is PresenceStatus.AWAY

    registry.deregister(session.session_id)
    assert tracker.on_session_closed("carol").status is PresenceStatus.OFFLINE


def test_offline_cannot_be_requested(tracker):
    with pytest.raises(InvalidArgument):
        tracker.set_status("dave", PresenceStatus.OFFLINE)


def test_snapshot_is_immutable_and_replaced_on_write(registry, tracker):
    before = tracker.snapshot()
    registry.register(Session(user_id="erin"))
    tracker.on_session_opened("erin")
    after = tracker.snapshot()
    assert "erin" not in before
    assert after["erin"].status is PresenceStatus.ONLINE
    with pytest.raises(TypeError):
        after["erin"] = PresenceRecord(user_id="erin")


def test_restore_keeps_users_offline_until_they_connect(registry, tracker):
    tracker.restore(PresenceRecord(user_id="frank", status=PresenceStatus.AWAY, last_seen=5.0))
    assert tracker.get("frank").status is PresenceStatus.OFFLINE
    assert tracker.get("frank").last_seen == 5.0

    registry.register(Session(user_id="frank"))
    assert tracker.on_session_opened("frank").status is PresenceStatus.AWAY


def test_per_user_locks_do_not_outlive_their_users(registry, tracker):
    for n in range(50):
        session = Session(user_id=f"user{n}")
        registry.register(session)
        tracker.on_session_opened(session.user_id)
        registry.deregister(session.session_id)
        tracker.on_session_closed(session.user_id)
    tracker.set_status("grace", PresenceStatus.AWAY)

    assert tracker._user_locks == {}
    assert tracker.get("user7").status is PresenceStatus.OFFLINE


def test_concurrent_writers_for_one_user_share_a_lock(registry, tracker):
    registry.register(Session(user_id="heidi"))
    statuses = [PresenceStatus.AWAY, PresenceStatus.BUSY, PresenceStatus.ONLINE] * 20
    threads = [threading.Thread(target=tracker.set_status, args=("heidi", s)) for s in statuses]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert tracker._user_locks == {}
    assert tracker.get("heidi").status is tracker._preferred["heidi"].status
