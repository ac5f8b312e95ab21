"""Tests for presence tracking and heartbeat staleness."""

from __future__ import annotations

from datetime import timedelta

import pytest

from app.core.errors import NotFound
from app.models import User
from app.monitoring.metrics import presence_expired_total
from app.services.changes import pop_pending_changes
from app.services.presence import PresenceTracker, is_stale, presence_snapshot
from app.services.users import UserDirectory
from safeyou.realtime.events import ChangeEntity


@pytest.fixture(autouse=True)
def reset_presence_metric():
    presence_expired_total.reset()
    yield
    presence_expired_total.reset()


@pytest.fixture()
def users(db_session, clock):
    directory = UserDirectory(db_session, clock=clock)
    created = {name: directory.register(name, "supersecret") for name in ("alice", "bob")}
    db_session.commit()
    pop_pending_changes(db_session)
    return created


@pytest.fixture()
def tracker(db_session, clock) -> PresenceTracker:
    return PresenceTracker(db_session, clock=clock)


def test_set_online_and_offline_emit_user_changes(db_session, tracker, users, clock):
    alice = users["alice"]
    clock.advance(seconds=5)

    online = tracker.set_online(alice.id)
    assert online.is_online is True
    assert online.last_seen == clock()

    clock.advance(seconds=5)
    offline = tracker.set_offline(alice.id)
    db_session.commit()
    assert offline.is_online is False
    assert offline.last_seen == clock()

    events = pop_pending_changes(db_session)
    assert [event.entity for event in events] == [ChangeEntity.USER, ChangeEntity.USER]
    assert [event.payload["is_online"] for event in events] == [True, False]
    assert events[0].sequence < events[1].sequence


def test_heartbeat_refreshes_last_seen_only(db_session, tracker, users, clock):
    alice = users["alice"]
    tracker.set_online(alice.id)
    clock.advance(seconds=10)

    beat = tracker.heartbeat(alice.id)

    assert beat.is_online is True
    assert beat.last_seen == clock()


def test_last_seen_never_moves_backwards(db_session, tracker, users, clock):
    alice = users["alice"]
    clock.advance(minutes=1)
    tracker.heartbeat(alice.id)
    latest = clock()

    clock.advance(seconds=-30)
    beat = tracker.heartbeat(alice.id)

    assert beat.last_seen == latest


def test_unknown_user_is_not_found(tracker):
    with pytest.raises(NotFound):
        tracker.set_online("missing")


def test_is_stale_uses_grace_window(db_session, tracker, users, clock):
    alice = users["alice"]
    tracker.set_online(alice.id)
    db_session.commit()
    user = db_session.get(User, alice.id)

    assert is_stale(user, clock() + timedelta(seconds=45), 45) is False
    assert is_stale(user, clock() + timedelta(seconds=46), 45) is True

    snapshot = presence_snapshot(user, clock() + timedelta(seconds=46), 45)
    assert snapshot.stale is True
    assert snapshot.is_online is True


def test_offline_user_is_never_stale(db_session, users, clock):
    user = db_session.get(User, users["bob"].id)
    assert is_stale(user, clock() + timedelta(hours=1), 45) is False


def test_expire_stale_switches_only_silent_users_offline(db_session, tracker, users, clock):
    alice, bob = users["alice"], users["bob"]
    tracker.set_online(alice.id)
    tracker.set_online(bob.id)
    db_session.commit()
    pop_pending_changes(db_session)

    clock.advance(seconds=40)
    tracker.heartbeat(bob.id)
    clock.advance(seconds=10)

    expired = tracker.expire_stale(45)
    db_session.commit()

    assert [item.id for item in expired] == [alice.id]
    assert db_session.get(User, alice.id).is_online is False
    assert db_session.get(User, bob.id).is_online is True
    assert presence_expired_total.value() == 1.0

    events = pop_pending_changes(db_session)
    assert [event.payload["id"] for event in events] == [bob.id, alice.id]
