"""Tests for reports and the suspension state machine."""

from __future__ import annotations

from datetime import timedelta

import pytest

from app.core.errors import AuthorSuspended, InvalidReport, NotFound
from app.models import User, UserReport
from app.services.changes import pop_pending_changes
from app.services.messages import MessageBody, MessageScope, MessageStore
from app.services.moderation import ModerationService
from app.services.serializers import serialize_user
from app.services.suspension import Suspension, active_suspension, apply_report, is_suspended
from app.services.users import UserDirectory
from safeyou.realtime.events import ChangeEntity


@pytest.fixture()
def users(db_session, clock):
    directory = UserDirectory(db_session, clock=clock)
    created = {name: directory.register(name, "supersecret") for name in ("alice", "bob", "carol")}
    db_session.commit()
    pop_pending_changes(db_session)
    return created


@pytest.fixture()
def store(db_session, clock) -> MessageStore:
    return MessageStore(db_session, clock=clock)


@pytest.fixture()
def moderation(db_session, clock) -> ModerationService:
    return ModerationService(db_session, clock=clock)


def _public(store: MessageStore, author_id: str, text: str = "spam"):
    message = store.send(author_id, MessageScope.public(), MessageBody(text=text))
    store.db.commit()
    return message


def test_report_suspends_author_for_forty_minutes(db_session, store, moderation, users, clock):
    alice, bob = users["alice"], users["bob"]
    message = _public(store, alice.id)
    pop_pending_changes(db_session)
    t0 = clock()

    snapshot = moderation.report(bob.id, message.id)
    db_session.commit()

    assert snapshot.suspension is not None
    assert snapshot.suspension.until == t0 + timedelta(minutes=40)
    assert snapshot.suspension.reported_by == ["bob"]

    events = pop_pending_changes(db_session)
    assert [event.entity for event in events] == [ChangeEntity.USER]
    assert events[0].payload["id"] == alice.id
    assert events[0].payload["suspension"]["reported_by"] == ["bob"]

    with pytest.raises(AuthorSuspended) as exc:
        store.send(alice.id, MessageScope.public(), MessageBody(text="hello?"))
    assert exc.value.until == t0 + timedelta(minutes=40)
    db_session.rollback()

    clock.advance(minutes=40)
    user = db_session.get(User, alice.id)
    assert is_suspended(user, clock()) is False
    assert serialize_user(user, clock()).suspension is None

    resumed = store.send(alice.id, MessageScope.public(), MessageBody(text="back"))
    assert resumed.text == "back"


def test_suspension_boundary_is_exclusive(db_session, store, moderation, users, clock):
    alice, bob = users["alice"], users["bob"]
    message = _public(store, alice.id)
    moderation.report(bob.id, message.id)
    db_session.commit()

    user = db_session.get(User, alice.id)
    until = user.suspended_until
    assert is_suspended(user, until - timedelta(milliseconds=1)) is True
    assert is_suspended(user, until) is False


def test_second_report_extends_and_keeps_reporter_order(db_session, store, moderation, users, clock):
    alice, bob, carol = users["alice"], users["bob"], users["carol"]
    message = _public(store, alice.id)

    moderation.report(bob.id, message.id)
    db_session.commit()
    clock.advance(minutes=10)
    second = moderation.report(carol.id, message.id)
    db_session.commit()

    assert second.suspension is not None
    assert second.suspension.until == clock() + timedelta(minutes=40)
    assert second.suspension.reported_by == ["bob", "carol"]
    assert db_session.query(UserReport).count() == 2


def test_repeated_report_by_same_user_is_listed_once(db_session, store, moderation, users, clock):
    alice, bob = users["alice"], users["bob"]
    message = _public(store, alice.id)

    moderation.report(bob.id, message.id)
    db_session.commit()
    clock.advance(minutes=5)
    again = moderation.report(bob.id, message.id)

    assert again.suspension is not None
    assert again.suspension.reported_by == ["bob"]
    assert again.suspension.until == clock() + timedelta(minutes=40)


def test_report_after_expiry_starts_a_fresh_suspension(db_session, store, moderation, users, clock):
    alice, bob, carol = users["alice"], users["bob"], users["carol"]
    message = _public(store, alice.id)

    moderation.report(bob.id, message.id)
    db_session.commit()
    clock.advance(hours=1)
    fresh = moderation.report(carol.id, message.id)

    assert fresh.suspension is not None
    assert fresh.suspension.reported_by == ["carol"]


def test_self_report_is_rejected(store, moderation, users):
    message = _public(store, users["alice"].id)

    with pytest.raises(InvalidReport):
        moderation.report(users["alice"].id, message.id)


def test_report_of_missing_message_is_not_found(moderation, users):
    with pytest.raises(NotFound):
        moderation.report(users["bob"].id, 12345)


def test_report_of_unseen_private_message_is_not_found(db_session, store, moderation, users):
    alice, bob, carol = users["alice"], users["bob"], users["carol"]
    private = store.send(alice.id, MessageScope.private(bob.id), MessageBody(text="psst"))
    db_session.commit()

    with pytest.raises(NotFound):
        moderation.report(carol.id, private.id)


def test_status_reports_active_suspension(db_session, store, moderation, users, clock):
    alice, bob = users["alice"], users["bob"]
    message = _public(store, alice.id)
    assert moderation.status(alice.id).suspended is False

    moderation.report(bob.id, message.id)
    db_session.commit()

    status = moderation.status(alice.id)
    assert status.suspended is True
    assert status.reported_by == ["bob"]

    clock.advance(minutes=41)
    assert moderation.status(alice.id).suspended is False


def test_apply_report_keeps_later_deadline(clock):
    now = clock()
    current = Suspension(until=now + timedelta(hours=2), reporters=({"id": "b", "username": "bob"},))

    result = apply_report(current, "c", "carol", now, timedelta(minutes=40))

    assert result.until == now + timedelta(hours=2)
    assert result.reported_by == ["bob", "carol"]


def test_active_suspension_ignores_expired_deadline(clock):
    user = User(
        username="dave",
        username_key="dave",
        hashed_password="x",
        suspended_until=clock() - timedelta(seconds=1),
        suspension_reporters=[{"id": "b", "username": "bob"}],
    )

    assert active_suspension(user, clock()) is None
