"""Tests for command serialization, timeouts and post-commit dispatch."""

from __future__ import annotations

import asyncio

import pytest

from app.config import get_settings
from app.core.errors import AuthorSuspended, Transient
from app.monitoring.metrics import commands_total
from app.services.chat import ChatService, KeyedLock
from app.services.messages import MessageBody, MessageScope
from safeyou.realtime.events import ChangeEntity, ChangeEvent


@pytest.fixture()
def dispatched() -> list[ChangeEvent]:
    return []


@pytest.fixture()
def locks() -> KeyedLock:
    return KeyedLock()


@pytest.fixture()
def service(session_factory, clock, dispatched, locks) -> ChatService:
    return ChatService(session_factory, clock=clock, dispatcher=dispatched.append, locks=locks)


async def _setup_conversation(service: ChatService):
    alice = await service.register("alice", "supersecret")
    bob = await service.register("bob", "supersecret")
    message = await service.send_message(alice.id, MessageScope.public(), MessageBody(text="hello"))
    return alice, bob, message


@pytest.mark.anyio
async def test_concurrent_duplicate_reactions_apply_once(service, dispatched):
    alice, bob, message = await _setup_conversation(service)
    dispatched.clear()

    results = await asyncio.gather(
        service.react(message.id, bob.id, "👍", command_id="react-1"),
        service.react(message.id, bob.id, "👍", command_id="react-1"),
    )

    assert all(result.reactions == {"👍": [bob.id]} for result in results)
    assert len(dispatched) == 1


@pytest.mark.anyio
async def test_concurrent_toggles_are_serialized(service):
    alice, bob, message = await _setup_conversation(service)

    await asyncio.gather(
        service.react(message.id, bob.id, "🔥"),
        service.react(message.id, bob.id, "🔥"),
    )

    history = await service.change_history(ChangeEntity.MESSAGE, 1)
    assert [item.payload["reactions"] for item in history.items[1:]] == [{"🔥": [bob.id]}, {}]


@pytest.mark.anyio
async def test_events_are_dispatched_after_commit_in_sequence_order(service, dispatched):
    alice, bob, message = await _setup_conversation(service)
    await service.mark_read(message.id, bob.id)

    message_events = [event for event in dispatched if event.entity is ChangeEntity.MESSAGE]
    assert [event.sequence for event in message_events] == [1, 2]
    assert message_events[-1].payload["read_by"] == [alice.id, bob.id]

    user_events = [event for event in dispatched if event.entity is ChangeEntity.USER]
    assert [event.payload["username"] for event in user_events] == ["alice", "bob"]

    replay = await service.load_change_history(ChangeEntity.MESSAGE, 1)
    assert [event.sequence for event in replay] == [1, 2]


@pytest.mark.anyio
async def test_rejected_command_dispatches_nothing(service, dispatched):
    alice, bob, message = await _setup_conversation(service)
    await service.report(bob.id, message.id)
    dispatched.clear()

    with pytest.raises(AuthorSuspended):
        await service.send_message(alice.id, MessageScope.public(), MessageBody(text="again"))

    assert dispatched == []
    history = await service.change_history(ChangeEntity.MESSAGE, 1)
    assert history.last_sequence == 1


@pytest.mark.anyio
async def test_command_waiting_too_long_for_its_turn_is_transient(
    service, session_factory, clock, locks, dispatched
):
    alice, bob, message = await _setup_conversation(service)
    settings = get_settings().model_copy(update={"command_timeout_seconds": 0.05})
    impatient = ChatService(
        session_factory, settings=settings, clock=clock, dispatcher=dispatched.append, locks=locks
    )
    before = commands_total.value("react", "timeout")

    lease = await locks.acquire([f"message:{message.id}"])
    try:
        with pytest.raises(Transient):
            await impatient.react(message.id, bob.id, "⏳")
    finally:
        lease.release()

    assert commands_total.value("react", "timeout") == before + 1
    assert len(locks) == 0
    snapshot = await service.react(message.id, bob.id, "⏳")
    assert snapshot.reactions == {"⏳": [bob.id]}


@pytest.mark.anyio
async def test_lease_granted_after_the_wait_gave_up_is_released(
    service, session_factory, clock, dispatched
):
    alice, bob, message = await _setup_conversation(service)

    class SlowToNoticeLocks(KeyedLock):
        async def acquire(self, keys):
            try:
                await asyncio.sleep(1)
            except asyncio.CancelledError:
                pass
            return await super().acquire(keys)

    locks = SlowToNoticeLocks()
    settings = get_settings().model_copy(update={"command_timeout_seconds": 0.05})
    impatient = ChatService(
        session_factory, settings=settings, clock=clock, dispatcher=dispatched.append, locks=locks
    )

    with pytest.raises(Transient):
        await impatient.react(message.id, bob.id, "⏳")

    assert not locks.locked(f"message:{message.id}")
    assert len(locks) == 0


@pytest.mark.anyio
async def test_login_marks_user_online(service, dispatched):
    await service.register("alice", "supersecret")

    assert await service.login("alice", "wrong-password") is None
    user = await service.login("ALICE", "supersecret")

    assert user is not None
    assert user.is_online is True
    assert dispatched[-1].payload["is_online"] is True


@pytest.mark.anyio
async def test_keyed_lock_forgets_released_keys():
    locks = KeyedLock()

    lease = await locks.acquire(["b", "a", "a"])
    assert locks.locked("a") and locks.locked("b")
    assert len(locks) == 2

    lease.release()
    assert len(locks) == 0
    assert not locks.locked("a")
