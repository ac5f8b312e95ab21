"""Command facade: per-entity serialization, timeouts and change dispatch.

Each command runs on a worker thread with its own session. The change events
it records are published only after the transaction has committed, so a
subscriber never observes a change that was rolled back.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Sequence, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from safeyou.realtime.events import ChangeEntity, ChangeEvent
from safeyou.realtime.managers import dispatch_change

from app.config import Settings, get_settings
from app.core.errors import ChatError, NotFound, Transient
from app.models import Message
from app.models.base import utcnow
from app.monitoring.metrics import commands_total
from app.schemas import ChangeHistoryPage, ChangeEventRead, MessageRead, UserRead
from app.services.changes import discard_pending_changes, last_sequence, load_history, pop_pending_changes
from app.services.messages import MessageBody, MessageScope, MessageStore
from app.services.moderation import ModerationService
from app.services.presence import PresenceTracker
from app.services.users import UserDirectory

logger = logging.getLogger(__name__)

T = TypeVar("T")

Dispatcher = Callable[[ChangeEvent], None]


class _Lease:
    def __init__(self, owner: "KeyedLock", keys: Sequence[str]) -> None:
        self._owner = owner
        self._keys = list(keys)

    def release(self) -> None:
        keys, self._keys = self._keys, []
        for key in reversed(keys):
            self._owner._release(key)


class KeyedLock:
    """Asyncio locks created on demand per key and dropped once unused.

    Keys are always acquired in sorted order so multi-key commands cannot
    deadlock each other.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    def __len__(self) -> int:
        return len(self._locks)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    async def acquire(self, keys: Iterable[str]) -> _Lease:
        held: list[str] = []
        try:
            for key in sorted(set(keys)):
                lock = self._locks.setdefault(key, asyncio.Lock())
                self._users[key] += 1
                try:
                    await lock.acquire()
                except BaseException:
                    self._forget(key)
                    raise
                held.append(key)
        except BaseException:
            _Lease(self, held).release()
            raise
        return _Lease(self, held)

    def _release(self, key: str) -> None:
        self._locks[key].release()
        self._forget(key)

    def _forget(self, key: str) -> None:
        self._users[key] -= 1
        if self._users[key] <= 0:
            self._users.pop(key, None)
            self._locks.pop(key, None)


command_locks = KeyedLock()


def _user_key(user_id: str) -> str:
    return f"user:{user_id}"


def _message_key(message_id: int) -> str:
    return f"message:{message_id}"


class ChatService:
    """Async entry point for every chat command."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        dispatcher: Dispatcher | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.settings = settings or get_settings()
        self._clock = clock
        self._dispatch = dispatcher or dispatch_change
        self._locks = locks or command_locks

    # ------------------------------------------------------------------
    # Users and presence
    # ------------------------------------------------------------------
    async def register(self, username: str, password: str) -> UserRead:
        key = f"username:{username.strip().casefold()}"
        return await self._command(
            "register",
            [key],
            lambda db: UserDirectory(db, clock=self._clock).register(username, password),
        )

    async def login(self, username: str, password: str) -> UserRead | None:
        """Check credentials and mark the user online; ``None`` when they do not match."""

        def authenticate(db: Session) -> str | None:
            user = UserDirectory(db, clock=self._clock).authenticate(username, password)
            return user.id if user is not None else None

        user_id = await self._query("authenticate", authenticate)
        if user_id is None:
            return None
        return await self.set_online(user_id)

    async def set_online(self, user_id: str) -> UserRead:
        return await self._command(
            "set_online",
            [_user_key(user_id)],
            lambda db: PresenceTracker(db, clock=self._clock).set_online(user_id),
        )

    async def set_offline(self, user_id: str) -> UserRead:
        return await self._command(
            "set_offline",
            [_user_key(user_id)],
            lambda db: PresenceTracker(db, clock=self._clock).set_offline(user_id),
        )

    async def heartbeat(self, user_id: str) -> UserRead:
        return await self._command(
            "heartbeat",
            [_user_key(user_id)],
            lambda db: PresenceTracker(db, clock=self._clock).heartbeat(user_id),
        )

    async def expire_stale_presence(self, grace_seconds: float | None = None) -> list[UserRead]:
        grace = self.settings.presence_grace_seconds if grace_seconds is None else grace_seconds
        return await self._command(
            "expire_presence",
            [],
            lambda db: PresenceTracker(db, clock=self._clock).expire_stale(grace),
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    async def send_message(
        self,
        author_id: str,
        scope: MessageScope,
        body: MessageBody,
        reply_to_id: int | None = None,
    ) -> MessageRead:
        # Same key as reports against this author.
        return await self._command(
            "send",
            [_user_key(author_id)],
            lambda db: self._store(db).send(author_id, scope, body, reply_to_id),
        )

    async def react(
        self, message_id: int, user_id: str, emoji: str, command_id: str | None = None
    ) -> MessageRead:
        return await self._command(
            "react",
            [_message_key(message_id)],
            lambda db: self._store(db).react(message_id, user_id, emoji, command_id),
        )

    async def mark_read(self, message_id: int, user_id: str) -> None:
        await self._command(
            "mark_read",
            [_message_key(message_id)],
            lambda db: self._store(db).mark_read(message_id, user_id),
        )

    async def delete_message(self, message_id: int, requester_id: str) -> None:
        await self._command(
            "delete",
            [_message_key(message_id)],
            lambda db: self._store(db).delete(message_id, requester_id),
        )

    async def report(self, reporter_id: str, message_id: int) -> UserRead:
        def resolve_author(db: Session) -> str:
            message = db.get(Message, message_id)
            if message is None or message.author_id is None or not message.visible_to(reporter_id):
                raise NotFound("Message not found")
            return message.author_id

        author_id = await self._query("resolve_author", resolve_author)
        return await self._command(
            "report",
            [_user_key(author_id)],
            lambda db: ModerationService(db, clock=self._clock, settings=self.settings).report(
                reporter_id, message_id
            ),
        )

    # ------------------------------------------------------------------
    # Change log
    # ------------------------------------------------------------------
    async def change_history(
        self, entity: ChangeEntity, from_sequence: int, limit: int | None = None
    ) -> ChangeHistoryPage:
        page_limit = max(1, min(limit or self.settings.change_history_page_limit, self.settings.change_history_page_limit))

        def load(db: Session) -> ChangeHistoryPage:
            events = load_history(db, entity, from_sequence, page_limit + 1)
            has_more = len(events) > page_limit
            events = events[:page_limit]
            return ChangeHistoryPage(
                entity=entity,
                items=[ChangeEventRead.model_validate(event.to_dict()) for event in events],
                last_sequence=last_sequence(db, entity),
                next_sequence=events[-1].sequence + 1 if has_more else None,
            )

        return await self._query("change_history", load)

    async def load_change_history(self, entity: ChangeEntity, from_sequence: int) -> list[ChangeEvent]:
        """History loader used by the change bus for replays older than its memory log."""

        return await self._query(
            "change_replay", lambda db: load_history(db, entity, from_sequence)
        )

    async def change_head(self, entity: ChangeEntity) -> int:
        return await self._query("change_head", lambda db: last_sequence(db, entity))

    # ------------------------------------------------------------------
    # Execution helpers
    # ------------------------------------------------------------------
    def _store(self, db: Session) -> MessageStore:
        return MessageStore(db, clock=self._clock, settings=self.settings)

    async def _query(self, name: str, operation: Callable[[Session], T]) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._read, operation), self.settings.command_timeout_seconds
            )
        except asyncio.TimeoutError:
            commands_total.labels(name, "timeout").inc()
            logger.warning("Query timed out", extra={"query": name})
            raise Transient("Timed out while reading chat state") from None
        except OperationalError as exc:
            commands_total.labels(name, "unavailable").inc()
            logger.warning("Database unavailable for query", extra={"query": name}, exc_info=exc)
            raise Transient("Database is temporarily unavailable") from exc

    async def _command(self, name: str, keys: Sequence[str], operation: Callable[[Session], T]) -> T:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.command_timeout_seconds
        lease = await self._acquire_within(keys, self.settings.command_timeout_seconds)
        if lease is None:
            commands_total.labels(name, "timeout").inc()
            logger.warning("Command timed out waiting for its turn", extra={"command": name, "keys": list(keys)})
            raise Transient("Timed out waiting for a concurrent command")

        # Once accepted, a command runs to completion even if its caller stops waiting.
        task = asyncio.ensure_future(self._run_accepted(name, operation, lease))
        task.add_done_callback(_log_orphaned_failure)
        remaining = max(deadline - loop.time(), 0.0)
        try:
            return await asyncio.wait_for(asyncio.shield(task), remaining)
        except asyncio.TimeoutError:
            commands_total.labels(name, "timeout").inc()
            logger.warning("Command timed out", extra={"command": name})
            raise Transient("Command did not finish in time") from None

    async def _acquire_within(self, keys: Sequence[str], timeout: float) -> _Lease | None:
        """Wait up to *timeout* for *keys*; ``None`` when the turn did not come.

        A lease granted in the same instant the wait gave up is released
        rather than left holding its keys.
        """

        acquiring = asyncio.create_task(self._locks.acquire(keys))
        try:
            done, _ = await asyncio.wait({acquiring}, timeout=timeout)
        except asyncio.CancelledError:
            acquiring.cancel()
            acquiring.add_done_callback(_release_unclaimed_lease)
            raise
        if done:
            return acquiring.result()
        acquiring.cancel()
        await asyncio.wait({acquiring})
        _release_unclaimed_lease(acquiring)
        return None

    async def _run_accepted(self, name: str, operation: Callable[[Session], T], lease: _Lease) -> T:
        try:
            result, events = await asyncio.to_thread(self._write, operation)
        except ChatError as exc:
            commands_total.labels(name, "rejected").inc()
            logger.debug("Command rejected", extra={"command": name, "code": exc.code})
            raise
        except (OperationalError, IntegrityError) as exc:
            commands_total.labels(name, "unavailable").inc()
            logger.warning("Command failed on the database", extra={"command": name}, exc_info=exc)
            raise Transient("Database is temporarily unavailable") from exc
        finally:
            lease.release()

        for event in events:
            try:
                self._dispatch(event)
            except Exception:
                logger.exception(
                    "Failed to dispatch change event",
                    extra={"entity": event.entity.value, "sequence": event.sequence},
                )
        commands_total.labels(name, "ok").inc()
        return result

    def _write(self, operation: Callable[[Session], T]) -> tuple[T, list[ChangeEvent]]:
        db = self._session_factory()
        try:
            result = operation(db)
            db.commit()
            return result, pop_pending_changes(db)
        except Exception:
            db.rollback()
            discard_pending_changes(db)
            raise
        finally:
            db.close()

    def _read(self, operation: Callable[[Session], T]) -> T:
        db = self._session_factory()
        try:
            return operation(db)
        finally:
            db.close()


def _log_orphaned_failure(task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None and not isinstance(exc, ChatError):
        logger.debug("Command finished with an error", exc_info=exc)


def _release_unclaimed_lease(task: "asyncio.Task[_Lease]") -> None:
    if task.cancelled() or task.exception() is not None:
        return
    task.result().release()
