"""Redis pub/sub transport used to relay change events between nodes."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TYPE_CHECKING

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

from app.monitoring.metrics import realtime_transport_restarts_total

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from redis.asyncio import Redis as RedisClient
else:
    RedisClient = Any  # type: ignore[assignment,misc]


logger = logging.getLogger(__name__)

_REDIS_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

_RECOVERY_BASE_DELAY = 0.5
_RECOVERY_MAX_DELAY = 30.0

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]
RecoveryListener = Callable[[], Awaitable[None]]


@dataclass(slots=True)
class RelayConfig:
    """Connection settings for the relay transport."""

    redis_url: str | None
    namespace: str = "safeyou.changes"
    node_id: str | None = None


class TransportUnavailableError(RuntimeError):
    """Raised when the relay backend is not configured or cannot be reached."""


class Subscription:
    """Handle returned when subscribing to a relay topic."""

    def __init__(self, name: str, cleanup: Callable[[], Awaitable[None]]) -> None:
        self._name = name
        self._cleanup = cleanup

    @property
    def name(self) -> str:
        return self._name

    async def close(self) -> None:
        await self._cleanup()


@dataclass(slots=True)
class _ChannelState:
    topic: str
    channel: str
    handler: MessageHandler
    task: asyncio.Task[Any] | None = None
    pubsub: Any | None = None
    active: bool = True
    suspending: bool = False


class RedisTransport:
    """Publish and subscribe JSON payloads on namespaced Redis channels.

    A reader task per channel feeds the handlers. When a reader dies or a
    publish fails the transport reconnects in the background with
    exponential backoff, re-attaches every active channel and then runs the
    recovery listeners.
    """

    def __init__(self, config: RelayConfig) -> None:
        self._config = config
        self._redis: RedisClient | None = None
        self._states: list[_ChannelState] = []
        self._recovery_lock = asyncio.Lock()
        self._recovery_task: asyncio.Task[Any] | None = None
        self._recovery_listeners: list[RecoveryListener] = []
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def node_id(self) -> str | None:
        return self._config.node_id

    @property
    def enabled(self) -> bool:
        return bool(self._config.redis_url)

    @property
    def connected(self) -> bool:
        return self._redis is not None

    async def start(self) -> None:
        if self._config.redis_url and self._redis is None:
            await self._connect()

    async def stop(self) -> None:
        for state in list(self._states):
            await self._close_state(state)
        self._states.clear()
        if self._recovery_task is not None:
            self._recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._recovery_task
            self._recovery_task = None
        for task in list(self._background):
            task.cancel()
        if self._redis is not None:
            await self._redis.close()
            self._redis = None

    def add_recovery_listener(self, listener: RecoveryListener) -> None:
        """Run *listener* after every successful reconnect, once readers are back."""

        self._recovery_listeners.append(listener)

    def channel_for(self, topic: str) -> str:
        prefix = self._config.namespace.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        if self._redis is None:
            await self.start()
        if self._redis is None:
            raise TransportUnavailableError("Redis relay is not configured")
        channel = self.channel_for(topic)
        try:
            await self._redis.publish(channel, json.dumps(payload))
        except _REDIS_ERRORS as exc:
            self._trigger_recovery("publish_failed")
            raise TransportUnavailableError("Redis relay is unavailable") from exc
        logger.debug("Relayed payload via Redis", extra={"channel": channel})

    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        if self._redis is None:
            await self.start()
        if self._redis is None:
            raise TransportUnavailableError("Redis relay is not configured")
        state = _ChannelState(topic=topic, channel=self.channel_for(topic), handler=handler)
        self._states.append(state)
        try:
            await self._attach_reader(state)
        except Exception as exc:
            await self._close_state(state)
            self._trigger_recovery("subscribe_failed")
            if isinstance(exc, TransportUnavailableError):
                raise
            raise TransportUnavailableError("Redis relay is unavailable") from exc

        async def cleanup() -> None:
            await self._close_state(state)

        return Subscription(state.channel, cleanup)

    async def _connect(self) -> None:
        client = redis_asyncio.from_url(
            self._config.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await client.ping()
        except _REDIS_ERRORS + (OSError,) as exc:
            logger.warning("Failed to connect to Redis relay", extra={"url": self._config.redis_url})
            with contextlib.suppress(Exception):
                await client.close()
            raise TransportUnavailableError("Redis relay is unavailable") from exc
        self._redis = client

    async def _pause_state(self, state: _ChannelState) -> None:
        state.suspending = True
        task = state.task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        state.task = None
        pubsub = state.pubsub
        if pubsub is not None:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe(state.channel)
            with contextlib.suppress(Exception):
                await pubsub.close()
        state.pubsub = None
        state.suspending = False

    async def _close_state(self, state: _ChannelState) -> None:
        state.active = False
        await self._pause_state(state)
        if state in self._states:
            self._states.remove(state)

    async def _attach_reader(self, state: _ChannelState) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis relay is not configured")
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(state.channel)
        except _REDIS_ERRORS as exc:
            await pubsub.close()
            raise TransportUnavailableError("Redis relay is unavailable") from exc
        state.pubsub = pubsub

        async def reader() -> None:
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    raw = message.get("data")
                    if not isinstance(raw, str):
                        continue
                    try:
                        payload = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning("Discarded malformed relay payload", extra={"channel": state.channel})
                        continue
                    if isinstance(payload, dict):
                        await state.handler(payload)
            finally:
                with contextlib.suppress(Exception):
                    await pubsub.unsubscribe(state.channel)
                with contextlib.suppress(Exception):
                    await pubsub.close()

        task = asyncio.create_task(reader(), name=f"relay-redis-{state.channel}")
        state.task = task
        task.add_done_callback(lambda finished: self._spawn(self._on_reader_done(state, finished)))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _on_reader_done(self, state: _ChannelState, task: asyncio.Task[Any]) -> None:
        if state.task is task:
            state.task = None
            state.pubsub = None
        if not state.active or state.suspending or task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Relay reader stopped due to error; scheduling recovery",
                exc_info=exc,
                extra={"channel": state.channel},
            )
        else:
            logger.warning("Relay reader exited unexpectedly; scheduling recovery", extra={"channel": state.channel})
        self._trigger_recovery("reader_stopped")

    def _trigger_recovery(self, reason: str) -> None:
        if not self._config.redis_url:
            return
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        logger.info("Scheduling Redis relay recovery", extra={"reason": reason})
        self._recovery_task = asyncio.create_task(self._recovery_runner(reason), name="relay-redis-recovery")

    async def _recovery_runner(self, reason: str) -> None:
        attempt = 0
        while True:
            await asyncio.sleep(min(_RECOVERY_BASE_DELAY * (2**attempt), _RECOVERY_MAX_DELAY))
            try:
                await self._restart(reason)
            except Exception:
                attempt += 1
                logger.warning(
                    "Redis relay recovery attempt failed",
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                    extra={"attempt": attempt, "reason": reason},
                )
                continue
            break
        self._recovery_task = None

    async def _restart(self, reason: str) -> None:
        async with self._recovery_lock:
            for state in list(self._states):
                await self._pause_state(state)
            if self._redis is not None:
                with contextlib.suppress(Exception):
                    await self._redis.close()
                self._redis = None
            await self.start()
            for state in [state for state in self._states if state.active]:
                await self._attach_reader(state)

        realtime_transport_restarts_total.labels("redis", reason).inc()
        logger.info("Redis relay recovered", extra={"reason": reason, "channels": len(self._states)})
        if self._recovery_listeners:
            self._spawn(self._notify_recovered())

    async def _notify_recovered(self) -> None:
        for listener in list(self._recovery_listeners):
            try:
                await listener()
            except Exception:
                logger.exception("Redis relay recovery listener failed")
