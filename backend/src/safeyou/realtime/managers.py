"""Process-wide realtime state: change bus, relay, connections and presence watchdog."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, Set

from app.config import get_settings
from app.monitoring.metrics import (
    realtime_backfilled_events_total,
    realtime_connections,
    realtime_publish_errors_total,
)

from .bus import ChangeBus, HistoryLoader
from .events import ChangeEntity, ChangeEvent, InvalidChangeEvent
from .transport import RedisTransport, RelayConfig, Subscription, TransportUnavailableError

logger = logging.getLogger(__name__)

PresenceSweep = Callable[[float], Awaitable[Any]]
SequenceHead = Callable[[ChangeEntity], Awaitable[int]]


class SequenceWatermark:
    """Tracks which sequences of one entity stream this node has seen.

    ``through`` is the highest sequence at or below which nothing is missing;
    sequences seen beyond it wait in ``ahead`` until the gap closes.
    """

    def __init__(self) -> None:
        self.through: int | None = None
        self.ahead: Set[int] = set()

    def start_at(self, through: int) -> None:
        if self.through is None:
            self.through = through
            self._advance()

    def advance_to(self, sequence: int) -> None:
        if self.through is None or sequence > self.through:
            self.through = sequence
            self._advance()

    def seen(self, sequence: int) -> bool:
        if self.through is not None and sequence <= self.through:
            return True
        return sequence in self.ahead

    def mark(self, sequence: int) -> None:
        if self.through is None:
            self.through = sequence - 1
        if sequence <= self.through:
            return
        self.ahead.add(sequence)
        self._advance()

    def _advance(self) -> None:
        if self.through is None:
            return
        self.ahead = {sequence for sequence in self.ahead if sequence > self.through}
        while self.through + 1 in self.ahead:
            self.through += 1
            self.ahead.discard(self.through)


class RedisChangeRelay:
    """Copy locally committed change events to other nodes and back.

    Every sequence seen locally or from peers is tracked per entity. After the
    transport reconnects, sequences committed while the relay was deaf are
    read back from the durable change log and published locally.
    """

    def __init__(self, transport: RedisTransport, *, node_id: str) -> None:
        self._transport = transport
        self._node_id = node_id
        self._subscriptions: list[Subscription] = []
        self._pending: Set[asyncio.Task[Any]] = set()
        self._publish_warning_logged = False
        self._history: HistoryLoader | None = None
        self._head: SequenceHead | None = None
        self._watermarks: Dict[ChangeEntity, SequenceWatermark] = defaultdict(SequenceWatermark)
        transport.add_recovery_listener(self.backfill)

    @property
    def enabled(self) -> bool:
        return self._transport.enabled

    def configure(self, *, history: HistoryLoader | None = None, head: SequenceHead | None = None) -> None:
        self._history = history
        self._head = head

    def watermark(self, entity: ChangeEntity) -> SequenceWatermark:
        return self._watermarks[entity]

    async def start(self) -> None:
        if not self.enabled:
            return
        await self._transport.start()
        for entity in ChangeEntity:
            subscription = await self._transport.subscribe(entity.value, self._handle)
            self._subscriptions.append(subscription)
        if self._head is not None:
            for entity in ChangeEntity:
                try:
                    head = await self._head(entity)
                except Exception:
                    logger.warning(
                        "Could not read the %s change log head; tracking starts at the first event",
                        entity.value,
                        exc_info=logger.isEnabledFor(logging.DEBUG),
                    )
                    continue
                self._watermarks[entity].start_at(head)

    async def stop(self) -> None:
        for task in list(self._pending):
            task.cancel()
        for subscription in self._subscriptions:
            await subscription.close()
        self._subscriptions.clear()
        await self._transport.stop()

    def forward_soon(self, event: ChangeEvent) -> None:
        if not self.enabled:
            return
        self._watermarks[event.entity].mark(event.sequence)
        task = asyncio.create_task(self.forward(event), name=f"relay-forward-{event.entity.value}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def forward(self, event: ChangeEvent) -> None:
        payload = {"origin": self._node_id, "event": event.to_dict()}
        try:
            await self._transport.publish(event.entity.value, payload)
        except TransportUnavailableError:
            if not self._publish_warning_logged:
                logger.warning(
                    "Redis relay unavailable while forwarding %s change; operating in local-only mode",
                    event.entity.value,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._publish_warning_logged = True
            realtime_publish_errors_total.labels(event.entity.value, "redis", "unavailable").inc()
        except Exception:
            realtime_publish_errors_total.labels(event.entity.value, "redis", "error").inc()
            logger.exception("Unexpected error while forwarding %s change", event.entity.value)
        else:
            self._publish_warning_logged = False

    async def _handle(self, message: dict[str, Any]) -> None:
        if message.get("origin") == self._node_id:
            return
        try:
            event = ChangeEvent.from_dict(message.get("event") or {})
        except InvalidChangeEvent:
            logger.warning("Discarded malformed relayed change", extra={"origin": message.get("origin")})
            return
        self._watermarks[event.entity].mark(event.sequence)
        get_change_bus().publish(event)

    async def backfill(self) -> int:
        """Publish committed events this node missed; returns how many."""

        if self._history is None:
            return 0
        total = 0
        for entity in ChangeEntity:
            mark = self._watermarks[entity]
            if mark.through is None:
                continue
            events = await self._history(entity, mark.through + 1)
            recovered = 0
            ordered = sorted(events, key=lambda item: item.sequence)
            for event in ordered:
                if mark.seen(event.sequence):
                    continue
                mark.mark(event.sequence)
                get_change_bus().publish(event)
                recovered += 1
            if ordered:
                # The durable log has no gaps up to its newest row.
                mark.advance_to(ordered[-1].sequence)
            if recovered:
                realtime_backfilled_events_total.labels(entity.value).inc(recovered)
                logger.info(
                    "Backfilled %d %s change(s) missed by the relay",
                    recovered,
                    entity.value,
                    extra={"through": mark.through},
                )
            total += recovered
        return total


class ConnectionTracker:
    """Counts open change sockets per user."""

    def __init__(self) -> None:
        self._sockets: Dict[str, int] = defaultdict(int)
        self._lock = asyncio.Lock()

    async def connect(self, user_id: str) -> bool:
        """Register a socket; returns ``True`` for the user's first one."""

        async with self._lock:
            self._sockets[user_id] += 1
            realtime_connections.labels("changes").inc()
            return self._sockets[user_id] == 1

    async def disconnect(self, user_id: str) -> bool:
        """Release a socket; returns ``True`` when it was the user's last one."""

        async with self._lock:
            count = self._sockets.get(user_id, 0)
            if count <= 0:
                return False
            realtime_connections.labels("changes").dec()
            if count == 1:
                self._sockets.pop(user_id, None)
                return True
            self._sockets[user_id] = count - 1
            return False

    def count(self, user_id: str) -> int:
        return self._sockets.get(user_id, 0)


class PresenceWatchdog:
    """Periodically switches users offline once their heartbeats stop."""

    def __init__(self, *, interval_seconds: float, grace_seconds: float) -> None:
        self._interval = interval_seconds
        self._grace = grace_seconds
        self._sweep: PresenceSweep | None = None
        self._task: asyncio.Task[Any] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def configure(self, sweep: PresenceSweep | None) -> None:
        self._sweep = sweep

    async def start(self) -> None:
        if self.running or self._sweep is None or self._interval <= 0:
            return
        self._task = asyncio.create_task(self._run(), name="presence-watchdog")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def run_once(self) -> Any:
        if self._sweep is None:
            return None
        try:
            return await self._sweep(self._grace)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Presence sweep failed")
            return None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.run_once()


settings = get_settings()

_node_id = settings.realtime_node_id or uuid.uuid4().hex

change_bus = ChangeBus(
    retention=settings.realtime_log_retention,
    queue_size=settings.realtime_subscriber_queue_size,
)

transport = RedisTransport(
    RelayConfig(
        redis_url=settings.realtime_redis_url,
        namespace=settings.realtime_namespace,
        node_id=_node_id,
    )
)

relay = RedisChangeRelay(transport, node_id=_node_id)
connection_tracker = ConnectionTracker()
presence_watchdog = PresenceWatchdog(
    interval_seconds=settings.presence_sweep_interval_seconds,
    grace_seconds=settings.presence_grace_seconds,
)


def dispatch_change(event: ChangeEvent) -> None:
    """Publish a committed change locally and forward it to other nodes."""

    get_change_bus().publish(event)
    relay.forward_soon(event)


def configure_realtime(
    *,
    history: HistoryLoader | None = None,
    head: SequenceHead | None = None,
    presence_sweep: PresenceSweep | None = None,
) -> None:
    change_bus.configure_history(history)
    relay.configure(history=history, head=head)
    presence_watchdog.configure(presence_sweep)


async def startup_realtime() -> None:
    try:
        await relay.start()
    except (TransportUnavailableError, OSError):
        logger.warning(
            "Redis relay unavailable during startup; continuing without cross-node sync",
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
    await presence_watchdog.start()


async def shutdown_realtime() -> None:
    await presence_watchdog.stop()
    await relay.stop()
    get_change_bus().close_all()


def get_change_bus() -> ChangeBus:
    return change_bus


def get_connection_tracker() -> ConnectionTracker:
    return connection_tracker


def get_presence_watchdog() -> PresenceWatchdog:
    return presence_watchdog


__all__ = [
    "ConnectionTracker",
    "PresenceWatchdog",
    "RedisChangeRelay",
    "SequenceWatermark",
    "configure_realtime",
    "dispatch_change",
    "get_change_bus",
    "get_connection_tracker",
    "get_presence_watchdog",
    "shutdown_realtime",
    "startup_realtime",
]
