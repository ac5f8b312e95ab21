"""In-process change notification bus with replayable per-entity logs."""

from __future__ import annotations

import asyncio
import bisect
import logging
from collections import defaultdict, deque
from typing import Awaitable, Callable, Dict, List, Sequence, Set

from app.monitoring.metrics import (
    change_duplicates_dropped_total,
    change_events_published_total,
    change_subscriber_overflows_total,
    change_subscriptions,
)

from .events import ChangeEntity, ChangeEvent

logger = logging.getLogger(__name__)

HistoryLoader = Callable[[ChangeEntity, int], Awaitable[Sequence[ChangeEvent]]]

_CLOSED = object()


class SubscriptionOverflow(RuntimeError):
    """Raised to a subscriber that fell too far behind and was disconnected."""

    def __init__(self, entity: ChangeEntity, resume_from: int) -> None:
        super().__init__(
            f"Subscription to '{entity.value}' overflowed; resume from sequence {resume_from}"
        )
        self.entity = entity
        self.resume_from = resume_from


class ReplayUnavailableError(RuntimeError):
    """Raised when the requested starting sequence is no longer retained."""


class ChangeSubscription:
    """Async iterator over the change events of a single entity stream.

    Replayed events are served first, then live ones. Events older than
    ``from_sequence`` are never yielded, and an event is skipped when an event
    with an equal or higher sequence was already yielded for the same entity
    id.
    """

    def __init__(
        self,
        bus: "ChangeBus",
        entity: ChangeEntity,
        *,
        from_sequence: int | None,
        queue_size: int,
    ) -> None:
        self._bus = bus
        self.entity = entity
        self.from_sequence = from_sequence
        self._backlog: deque[ChangeEvent] = deque()
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=max(queue_size, 1))
        self._last_seen: Dict[str, int] = {}
        self._closed = False
        self._overflow: SubscriptionOverflow | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._backlog) + self._queue.qsize()

    def close(self) -> None:
        """Stop the subscription and release it from the bus immediately."""

        if self._closed:
            return
        self._detach()
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # The consumer is not blocked on get() while items are queued and
            # checks ``_closed`` before reading again.
            pass

    async def __aenter__(self) -> "ChangeSubscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    def __aiter__(self) -> "ChangeSubscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        while True:
            if self._overflow is not None:
                raise self._overflow
            if self._closed:
                raise StopAsyncIteration
            if self._backlog:
                event = self._backlog.popleft()
            else:
                item = await self._queue.get()
                if item is _CLOSED:
                    continue
                event = item  # type: ignore[assignment]
            if self._accept(event):
                return event

    def _accept(self, event: ChangeEvent) -> bool:
        if self.from_sequence is not None and event.sequence < self.from_sequence:
            return False
        entity_id = event.entity_id
        last = self._last_seen.get(entity_id)
        if last is not None and event.sequence <= last:
            change_duplicates_dropped_total.labels(self.entity.value).inc()
            return False
        self._last_seen[entity_id] = event.sequence
        return True

    def _load_backlog(self, events: Sequence[ChangeEvent]) -> None:
        self._backlog.extend(sorted(events, key=lambda item: item.sequence))

    def _offer(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._fail_with_overflow(event)

    def _fail_with_overflow(self, dropped: ChangeEvent) -> None:
        undelivered = [dropped.sequence]
        undelivered.extend(event.sequence for event in self._backlog)
        self._backlog.clear()
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if isinstance(item, ChangeEvent):
                undelivered.append(item.sequence)
        self._overflow = SubscriptionOverflow(self.entity, min(undelivered))
        change_subscriber_overflows_total.labels(self.entity.value).inc()
        logger.warning(
            "Change subscriber overflowed and was disconnected",
            extra={"entity": self.entity.value, "resume_from": self._overflow.resume_from},
        )
        self._detach()
        self._queue.put_nowait(_CLOSED)

    def _detach(self) -> None:
        self._closed = True
        self._bus._remove(self)


class ChangeBus:
    """Ordered per-entity log that fans events out to live subscriptions.

    Publishing never awaits: events are handed to bounded per-subscriber
    queues, and a subscriber whose queue is full is disconnected with a
    :class:`SubscriptionOverflow` carrying the sequence to resume from.
    """

    def __init__(
        self,
        *,
        retention: int = 1000,
        queue_size: int = 256,
        history: HistoryLoader | None = None,
    ) -> None:
        self._retention = max(retention, 1)
        self._queue_size = queue_size
        self._history = history
        self._logs: Dict[ChangeEntity, List[ChangeEvent]] = defaultdict(list)
        self._trimmed_through: Dict[ChangeEntity, int] = defaultdict(int)
        self._subscriptions: Dict[ChangeEntity, Set[ChangeSubscription]] = defaultdict(set)

    def configure_history(self, loader: HistoryLoader | None) -> None:
        self._history = loader

    def last_sequence(self, entity: ChangeEntity) -> int:
        log = self._logs.get(entity)
        if log:
            return log[-1].sequence
        return self._trimmed_through.get(entity, 0)

    def retained(self, entity: ChangeEntity) -> list[ChangeEvent]:
        return list(self._logs.get(entity, []))

    def subscriber_count(self, entity: ChangeEntity) -> int:
        return len(self._subscriptions.get(entity, ()))

    def publish(self, event: ChangeEvent) -> bool:
        """Append *event* to its entity log and fan it out.

        Returns ``False`` when an event with the same sequence is still in
        the retained log (a relay echoing a local event back). An event that
        arrives after the window has moved past its sequence is still handed
        to live subscribers but is not kept for replay; the durable history
        serves it instead.
        """

        if event.sequence <= self._trimmed_through[event.entity]:
            logger.debug(
                "Late change event delivered outside the retained window",
                extra={"entity": event.entity.value, "sequence": event.sequence},
            )
        else:
            log = self._logs[event.entity]
            keys = [item.sequence for item in log]
            index = bisect.bisect_left(keys, event.sequence)
            if index < len(log) and log[index].sequence == event.sequence:
                return False
            log.insert(index, event)
            overflow = len(log) - self._retention
            if overflow > 0:
                self._trimmed_through[event.entity] = log[overflow - 1].sequence
                del log[:overflow]

        change_events_published_total.labels(event.entity.value, event.op.value).inc()
        for subscription in list(self._subscriptions.get(event.entity, ())):
            subscription._offer(event)
        return True

    async def subscribe(
        self,
        entity: ChangeEntity,
        from_sequence: int | None = None,
        *,
        history: HistoryLoader | None = None,
    ) -> ChangeSubscription:
        """Open a subscription, replaying from *from_sequence* when given.

        The subscription is registered before any replay is loaded, so events
        published while history is being fetched are queued rather than lost.
        *history* overrides the bus-wide loader for this subscription.
        """

        subscription = ChangeSubscription(
            self, entity, from_sequence=from_sequence, queue_size=self._queue_size
        )
        self._subscriptions[entity].add(subscription)
        change_subscriptions.labels(entity.value).inc()
        if from_sequence is None:
            return subscription

        loader = history or self._history
        log = self._logs.get(entity, [])
        memory_covers = bool(log) and log[0].sequence <= from_sequence
        if memory_covers or loader is None:
            if not memory_covers and from_sequence <= self._trimmed_through.get(entity, 0):
                subscription.close()
                raise ReplayUnavailableError(
                    f"Sequence {from_sequence} of '{entity.value}' is no longer retained"
                )
            subscription._load_backlog([event for event in log if event.sequence >= from_sequence])
            return subscription

        try:
            events = await loader(entity, from_sequence)
        except Exception:
            subscription.close()
            raise
        subscription._load_backlog(events)
        return subscription

    def close_all(self) -> None:
        for subscriptions in list(self._subscriptions.values()):
            for subscription in list(subscriptions):
                subscription.close()

    def _remove(self, subscription: ChangeSubscription) -> None:
        bucket = self._subscriptions.get(subscription.entity)
        if bucket and subscription in bucket:
            bucket.discard(subscription)
            change_subscriptions.labels(subscription.entity.value).dec()
