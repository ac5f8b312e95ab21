"""Metric definitions for command handling and change fan-out."""

from __future__ import annotations

from .registry import registry


commands_total = registry.counter(
    "chat_commands_total",
    "Chat commands handled, partitioned by outcome.",
    label_names=("command", "outcome"),
)

change_events_published_total = registry.counter(
    "change_events_published_total",
    "Change events appended to the local change log.",
    label_names=("entity", "op"),
)

change_duplicates_dropped_total = registry.counter(
    "change_duplicates_dropped_total",
    "Stale or duplicate change events discarded by subscriptions.",
    label_names=("entity",),
)

change_subscriptions = registry.gauge(
    "change_active_subscriptions",
    "Number of open change subscriptions on this node.",
    label_names=("entity",),
)

change_subscriber_overflows_total = registry.counter(
    "change_subscriber_overflows_total",
    "Subscribers disconnected because their delivery queue filled up.",
    label_names=("entity",),
)

realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Number of active websocket connections handled locally.",
    label_names=("scope",),
)

realtime_publish_errors_total = registry.counter(
    "realtime_publish_errors_total",
    "Failures while relaying change events to other nodes.",
    label_names=("topic", "backend", "reason"),
)

realtime_transport_restarts_total = registry.counter(
    "realtime_transport_restarts_total",
    "Relay transport reconnects, partitioned by trigger.",
    label_names=("backend", "reason"),
)

realtime_backfilled_events_total = registry.counter(
    "realtime_backfilled_events_total",
    "Change events recovered from the durable log after a relay outage.",
    label_names=("entity",),
)

presence_expired_total = registry.counter(
    "presence_expired_total",
    "Users switched offline by the presence watchdog after missing heartbeats.",
)
