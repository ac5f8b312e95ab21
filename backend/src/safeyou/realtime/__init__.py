"""Change notification bus and cross-node relay."""

from .bus import ChangeBus, ChangeSubscription, ReplayUnavailableError, SubscriptionOverflow
from .events import ChangeEntity, ChangeEvent, ChangeOp, InvalidChangeEvent

__all__ = [
    "ChangeBus",
    "ChangeSubscription",
    "ChangeEntity",
    "ChangeEvent",
    "ChangeOp",
    "InvalidChangeEvent",
    "ReplayUnavailableError",
    "SubscriptionOverflow",
]
