"""Real-time change events and tenant-scoped fan-out."""

from .events import RealTimeUpdate, SubscriptionFilter, UpdateAction
from .publisher import ALL_UPDATES_CHANNEL, FanoutPublisher, qualify_channel
from .subscriptions import Subscription, SubscriptionRegistry

__all__ = [
    "ALL_UPDATES_CHANNEL",
    "FanoutPublisher",
    "RealTimeUpdate",
    "Subscription",
    "SubscriptionFilter",
    "SubscriptionRegistry",
    "UpdateAction",
    "qualify_channel",
]
