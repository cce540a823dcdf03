"""
Topic subscription bookkeeping and fan-out.
"""

from .registry import (
    CallbackConsumer,
    CompositeSubscription,
    Consumer,
    Subscription,
    SubscriptionRegistry,
    normalize_topic,
)

__all__ = [
    "CallbackConsumer",
    "CompositeSubscription",
    "Consumer",
    "Subscription",
    "SubscriptionRegistry",
    "normalize_topic",
]
