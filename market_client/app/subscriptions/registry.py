"""
Subscription registry for the market data client.
"""

import re
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from shared.logging import get_logger
from shared.errors import ValidationError
from shared.metrics import ClientMetrics


TOPIC_PATTERN = re.compile(r"^[A-Z0-9]{2,20}$")


def normalize_topic(topic: Any) -> str:
    """Uppercase and validate an instrument identifier."""
    if not isinstance(topic, str):
        raise ValidationError("Topic must be a string", details={"topic": repr(topic)})

    normalized = topic.strip().upper()
    if not TOPIC_PATTERN.match(normalized):
        raise ValidationError(
            "Topic must be 2-20 uppercase alphanumeric characters",
            details={"topic": topic}
        )
    return normalized


@runtime_checkable
class Consumer(Protocol):
    """Receives payloads for the topics it is subscribed to."""

    def notify(self, payload: Any) -> None:
        ...


class CallbackConsumer:
    """Adapts a plain callable to the Consumer interface."""

    def __init__(self, callback: Callable[[Any], None]):
        self.callback = callback

    def notify(self, payload: Any) -> None:
        self.callback(payload)

    def __repr__(self) -> str:
        return f"CallbackConsumer({self.callback!r})"


def consumer_key(consumer: Any) -> int:
    """Identity used for deduplication; a wrapped callable is keyed by the callable."""
    if isinstance(consumer, CallbackConsumer):
        return id(consumer.callback)
    return id(consumer)


def as_consumer(consumer: Any) -> Consumer:
    """Accept either a Consumer or a bare callable."""
    if isinstance(consumer, Consumer):
        return consumer
    if callable(consumer):
        return CallbackConsumer(consumer)
    raise ValidationError("Consumer must define notify() or be callable")


class Subscription:
    """Handle returned by a subscribe; ``dispose()`` is idempotent."""

    def __init__(self, topic: str, consumer: Consumer, remover: Callable[[str, Consumer], bool]):
        self.topic = topic
        self.consumer = consumer
        self._remover = remover
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._remover(self.topic, self.consumer)

    def __repr__(self) -> str:
        state = "disposed" if self._disposed else "active"
        return f"Subscription(topic={self.topic!r}, {state})"


class CompositeSubscription:
    """Disposes several subscriptions at once."""

    def __init__(self, subscriptions: List[Subscription]):
        self.subscriptions = subscriptions

    @property
    def topics(self) -> List[str]:
        return [subscription.topic for subscription in self.subscriptions]

    @property
    def disposed(self) -> bool:
        return all(subscription.disposed for subscription in self.subscriptions)

    def dispose(self) -> None:
        for subscription in self.subscriptions:
            subscription.dispose()


class SubscriptionRegistry:
    """Maps topics to their consumers.

    Pure bookkeeping: no I/O. The owner uses the first-consumer and
    last-consumer signals from ``add``/``remove`` to decide when the server
    must be told about a topic; the consumer count itself never leaves this
    class.
    """

    def __init__(self, metrics: Optional[ClientMetrics] = None):
        self.logger = get_logger("market_client.subscriptions.registry")
        self.metrics = metrics

        # topic -> {consumer_key(consumer): consumer}, insertion ordered
        self._topics: Dict[str, Dict[int, Consumer]] = {}

    def add(
        self,
        topic: str,
        consumer: Any,
        remover: Optional[Callable[[str, Consumer], bool]] = None
    ) -> Tuple[Subscription, bool]:
        """Register ``consumer`` for ``topic``.

        Returns the subscription handle and whether this is the first
        consumer for the topic.
        """
        normalized = normalize_topic(topic)
        consumer = as_consumer(consumer)

        first = normalized not in self._topics
        if first:
            self._topics[normalized] = {}
        self._topics[normalized][consumer_key(consumer)] = consumer
        self._update_gauge()

        self.logger.debug(
            "Consumer added",
            topic=normalized,
            first=first
        )

        return Subscription(normalized, consumer, remover or self.remove), first

    def remove(self, topic: str, consumer: Any) -> bool:
        """Unregister ``consumer``; returns True when the topic lost its last consumer."""
        normalized = normalize_topic(topic)
        consumers = self._topics.get(normalized)
        if consumers is None:
            return False

        consumers.pop(consumer_key(consumer), None)
        if consumers:
            return False

        del self._topics[normalized]
        self._update_gauge()
        self.logger.debug("Last consumer left topic", topic=normalized)
        return True

    def dispatch(self, topic: str, payload: Any) -> int:
        """Deliver ``payload`` to every consumer of ``topic``.

        A consumer that raises is logged and skipped. Returns the number of
        consumers that received the payload without error.
        """
        consumers = self._topics.get(topic) if isinstance(topic, str) else None
        if consumers is None:
            try:
                consumers = self._topics.get(normalize_topic(topic))
            except ValidationError:
                consumers = None
        if not consumers:
            self.logger.debug("Dropping update for topic without consumers", topic=topic)
            return 0

        delivered = 0
        # Snapshot so consumers may dispose themselves while being notified
        for consumer in list(consumers.values()):
            try:
                consumer.notify(payload)
                delivered += 1
            except Exception as e:
                self.logger.error(
                    "Consumer failed during dispatch",
                    topic=topic,
                    consumer=repr(consumer),
                    error=str(e)
                )
                if self.metrics:
                    self.metrics.consumer_errors.labels(topic=str(topic)).inc()

        return delivered

    def active_topics(self) -> List[str]:
        """Topics with at least one consumer, in first-subscribed order."""
        return list(self._topics.keys())

    def is_active(self, topic: str) -> bool:
        return normalize_topic(topic) in self._topics

    def clear(self) -> None:
        """Drop every entry; outstanding handles become no-ops."""
        self._topics.clear()
        self._update_gauge()

    def get_stats(self) -> Dict[str, Any]:
        """Get registry statistics."""
        return {
            "total_topics": len(self._topics),
            "total_consumers": sum(len(consumers) for consumers in self._topics.values()),
            "topics": self.active_topics()
        }

    def _update_gauge(self) -> None:
        if self.metrics:
            self.metrics.active_topics.set(len(self._topics))
