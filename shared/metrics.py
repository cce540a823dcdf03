"""
Prometheus metrics for the market data client.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class ClientMetrics:
    """Collectors for one client instance, on a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        # Streaming
        self.state_transitions = Counter(
            "stream_state_transitions_total",
            "Stream connection state transitions",
            ["state"],
            registry=self.registry
        )
        self.reconnect_attempts = Counter(
            "stream_reconnect_attempts_total",
            "Reconnect attempts scheduled after an abnormal close",
            registry=self.registry
        )
        self.messages = Counter(
            "stream_messages_total",
            "Inbound stream messages by kind",
            ["kind"],
            registry=self.registry
        )
        self.consumer_errors = Counter(
            "stream_consumer_errors_total",
            "Consumer callbacks that raised during dispatch",
            ["topic"],
            registry=self.registry
        )
        self.active_topics = Gauge(
            "stream_active_topics",
            "Topics with at least one consumer",
            registry=self.registry
        )

        # Requests
        self.refreshes = Counter(
            "credential_refresh_total",
            "Credential refresh calls by outcome",
            ["outcome"],
            registry=self.registry
        )
        self.requests = Counter(
            "requests_total",
            "Outbound requests by method and status code",
            ["method", "status_code"],
            registry=self.registry
        )

    def value(self, name: str, **labels) -> float:
        """Current sample value, 0.0 when the series does not exist yet."""
        sample = self.registry.get_sample_value(name, labels or None)
        return sample or 0.0

    def render(self) -> bytes:
        """Text exposition of every collector."""
        return generate_latest(self.registry)
