"""
Market data client context.

``MarketDataClient`` is constructed explicitly and owns exactly one of each
component: credential store, session client, request coordinator,
subscription registry and stream client. Pass it to whatever needs
streaming or authorized requests instead of reaching for module state.
"""

from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

import httpx

from shared.config import ClientConfig, get_config
from shared.logging import get_logger
from shared.errors import CredentialMissingError, ErrorResponse, SessionExpiredError
from shared.metrics import ClientMetrics
from shared.retry import RetryConfig

from .auth.client import AuthClient
from .credentials.store import Credential, CredentialStore
from .requests.coordinator import RequestCoordinator, await_if_needed
from .stream.client import Connector, StreamClient
from .subscriptions.registry import CompositeSubscription, Subscription, SubscriptionRegistry


class MarketDataClient:
    """Streaming subscriptions and authorized requests for one session."""

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        on_session_expired: Optional[Callable[[SessionExpiredError], Union[None, Awaitable[None]]]] = None,
        on_error: Optional[Callable[[ErrorResponse], Union[None, Awaitable[None]]]] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        connector: Optional[Connector] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None
    ):
        self.config = config or get_config()
        self.logger = get_logger("market_client.main")
        self.metrics = ClientMetrics()
        self._on_session_expired = on_session_expired

        self.store = CredentialStore(self.config.credential_file)
        self.auth = AuthClient(
            self.config.api_base_url,
            self.store,
            refresh_path=self.config.refresh_path,
            timeout=self.config.request_timeout,
            transport=http_transport
        )
        self.requests = RequestCoordinator(
            self.config.api_base_url,
            self.store,
            self.auth,
            timeout=self.config.request_timeout,
            exempt_paths=[*self.config.auth_exempt_paths, self.config.refresh_path],
            on_session_expired=self._handle_session_expired,
            on_error=on_error,
            transport=http_transport,
            metrics=self.metrics
        )
        self.registry = SubscriptionRegistry(metrics=self.metrics)
        self.stream = StreamClient(
            self.config.ws_url,
            self.store,
            registry=self.registry,
            channels=self.config.channels,
            connect_timeout=self.config.connect_timeout,
            heartbeat_interval=self.config.heartbeat_interval,
            max_missed_pongs=self.config.max_missed_pongs,
            reconnect_config=RetryConfig(
                max_attempts=self.config.max_reconnect_attempts,
                base_delay=self.config.reconnect_base_delay,
                max_delay=self.config.reconnect_max_delay,
                jitter=False
            ),
            connector=connector,
            sleep=sleep,
            refresh=self.requests.refresh_credential,
            metrics=self.metrics
        )

    async def __aenter__(self) -> "MarketDataClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def is_authenticated(self) -> bool:
        return self.store.credential is not None

    # Session

    async def login(self, email: str, password: str) -> Credential:
        return await self.auth.login(email, password)

    async def register(self, payload: Dict[str, Any]) -> Credential:
        return await self.auth.register(payload)

    async def logout(self, all_devices: bool = False) -> None:
        """Close the stream, then revoke and forget the credential."""
        await self.stream.disconnect()
        await self.auth.logout(all_devices=all_devices)

    # Streaming

    async def connect(self) -> None:
        """Connect the stream, refreshing an expired credential first."""
        credential = self.store.credential
        if credential is None:
            raise CredentialMissingError("Log in before connecting the stream")

        if credential.is_expired():
            self.logger.info("Credential expired, refreshing before connecting")
            await self.requests.refresh_credential()

        await self.stream.connect()

    async def disconnect(self) -> None:
        await self.stream.disconnect()

    def subscribe(self, topic: str, consumer: Any) -> Subscription:
        return self.stream.subscribe(topic, consumer)

    def subscribe_many(self, topics: Iterable[str], consumer: Any) -> CompositeSubscription:
        return self.stream.subscribe_many(topics, consumer)

    async def close(self) -> None:
        """Release the stream and the HTTP connection pool."""
        await self.stream.disconnect()
        await self.requests.aclose()

    async def _handle_session_expired(self, error: SessionExpiredError) -> None:
        self.logger.warning("Session expired, forcing logout", code=error.code)
        await self.stream.disconnect()
        if self._on_session_expired is not None:
            await await_if_needed(self._on_session_expired(error))


def create_client(**overrides) -> MarketDataClient:
    """Build a client from environment configuration plus keyword overrides."""
    return MarketDataClient(get_config(**overrides))
