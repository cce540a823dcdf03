"""
Streaming market data client.

Owns the single physical connection to the streaming backend. Many logical
consumers share it through the SubscriptionRegistry; the server only ever
sees topic-level interest. The connection state machine is:

    DISCONNECTED --connect()--> CONNECTING --ack--> CONNECTED
    CONNECTING --error/timeout--> DISCONNECTED
    CONNECTED --abnormal close--> RECONNECTING --success--> CONNECTED
    RECONNECTING --attempts exhausted--> DISCONNECTED
    any --disconnect()--> DISCONNECTED (no automatic reconnect)
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from shared.logging import get_logger, set_client_id
from shared.errors import (
    AuthenticationError,
    CredentialExpiredError,
    CredentialMissingError,
    ProtocolError,
    SessionExpiredError,
    StreamConnectionError,
)
from shared.metrics import ClientMetrics
from shared.retry import RetryConfig, calculate_delay
from ..credentials.store import CredentialStore
from ..subscriptions.registry import (
    CompositeSubscription,
    Subscription,
    SubscriptionRegistry,
    normalize_topic,
)
from .messages import (
    InboundKind,
    InboundMessage,
    parse_frame,
    ping_frame,
    subscribe_frame,
    unsubscribe_frame,
)


NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006
HEARTBEAT_TIMEOUT_CLOSURE = 4000


class ConnectionState(Enum):
    """Connection states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


Connector = Callable[[str], Awaitable[Any]]
StateListener = Callable[[ConnectionState], None]
RefreshHook = Callable[[], Awaitable[str]]


class StreamClient:
    """Persistent streaming connection shared by every subscriber."""

    def __init__(
        self,
        ws_url: str,
        store: CredentialStore,
        registry: Optional[SubscriptionRegistry] = None,
        channels: Iterable[str] = ("ticker",),
        connect_timeout: float = 10.0,
        heartbeat_interval: float = 30.0,
        max_missed_pongs: int = 0,
        reconnect_config: Optional[RetryConfig] = None,
        connector: Optional[Connector] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        refresh: Optional[RefreshHook] = None,
        metrics: Optional[ClientMetrics] = None
    ):
        self.ws_url = ws_url
        self.store = store
        self.metrics = metrics
        self.registry = registry or SubscriptionRegistry(metrics=metrics)
        self.channels = list(channels)
        self.connect_timeout = connect_timeout
        self.heartbeat_interval = heartbeat_interval
        self.max_missed_pongs = max_missed_pongs
        self.reconnect_config = reconnect_config or RetryConfig(
            max_attempts=5,
            base_delay=1.0,
            max_delay=60.0,
            jitter=False
        )
        self.logger = get_logger("market_client.stream.client")

        self._connector = connector or websockets.connect
        # Clock used between reconnect attempts
        self._sleep = sleep or asyncio.sleep
        # Renews an expired credential before a reconnect attempt; returns the new access token
        self._refresh = refresh

        self._state = ConnectionState.DISCONNECTED
        self._state_listeners: List[StateListener] = []
        self._connection: Optional[Any] = None
        self._outbox: Optional[asyncio.Queue] = None
        self.client_id: Optional[str] = None

        self._connect_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        self._reconnect_attempts = 0
        self._missed_pongs = 0
        self._closing = False

        self._handlers: Dict[InboundKind, Callable[[InboundMessage], None]] = {
            InboundKind.CONNECTION: self._handle_connection_ack,
            InboundKind.TICKER: self._handle_updates,
            InboundKind.MARKET_DATA: self._handle_updates,
            InboundKind.SUBSCRIBE_ACK: self._handle_subscribe_ack,
            InboundKind.UNSUBSCRIBE_ACK: self._handle_unsubscribe_ack,
            InboundKind.ERROR: self._handle_error,
            InboundKind.PONG: self._handle_pong,
        }

    async def __aenter__(self) -> "StreamClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # State

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def status(self) -> str:
        """Lowercase state name for display."""
        return self._state.value

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register a state observer; returns a function that removes it."""
        self._state_listeners.append(listener)

        def remove() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return remove

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return

        previous = self._state
        self._state = state
        self.logger.info("Stream state changed", previous=previous.value, state=state.value)
        if self.metrics:
            self.metrics.state_transitions.labels(state=state.value).inc()

        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as e:
                self.logger.error("State listener failed", state=state.value, error=str(e))

    # Connection lifecycle

    async def connect(self) -> None:
        """Connect and wait for the server's handshake ack.

        Fails fast with CredentialMissingError/CredentialExpiredError, without
        touching the network, when the stored credential cannot be used.
        """
        if self._state is ConnectionState.CONNECTED:
            return

        if self._connect_task is not None and not self._connect_task.done():
            await asyncio.shield(self._connect_task)
            return

        token = self._current_token()

        self._closing = False
        self._cancel_reconnect()
        self._reconnect_attempts = 0
        self._set_state(ConnectionState.CONNECTING)

        self._connect_task = asyncio.ensure_future(self._establish(token, reconnecting=False))
        await asyncio.shield(self._connect_task)

    async def disconnect(self) -> None:
        """Close the connection for good; idempotent.

        Cancels any scheduled reconnect, closes the transport with a normal
        closure code and clears the registry.
        """
        self._closing = True
        self._cancel_reconnect()

        connection = self._connection
        reader = self._reader_task
        self._teardown_connection()

        if connection is not None:
            await self._close_quietly(connection, NORMAL_CLOSURE, "Client disconnect")

        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

        self.registry.clear()
        self._reconnect_attempts = 0
        self.client_id = None
        self._set_state(ConnectionState.DISCONNECTED)

    def _current_token(self) -> str:
        credential = self.store.credential
        if credential is None:
            raise CredentialMissingError("Cannot open stream without a credential")
        if credential.is_expired():
            raise CredentialExpiredError(
                "Access token expired, refresh before connecting",
                details={"expires_at": credential.expires_at.isoformat()}
            )
        return credential.access_token

    def _build_url(self, token: str) -> str:
        separator = "&" if "?" in self.ws_url else "?"
        return f"{self.ws_url}{separator}{urlencode({'token': token})}"

    async def _establish(self, token: str, reconnecting: bool) -> None:
        try:
            connection, client_id = await asyncio.wait_for(
                self._open_and_handshake(self._build_url(token)),
                timeout=self.connect_timeout
            )
        except asyncio.TimeoutError:
            error = StreamConnectionError(
                "Timed out waiting for stream handshake",
                details={"timeout": self.connect_timeout},
                code="STREAM_CONNECT_TIMEOUT"
            )
            self._connect_failed(error, reconnecting)
            raise error
        except (OSError, WebSocketException) as e:
            error = StreamConnectionError(
                "Stream handshake failed",
                details={"error": str(e)}
            )
            self._connect_failed(error, reconnecting)
            raise error from e

        if self._closing:
            await self._close_quietly(connection, NORMAL_CLOSURE, "Client disconnect")
            raise StreamConnectionError("Disconnected during handshake")

        self._on_connected(connection, client_id)

    async def _open_and_handshake(self, url: str) -> Tuple[Any, Optional[str]]:
        connection = await self._connector(url)
        try:
            while True:
                try:
                    message = parse_frame(await connection.recv())
                except ProtocolError as e:
                    self.logger.warning("Dropping malformed frame during handshake", error=e.message)
                    continue

                if message.kind is InboundKind.CONNECTION:
                    return connection, message.client_id

                self.logger.debug("Ignoring frame before handshake ack", type=message.type)
        except (Exception, asyncio.CancelledError):
            await self._close_quietly(connection, NORMAL_CLOSURE, "Handshake aborted")
            raise

    def _connect_failed(self, error: StreamConnectionError, reconnecting: bool) -> None:
        self.logger.warning(
            "Stream connect failed",
            code=error.code,
            error=error.message,
            reconnecting=reconnecting
        )
        if not reconnecting and self._state is ConnectionState.CONNECTING:
            self._set_state(ConnectionState.DISCONNECTED)

    def _on_connected(self, connection: Any, client_id: Optional[str]) -> None:
        self._connection = connection
        self.client_id = client_id
        set_client_id(client_id)
        self._reconnect_attempts = 0
        self._missed_pongs = 0

        # Bulk flush goes out before any per-topic frame queued by listeners
        self._outbox = asyncio.Queue()
        topics = self.registry.active_topics()
        if topics:
            self._outbox.put_nowait(subscribe_frame(topics, self.channels))

        self._set_state(ConnectionState.CONNECTED)
        self.logger.info("Stream connected", client_id=client_id, resubscribed=len(topics))

        self._reader_task = asyncio.ensure_future(self._read_loop(connection))
        self._writer_task = asyncio.ensure_future(self._write_loop(connection, self._outbox))
        self._heartbeat_task = asyncio.ensure_future(self._heartbeat_loop(connection))

    def _teardown_connection(self) -> None:
        current = asyncio.current_task()
        for task in (self._writer_task, self._heartbeat_task):
            if task is not None and not task.done() and task is not current:
                task.cancel()

        self._writer_task = None
        self._heartbeat_task = None
        self._reader_task = None
        self._connection = None
        self._outbox = None

    def _on_transport_closed(self, connection: Any) -> None:
        if connection is not self._connection:
            return

        code = getattr(connection, "close_code", None) or ABNORMAL_CLOSURE
        self._teardown_connection()

        if self._closing:
            self._set_state(ConnectionState.DISCONNECTED)
            return

        if code == NORMAL_CLOSURE:
            self.logger.info("Stream closed normally by server")
            self._set_state(ConnectionState.DISCONNECTED)
            return

        self.logger.warning("Stream closed abnormally", close_code=code)
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.ensure_future(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        config = self.reconnect_config

        while self._reconnect_attempts < config.max_attempts:
            self._reconnect_attempts += 1
            attempt = self._reconnect_attempts
            delay = calculate_delay(attempt, config)

            self.logger.info(
                "Scheduling reconnect",
                attempt=attempt,
                max_attempts=config.max_attempts,
                delay=delay
            )
            if self.metrics:
                self.metrics.reconnect_attempts.inc()

            await self._sleep(delay)
            if self._closing:
                return

            try:
                token = await self._reconnect_token()
            except SessionExpiredError as e:
                self.logger.error("Session expired while reconnecting", attempt=attempt, code=e.code)
                self._set_state(ConnectionState.DISCONNECTED)
                return
            except AuthenticationError as e:
                self.logger.warning("Reconnect attempt failed", attempt=attempt, code=e.code)
                continue

            if self._closing:
                return

            try:
                await self._establish(token, reconnecting=True)
                return
            except (StreamConnectionError, AuthenticationError) as e:
                self.logger.warning("Reconnect attempt failed", attempt=attempt, code=e.code)

        self.logger.error(
            "Reconnect attempts exhausted",
            attempts=self._reconnect_attempts
        )
        self._set_state(ConnectionState.DISCONNECTED)

    async def _reconnect_token(self) -> str:
        credential = self.store.credential
        if credential is not None and credential.is_expired() and self._refresh is not None:
            self.logger.info("Credential expired, refreshing before reconnect")
            return await self._refresh()
        return self._current_token()

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _close_quietly(self, connection: Any, code: int, reason: str) -> None:
        try:
            await connection.close(code=code, reason=reason)
        except Exception as e:
            self.logger.debug("Error while closing stream", error=str(e))

    # Transport loops

    async def _read_loop(self, connection: Any) -> None:
        try:
            async for frame in connection:
                self._handle_frame(frame)
        except ConnectionClosed:
            pass
        except Exception as e:
            self.logger.error("Stream read failed", error=str(e))

        self._on_transport_closed(connection)

    async def _write_loop(self, connection: Any, outbox: asyncio.Queue) -> None:
        while True:
            frame = await outbox.get()
            try:
                await connection.send(frame)
            except ConnectionClosed:
                # The read loop observes the close and drives the state machine
                return
            except Exception as e:
                self.logger.error("Stream send failed", error=str(e))

    async def _heartbeat_loop(self, connection: Any) -> None:
        while connection is self._connection:
            await asyncio.sleep(self.heartbeat_interval)
            if connection is not self._connection:
                return

            if self.max_missed_pongs and self._missed_pongs >= self.max_missed_pongs:
                self.logger.warning("Heartbeat watchdog tripped", missed_pongs=self._missed_pongs)
                await self._close_quietly(connection, HEARTBEAT_TIMEOUT_CLOSURE, "Heartbeat timeout")
                return

            self._missed_pongs += 1
            self._enqueue(ping_frame())

    def _enqueue(self, frame: str) -> bool:
        """Queue a frame for the live connection; False while not connected."""
        if self._state is not ConnectionState.CONNECTED or self._outbox is None:
            return False
        self._outbox.put_nowait(frame)
        return True

    # Inbound messages

    def _handle_frame(self, frame: Any) -> None:
        try:
            message = parse_frame(frame)
        except ProtocolError as e:
            self.logger.warning("Dropping malformed frame", error=e.message, details=e.details)
            if self.metrics:
                self.metrics.messages.labels(kind="malformed").inc()
            return

        if self.metrics:
            self.metrics.messages.labels(kind=message.kind.value).inc()

        handler = self._handlers.get(message.kind)
        if handler is None:
            self.logger.info("Unhandled stream message", type=message.type)
            return
        handler(message)

    def _handle_updates(self, message: InboundMessage) -> None:
        for symbol, payload in message.updates:
            self.registry.dispatch(symbol, payload)

    def _handle_connection_ack(self, message: InboundMessage) -> None:
        self.client_id = message.client_id
        self.logger.info("Stream connection acknowledged", client_id=message.client_id)

    def _handle_subscribe_ack(self, message: InboundMessage) -> None:
        self.logger.info("Subscription confirmed", symbols=message.symbols)

    def _handle_unsubscribe_ack(self, message: InboundMessage) -> None:
        self.logger.info("Unsubscription confirmed", symbols=message.symbols)

    def _handle_error(self, message: InboundMessage) -> None:
        self.logger.warning("Stream server error", error=message.error)

    def _handle_pong(self, message: InboundMessage) -> None:
        self._missed_pongs = 0

    # Subscriptions

    def subscribe(self, topic: str, consumer: Any) -> Subscription:
        """Register ``consumer`` for ``topic``.

        The server is told only when the topic gets its first consumer. While
        not connected the subscribe is realized by the bulk flush on the next
        successful connection.
        """
        subscription, first = self.registry.add(topic, consumer, remover=self._remove_consumer)
        if first:
            self._enqueue(subscribe_frame([subscription.topic], self.channels))
        return subscription

    def subscribe_many(self, topics: Iterable[str], consumer: Any) -> CompositeSubscription:
        """Subscribe one consumer to several topics behind a single handle."""
        return CompositeSubscription([self.subscribe(topic, consumer) for topic in topics])

    def unsubscribe(self, topic: str, consumer: Any) -> None:
        self._remove_consumer(topic, consumer)

    def _remove_consumer(self, topic: str, consumer: Any) -> bool:
        last = self.registry.remove(topic, consumer)
        if last:
            self._enqueue(unsubscribe_frame([normalize_topic(topic)], self.channels))
        return last

    def get_stats(self) -> Dict[str, Any]:
        """Get connection statistics."""
        return {
            "state": self._state.value,
            "client_id": self.client_id,
            "reconnect_attempts": self._reconnect_attempts,
            "max_reconnect_attempts": self.reconnect_config.max_attempts,
            **self.registry.get_stats()
        }
