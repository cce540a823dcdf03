"""
Test helper functions and in-memory fakes for the market data client.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from websockets.exceptions import ConnectionClosedError

from market_client.app.credentials.store import Credential


def create_credential(
    access_token: str = "access-1",
    refresh_token: str = "refresh-1",
    expires_in: int = 3600
) -> Credential:
    """Credential expiring ``expires_in`` seconds from now (negative for expired)."""
    return Credential(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    )


def create_token_response(
    access_token: str = "access-2",
    refresh_token: str = "refresh-2",
    expires_in: Union[int, str] = "15m"
) -> Dict[str, Any]:
    """Body returned by the login/register/refresh endpoints."""
    return {
        "success": True,
        "data": {
            "tokens": {
                "accessToken": access_token,
                "refreshToken": refresh_token,
                "expiresIn": expires_in
            }
        }
    }


_CLOSED = object()


class FakeConnection:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, url: str, client_id: Optional[str] = "client-1", ack: bool = True):
        self.url = url
        self.sent: List[Dict[str, Any]] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self._incoming: asyncio.Queue = asyncio.Queue()
        if ack:
            self.push({"type": "connection", "clientId": client_id})

    @property
    def closed(self) -> bool:
        return self.close_code is not None

    def push(self, message: Union[Dict[str, Any], str]) -> None:
        """Deliver a frame from the server."""
        frame = message if isinstance(message, str) else json.dumps(message)
        self._incoming.put_nowait(frame)

    def drop(self, code: int = 1006) -> None:
        """Simulate the server side going away."""
        if self.closed:
            return
        self.close_code = code
        self._incoming.put_nowait(_CLOSED)

    async def send(self, frame: str) -> None:
        if self.closed:
            raise ConnectionClosedError(None, None)
        self.sent.append(json.loads(frame))

    async def recv(self) -> str:
        frame = await self._incoming.get()
        if frame is _CLOSED:
            raise ConnectionClosedError(None, None)
        return frame

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self.close_code = code
        self.close_reason = reason
        self._incoming.put_nowait(_CLOSED)

    def __aiter__(self) -> "FakeConnection":
        return self

    async def __anext__(self) -> str:
        frame = await self._incoming.get()
        if frame is _CLOSED:
            raise StopAsyncIteration
        return frame

    def sent_of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [message for message in self.sent if message.get("type") == message_type]


class FakeConnector:
    """Callable passed as a StreamClient connector; records every attempt."""

    def __init__(self, fail_after: Optional[int] = None, ack: bool = True):
        self.urls: List[str] = []
        self.connections: List[FakeConnection] = []
        self.fail_after = fail_after
        self.ack = ack
        self.failing = False

    @property
    def attempts(self) -> int:
        return len(self.urls)

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]

    async def __call__(self, url: str) -> FakeConnection:
        self.urls.append(url)
        if self.failing or (self.fail_after is not None and len(self.connections) >= self.fail_after):
            raise OSError("Connection refused")

        connection = FakeConnection(url, client_id=f"client-{len(self.connections) + 1}", ack=self.ack)
        self.connections.append(connection)
        return connection


class RecordingSleep:
    """Replacement for asyncio.sleep that records delays and only yields."""

    def __init__(self, gate: Optional[asyncio.Event] = None):
        self.delays: List[float] = []
        self.gate = gate

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)


class RecordingConsumer:
    """Consumer that keeps every payload it is notified with."""

    def __init__(self, fail: bool = False):
        self.payloads: List[Any] = []
        self.fail = fail

    def notify(self, payload: Any) -> None:
        if self.fail:
            raise RuntimeError("consumer exploded")
        self.payloads.append(payload)


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll ``predicate`` on the event loop until it holds or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.001)
