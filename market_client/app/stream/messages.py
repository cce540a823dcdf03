"""
Wire messages exchanged with the streaming backend.

Inbound frames are parsed into one closed set of kinds; anything else is
``InboundKind.UNKNOWN`` and handled by the client's default arm.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from shared.errors import ProtocolError


class InboundKind(Enum):
    """Known inbound message kinds."""
    CONNECTION = "connection"
    TICKER = "ticker"
    MARKET_DATA = "market_data"
    SUBSCRIBE_ACK = "subscription_success"
    UNSUBSCRIBE_ACK = "unsubscription_success"
    ERROR = "error"
    PONG = "pong"
    UNKNOWN = "unknown"


# Legacy backend type names for the same kinds
_ALIASES: Dict[str, InboundKind] = {
    "subscription_confirmed": InboundKind.SUBSCRIBE_ACK,
    "unsubscription_confirmed": InboundKind.UNSUBSCRIBE_ACK,
    "market_update": InboundKind.TICKER,
}


@dataclass
class InboundMessage:
    """One parsed inbound frame."""
    kind: InboundKind
    type: str
    updates: List[Tuple[str, Any]] = field(default_factory=list)
    symbols: List[str] = field(default_factory=list)
    client_id: Optional[str] = None
    error: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def parse_frame(frame: Union[str, bytes]) -> InboundMessage:
    """Parse a JSON text frame; raises ProtocolError when it is malformed."""
    try:
        message = json.loads(frame)
    except (TypeError, ValueError) as e:
        raise ProtocolError("Frame is not valid JSON", details={"error": str(e)})

    if not isinstance(message, dict):
        raise ProtocolError("Frame must be a JSON object")

    message_type = message.get("type")
    if not isinstance(message_type, str):
        raise ProtocolError("Frame has no 'type' field")

    kind = _ALIASES.get(message_type)
    if kind is None:
        try:
            kind = InboundKind(message_type)
        except ValueError:
            kind = InboundKind.UNKNOWN
    if kind is InboundKind.UNKNOWN:
        return InboundMessage(kind=kind, type=message_type, raw=message)

    parser = _PARSERS.get(kind)
    parsed = InboundMessage(kind=kind, type=message_type, raw=message)
    if parser:
        parser(message, parsed)
    return parsed


def _data(message: Dict[str, Any]) -> Dict[str, Any]:
    data = message.get("data")
    return data if isinstance(data, dict) else {}


def _parse_connection(message: Dict[str, Any], parsed: InboundMessage) -> None:
    client_id = message.get("clientId") or _data(message).get("clientId")
    parsed.client_id = str(client_id) if client_id is not None else None


def _parse_ticker(message: Dict[str, Any], parsed: InboundMessage) -> None:
    if message.get("type") == "market_update":
        data = _data(message)
        symbol, payload = data.get("symbol"), data.get("marketData")
    else:
        symbol, payload = message.get("symbol"), message.get("data")

    if not isinstance(symbol, str):
        raise ProtocolError("Ticker update has no symbol", details={"type": message.get("type")})
    parsed.updates.append((symbol, payload))


def _parse_market_data(message: Dict[str, Any], parsed: InboundMessage) -> None:
    entries = message.get("data")
    if not isinstance(entries, list):
        raise ProtocolError("Market data update must carry a list")

    for entry in entries:
        if not isinstance(entry, dict) or not isinstance(entry.get("symbol"), str):
            raise ProtocolError("Market data entry has no symbol")
        parsed.updates.append((entry["symbol"], entry.get("marketData")))


def _parse_ack(message: Dict[str, Any], parsed: InboundMessage) -> None:
    symbols = message.get("symbols")
    if symbols is None:
        symbols = _data(message).get("subscribedSymbols", [])
    if isinstance(symbols, str):
        symbols = [symbols]
    parsed.symbols = [str(symbol) for symbol in symbols or []]


def _parse_error(message: Dict[str, Any], parsed: InboundMessage) -> None:
    error = message.get("message") or _data(message).get("message")
    parsed.error = str(error) if error is not None else None


_PARSERS = {
    InboundKind.CONNECTION: _parse_connection,
    InboundKind.TICKER: _parse_ticker,
    InboundKind.MARKET_DATA: _parse_market_data,
    InboundKind.SUBSCRIBE_ACK: _parse_ack,
    InboundKind.UNSUBSCRIBE_ACK: _parse_ack,
    InboundKind.ERROR: _parse_error,
}


def subscribe_frame(symbols: Sequence[str], channels: Sequence[str]) -> str:
    return json.dumps({"type": "subscribe", "symbols": list(symbols), "channels": list(channels)})


def unsubscribe_frame(symbols: Sequence[str], channels: Sequence[str]) -> str:
    return json.dumps({"type": "unsubscribe", "symbols": list(symbols), "channels": list(channels)})


def ping_frame() -> str:
    return json.dumps({"type": "ping"})
