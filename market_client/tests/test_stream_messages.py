"""
Unit tests for stream wire messages.
"""

import json

import pytest

from market_client.app.stream.messages import (
    InboundKind,
    parse_frame,
    ping_frame,
    subscribe_frame,
    unsubscribe_frame,
)
from shared.errors import ProtocolError


class TestParseFrame:
    """Test cases for parse_frame."""

    def test_ticker(self):
        message = parse_frame(json.dumps({
            "type": "ticker",
            "symbol": "BTCUSDT",
            "data": {"price": 50000.5}
        }))

        assert message.kind is InboundKind.TICKER
        assert message.updates == [("BTCUSDT", {"price": 50000.5})]

    def test_market_update_alias(self):
        message = parse_frame(json.dumps({
            "type": "market_update",
            "data": {"symbol": "ETHUSDT", "marketData": {"price": 3000}}
        }))

        assert message.kind is InboundKind.TICKER
        assert message.updates == [("ETHUSDT", {"price": 3000})]

    def test_market_data_batch(self):
        message = parse_frame(json.dumps({
            "type": "market_data",
            "data": [
                {"symbol": "BTCUSDT", "marketData": {"price": 1}},
                {"symbol": "ETHUSDT", "marketData": {"price": 2}}
            ]
        }))

        assert message.kind is InboundKind.MARKET_DATA
        assert [symbol for symbol, _ in message.updates] == ["BTCUSDT", "ETHUSDT"]

    @pytest.mark.parametrize("frame", [
        {"type": "connection", "clientId": "abc"},
        {"type": "connection", "data": {"clientId": "abc"}},
    ])
    def test_connection_ack(self, frame):
        message = parse_frame(json.dumps(frame))

        assert message.kind is InboundKind.CONNECTION
        assert message.client_id == "abc"

    @pytest.mark.parametrize("frame,kind", [
        ({"type": "subscription_success", "symbols": ["BTCUSDT"]}, InboundKind.SUBSCRIBE_ACK),
        ({"type": "subscription_confirmed", "data": {"subscribedSymbols": ["BTCUSDT"]}}, InboundKind.SUBSCRIBE_ACK),
        ({"type": "unsubscription_success", "symbols": "BTCUSDT"}, InboundKind.UNSUBSCRIBE_ACK),
    ])
    def test_acks(self, frame, kind):
        message = parse_frame(json.dumps(frame))

        assert message.kind is kind
        assert message.symbols == ["BTCUSDT"]

    def test_error(self):
        message = parse_frame(json.dumps({"type": "error", "message": "bad symbol"}))

        assert message.kind is InboundKind.ERROR
        assert message.error == "bad symbol"

    def test_pong(self):
        assert parse_frame('{"type": "pong"}').kind is InboundKind.PONG

    def test_unknown_type(self):
        message = parse_frame(json.dumps({"type": "orderbook", "levels": []}))

        assert message.kind is InboundKind.UNKNOWN
        assert message.type == "orderbook"
        assert message.raw["levels"] == []

    @pytest.mark.parametrize("frame", [
        "not json",
        "[1, 2, 3]",
        '{"symbol": "BTCUSDT"}',
        '{"type": "ticker", "data": {"price": 1}}',
        '{"type": "market_data", "data": {"symbol": "BTCUSDT"}}',
        '{"type": "market_data", "data": [{"marketData": {}}]}',
    ])
    def test_malformed(self, frame):
        with pytest.raises(ProtocolError) as exc_info:
            parse_frame(frame)

        assert exc_info.value.code == "PROTOCOL_ERROR"


class TestOutboundFrames:
    """Test cases for outbound frame builders."""

    def test_subscribe_frame(self):
        assert json.loads(subscribe_frame(["BTCUSDT", "ETHUSDT"], ["ticker"])) == {
            "type": "subscribe",
            "symbols": ["BTCUSDT", "ETHUSDT"],
            "channels": ["ticker"]
        }

    def test_unsubscribe_frame(self):
        assert json.loads(unsubscribe_frame(["BTCUSDT"], ["ticker"]))["type"] == "unsubscribe"

    def test_ping_frame(self):
        assert json.loads(ping_frame()) == {"type": "ping"}
