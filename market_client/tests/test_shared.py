"""
Unit tests for shared configuration, errors, retry and metrics helpers.
"""

from pathlib import Path

import pytest

from shared.config import ClientConfig, get_config
from shared.errors import (
    ClientLayerException,
    CredentialExpiredError,
    SessionExpiredError,
    describe_status,
)
from shared.logging import (
    add_component,
    add_correlation_context,
    clear_context,
    request_id_var,
    set_client_id,
    set_request_id,
)
from shared.metrics import ClientMetrics
from shared.retry import RetryConfig, RetryError, calculate_delay, retry_on_exception


def schedule(config):
    return [calculate_delay(attempt, config) for attempt in range(1, config.max_attempts + 1)]


class TestRetry:
    """Test cases for backoff calculation and the retry decorator."""

    def test_exponential_schedule(self):
        config = RetryConfig(max_attempts=5, base_delay=1.0, jitter=False)

        assert schedule(config) == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_delay_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)

        assert calculate_delay(10, config) == 5.0

    @pytest.mark.parametrize("strategy,expected", [
        ("linear", [2.0, 4.0, 6.0]),
        ("fixed", [2.0, 2.0, 2.0]),
    ])
    def test_other_strategies(self, strategy, expected):
        config = RetryConfig(max_attempts=3, base_delay=2.0, jitter=False, backoff_strategy=strategy)

        assert schedule(config) == expected

    def test_jitter_within_ten_percent(self):
        config = RetryConfig(base_delay=10.0, jitter=True)

        for _ in range(50):
            assert 9.0 <= calculate_delay(1, config) <= 11.0

    @pytest.mark.asyncio
    async def test_retry_then_succeed(self):
        calls = []

        @retry_on_exception((ConnectionError,), RetryConfig(max_attempts=3, base_delay=0.001))
        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise ConnectionError("down")
            return "ok"

        assert await flaky() == "ok"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_retry_exhausted(self):
        @retry_on_exception((ConnectionError,), RetryConfig(max_attempts=2, base_delay=0.001))
        async def down():
            raise ConnectionError("down")

        with pytest.raises(RetryError) as exc_info:
            await down()

        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.last_exception, ConnectionError)

    @pytest.mark.asyncio
    async def test_unlisted_exception_not_retried(self):
        calls = []

        @retry_on_exception((ConnectionError,), RetryConfig(max_attempts=3, base_delay=0.001))
        async def invalid():
            calls.append(1)
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await invalid()

        assert len(calls) == 1


class TestErrors:
    """Test cases for the error taxonomy."""

    def test_to_response_carries_request_id(self):
        request_id = set_request_id()

        response = CredentialExpiredError(details={"expires_at": "x"}).to_response()

        assert response.request_id == request_id
        assert response.code == "CREDENTIAL_EXPIRED"
        assert response.details == {"expires_at": "x"}
        clear_context()
        assert request_id_var.get() is None

    def test_session_expired_defaults(self):
        error = SessionExpiredError()

        assert isinstance(error, ClientLayerException)
        assert error.code == "UNAUTHENTICATED"
        assert error.message == "Session expired, please log in again"

    @pytest.mark.parametrize("status_code,server_message,expected", [
        (400, "Symbol is required", "Symbol is required"),
        (409, None, "Data conflict"),
        (429, "slow down", "Too many requests, please try again later"),
        (500, "stack trace", "Internal server error"),
        (418, "I'm a teapot", "I'm a teapot"),
        (502, None, "An error occurred"),
    ])
    def test_describe_status(self, status_code, server_message, expected):
        assert describe_status(status_code, server_message) == expected


class TestClientMetrics:
    """Test cases for ClientMetrics."""

    def test_missing_series_is_zero(self):
        assert ClientMetrics().value("stream_messages_total", kind="ticker") == 0.0

    def test_instances_are_isolated(self):
        first = ClientMetrics()
        second = ClientMetrics()

        first.messages.labels(kind="ticker").inc()

        assert first.value("stream_messages_total", kind="ticker") == 1.0
        assert second.value("stream_messages_total", kind="ticker") == 0.0

    def test_render(self):
        metrics = ClientMetrics()
        metrics.active_topics.set(3)

        assert b"stream_active_topics 3.0" in metrics.render()


class TestClientConfig:
    """Test cases for ClientConfig."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("MARKET_CLIENT_WS_URL", raising=False)

        config = ClientConfig()

        assert config.ws_url == "ws://localhost:5000/ws"
        assert config.max_reconnect_attempts == 5
        assert config.reconnect_base_delay == 1.0
        assert config.max_missed_pongs == 0
        assert "/auth/refresh" in config.auth_exempt_paths

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MARKET_CLIENT_WS_URL", "wss://stream.example.com/ws")
        monkeypatch.setenv("MARKET_CLIENT_MAX_RECONNECT_ATTEMPTS", "3")
        monkeypatch.setenv("MARKET_CLIENT_CHANNELS", '["ticker", "trades"]')
        monkeypatch.setenv("MARKET_CLIENT_CREDENTIAL_FILE", str(tmp_path / "cred.json"))

        config = ClientConfig()

        assert config.ws_url == "wss://stream.example.com/ws"
        assert config.max_reconnect_attempts == 3
        assert config.channels == ["ticker", "trades"]
        assert config.credential_file == tmp_path / "cred.json"

    def test_keyword_overrides_win(self, monkeypatch):
        monkeypatch.setenv("MARKET_CLIENT_API_BASE_URL", "http://env/api")

        config = get_config(api_base_url="http://override/api", credential_file=None)

        assert config.api_base_url == "http://override/api"
        assert config.credential_file is None

    def test_credential_file_is_path(self):
        assert isinstance(ClientConfig().credential_file, Path)


class TestLogging:
    """Test cases for the structured logging processors."""

    def teardown_method(self):
        clear_context()

    @pytest.mark.parametrize("logger_name,expected", [
        ("market_client.stream.client", "stream.client"),
        ("market_client.retry.login", "retry.login"),
    ])
    def test_component_from_logger_name(self, logger_name, expected):
        event = add_component(None, "info", {"logger": logger_name, "event": "x"})

        assert event["component"] == expected

    def test_foreign_logger_has_no_component(self):
        event = add_component(None, "info", {"logger": "httpx", "event": "x"})

        assert "component" not in event

    def test_correlation_ids_attached_when_bound(self):
        clear_context()
        assert add_correlation_context(None, "info", {"event": "x"}) == {"event": "x"}

        request_id = set_request_id()
        set_client_id("client-7")
        event = add_correlation_context(None, "info", {"event": "x"})

        assert event["request_id"] == request_id
        assert event["client_id"] == "client-7"

    def test_explicit_request_id_kept(self):
        set_request_id("req-1")

        event = add_correlation_context(None, "info", {"event": "x", "request_id": "req-0"})

        assert event["request_id"] == "req-0"
