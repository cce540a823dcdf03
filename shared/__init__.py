"""
Shared utilities for the market data client.

This package aggregates the cross-cutting building blocks used by the
client package:

- config: Client configuration via pydantic-settings
- logging: Structured logging with request/client correlation
- metrics: Prometheus collectors on a per-client registry
- errors: Canonical error types and user-facing status messages
- retry: Retry decorator and backoff schedule
- test_helpers: In-memory fakes used by the test suite

Do not import from market_client into shared/ outside test_helpers.
"""
