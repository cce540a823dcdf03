"""
Market data client package.

Client-side real-time data and session-resilience layer for the trading
dashboard. Key modules include:

- app.main: MarketDataClient context object wiring the components together
- app.credentials: Credential value and its persisted store
- app.auth: Session endpoints (login, register, refresh, logout)
- app.requests: Request coordinator with single-flight credential refresh
- app.subscriptions: Topic to consumer bookkeeping and fan-out
- app.stream: Streaming connection state machine and wire messages
"""
