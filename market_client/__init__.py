"""
Real-time market data client.

Streaming subscriptions over one resilient connection, plus a request layer
that refreshes an expiring credential without duplicate refreshes or lost
requests.
"""

__version__ = "1.0.0"
