"""
Streaming connection package.

- stream.client: connection state machine, heartbeat and reconnect
- stream.messages: inbound message kinds and outbound frame builders
"""

from .client import ConnectionState, StreamClient
from .messages import InboundKind, InboundMessage, parse_frame

__all__ = ["ConnectionState", "StreamClient", "InboundKind", "InboundMessage", "parse_frame"]
