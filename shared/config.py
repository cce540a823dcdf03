"""
Shared configuration management for the market data client.
"""

from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_CREDENTIAL_FILE = Path.home() / ".market_client" / "credential.json"


class ClientConfig(BaseSettings):
    """Client configuration, read from MARKET_CLIENT_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MARKET_CLIENT_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # REST collaborator
    api_base_url: str = Field(default="http://localhost:5000/api")
    request_timeout: float = Field(default=10.0)
    refresh_path: str = Field(default="/auth/refresh")
    auth_exempt_paths: List[str] = Field(
        default_factory=lambda: ["/auth/login", "/auth/register", "/auth/refresh", "/auth/logout"]
    )

    # Persisted credential; None keeps it in memory only
    credential_file: Optional[Path] = Field(default=DEFAULT_CREDENTIAL_FILE)

    # Streaming collaborator
    ws_url: str = Field(default="ws://localhost:5000/ws")
    connect_timeout: float = Field(default=10.0)
    heartbeat_interval: float = Field(default=30.0)
    max_missed_pongs: int = Field(default=0)
    channels: List[str] = Field(default_factory=lambda: ["ticker"])

    # Reconnect policy
    reconnect_base_delay: float = Field(default=1.0)
    reconnect_max_delay: float = Field(default=60.0)
    max_reconnect_attempts: int = Field(default=5)


def get_config(**overrides) -> ClientConfig:
    """Get client configuration, with keyword overrides taking precedence."""
    return ClientConfig(**overrides)
