"""
Credential store for the market data client.

Holds the current access/refresh token pair with its expiry and persists it
as JSON so a session survives restarts. The store does not notify anyone;
writers are login/logout and the request coordinator's refresh.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from shared.logging import get_logger


_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_expires_in(value: Union[int, float, str]) -> timedelta:
    """Parse a token lifetime given as seconds or as a string like ``15m``."""
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)

    match = _DURATION_RE.match(value)
    if not match:
        raise ValueError(f"Unrecognized token lifetime: {value!r}")
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _DURATION_UNITS[unit])


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Credential:
    """Access/refresh token pair with the access token's expiry."""
    access_token: str
    refresh_token: str
    expires_at: datetime

    @classmethod
    def issue(cls, access_token: str, refresh_token: str,
              expires_in: Union[int, float, str], now: Optional[datetime] = None) -> "Credential":
        """Build a credential whose expiry is computed at issuance time."""
        issued_at = now or utcnow()
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=issued_at + parse_expires_in(expires_in)
        )

    def is_expired(self, now: Optional[datetime] = None, leeway: float = 0.0) -> bool:
        """Best-effort local check; the server remains the authority."""
        current = now or utcnow()
        return current + timedelta(seconds=leeway) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credential":
        expires_at = datetime.fromisoformat(data["expires_at"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=expires_at
        )


class CredentialStore:
    """Get/set/clear for the current credential, persisted to ``path``."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path).expanduser() if path else None
        self.logger = get_logger("market_client.credentials.store")
        self._credential: Optional[Credential] = None
        self._load()

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    @property
    def access_token(self) -> Optional[str]:
        return self._credential.access_token if self._credential else None

    @property
    def refresh_token(self) -> Optional[str]:
        return self._credential.refresh_token if self._credential else None

    def set(self, credential: Credential) -> None:
        """Replace the stored credential."""
        self._credential = credential
        self._save()
        self.logger.info("Credential stored", expires_at=credential.expires_at.isoformat())

    def clear(self) -> None:
        """Forget the credential and remove the persisted copy."""
        had_credential = self._credential is not None
        self._credential = None
        if self.path and self.path.exists():
            self.path.unlink()
        if had_credential:
            self.logger.info("Credential cleared")

    def _load(self) -> None:
        if not self.path or not self.path.exists():
            return

        try:
            self._credential = Credential.from_dict(json.loads(self.path.read_text()))
        except (OSError, ValueError, KeyError, TypeError) as e:
            # A corrupt file is treated as a logged-out session
            self.logger.warning("Discarding unreadable persisted credential", path=str(self.path), error=str(e))
            self._credential = None
            return

        self.logger.debug("Loaded persisted credential", path=str(self.path))

    def _save(self) -> None:
        if not self.path or self._credential is None:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(self._credential.to_dict()))
        tmp_path.replace(self.path)
