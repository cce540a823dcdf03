"""
Session endpoint client for the market data client.
"""

from typing import Any, Dict, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from shared.logging import get_logger
from shared.errors import (
    AuthenticationError,
    ExternalServiceError,
    SessionExpiredError,
)
from shared.retry import RetryConfig, retry_on_exception
from ..credentials.store import Credential, CredentialStore


class TokenPair(BaseModel):
    """Token block returned by login, register and refresh."""
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken", min_length=1)
    refresh_token: str = Field(alias="refreshToken", min_length=1)
    expires_in: Union[int, str] = Field(default="15m", alias="expiresIn")


class TokenEnvelope(BaseModel):
    """``{"success": ..., "data": {"tokens": {...}}}`` response body."""
    success: bool = True
    data: Dict[str, Any]

    def tokens(self) -> TokenPair:
        return TokenPair.model_validate(self.data.get("tokens"))


def credential_from_response(response: httpx.Response) -> Credential:
    """Validate a token response body and build a credential from it."""
    envelope = TokenEnvelope.model_validate(response.json())
    pair = envelope.tokens()
    return Credential.issue(pair.access_token, pair.refresh_token, pair.expires_in)


class AuthClient:
    """Client for the session endpoints of the REST backend."""

    def __init__(
        self,
        api_base_url: str,
        store: CredentialStore,
        refresh_path: str = "/auth/refresh",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_base_url = api_base_url.rstrip('/')
        self.store = store
        self.refresh_path = refresh_path
        self.timeout = timeout
        self.transport = transport
        self.logger = get_logger("market_client.auth.client")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base_url,
            timeout=self.timeout,
            transport=self.transport
        )

    @retry_on_exception((httpx.TransportError,), config=RetryConfig(max_attempts=3, base_delay=1.0))
    async def login(self, email: str, password: str) -> Credential:
        """Log in and store the issued credential."""
        async with self._client() as client:
            response = await client.post("/auth/login", json={"email": email, "password": password})

        return self._store_issued(response, "login")

    async def register(self, payload: Dict[str, Any]) -> Credential:
        """Create an account and store the issued credential."""
        async with self._client() as client:
            response = await client.post("/auth/register", json=payload)

        return self._store_issued(response, "register")

    async def refresh(self, refresh_token: str) -> Credential:
        """Exchange a refresh token for a new credential.

        The new credential is returned, not stored. Any failure (unreachable
        endpoint, rejected token, malformed body) raises SessionExpiredError.
        """
        try:
            async with self._client() as client:
                response = await client.post(self.refresh_path, json={"refreshToken": refresh_token})
        except httpx.HTTPError as e:
            self.logger.error("Refresh endpoint unreachable", error=str(e))
            raise SessionExpiredError(details={"http_error": str(e)})

        if response.status_code != 200:
            self.logger.warning("Refresh rejected", status_code=response.status_code)
            raise SessionExpiredError(details={"status_code": response.status_code})

        try:
            return credential_from_response(response)
        except (PydanticValidationError, ValueError) as e:
            self.logger.error("Malformed credential response", error=str(e))
            raise SessionExpiredError(details={"error": "malformed credential response"})

    async def logout(self, all_devices: bool = False) -> None:
        """Revoke the session server-side and clear the store whatever the outcome."""
        credential = self.store.credential
        path = "/auth/logout-all" if all_devices else "/auth/logout"

        try:
            if credential is not None:
                async with self._client() as client:
                    response = await client.post(
                        path,
                        json={"refreshToken": credential.refresh_token},
                        headers={"Authorization": f"Bearer {credential.access_token}"}
                    )
                if response.status_code != 200:
                    self.logger.warning("Logout rejected by server", status_code=response.status_code)
        except httpx.HTTPError as e:
            self.logger.warning("Logout request failed", error=str(e))
        finally:
            self.store.clear()

    def _store_issued(self, response: httpx.Response, operation: str) -> Credential:
        if response.status_code in (400, 401, 403):
            message = _server_message(response) or "Invalid credentials"
            self.logger.warning(f"{operation.capitalize()} rejected", status_code=response.status_code)
            raise AuthenticationError(message, details={"status_code": response.status_code})

        if response.status_code not in (200, 201):
            raise ExternalServiceError(
                "auth",
                f"{operation} failed with status {response.status_code}",
                details={"status_code": response.status_code}
            )

        try:
            credential = credential_from_response(response)
        except (PydanticValidationError, ValueError) as e:
            raise ExternalServiceError("auth", "malformed credential response", details={"error": str(e)})

        self.store.set(credential)
        self.logger.info(f"{operation.capitalize()} succeeded")
        return credential


def _server_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    return body.get("message") if isinstance(body, dict) else None
