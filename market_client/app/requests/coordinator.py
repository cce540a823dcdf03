"""
Request coordinator for the market data client.

Every outbound REST call goes through ``RequestCoordinator.execute``. It
attaches the current access token and, when the backend answers 401, refreshes
the credential exactly once no matter how many callers hit the 401 at the same
time. Callers that arrive while a refresh is running wait in the pending queue
and are all resolved (retried with the new token) or all rejected together.
"""

import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Union

import httpx

from shared.logging import get_logger, request_id_var, set_request_id
from shared.errors import ErrorResponse, SessionExpiredError, describe_status
from shared.metrics import ClientMetrics
from ..auth.client import AuthClient
from ..credentials.store import CredentialStore


DEFAULT_EXEMPT_PATHS = ("/auth/login", "/auth/register", "/auth/refresh", "/auth/logout")

# Statuses the host is not notified about; 401 is handled here, 403 is expected
SILENT_STATUSES = (401, 403)

SessionExpiredHook = Callable[[SessionExpiredError], Union[None, Awaitable[None]]]
ErrorHook = Callable[[ErrorResponse], Union[None, Awaitable[None]]]


async def await_if_needed(result: Any) -> Any:
    if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
        return await result
    return result


class RequestCoordinator:
    """Authorized request layer with single-flight credential refresh."""

    def __init__(
        self,
        api_base_url: str,
        store: CredentialStore,
        auth_client: AuthClient,
        timeout: float = 10.0,
        exempt_paths: Iterable[str] = DEFAULT_EXEMPT_PATHS,
        on_session_expired: Optional[SessionExpiredHook] = None,
        on_error: Optional[ErrorHook] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        metrics: Optional[ClientMetrics] = None
    ):
        self.store = store
        self.auth_client = auth_client
        self.exempt_paths = tuple(exempt_paths)
        self.on_session_expired = on_session_expired
        self.on_error = on_error
        self.metrics = metrics
        self.logger = get_logger("market_client.requests.coordinator")

        self.http_client = httpx.AsyncClient(
            base_url=api_base_url.rstrip('/'),
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"}
        )

        # Single-flight refresh state; the pending queue only exists while a refresh runs
        self._refreshing = False
        self._pending: List[asyncio.Future] = []

    async def __aenter__(self) -> "RequestCoordinator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http_client.aclose()

    @property
    def refresh_in_flight(self) -> bool:
        return self._refreshing

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # Request API

    def build_request(self, method: str, url: str, **kwargs) -> httpx.Request:
        return self.http_client.build_request(method, url, **kwargs)

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        return await self.execute(self.build_request(method, url, **kwargs))

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def execute(self, request: httpx.Request) -> httpx.Response:
        """Send ``request`` with the current token; refresh and retry once on 401.

        Non-authorization failures are returned unmodified. Raises
        SessionExpiredError when the credential could not be refreshed.
        """
        set_request_id()
        sent_token = self._authorize(request, self.store.access_token)
        response = await self._send(request)

        if response.status_code == 401 and self._can_refresh(request):
            await response.aclose()
            token = await self._token_after_unauthorized(sent_token)
            self._authorize(request, token)
            self.logger.info("Retrying request with refreshed credential", method=request.method, path=request.url.path)
            response = await self._send(request)

        await self._report_failure(request, response)
        return response

    def _authorize(self, request: httpx.Request, token: Optional[str]) -> Optional[str]:
        if token:
            request.headers["Authorization"] = f"Bearer {token}"
        else:
            request.headers.pop("Authorization", None)
        return token

    def _is_exempt(self, request: httpx.Request) -> bool:
        path = request.url.path
        return any(exempt in path for exempt in self.exempt_paths)

    def _can_refresh(self, request: httpx.Request) -> bool:
        if self._is_exempt(request):
            return False
        return self.store.refresh_token is not None

    async def _send(self, request: httpx.Request) -> httpx.Response:
        try:
            response = await self.http_client.send(request)
        except httpx.RequestError as e:
            self.logger.warning(
                "Request transport error",
                method=request.method,
                path=request.url.path,
                error=str(e)
            )
            await self._notify_error(ErrorResponse(
                request_id=request_id_var.get(),
                code="CONNECTION_ERROR",
                message="Connection error, check your network connection",
                details={"method": request.method, "path": request.url.path}
            ))
            raise

        if self.metrics:
            self.metrics.requests.labels(method=request.method, status_code=str(response.status_code)).inc()
        self.logger.debug(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code
        )
        return response

    async def _token_after_unauthorized(self, sent_token: Optional[str]) -> str:
        current = self.store.access_token
        if current is not None and current != sent_token:
            # A refresh settled while this request was in flight
            return current
        return await self.refresh_credential()

    # Refresh protocol

    async def refresh_credential(self) -> str:
        """Refresh the credential, sharing one in-flight refresh among all callers.

        Returns the new access token. On failure the store is cleared, every
        waiter is rejected with SessionExpiredError and the host is signalled.
        """
        if self._refreshing:
            waiter = asyncio.get_running_loop().create_future()
            self._pending.append(waiter)
            self.logger.info("Request queued behind credential refresh", queued=len(self._pending))
            return await waiter

        refresh_token = self.store.refresh_token
        if not refresh_token:
            raise SessionExpiredError("No refresh token stored")

        self._refreshing = True
        self.logger.info("Refreshing credential")

        try:
            credential = await self.auth_client.refresh(refresh_token)
        except asyncio.CancelledError:
            self._refreshing = False
            self._drain(error=SessionExpiredError("Credential refresh cancelled"))
            raise
        except Exception as e:
            error = e if isinstance(e, SessionExpiredError) else SessionExpiredError(details={"error": str(e)})
            self._refreshing = False
            self.store.clear()
            rejected = self._drain(error=error)
            if self.metrics:
                self.metrics.refreshes.labels(outcome="failure").inc()
            self.logger.error("Credential refresh failed", rejected=rejected, details=error.details)
            await self._signal_session_expired(error)
            raise error

        self._refreshing = False
        self.store.set(credential)
        resolved = self._drain(token=credential.access_token)
        if self.metrics:
            self.metrics.refreshes.labels(outcome="success").inc()
        self.logger.info("Credential refreshed", resumed=resolved)
        return credential.access_token

    def _drain(self, token: Optional[str] = None, error: Optional[SessionExpiredError] = None) -> int:
        """Settle every queued waiter at once; returns how many were settled."""
        pending, self._pending = self._pending, []
        settled = 0
        for waiter in pending:
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(SessionExpiredError(error.message, dict(error.details)))
            else:
                waiter.set_result(token)
            settled += 1
        return settled

    async def _signal_session_expired(self, error: SessionExpiredError) -> None:
        if self.on_session_expired is None:
            return
        try:
            await await_if_needed(self.on_session_expired(error))
        except Exception as e:
            self.logger.error("Session expiry hook failed", error=str(e))

    # Failure notification

    async def _report_failure(self, request: httpx.Request, response: httpx.Response) -> None:
        status_code = response.status_code
        if status_code < 400 or status_code in SILENT_STATUSES:
            return

        message = describe_status(status_code, _server_message(response))
        self.logger.warning(
            "Request failed",
            method=request.method,
            path=request.url.path,
            status_code=status_code
        )
        if self.on_error is not None:
            error = ErrorResponse(
                request_id=request_id_var.get(),
                code=f"HTTP_{status_code}",
                message=message,
                details={"method": request.method, "path": request.url.path, "status_code": status_code}
            )
            await self._notify_error(error)

    async def _notify_error(self, error: ErrorResponse) -> None:
        if self.on_error is None:
            return
        try:
            await await_if_needed(self.on_error(error))
        except Exception as e:
            self.logger.error("Error hook failed", error=str(e))


def _server_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("message"), str):
        return body["message"]
    return None
