"""AdPulse — Provider HTTP Client.

Shared async client for every provider: bearer/header auth, timeouts,
pagination helpers, and translation of HTTP failures into the sync error
taxonomy. Retrying is the job queue's business, not the client's.
"""

from typing import Any, Dict, Optional

import httpx

from app.config import settings
from app.core.errors import (
    AuthExpired,
    MalformedResponse,
    ProviderUnavailable,
    RateLimited,
    SyncError,
)
from app.core.logging import get_logger

logger = get_logger("connectors.client")


def _retry_after(resp: httpx.Response) -> Optional[float]:
    value = resp.headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def _error_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        error = body.get("error") or body.get("errors")
        if isinstance(error, dict):
            return str(error.get("message") or error)
        if error:
            return str(error)
        if body.get("error_description"):
            return str(body["error_description"])
    return default


class ProviderClient:
    """Async HTTP client bound to one provider and, optionally, one credential."""

    provider = "generic"

    def __init__(
        self,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.headers = headers or {}
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.headers,
                transport=self.transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ── Core Request Method ──

    async def send(
        self,
        method: str,
        url: str,
        params: Dict[str, Any] | None = None,
        data: Dict[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        """Issue one request and raise the matching SyncError on failure."""
        client = await self._get_client()
        try:
            resp = await client.request(method, url, params=params, data=data, json=json)
        except httpx.TimeoutException as e:
            raise ProviderUnavailable(
                f"Request to {self.provider} timed out after {self.timeout}s",
                provider=self.provider,
            ) from e
        except httpx.RequestError as e:
            raise ProviderUnavailable(
                f"Connection to {self.provider} failed: {e}", provider=self.provider
            ) from e

        if resp.is_success:
            return resp
        raise self.classify_error(resp)

    async def request_json(
        self,
        method: str,
        url: str,
        params: Dict[str, Any] | None = None,
        data: Dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        resp = await self.send(method, url, params=params, data=data, json=json)
        return self.parse_json(resp)

    def parse_json(self, resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedResponse(
                f"{self.provider} returned a non-JSON body ({resp.status_code})",
                provider=self.provider,
                status_code=resp.status_code,
            ) from e

    # ── Error Mapping ──

    def _body(self, resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            return {}

    def classify_error(self, resp: httpx.Response) -> SyncError:
        """Map a non-2xx response onto the error taxonomy.

        Subclasses refine this with provider-specific error codes.
        """
        status = resp.status_code
        message = _error_message(self._body(resp), f"HTTP {status}")
        logger.warning(
            f"{self.provider} request failed: {message}",
            extra={"provider": self.provider, "status_code": status},
        )
        if status in (401, 403):
            return AuthExpired(message, provider=self.provider, status_code=status)
        if status == 429:
            return RateLimited(
                message,
                provider=self.provider,
                status_code=status,
                retry_after=_retry_after(resp),
            )
        if status >= 500:
            return ProviderUnavailable(message, provider=self.provider, status_code=status)
        return MalformedResponse(message, provider=self.provider, status_code=status)
