"""
Resilient HTTP client for the ingestion service.

Every call to the service goes through ResilientHttpClient.request(),
which retries transient failures (5xx, timeouts, connection errors)
with exponential backoff and fails fast on client errors (4xx).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlparse

import httpx

from .errors import ClientError, MalformedResponseError, NetworkError

logger = logging.getLogger(__name__)

# Total attempts per request, including the first
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 1.0  # seconds

DEFAULT_TIMEOUT = 30.0

_LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1")


def backoff_delay(retry: int, base: float = RETRY_BACKOFF_BASE) -> float:
    """Delay in seconds before retry number `retry` (1-based)."""
    return base * (2 ** (retry - 1))


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500


class ResilientHttpClient:
    """HTTP client with bounded retry and exponential backoff.

    Stateless apart from configuration (base URL, auth header, timeout).
    """

    def __init__(
        self,
        api_url: str,
        api_key: str | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = RETRY_BACKOFF_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._api_url = api_url.rstrip("/")
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._sleep = sleep

        # Refuse non-HTTPS for remote APIs (bearer token would be sent in cleartext)
        if api_key and not self._api_url.startswith("https://"):
            host = urlparse(self._api_url).hostname or ""
            if host not in _LOOPBACK_HOSTS:
                raise ValueError(
                    f"Service URL must use HTTPS (got {self._api_url}). "
                    "Use HTTPS to protect API credentials, or use localhost for local development."
                )

        headers: dict[str, str] = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = httpx.AsyncClient(
            base_url=self._api_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @property
    def api_url(self) -> str:
        return self._api_url

    async def request(
        self,
        method: str,
        path: str,
        *,
        max_retries: Optional[int] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, retrying transient failures.

        Returns the successful (2xx) response.

        Raises:
            ClientError: on a 4xx response (never retried)
            NetworkError: when every attempt failed with 5xx or a transport error,
                or at once on a non-transient request error (e.g. a redirect loop)
            MalformedResponseError: the body could not be decoded
        """
        attempts = max_retries if max_retries is not None else self._max_retries
        last_error: Exception | None = None
        last_status: int | None = None

        for attempt in range(attempts):
            if attempt > 0:
                delay = backoff_delay(attempt, self._backoff_base)
                logger.info(
                    "%s %s attempt %d failed, retrying in %.1fs: %s",
                    method, path, attempt, delay, last_error,
                )
                await self._sleep(delay)

            try:
                resp = await self._client.request(method, path, **kwargs)
            except httpx.TransportError as e:
                # Includes timeouts and connection failures
                last_error = e
                last_status = None
                continue
            except httpx.DecodingError as e:
                raise MalformedResponseError(f"{method} {path} returned an undecodable body: {e}") from e
            except httpx.HTTPError as e:
                # Redirect loops and other request errors are not transient
                raise NetworkError(
                    f"{method} {path} failed: {e}",
                    attempts=attempt + 1,
                ) from e

            if resp.is_success:
                return resp
            if not is_retryable_status(resp.status_code):
                raise ClientError(
                    f"{method} {path} rejected: {resp.status_code} {_error_detail(resp)}",
                    resp.status_code,
                )
            last_error = httpx.HTTPStatusError(
                f"Server error {resp.status_code}", request=resp.request, response=resp,
            )
            last_status = resp.status_code

        logger.warning("%s %s failed after %d attempts: %s", method, path, attempts, last_error)
        raise NetworkError(
            f"{method} {path} failed after {attempts} attempts: {last_error}",
            attempts=attempts,
            status_code=last_status,
        ) from last_error

    async def request_json(self, method: str, path: str, **kwargs: Any) -> Any:
        """Like request(), but decodes the JSON body.

        A success response that is not JSON is terminal: it raises
        MalformedResponseError without retrying.
        """
        resp = await self.request(method, path, **kwargs)
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"{method} {path} returned a non-JSON body ({resp.headers.get('content-type', 'unknown')})"
            ) from e

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


def _error_detail(resp: httpx.Response) -> str:
    """Best-effort error message from a failed response."""
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict):
        return str(data.get("error") or data.get("message") or data)
    return str(data)
