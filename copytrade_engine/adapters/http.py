"""
Exchange Adapter - REST Transport.

============================================================
PURPOSE
============================================================
Common HTTP plumbing for REST adapters:

- Lazy aiohttp session with connect/total timeouts
- Per-attempt signing hook (fresh timestamps on every retry)
- Shared retry policy with optional single auth refresh
- Error classification hook
- Masked request logging

Subclasses implement `_sign` and, where the broker supports a
refresh, `_refresh_credentials`.

============================================================
"""

import asyncio
import json
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

import aiohttp

from ..config import TimeoutConfig
from .base import ExchangeAdapter
from .errors import (
    AuthenticationFailed,
    ExchangeException,
    create_network_error,
    create_timeout_error,
    map_http_error,
)
from .logging_utils import log_request
from .retry import RetryPolicy


logger = logging.getLogger(__name__)


class HttpResponse:
    """Decoded response handed back by `_send`."""

    __slots__ = ("status", "data", "headers")

    def __init__(self, status: int, data: Any, headers: Optional[Mapping[str, str]] = None):
        self.status = status
        self.data = data
        self.headers = dict(headers or {})


class RestExchangeAdapter(ExchangeAdapter):
    """
    Base class for adapters talking to a REST API.
    """

    refreshes_on_unauthorized = False
    """Set by subclasses that can recover from a 401 by refreshing credentials."""

    def __init__(
        self,
        base_url: str,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_config: Optional[TimeoutConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._retry = retry_policy or RetryPolicy()
        self._timeout_config = timeout_config or TimeoutConfig()
        self._session = session
        self._owns_session = session is None

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._session is not None and not self._session.closed

    async def connect(self) -> None:
        self._ensure_session()

    async def disconnect(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            logger.info(f"Disconnected from {self.exchange_id}")
        self._session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                connect=self._timeout_config.connection_timeout_seconds,
                total=self._timeout_config.total_timeout_seconds,
            )
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    # --------------------------------------------------------
    # HOOKS
    # --------------------------------------------------------

    async def _before_request(self) -> None:
        """Called before every attempt (proactive token refresh, session login)."""

    def _sign(
        self,
        method: str,
        path: str,
        params: Dict[str, Any],
        body: Optional[str],
    ) -> Tuple[Dict[str, str], Dict[str, Any]]:
        """Return (headers, params) for one attempt."""
        return {}, params

    async def _refresh_credentials(self, error: AuthenticationFailed) -> None:
        """Recover from a 401. Raise ReauthorizationRequired when impossible."""
        raise error

    def _map_error(self, response: HttpResponse, operation: str) -> ExchangeException:
        return map_http_error(
            self.exchange_id,
            response.status,
            _error_message(response.data),
            operation=operation,
        )

    # --------------------------------------------------------
    # REQUEST
    # --------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        operation: Optional[str] = None,
    ) -> Any:
        """
        Perform a request under the shared retry policy.

        Returns:
            Decoded JSON payload

        Raises:
            ExchangeException: after retries are exhausted or on a final error
        """
        operation = operation or f"{method} {path}"
        body_text = json.dumps(body, separators=(",", ":")) if body is not None else None

        async def attempt() -> Any:
            await self._before_request()
            headers, signed_params = self._sign(method, path, dict(params or {}), body_text)
            log_request(self.exchange_id, method, path, headers, signed_params)
            response = await self._send(method, path, headers, signed_params, body_text)
            self._after_response(response)
            if response.status >= 400:
                raise self._map_error(response, operation)
            return response.data

        on_unauthorized = self._refresh_credentials if self.refreshes_on_unauthorized else None
        return await self._retry.run(attempt, operation=operation, on_unauthorized=on_unauthorized)

    def _after_response(self, response: HttpResponse) -> None:
        """Inspect response headers (session tokens, rate limit counters)."""

    async def _send(
        self,
        method: str,
        path: str,
        headers: Dict[str, str],
        params: Dict[str, Any],
        body: Optional[str],
    ) -> HttpResponse:
        """Single HTTP round trip. Transport failures become NetworkError."""
        session = self._ensure_session()
        url = f"{self._base_url}{path}"
        if body is not None:
            headers = {**headers, "Content-Type": "application/json"}

        try:
            async with session.request(
                method,
                url,
                params=params or None,
                data=body,
                headers=headers,
            ) as response:
                text = await response.text()
                return HttpResponse(response.status, _decode(text), response.headers)
        except asyncio.TimeoutError:
            raise create_timeout_error(
                self.exchange_id,
                self._timeout_config.total_timeout_seconds,
                operation=f"{method} {path}",
            )
        except aiohttp.ClientError as e:
            raise create_network_error(self.exchange_id, f"Network error: {e}", operation=f"{method} {path}")


def _decode(text: str) -> Any:
    if not text:
        return {}
    try:
        return json.loads(text)
    except ValueError:
        return {"raw": text}


def _error_message(data: Any) -> str:
    if isinstance(data, dict):
        for key in ("message", "msg", "error_description", "errorCode", "error", "detail", "raw"):
            value = data.get(key)
            if value:
                return str(value)
    if isinstance(data, list) and data:
        return str(data[0])
    return ""
