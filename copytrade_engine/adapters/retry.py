"""
Exchange Adapter - Shared Retry Policy.

============================================================
PURPOSE
============================================================
One retry policy used by every adapter:

- At most `max_attempts` attempts in total
- Delay before retry n is base_delay * 2^n
- Retry only transport failures, 429 and 5xx
- A 4xx is final, except a single auth refresh-and-retry
  per call when the adapter knows how to refresh

============================================================
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from ..config import RetryConfig
from .errors import AuthenticationFailed, ExchangeException


logger = logging.getLogger(__name__)


class RetryPolicy:
    """
    Bounded exponential backoff.

    Stateless apart from its configuration, so one instance can be
    shared by all adapters.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._config = config or RetryConfig()
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self._config.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the failed attempt number `attempt` (0-based)."""
        delay = self._config.base_delay_seconds * (2 ** attempt)
        return min(delay, self._config.max_delay_seconds)

    def should_retry(self, error: ExchangeException) -> bool:
        return error.retryable

    async def run(
        self,
        call: Callable[[], Awaitable[Any]],
        operation: str = "request",
        on_unauthorized: Optional[Callable[[AuthenticationFailed], Awaitable[None]]] = None,
    ) -> Any:
        """
        Run `call` under the policy.

        Args:
            call: Zero-argument coroutine factory, invoked once per attempt
            operation: Name used in log lines
            on_unauthorized: Refreshes credentials after a 401. It may raise
                ReauthorizationRequired, which propagates. Invoked at most
                once per run.
        """
        attempt = 0
        auth_retried = False

        while True:
            try:
                return await call()
            except AuthenticationFailed as e:
                if on_unauthorized is None or auth_retried:
                    raise
                auth_retried = True
                logger.info(f"{operation}: authentication rejected, refreshing credentials once")
                await on_unauthorized(e)
            except ExchangeException as e:
                if not self.should_retry(e) or attempt + 1 >= self._config.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                if e.error.retry_after_ms:
                    delay = max(delay, e.error.retry_after_ms / 1000)
                attempt += 1
                logger.warning(
                    f"{operation}: {e.code} (attempt {attempt}/{self._config.max_attempts}), "
                    f"retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
