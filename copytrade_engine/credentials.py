"""
Copy-Trade Engine - Credential Resolver.

============================================================
PURPOSE
============================================================
Read-through cache in front of the credential store.

- Keyed by (owner, exchange, environment)
- Entries expire after a TTL (30 seconds by default)
- Concurrent misses for one key trigger a single store read
- Store failures are logged and reported as "no credential"
- Exchange default extras are merged under the credential's own

Instances are injected; there is no module-level cache.

============================================================
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from .config import CredentialCacheConfig
from .key_lock import KeyedLock
from .types import Credential, Environment


logger = logging.getLogger(__name__)


CacheKey = Tuple[str, str, str]


class CredentialStore(Protocol):
    """Backing store for exchange credentials."""

    async def fetch_credential(
        self,
        owner_id: str,
        exchange_id: str,
        environment: Environment,
    ) -> Optional[Credential]:
        ...


class CredentialResolver:
    """
    TTL cache over a CredentialStore.
    """

    def __init__(
        self,
        store: CredentialStore,
        config: Optional[CredentialCacheConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._config = config or CredentialCacheConfig()
        self._clock = clock
        self._cache: Dict[CacheKey, Tuple[float, Optional[Credential]]] = {}
        self._locks = KeyedLock()

    @staticmethod
    def _key(owner_id: str, exchange_id: str, environment: Environment) -> CacheKey:
        return owner_id, exchange_id.lower(), environment.value

    def _cached(self, key: CacheKey) -> Tuple[bool, Optional[Credential]]:
        entry = self._cache.get(key)
        if entry is None:
            return False, None
        expires_at, credential = entry
        if self._clock() >= expires_at:
            del self._cache[key]
            return False, None
        return True, credential

    async def resolve(
        self,
        owner_id: str,
        exchange_id: str,
        environment: Environment = Environment.PRODUCTION,
    ) -> Optional[Credential]:
        """
        Return the credential for an account, or None.

        None covers both "not configured" and "store unavailable".
        """
        key = self._key(owner_id, exchange_id, environment)
        hit, credential = self._cached(key)
        if hit:
            return credential

        async with self._locks.hold(key):
            # Another waiter may have filled the entry
            hit, credential = self._cached(key)
            if hit:
                return credential

            try:
                credential = await self._store.fetch_credential(owner_id, exchange_id, environment)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Credential lookup failed for {owner_id}/{exchange_id}/{environment.value}: {e}"
                )
                return None

            if credential is not None:
                credential = self._merge_extras(credential)
                self._cache[key] = (self._clock() + self._config.ttl_seconds, credential)
            return credential

    def _merge_extras(self, credential: Credential) -> Credential:
        defaults: Dict[str, Any] = self._config.exchange_extras.get(credential.exchange_id.lower(), {})
        if not defaults:
            return credential
        return replace(credential, extra={**defaults, **credential.extra})

    def invalidate(
        self,
        owner_id: str,
        exchange_id: str,
        environment: Optional[Environment] = None,
    ) -> int:
        """Drop cached entries for an account. Returns the number removed."""
        exchange_id = exchange_id.lower()
        doomed = [
            key for key in self._cache
            if key[0] == owner_id
            and key[1] == exchange_id
            and (environment is None or key[2] == environment.value)
        ]
        for key in doomed:
            del self._cache[key]
        if doomed:
            logger.info(f"Invalidated {len(doomed)} cached credential(s) for {owner_id}/{exchange_id}")
        return len(doomed)

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
