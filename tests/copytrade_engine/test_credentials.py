"""
Credential Resolver Tests.

============================================================
PURPOSE
============================================================
Tests for the TTL credential cache and the keyed lock it uses.

TEST CATEGORIES:
- Cache tests: TTL hits, expiry and invalidation
- Concurrency tests: Single-flight lookups
- Failure tests: Store errors
- Lock tests: KeyedLock serialization and cleanup

============================================================
"""

import asyncio

import pytest

from copytrade_engine.config import CredentialCacheConfig
from copytrade_engine.credentials import CredentialResolver
from copytrade_engine.key_lock import KeyedLock
from copytrade_engine.types import Credential, Environment


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FakeStore:
    """In-memory credential store that counts lookups."""

    def __init__(self, delay=0.0):
        self.credentials = {}
        self.calls = 0
        self.delay = delay
        self.error = None

    def put(self, credential):
        self.credentials[(credential.owner_id, credential.exchange_id, credential.environment)] = credential

    async def fetch_credential(self, owner_id, exchange_id, environment):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.credentials.get((owner_id, exchange_id, environment))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    store = FakeStore()
    store.put(Credential(owner_id="alice", exchange_id="binance", api_key="k1", api_secret="s1"))
    return store


@pytest.fixture
def resolver(store, clock):
    return CredentialResolver(store, CredentialCacheConfig(ttl_seconds=30.0), clock=clock)


# ============================================================
# CACHE TESTS
# ============================================================

class TestCredentialCache:
    """Tests for TTL caching."""

    @pytest.mark.asyncio
    async def test_hit_within_ttl(self, resolver, store, clock):
        """Test a second lookup inside the TTL is served from memory."""
        first = await resolver.resolve("alice", "binance")
        clock.now += 29
        second = await resolver.resolve("alice", "BINANCE")

        assert first is second
        assert first.api_key == "k1"
        assert store.calls == 1

    @pytest.mark.asyncio
    async def test_refetch_after_ttl(self, resolver, store, clock):
        """Test the store is consulted again once the entry expires."""
        await resolver.resolve("alice", "binance")
        store.put(Credential(owner_id="alice", exchange_id="binance", api_key="k2", api_secret="s2"))
        clock.now += 30

        credential = await resolver.resolve("alice", "binance")

        assert credential.api_key == "k2"
        assert store.calls == 2

    @pytest.mark.asyncio
    async def test_missing_credential(self, resolver, store):
        """Test unknown accounts resolve to None and are not cached."""
        assert await resolver.resolve("bob", "binance") is None
        assert await resolver.resolve("bob", "binance") is None
        assert store.calls == 2
        assert len(resolver) == 0

    @pytest.mark.asyncio
    async def test_environments_cached_separately(self, resolver, store):
        """Test production and sandbox are distinct cache keys."""
        store.put(Credential(
            owner_id="alice",
            exchange_id="binance",
            environment=Environment.SANDBOX,
            api_key="sandbox-key",
        ))

        production = await resolver.resolve("alice", "binance")
        sandbox = await resolver.resolve("alice", "binance", Environment.SANDBOX)

        assert production.api_key == "k1"
        assert sandbox.api_key == "sandbox-key"
        assert sandbox.is_sandbox
        assert len(resolver) == 2

    @pytest.mark.asyncio
    async def test_invalidate(self, resolver, store):
        """Test invalidation forces the next lookup to the store."""
        await resolver.resolve("alice", "binance")

        assert resolver.invalidate("alice", "Binance") == 1
        assert resolver.invalidate("alice", "binance") == 0

        await resolver.resolve("alice", "binance")
        assert store.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate_single_environment(self, resolver, store):
        """Test invalidation can target one environment."""
        store.put(Credential(owner_id="alice", exchange_id="binance", environment=Environment.SANDBOX))
        await resolver.resolve("alice", "binance")
        await resolver.resolve("alice", "binance", Environment.SANDBOX)

        assert resolver.invalidate("alice", "binance", Environment.SANDBOX) == 1
        assert len(resolver) == 1

    @pytest.mark.asyncio
    async def test_exchange_extras_merged(self, store, clock):
        """Test per-exchange defaults merge under the credential's own extras."""
        store.put(Credential(
            owner_id="carol",
            exchange_id="capital",
            api_key="key",
            extra={"identifier": "carol@example.com", "region": "uk"},
        ))
        resolver = CredentialResolver(
            store,
            CredentialCacheConfig(exchange_extras={"capital": {"region": "eu", "leverage": 2}}),
            clock=clock,
        )

        credential = await resolver.resolve("carol", "capital")

        assert credential.extra == {"identifier": "carol@example.com", "region": "uk", "leverage": 2}


# ============================================================
# CONCURRENCY TESTS
# ============================================================

class TestSingleFlight:
    """Tests for concurrent lookups."""

    @pytest.mark.asyncio
    async def test_concurrent_misses_fetch_once(self, clock):
        """Test concurrent lookups of one key share a single fetch."""
        store = FakeStore(delay=0.01)
        store.put(Credential(owner_id="alice", exchange_id="binance", api_key="k1"))
        resolver = CredentialResolver(store, clock=clock)

        results = await asyncio.gather(*[resolver.resolve("alice", "binance") for _ in range(10)])

        assert store.calls == 1
        assert all(r.api_key == "k1" for r in results)

    @pytest.mark.asyncio
    async def test_different_keys_not_serialized(self, clock):
        """Test distinct accounts fetch independently."""
        store = FakeStore(delay=0.01)
        store.put(Credential(owner_id="alice", exchange_id="binance"))
        store.put(Credential(owner_id="bob", exchange_id="binance"))
        resolver = CredentialResolver(store, clock=clock)

        await asyncio.gather(resolver.resolve("alice", "binance"), resolver.resolve("bob", "binance"))

        assert store.calls == 2


# ============================================================
# FAILURE TESTS
# ============================================================

class TestStoreFailure:
    """Tests for an unavailable store."""

    @pytest.mark.asyncio
    async def test_store_error_resolves_to_none(self, resolver, store):
        """Test store failures are logged and reported as absent."""
        store.error = ConnectionError("database down")

        assert await resolver.resolve("alice", "binance") is None
        assert len(resolver) == 0

    @pytest.mark.asyncio
    async def test_recovers_after_store_error(self, resolver, store):
        """Test a failed lookup is not cached."""
        store.error = ConnectionError("database down")
        await resolver.resolve("alice", "binance")
        store.error = None

        credential = await resolver.resolve("alice", "binance")

        assert credential.api_key == "k1"


# ============================================================
# LOCK TESTS
# ============================================================

class TestKeyedLock:
    """Tests for per-key serialization."""

    @pytest.mark.asyncio
    async def test_same_key_serialized(self):
        """Test two holders of one key never overlap."""
        locks = KeyedLock()
        events = []

        async def worker(name):
            async with locks.hold("BTC/USDT"):
                events.append(f"{name}-in")
                await asyncio.sleep(0.01)
                events.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert events in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    @pytest.mark.asyncio
    async def test_different_keys_concurrent(self):
        """Test holders of different keys overlap."""
        locks = KeyedLock()
        inside = []
        peak = []

        async def worker(key):
            async with locks.hold(key):
                inside.append(key)
                peak.append(len(inside))
                await asyncio.sleep(0.01)
                inside.remove(key)

        await asyncio.gather(worker("BTC/USDT"), worker("ETH/USDT"))

        assert max(peak) == 2

    @pytest.mark.asyncio
    async def test_released_locks_are_dropped(self):
        """Test no lock lingers once its last holder leaves."""
        locks = KeyedLock()

        async with locks.hold("k"):
            assert locks.locked("k")
            assert len(locks) == 1

        assert not locks.locked("k")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        """Test an exception inside the block releases the key."""
        locks = KeyedLock()

        with pytest.raises(RuntimeError):
            async with locks.hold("k"):
                raise RuntimeError("boom")

        assert len(locks) == 0
