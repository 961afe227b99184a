"""
Tests for key custody, the single-flight caches and the compute pool.
"""

import asyncio

import pytest
from cryptography.exceptions import InvalidTag

from fhefield.errors import CustodianError, KeyGenerationError, KeyNotFoundError
from fhefield.he.cache import SingleFlightCache
from fhefield.he.keys import InMemoryKeyCustodian, KeyCustodian, KeyStore, KeyWrapper
from fhefield.he.params import FheScheme
from fhefield.he.pool import ComputePool

MASTER_KEY = bytes(range(32))


class FlakyCustodian(InMemoryKeyCustodian):
    """Fails the first ``failures`` retrievals with CustodianError."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.retrievals = 0

    async def retrieve_keys(self, identity, scheme):
        self.retrievals += 1
        if self.retrievals <= self.failures:
            raise CustodianError("connection reset", "retrieve")
        return await super().retrieve_keys(identity, scheme)


class CountingCustodian(InMemoryKeyCustodian):
    def __init__(self):
        super().__init__()
        self.stores = 0

    async def store_keys(self, *args, **kwargs):
        self.stores += 1
        await asyncio.sleep(0.01)
        await super().store_keys(*args, **kwargs)


class SlowCustodian(InMemoryKeyCustodian):
    async def retrieve_keys(self, identity, scheme):
        await asyncio.sleep(0.05)
        return await super().retrieve_keys(identity, scheme)


class TestKeyWrapper:
    """Tests for AES-GCM key wrapping."""

    def test_round_trip(self):
        wrapper = KeyWrapper(MASTER_KEY)
        wrapped = wrapper.wrap(b"secret key", b"aad")
        assert wrapped[: KeyWrapper.NONCE_SIZE] != wrapped[KeyWrapper.NONCE_SIZE : 2 * KeyWrapper.NONCE_SIZE]
        assert b"secret key" not in wrapped
        assert wrapper.unwrap(wrapped, b"aad") == b"secret key"

    def test_associated_data_is_bound(self):
        wrapper = KeyWrapper(MASTER_KEY)
        wrapped = wrapper.wrap(b"secret key", b"alice")
        with pytest.raises(InvalidTag):
            wrapper.unwrap(wrapped, b"bob")

    def test_rejects_short_master_key(self):
        with pytest.raises(ValueError):
            KeyWrapper(b"short")


class TestSingleFlightCache:
    """Tests for the TTL single-flight cache."""

    @pytest.mark.asyncio
    async def test_concurrent_misses_load_once(self):
        cache = SingleFlightCache(60.0)
        calls = 0

        async def loader():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return "value"

        results = await asyncio.gather(*(cache.get_or_load("k", loader) for _ in range(10)))
        assert results == ["value"] * 10
        assert calls == 1
        assert cache.misses == 1

    @pytest.mark.asyncio
    async def test_entries_expire(self, clock):
        cache = SingleFlightCache(10.0, clock=clock)
        calls = 0

        async def loader():
            nonlocal calls
            calls += 1
            return calls

        assert await cache.get_or_load("k", loader) == 1
        clock.advance(5.0)
        assert await cache.get_or_load("k", loader) == 1
        clock.advance(5.0)
        assert await cache.get_or_load("k", loader) == 2
        assert cache.hits == 1

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self):
        cache = SingleFlightCache(60.0)
        attempts = 0

        async def loader():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise RuntimeError("boom")
            return "ok"

        with pytest.raises(RuntimeError):
            await cache.get_or_load("k", loader)
        assert await cache.get_or_load("k", loader) == "ok"

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_abort_load(self):
        cache = SingleFlightCache(60.0)
        release = asyncio.Event()

        async def loader():
            await release.wait()
            return "value"

        first = asyncio.ensure_future(cache.get_or_load("k", loader))
        second = asyncio.ensure_future(cache.get_or_load("k", loader))
        await asyncio.sleep(0)
        first.cancel()
        release.set()

        assert await second == "value"
        with pytest.raises(asyncio.CancelledError):
            await first
        assert cache.get("k") == "value"

    @pytest.mark.asyncio
    async def test_untouched_expired_entries_are_purged(self, clock):
        """Loading any key drops expired entries for keys never read again."""
        cache = SingleFlightCache(60.0, clock=clock)

        async def loader():
            return "v"

        for key in range(5):
            await cache.get_or_load(key, loader)
        clock.advance(61.0)
        await cache.get_or_load("new", loader)
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_flights_are_independent(self):
        cache = SingleFlightCache(60.0)

        async def failing():
            await asyncio.sleep(0.01)
            raise LookupError("absent")

        async def creating():
            await asyncio.sleep(0.01)
            return "created"

        results = await asyncio.gather(
            cache.get_or_load("k", failing, flight="lookup"),
            cache.get_or_load("k", creating),
            return_exceptions=True,
        )
        assert isinstance(results[0], LookupError)
        assert results[1] == "created"
        assert cache.get("k") == "created"

    @pytest.mark.asyncio
    async def test_purge_and_close(self, clock):
        cache = SingleFlightCache(1.0, clock=clock)

        async def loader():
            return "v"

        await cache.get_or_load("a", loader)
        clock.advance(2.0)
        assert cache.purge_expired() == 1
        await cache.close()
        with pytest.raises(RuntimeError):
            await cache.get_or_load("a", loader)


class TestKeyStore:
    """Tests for key resolution through cache, custodian and generation."""

    @pytest.mark.asyncio
    async def test_generates_once_and_stores_wrapped(self):
        custodian = CountingCustodian()
        store = KeyStore(custodian, KeyWrapper(MASTER_KEY))

        results = await asyncio.gather(
            *(store.get_or_generate_keys("0xabc", FheScheme.TFHE) for _ in range(5))
        )
        assert all(keys == results[0] for keys in results)
        assert custodian.stores == 1

        record = await custodian.retrieve_keys("0xabc", FheScheme.TFHE)
        assert record.public_key == results[0].public_key
        assert results[0].private_key not in record.encrypted_private_key
        assert results[0].evaluation_key not in record.encrypted_evaluation_key

    @pytest.mark.asyncio
    async def test_loads_from_custodian_after_restart(self):
        custodian = InMemoryKeyCustodian()
        first = KeyStore(custodian, KeyWrapper(MASTER_KEY))
        keys = await first.get_or_generate_keys("0xabc", FheScheme.CKKS)

        second = KeyStore(custodian, KeyWrapper(MASTER_KEY))
        restored = await second.retrieve_keys("0xabc", FheScheme.CKKS)
        assert restored.private_key == keys.private_key
        assert restored.evaluation_key == keys.evaluation_key
        assert len(custodian) == 1

    @pytest.mark.asyncio
    async def test_keys_are_per_scheme(self):
        store = KeyStore(InMemoryKeyCustodian(), KeyWrapper(MASTER_KEY))
        tfhe = await store.get_or_generate_keys("0xabc", FheScheme.TFHE)
        bgv = await store.get_or_generate_keys("0xabc", FheScheme.BGV)
        assert tfhe.public_key != bgv.public_key
        assert bgv.scheme is FheScheme.BGV

    @pytest.mark.asyncio
    async def test_retrieve_missing_keys(self):
        store = KeyStore(InMemoryKeyCustodian(), KeyWrapper(MASTER_KEY))
        with pytest.raises(KeyNotFoundError):
            await store.retrieve_keys("0xnobody", FheScheme.TFHE)

    @pytest.mark.asyncio
    async def test_wrong_master_key(self):
        custodian = InMemoryKeyCustodian()
        await KeyStore(custodian, KeyWrapper(MASTER_KEY)).get_or_generate_keys("0xabc", FheScheme.TFHE)
        other = KeyStore(custodian, KeyWrapper(bytes(32)), custodian_max_retries=0)
        with pytest.raises(CustodianError):
            await other.retrieve_keys("0xabc", FheScheme.TFHE)

    @pytest.mark.asyncio
    async def test_custodian_failures_are_retried(self):
        custodian = FlakyCustodian(failures=2)
        store = KeyStore(custodian, KeyWrapper(MASTER_KEY), custodian_max_retries=2)
        keys = await store.get_or_generate_keys("0xabc", FheScheme.TFHE)
        assert keys.scheme is FheScheme.TFHE
        assert custodian.retrievals == 3

    @pytest.mark.asyncio
    async def test_custodian_store_failure_fails_generation(self):
        class BrokenStore(InMemoryKeyCustodian):
            async def store_keys(self, *args, **kwargs):
                raise CustodianError("disk full", "store")

        store = KeyStore(BrokenStore(), KeyWrapper(MASTER_KEY), custodian_max_retries=0)
        with pytest.raises(KeyGenerationError):
            await store.get_or_generate_keys("0xabc", FheScheme.TFHE)

    @pytest.mark.asyncio
    async def test_bootstrapping_key_cache(self):
        store = KeyStore(InMemoryKeyCustodian(), KeyWrapper(MASTER_KEY))
        keys = await store.get_or_generate_keys("0xabc", FheScheme.TFHE)

        a = await store.get_bootstrapping_key(keys.evaluation_key, FheScheme.TFHE)
        b = await store.get_bootstrapping_key(keys.evaluation_key, FheScheme.TFHE)
        assert a is b
        assert store.stats()["bootstrap_key_cache_hits"] == 1
        await store.close()

    @pytest.mark.asyncio
    async def test_key_cache_ttl(self, clock):
        custodian = FlakyCustodian(failures=0)
        store = KeyStore(custodian, KeyWrapper(MASTER_KEY), key_ttl_seconds=3600.0, clock=clock)
        await store.get_or_generate_keys("0xabc", FheScheme.TFHE)
        await store.get_or_generate_keys("0xabc", FheScheme.TFHE)
        assert custodian.retrievals == 1

        clock.advance(3601.0)
        await store.get_or_generate_keys("0xabc", FheScheme.TFHE)
        assert custodian.retrievals == 2

    @pytest.mark.asyncio
    async def test_concurrent_retrieve_does_not_block_generation(self):
        """A failing lookup in flight must not fail a concurrent first-use generation."""
        custodian = SlowCustodian()
        store = KeyStore(custodian, KeyWrapper(MASTER_KEY))

        missing, generated = await asyncio.gather(
            store.retrieve_keys("0xabc", FheScheme.TFHE),
            store.get_or_generate_keys("0xabc", FheScheme.TFHE),
            return_exceptions=True,
        )
        assert isinstance(missing, KeyNotFoundError)
        assert generated.scheme is FheScheme.TFHE
        assert len(custodian) == 1
        assert await store.retrieve_keys("0xabc", FheScheme.TFHE) == generated

    @pytest.mark.asyncio
    async def test_expired_keys_of_idle_identities_are_evicted(self, clock):
        store = KeyStore(InMemoryKeyCustodian(), KeyWrapper(MASTER_KEY), key_ttl_seconds=3600.0, clock=clock)
        for i in range(5):
            await store.get_or_generate_keys(f"0x{i}", FheScheme.TFHE)
        clock.advance(3601.0)
        await store.get_or_generate_keys("0xnew", FheScheme.TFHE)
        assert len(store.key_cache) == 1

    def test_in_memory_custodian_satisfies_protocol(self):
        assert isinstance(InMemoryKeyCustodian(), KeyCustodian)


class TestComputePool:
    """Tests for the worker pool."""

    @pytest.mark.asyncio
    async def test_run_and_map(self):
        pool = ComputePool(max_workers=2)
        try:
            assert await pool.run(pow, 2, 10) == 1024
            assert await pool.map(abs, [-1, -2, 3]) == [1, 2, 3]
        finally:
            pool.close()

    @pytest.mark.asyncio
    async def test_closed_pool_rejects_work(self):
        pool = ComputePool(max_workers=1)
        pool.close()
        with pytest.raises(RuntimeError):
            await pool.run(abs, -1)
