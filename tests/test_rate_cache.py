"""
Tests for the shipping rate cache.
"""
import asyncio

import pytest

from app.core.rate_cache import (
    CacheEntry,
    InMemoryCacheStorage,
    RateCache,
    make_rate_fingerprint,
)


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BrokenStorage(InMemoryCacheStorage):
    def get(self, key):
        raise ConnectionError("storage offline")

    def set(self, key, entry):
        raise ConnectionError("storage offline")


ORIGIN = {"address_line1": "100 Commerce Way", "city": "Austin", "state": "TX", "postal_code": "78701", "country": "US"}
DEST = {"address_line1": "123 Main St", "city": "New York", "state": "NY", "postal_code": "10001", "country": "US"}
PACKAGE = {"weight": 2.0, "length": 10, "width": 8, "height": 4, "units": "imperial"}


class TestFingerprint:
    """Test cache key generation."""

    def test_deterministic(self):
        assert make_rate_fingerprint(ORIGIN, DEST, PACKAGE) == make_rate_fingerprint(ORIGIN, DEST, PACKAGE)

    def test_format(self):
        key = make_rate_fingerprint(ORIGIN, DEST, PACKAGE)
        assert key.startswith("rates_")
        assert len(key) == len("rates_") + 32

    def test_ignores_case_and_whitespace(self):
        shouting = {k: f"  {v.upper()} " for k, v in DEST.items()}
        assert make_rate_fingerprint(ORIGIN, shouting, PACKAGE) == make_rate_fingerprint(ORIGIN, DEST, PACKAGE)

    def test_ignores_field_order(self):
        reordered = dict(reversed(list(DEST.items())))
        assert make_rate_fingerprint(ORIGIN, reordered, PACKAGE) == make_rate_fingerprint(ORIGIN, DEST, PACKAGE)

    def test_rounds_package_values(self):
        nearly = dict(PACKAGE, weight=2.001)
        assert make_rate_fingerprint(ORIGIN, DEST, nearly) == make_rate_fingerprint(ORIGIN, DEST, PACKAGE)

    def test_preferences_are_sorted_and_deduplicated(self):
        a = make_rate_fingerprint(ORIGIN, DEST, PACKAGE, ["03", "01", "03"])
        b = make_rate_fingerprint(ORIGIN, DEST, PACKAGE, ["01", "03"])
        assert a == b

    def test_different_inputs_differ(self):
        heavier = dict(PACKAGE, weight=3.0)
        assert make_rate_fingerprint(ORIGIN, DEST, heavier) != make_rate_fingerprint(ORIGIN, DEST, PACKAGE)
        assert make_rate_fingerprint(ORIGIN, DEST, PACKAGE, ["03"]) != make_rate_fingerprint(ORIGIN, DEST, PACKAGE)

    def test_namespace_separates_merchants(self):
        assert (
            make_rate_fingerprint(ORIGIN, DEST, PACKAGE, namespace="1")
            != make_rate_fingerprint(ORIGIN, DEST, PACKAGE, namespace="2")
        )

    def test_accepts_dataclasses(self, domestic_us_request):
        req = domestic_us_request
        from_objects = make_rate_fingerprint(req.ship_from, req.ship_to, req.package)
        from_dicts = make_rate_fingerprint(
            {"address_line1": "100 Commerce Way", "city": "Austin", "state": "TX", "postal_code": "78701", "country": "US"},
            {"address_line1": "123 Main Street", "city": "New York", "state": "NY", "postal_code": "10001", "country": "US"},
            {"weight": 2.0, "length": 10, "width": 8, "height": 4, "units": "imperial"},
        )
        assert from_objects == from_dicts

    def test_additional_services_change_the_key(self):
        plain = make_rate_fingerprint(ORIGIN, DEST, PACKAGE)
        for extras in (
            {"signature_required": True},
            {"saturday_delivery": True},
            {"insurance_value": 500},
        ):
            assert make_rate_fingerprint(ORIGIN, DEST, PACKAGE, additional_services=extras) != plain

    def test_declared_value_changes_the_key(self):
        insured = dict(PACKAGE, declared_value=150)
        assert make_rate_fingerprint(ORIGIN, DEST, insured) != make_rate_fingerprint(ORIGIN, DEST, PACKAGE)

    def test_additional_services_are_normalized(self, domestic_us_request):
        req = domestic_us_request
        no_extras = make_rate_fingerprint(ORIGIN, DEST, PACKAGE)
        switched_off = make_rate_fingerprint(ORIGIN, DEST, PACKAGE, additional_services=req.additional_services)
        assert switched_off == no_extras

        a = make_rate_fingerprint(ORIGIN, DEST, PACKAGE, additional_services={"signature_required": 1, "insurance_value": 99.999})
        b = make_rate_fingerprint(ORIGIN, DEST, PACKAGE, additional_services={"signature_required": True, "insurance_value": 100})
        assert a == b


class TestRateCache:
    """Test TTL, eviction and statistics."""

    def test_miss_then_hit(self):
        cache = RateCache(clock=FakeClock())
        assert cache.get("k") is None
        cache.set("k", ("rate",))
        assert cache.get("k") == ("rate",)

        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["size"] == 1

    def test_expires_at_ttl_boundary(self):
        clock = FakeClock()
        cache = RateCache(ttl_seconds=300, clock=clock)
        cache.set("k", "v")

        clock.advance(299)
        assert cache.get("k") == "v"

        clock.advance(1)
        assert cache.get("k") is None
        assert cache.stats()["expirations"] == 1
        assert cache.stats()["size"] == 0

    def test_per_entry_ttl(self):
        clock = FakeClock()
        cache = RateCache(ttl_seconds=300, clock=clock)
        cache.set("short", "v", ttl=10)
        clock.advance(10)
        assert cache.get("short") is None

    def test_has_valid_does_not_count(self):
        clock = FakeClock()
        cache = RateCache(clock=clock)
        cache.set("k", "v")
        assert cache.has_valid("k") is True
        assert cache.has_valid("other") is False
        assert cache.stats()["hits"] == 0
        assert cache.stats()["misses"] == 0

    def test_entry_from_the_future_is_invalid(self):
        entry = CacheEntry(data="v", timestamp=2_000.0, expires_at=2_300.0)
        assert entry.is_valid(1_999.0) is False
        assert entry.is_valid(2_000.0) is True
        assert entry.is_valid(2_300.0) is False

    def test_evicts_oldest_batch_when_full(self):
        clock = FakeClock()
        cache = RateCache(max_size=10, eviction_fraction=0.2, clock=clock)
        for i in range(10):
            cache.set(f"k{i}", i)
            clock.advance(1)

        cache.set("new", "v")

        assert cache.stats()["size"] == 9
        assert cache.stats()["evictions"] == 2
        assert cache.get("k0") is None
        assert cache.get("k1") is None
        assert cache.get("k2") == 2
        assert cache.get("new") == "v"

    def test_size_never_exceeds_max(self):
        clock = FakeClock()
        cache = RateCache(max_size=5, eviction_fraction=0.2, clock=clock)
        for i in range(50):
            cache.set(f"k{i}", i)
            clock.advance(1)
            assert cache.stats()["size"] <= 5

    def test_overwrite_does_not_evict(self):
        clock = FakeClock()
        cache = RateCache(max_size=3, clock=clock)
        for key in ("a", "b", "c"):
            cache.set(key, key)
        cache.set("b", "updated")

        assert cache.stats()["evictions"] == 0
        assert cache.get("a") == "a"
        assert cache.get("b") == "updated"

    def test_eviction_batch_is_at_least_one(self):
        assert RateCache(max_size=3, eviction_fraction=0.2).eviction_batch == 1
        assert RateCache(max_size=50, eviction_fraction=0.2).eviction_batch == 10

    def test_clear_and_clear_all(self):
        cache = RateCache(clock=FakeClock())
        cache.set("a", 1)
        cache.set("b", 2)

        cache.clear("a")
        assert cache.get("a") is None
        assert cache.get("b") == 2

        cache.clear_all()
        assert cache.stats()["size"] == 0

    def test_purge_expired(self):
        clock = FakeClock()
        cache = RateCache(ttl_seconds=60, clock=clock)
        cache.set("old", 1)
        clock.advance(30)
        cache.set("young", 2)
        clock.advance(30)

        assert cache.purge_expired() == 1
        assert cache.has_valid("young") is True
        assert cache.stats()["size"] == 1

    def test_storage_failure_is_a_miss(self):
        cache = RateCache(storage=BrokenStorage(), clock=FakeClock())

        cache.set("k", "v")
        assert cache.get("k") is None
        assert cache.stats()["errors"] == 2
        assert cache.stats()["misses"] == 1

    def test_reset_stats(self):
        cache = RateCache(clock=FakeClock())
        cache.get("missing")
        cache.reset_stats()
        assert cache.stats()["misses"] == 0


class TestSweeper:
    """Test the background expiry sweep."""

    @pytest.mark.asyncio
    async def test_sweeper_purges_expired_entries(self):
        clock = FakeClock()
        cache = RateCache(ttl_seconds=10, sweep_interval_seconds=0.01, clock=clock)
        cache.set("k", "v")
        clock.advance(11)

        cache.start_sweeper()
        try:
            for _ in range(100):
                await asyncio.sleep(0.01)
                if cache.stats()["size"] == 0:
                    break
        finally:
            await cache.stop_sweeper()

        assert cache.stats()["size"] == 0
        assert cache.stats()["expirations"] == 1

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        cache = RateCache()
        await cache.stop_sweeper()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        cache = RateCache(sweep_interval_seconds=60)
        cache.start_sweeper()
        task = cache._sweeper_task
        cache.start_sweeper()
        assert cache._sweeper_task is task
        await cache.stop_sweeper()
        assert task.cancelled()
