"""
Shipping Rate Cache

Purpose:
- Avoids re-quoting every carrier when the same shipment is priced twice
  within a few minutes (checkout reloads, label screen revisits)
- Cache key: SHA-256 fingerprint of addresses, package, add-on services
  and preferences
- TTL: 5 minutes (configurable)
- Max size: 50 entries, oldest 20% evicted when full

Usage:
    from app.core.rate_cache import shipping_rate_cache, make_rate_fingerprint

    key = make_rate_fingerprint(ship_from, ship_to, package, preferences, namespace=user_id)
    cached = shipping_rate_cache.get(key)
    if cached is None:
        rates = await fetch_rates(...)
        shipping_rate_cache.set(key, rates)
"""
import asyncio
import hashlib
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Tuple, TypeVar

from app.core.config import settings
from app.core.exceptions import RateCacheError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ADDRESS_FIELDS = ("address_line1", "city", "state", "postal_code", "country")


@dataclass
class CacheEntry(Generic[T]):
    data: T
    timestamp: float
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return self.timestamp <= now < self.expires_at


def _value(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _rounded(value: Any) -> Optional[float]:
    return round(float(value), 2) if value is not None else None


def _normalize_address(address: Any) -> Dict[str, str]:
    if address is None:
        return {}
    return {field: str(_value(address, field) or "").strip().upper() for field in _ADDRESS_FIELDS}


def _normalize_package(package: Any) -> Dict[str, Any]:
    if package is None:
        return {}
    normalized: Dict[str, Any] = {
        field: _rounded(_value(package, field))
        for field in ("weight", "length", "width", "height", "declared_value")
    }
    normalized["units"] = str(_value(package, "units") or "imperial").lower()
    return normalized


def _normalize_services(additional_services: Any) -> Dict[str, Any]:
    # Add-ons change the carrier charge, so they are part of the key
    if additional_services is None:
        additional_services = {}
    insurance = _value(additional_services, "insurance_value")
    return {
        "signature": bool(_value(additional_services, "signature_required")),
        "saturday": bool(_value(additional_services, "saturday_delivery")),
        "insurance": _rounded(insurance) if insurance else None,
    }


def make_rate_fingerprint(
    ship_from: Any,
    ship_to: Any,
    package: Any,
    service_preferences: Optional[Iterable[str]] = None,
    namespace: Optional[str] = None,
    additional_services: Any = None,
) -> str:
    """
    Generate a deterministic cache key for a rate request.

    Accepts dataclass instances or plain dicts. Field order, whitespace and
    letter case in addresses do not change the key; package values and the
    insurance amount are rounded to 2 decimals and preferences are sorted
    and de-duplicated. No add-on services and all add-ons switched off give
    the same key.

    Returns:
        "rates_" followed by 32 hex chars of the SHA-256 digest
    """
    payload = {
        "from": _normalize_address(ship_from),
        "to": _normalize_address(ship_to),
        "package": _normalize_package(package),
        "extras": _normalize_services(additional_services),
        "services": sorted({str(s).strip() for s in (service_preferences or []) if s}),
    }
    if namespace is not None:
        payload["ns"] = str(namespace)

    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(raw.encode()).hexdigest()
    return f"rates_{digest[:32]}"


class CacheStorage:
    """Storage backend interface for RateCache."""

    def get(self, key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    def set(self, key: str, entry: CacheEntry) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def items(self) -> List[Tuple[str, CacheEntry]]:
        raise NotImplementedError

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        raise NotImplementedError


class InMemoryCacheStorage(CacheStorage):
    """Process-local dict storage (default)."""

    def __init__(self):
        self._data: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[CacheEntry]:
        return self._data.get(key)

    def set(self, key: str, entry: CacheEntry) -> None:
        self._data[key] = entry

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def items(self) -> List[Tuple[str, CacheEntry]]:
        return list(self._data.items())

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)


class RateCache(Generic[T]):
    """
    Bounded TTL cache for aggregated shipping rates.

    Single-threaded async usage only (all access happens on one event loop).
    Storage failures are logged and treated as a miss; the caller never sees
    a cache exception.

    Attributes:
        ttl_seconds: Default time-to-live for entries
        max_size: Maximum entries before eviction
        eviction_fraction: Share of max_size removed (oldest first) when full
        sweep_interval_seconds: Period of the background expiry sweep
    """

    def __init__(
        self,
        ttl_seconds: int = 300,
        max_size: int = 50,
        eviction_fraction: float = 0.2,
        sweep_interval_seconds: int = 60,
        storage: Optional[CacheStorage] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.eviction_fraction = eviction_fraction
        self.sweep_interval_seconds = sweep_interval_seconds
        self._storage = storage if storage is not None else InMemoryCacheStorage()
        self._clock = clock
        self._sweeper_task: Optional[asyncio.Task] = None
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0
        self._errors = 0

    def _storage_failed(self, operation: str, key: Optional[str], exc: Exception) -> None:
        self._errors += 1
        error = RateCacheError(
            f"Storage {operation} failed: {exc}",
            details={"operation": operation, "key": key},
        )
        logger.warning(f"[RATE_CACHE] {error.message}", extra={"error": error.to_dict()})

    @property
    def eviction_batch(self) -> int:
        return max(1, math.floor(self.max_size * self.eviction_fraction))

    def get(self, key: str) -> Optional[T]:
        """Return cached data, or None if missing or expired."""
        try:
            entry = self._storage.get(key)
            if entry is None:
                self._misses += 1
                return None

            if not entry.is_valid(self._clock()):
                self._storage.delete(key)
                self._misses += 1
                self._expirations += 1
                logger.debug(f"[RATE_CACHE] Expired: {key}")
                return None
        except Exception as e:
            self._misses += 1
            self._storage_failed("read", key, e)
            return None

        self._hits += 1
        logger.debug(f"[RATE_CACHE] Hit: {key}")
        return entry.data

    def set(self, key: str, data: T, ttl: Optional[int] = None) -> None:
        """
        Store data under key.

        Writing a new key into a full cache first evicts the oldest
        entries; overwriting an existing key never evicts.
        """
        ttl_seconds = self.ttl_seconds if ttl is None else ttl
        now = self._clock()
        try:
            if key not in self._storage and len(self._storage) >= self.max_size:
                self._evict_oldest()
            self._storage.set(key, CacheEntry(data=data, timestamp=now, expires_at=now + ttl_seconds))
        except Exception as e:
            self._storage_failed("write", key, e)
            return

        logger.debug(f"[RATE_CACHE] Stored: {key} (ttl {ttl_seconds}s)")

    def has_valid(self, key: str) -> bool:
        """True if key holds an unexpired entry. Does not touch hit/miss counters."""
        try:
            entry = self._storage.get(key)
        except Exception as e:
            self._storage_failed("read", key, e)
            return False
        return entry is not None and entry.is_valid(self._clock())

    def clear(self, key: str) -> None:
        try:
            self._storage.delete(key)
        except Exception as e:
            self._storage_failed("delete", key, e)

    def clear_all(self) -> None:
        """Clear all cached entries."""
        try:
            count = len(self._storage)
            self._storage.clear()
        except Exception as e:
            self._storage_failed("clear", None, e)
            return
        logger.info(f"[RATE_CACHE] Cleared {count} entries")

    def purge_expired(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        removed = 0
        try:
            for key, entry in self._storage.items():
                if not entry.is_valid(now):
                    self._storage.delete(key)
                    removed += 1
        except Exception as e:
            self._storage_failed("sweep", None, e)
        self._expirations += removed
        if removed:
            logger.debug(f"[RATE_CACHE] Swept {removed} expired entries")
        return removed

    def _evict_oldest(self) -> None:
        entries = sorted(self._storage.items(), key=lambda item: item[1].timestamp)
        for key, _ in entries[:self.eviction_batch]:
            self._storage.delete(key)
            self._evictions += 1
        logger.debug(f"[RATE_CACHE] Evicted {min(len(entries), self.eviction_batch)} oldest entries (capacity)")

    def stats(self) -> Dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dict with hits, misses, hit_rate, size, etc.
        """
        total = self._hits + self._misses
        try:
            size = len(self._storage)
        except Exception:
            size = 0
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 4) if total > 0 else 0.0,
            "size": size,
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "evictions": self._evictions,
            "expirations": self._expirations,
            "errors": self._errors,
        }

    def reset_stats(self) -> None:
        """Reset hit/miss/eviction counters."""
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0
        self._errors = 0
        logger.info("[RATE_CACHE] Stats reset")

    async def _sweep_loop(self) -> None:
        logger.info(f"[RATE_CACHE] Sweeper started (interval: {self.sweep_interval_seconds}s)")
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            self.purge_expired()

    def start_sweeper(self) -> None:
        """Start the periodic expiry sweep on the running loop."""
        if self._sweeper_task and not self._sweeper_task.done():
            return
        self._sweeper_task = asyncio.create_task(self._sweep_loop())

    async def stop_sweeper(self) -> None:
        if self._sweeper_task and not self._sweeper_task.done():
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                logger.info("[RATE_CACHE] Sweeper cancelled")
        self._sweeper_task = None


# Global instance for aggregated shipping rates
shipping_rate_cache: RateCache = RateCache(
    ttl_seconds=settings.RATE_CACHE_TTL_SECONDS,
    max_size=settings.RATE_CACHE_MAX_SIZE,
    eviction_fraction=settings.RATE_CACHE_EVICTION_FRACTION,
    sweep_interval_seconds=settings.RATE_CACHE_SWEEP_INTERVAL_SECONDS,
)
