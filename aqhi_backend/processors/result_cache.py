"""
Result Cache
============
TTL cache of HealthIndexResult keyed by (station_id, variant).

- An entry is valid while now - computed_at < ttl
- No-data results use a shorter TTL so stations recover quickly once readings arrive
- The backing store is pluggable; the default keeps entries in a process-local dict
- put() replaces the whole entry in one assignment, so concurrent writers for a
  key leave either the old entry or the new one, never a mix
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, NamedTuple, Optional, Protocol, Tuple

from aqhi_backend.exceptions import InvalidConfiguration
from aqhi_backend.models import CalculationMethod, HealthIndexResult

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(minutes=5)
DEFAULT_NO_DATA_TTL = timedelta(minutes=1)


class CacheKey(NamedTuple):
    station_id: str
    variant: str


@dataclass(frozen=True)
class CacheEntry:
    result: HealthIndexResult
    computed_at: datetime


class CacheStore(Protocol):
    def get(self, key: CacheKey) -> Optional[CacheEntry]: ...

    def set(self, key: CacheKey, entry: CacheEntry) -> None: ...

    def delete(self, key: CacheKey) -> bool: ...

    def items(self) -> Iterator[Tuple[CacheKey, CacheEntry]]: ...

    def __len__(self) -> int: ...


class InMemoryCacheStore:
    """Dict-backed store for a single process"""

    def __init__(self):
        self._entries: Dict[CacheKey, CacheEntry] = {}

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def set(self, key: CacheKey, entry: CacheEntry) -> None:
        self._entries[key] = entry

    def delete(self, key: CacheKey) -> bool:
        return self._entries.pop(key, None) is not None

    def items(self) -> Iterator[Tuple[CacheKey, CacheEntry]]:
        return iter(list(self._entries.items()))

    def __len__(self) -> int:
        return len(self._entries)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ResultCache:
    """
    Typed TTL cache in front of the fallback chain
    """

    def __init__(self, ttl: timedelta = DEFAULT_TTL,
                 no_data_ttl: Optional[timedelta] = None,
                 store: Optional[CacheStore] = None,
                 clock: Callable[[], datetime] = _utc_now):
        if ttl <= timedelta(0):
            raise InvalidConfiguration(f"Cache TTL must be positive, got {ttl}")
        if no_data_ttl is not None and (no_data_ttl <= timedelta(0) or no_data_ttl > ttl):
            raise InvalidConfiguration(f"No-data TTL must be positive and at most {ttl}, got {no_data_ttl}")

        self.ttl = ttl
        self.no_data_ttl = no_data_ttl or min(DEFAULT_NO_DATA_TTL, ttl)
        self.store = store if store is not None else InMemoryCacheStore()
        self.clock = clock
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def ttl_for(self, result: HealthIndexResult) -> timedelta:
        return self.ttl if result.has_data else self.no_data_ttl

    def is_fresh(self, entry: CacheEntry, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        return now - entry.computed_at < self.ttl_for(entry.result)

    def get(self, station_id: str, variant: str) -> Optional[HealthIndexResult]:
        key = CacheKey(station_id, variant)
        entry = self.store.get(key)

        if entry is None:
            self.misses += 1
            return None

        if not self.is_fresh(entry):
            self.store.delete(key)
            self.evictions += 1
            self.misses += 1
            logger.debug(f"🗑️ Expired cache entry for {station_id}/{variant}")
            return None

        self.hits += 1
        return entry.result

    def put(self, result: HealthIndexResult, computed_at: Optional[datetime] = None) -> CacheEntry:
        entry = CacheEntry(result=result, computed_at=computed_at or self.clock())
        self.store.set(CacheKey(result.station_id, result.variant), entry)
        return entry

    def invalidate(self, station_id: str, variant: Optional[str] = None) -> int:
        """Drop one key, or every variant cached for a station when variant is None"""
        if variant is not None:
            removed = int(self.store.delete(CacheKey(station_id, variant)))
        else:
            removed = sum(
                int(self.store.delete(key)) for key, _ in self.store.items() if key.station_id == station_id
            )
        self.evictions += removed
        return removed

    def evict_expired(self) -> int:
        now = self.clock()
        expired = [key for key, entry in self.store.items() if not self.is_fresh(entry, now)]
        for key in expired:
            self.store.delete(key)
        self.evictions += len(expired)
        if expired:
            logger.info(f"🧹 Evicted {len(expired)} expired results")
        return len(expired)

    def stats(self) -> Dict:
        now = self.clock()
        by_method = {method.value: 0 for method in CalculationMethod}
        fresh = 0
        for _, entry in self.store.items():
            by_method[entry.result.calculation_method.value] += 1
            if self.is_fresh(entry, now):
                fresh += 1

        lookups = self.hits + self.misses
        return {
            'entries': len(self.store),
            'fresh_entries': fresh,
            'hits': self.hits,
            'misses': self.misses,
            'hit_rate': round(self.hits / lookups, 3) if lookups else 0.0,
            'evictions': self.evictions,
            'by_method': by_method,
            'ttl_seconds': self.ttl.total_seconds(),
            'no_data_ttl_seconds': self.no_data_ttl.total_seconds(),
        }
