"""In-process TTL cache for scheduling-template listings and employee shift patterns.

Entries live in two keyspaces, ``templates`` and ``patterns``.  Every key is
``"{scope}:{rest}"`` where the scope is the owning company id, so a single
``invalidate(scope)`` drops everything a company write could have made stale.

Each invalidation also bumps a per-scope generation.  Readers take the
generation before querying the database and hand it back to ``set``, which
drops the write when an invalidation happened in between, so a listing read
before a commit is never cached after it.

The cache is per process.  Deployments running several workers need an
external invalidation channel; nothing here tries to provide one.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from .policy import CACHE_DEFAULTS

logger = logging.getLogger(__name__)

TEMPLATES = "templates"
PATTERNS = "patterns"
KEYSPACES = (TEMPLATES, PATTERNS)
EVICTION_FRACTION = 0.1


@dataclass
class CacheEntry:
    data: Any
    timestamp: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


@dataclass(frozen=True)
class TemplateFilter:
    """Listing filters for scheduling templates; ``cache_key`` is stable across calls."""

    location_id: Optional[int] = None
    is_active: Optional[bool] = None
    search: Optional[str] = None

    def cache_key(self) -> str:
        parts = []
        if self.location_id is not None:
            parts.append(f"location={self.location_id}")
        if self.is_active is not None:
            parts.append(f"active={int(self.is_active)}")
        if self.search:
            parts.append(f"search={self.search.strip().lower()}")
        return ",".join(parts) or "default"


class TemplateCache:
    def __init__(
        self,
        *,
        template_ttl: float = CACHE_DEFAULTS["template_ttl_seconds"],
        pattern_ttl: float = CACHE_DEFAULTS["pattern_ttl_seconds"],
        max_entries: int = CACHE_DEFAULTS["max_entries"],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttls = {TEMPLATES: float(template_ttl), PATTERNS: float(pattern_ttl)}
        self._max_entries = int(max_entries)
        self._clock = clock
        self._lock = threading.RLock()
        self._stores: Dict[str, Dict[str, CacheEntry]] = {name: {} for name in KEYSPACES}
        self._generations: Dict[Tuple[str, str], int] = {}
        self._epoch = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._sweeper: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @classmethod
    def from_settings(cls, settings: Dict[str, Any], **kwargs: Any) -> "TemplateCache":
        """Build a cache from the ``cache`` block of the active policy."""
        return cls(
            template_ttl=settings.get("template_ttl_seconds", CACHE_DEFAULTS["template_ttl_seconds"]),
            pattern_ttl=settings.get("pattern_ttl_seconds", CACHE_DEFAULTS["pattern_ttl_seconds"]),
            max_entries=settings.get("max_entries", CACHE_DEFAULTS["max_entries"]),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Generic keyspace access

    def get(self, keyspace: str, key: str) -> Optional[Any]:
        store = self._store(keyspace)
        with self._lock:
            entry = store.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.expired(self._clock()):
                del store[key]
                self._evictions += 1
                self._misses += 1
                return None
            self._hits += 1
            return entry.data

    def set(
        self,
        keyspace: str,
        key: str,
        data: Any,
        ttl: Optional[float] = None,
        *,
        generation: Optional[Tuple[int, int]] = None,
    ) -> bool:
        """Store ``data``; returns False when ``generation`` is stale and nothing was written."""
        store = self._store(keyspace)
        with self._lock:
            if generation is not None and generation != self.generation(keyspace, _scope_of(key)):
                logger.debug("Dropped stale %s cache write for %s", keyspace, key)
                return False
            store[key] = CacheEntry(
                data=data,
                timestamp=self._clock(),
                ttl=float(ttl) if ttl is not None else self._ttls[keyspace],
            )
            self._enforce_max_size(keyspace, key)
        return True

    def generation(self, keyspace: str, scope: Any) -> Tuple[int, int]:
        """Token that changes whenever ``scope`` is invalidated in ``keyspace`` or the cache is cleared."""
        self._store(keyspace)
        with self._lock:
            return self._epoch, self._generations.get((keyspace, str(scope)), 0)

    def delete(self, keyspace: str, key: str) -> bool:
        store = self._store(keyspace)
        with self._lock:
            if store.pop(key, None) is None:
                return False
            self._evictions += 1
            return True

    def invalidate(self, scope: Any, keyspace: Optional[str] = None) -> int:
        """Drop every entry whose key starts with ``"{scope}:"``; returns how many went."""
        prefix = f"{scope}:"
        names = (keyspace,) if keyspace is not None else KEYSPACES
        removed = 0
        with self._lock:
            for name in names:
                store = self._store(name)
                self._bump(name, scope)
                for key in [key for key in store if key.startswith(prefix)]:
                    del store[key]
                    removed += 1
            self._evictions += removed
        if removed:
            logger.debug("Invalidated %s cache entries for scope %s", removed, scope)
        return removed

    def cleanup(self) -> int:
        """Remove every expired entry; returns the number removed."""
        removed = 0
        with self._lock:
            now = self._clock()
            for store in self._stores.values():
                for key in [key for key, entry in store.items() if entry.expired(now)]:
                    del store[key]
                    removed += 1
            self._evictions += removed
        if removed:
            logger.debug("Cache sweep removed %s expired entries", removed)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._epoch += 1
            self._evictions += sum(len(store) for store in self._stores.values())
            for store in self._stores.values():
                store.clear()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            hit_rate = (self._hits / total) * 100 if total else 0.0
            return {
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "size": sum(len(store) for store in self._stores.values()),
                "hit_rate": round(hit_rate, 2),
            }

    # ------------------------------------------------------------------
    # Typed wrappers

    def get_templates(self, company_id: int, filters: Optional[TemplateFilter] = None) -> Optional[Any]:
        return self.get(TEMPLATES, self._template_key(company_id, filters))

    def set_templates(
        self,
        company_id: int,
        templates: Any,
        filters: Optional[TemplateFilter] = None,
        *,
        generation: Optional[Tuple[int, int]] = None,
    ) -> bool:
        return self.set(TEMPLATES, self._template_key(company_id, filters), templates, generation=generation)

    def template_generation(self, company_id: int) -> Tuple[int, int]:
        return self.generation(TEMPLATES, company_id)

    def invalidate_templates(self, company_id: int) -> int:
        return self.invalidate(company_id, TEMPLATES)

    def get_patterns(self, company_id: int, employee_id: int) -> Optional[Any]:
        return self.get(PATTERNS, f"{company_id}:{employee_id}")

    def set_patterns(
        self,
        company_id: int,
        employee_id: int,
        patterns: Any,
        *,
        generation: Optional[Tuple[int, int]] = None,
    ) -> bool:
        return self.set(PATTERNS, f"{company_id}:{employee_id}", patterns, generation=generation)

    def pattern_generation(self, company_id: int) -> Tuple[int, int]:
        return self.generation(PATTERNS, company_id)

    def invalidate_patterns(self, company_id: int, employee_id: Optional[int] = None) -> int:
        if employee_id is None:
            return self.invalidate(company_id, PATTERNS)
        # Generations are per company, so one employee's write also fences
        # in-flight pattern reads for the company's other employees.
        with self._lock:
            self._bump(PATTERNS, company_id)
            return int(self.delete(PATTERNS, f"{company_id}:{employee_id}"))

    # ------------------------------------------------------------------
    # Background sweeper

    def start_sweeper(self, interval: float = CACHE_DEFAULTS["sweep_interval_seconds"]) -> None:
        with self._lock:
            if self._sweeper is not None and self._sweeper.is_alive():
                return
            self._stop_event.clear()
            self._sweeper = threading.Thread(
                target=self._sweep_loop,
                args=(float(interval),),
                name="template-cache-sweeper",
                daemon=True,
            )
            self._sweeper.start()

    def stop_sweeper(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        sweeper = self._sweeper
        if sweeper is not None:
            sweeper.join(timeout)
        self._sweeper = None

    def _sweep_loop(self, interval: float) -> None:
        while not self._stop_event.wait(interval):
            self.cleanup()

    # ------------------------------------------------------------------

    def _store(self, keyspace: str) -> Dict[str, CacheEntry]:
        try:
            return self._stores[keyspace]
        except KeyError:
            raise ValueError(f"Unknown cache keyspace {keyspace!r}") from None

    @staticmethod
    def _template_key(company_id: int, filters: Optional[TemplateFilter]) -> str:
        return f"{company_id}:{(filters or TemplateFilter()).cache_key()}"

    def _bump(self, keyspace: str, scope: Any) -> None:
        slot = (keyspace, str(scope))
        self._generations[slot] = self._generations.get(slot, 0) + 1

    def _enforce_max_size(self, keyspace: str, fresh_key: str) -> None:
        if sum(len(store) for store in self._stores.values()) <= self._max_entries:
            return
        for name, store in self._stores.items():
            # The entry just written is never a candidate.
            candidates = [item for item in store.items() if (name, item[0]) != (keyspace, fresh_key)]
            if not candidates:
                continue
            count = max(1, int(len(store) * EVICTION_FRACTION))
            oldest = sorted(candidates, key=_entry_age)[:count]
            for key, _entry in oldest:
                del store[key]
            self._evictions += len(oldest)
            logger.debug("Evicted %s oldest entries from the %s keyspace", len(oldest), name)


def _entry_age(item: Tuple[str, CacheEntry]) -> float:
    return item[1].timestamp


def _scope_of(key: str) -> str:
    return key.split(":", 1)[0]
