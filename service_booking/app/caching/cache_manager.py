"""
Read-through cache manager for catalog, availability and pickup lookups.
"""

import asyncio
import fnmatch
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    TYPE_CHECKING,
)

from pydantic_core import to_json

from shared.errors import BookingLayerException, UpstreamUnavailableError, ValidationError
from shared.logging import get_logger
from shared.tracing import trace_operation
from .entities import CachePolicy, EntityType, build_cache_key, resolve_policies
from .warm_plan import WarmPlanLoader

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_MAX_ENTRIES = 1000
DEFAULT_CATEGORY_PAGE_SIZE = 100
EVICTION_FRACTION = 0.1
MEMORY_WARNING_BYTES = 50 * 1024 * 1024


class CatalogFetcher(Protocol):
    """Upstream catalog calls used by cache warming."""

    async def fetch_categories(self, visible_only: bool = False) -> Any: ...

    async def fetch_category_products(
        self,
        category_id: int,
        limit: int = DEFAULT_CATEGORY_PAGE_SIZE,
        offset: int = 0,
    ) -> Any: ...


@dataclass
class CacheEntry:
    """A cached upstream value."""

    key: str
    entity_type: EntityType
    value: Any
    stored_at: float
    ttl_seconds: int
    access_count: int = 0
    last_accessed: float = 0.0

    def age(self, now: float) -> float:
        return max(0.0, now - self.stored_at)

    def is_fresh(self, now: float) -> bool:
        return now < self.stored_at + self.ttl_seconds


@dataclass(frozen=True)
class CacheLookup:
    """Result of a read-through lookup."""

    value: Any
    hit: bool
    key: str


def category_products_key(category_id: int, limit: int = DEFAULT_CATEGORY_PAGE_SIZE, offset: int = 0) -> str:
    return build_cache_key("category", category_id, "products", limit, offset)


def categories_key(visible_only: bool) -> str:
    return build_cache_key("categories", "visible" if visible_only else "all")


class CacheManager:
    """In-process read-through cache with per-entity TTL policy.

    Fetch functions are supplied by the caller; the manager only decides
    whether to call them and whether to keep their result.
    """

    def __init__(
        self,
        catalog_fetcher: Optional[CatalogFetcher] = None,
        *,
        metrics: Optional["MetricsCollector"] = None,
        ttl_overrides: Optional[Mapping[str, int]] = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        warm_plan: Optional[WarmPlanLoader] = None,
        warm_concurrency: int = 5,
        cleanup_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.catalog_fetcher = catalog_fetcher
        self.metrics = metrics
        self.policies: Dict[EntityType, CachePolicy] = resolve_policies(ttl_overrides)
        self.max_entries = max(1, max_entries)
        self.warm_plan = warm_plan or WarmPlanLoader()
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.clock = clock
        self.logger = get_logger("booking.cache_manager")

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._warm_semaphore = asyncio.Semaphore(max(1, warm_concurrency))
        self._cleanup_task: Optional[asyncio.Task] = None

        self._hits = 0
        self._misses = 0
        self._fetches = 0
        self._fetch_failures = 0
        self._fetch_latency_total = 0.0
        self._evictions = 0

    def policy(self, entity_type: EntityType) -> CachePolicy:
        return self.policies[EntityType(entity_type)]

    def get(self, entity_type: EntityType, key: str) -> Optional[Any]:
        """Return the cached value, or None on miss. Expired entries are evicted."""
        entity_type = EntityType(entity_type)
        now = self.clock()

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not entry.is_fresh(now):
                del self._entries[key]
                entry = None
            if entry is not None:
                entry.access_count += 1
                entry.last_accessed = now
                self._entries.move_to_end(key)
                self._hits += 1
            else:
                self._misses += 1
            size = len(self._entries)

        if entry is None:
            self.logger.debug("Cache miss", entity_type=entity_type.value, key=key)
            self._record_lookup(entity_type, hit=False, size=size)
            return None

        self._record_lookup(entity_type, hit=True, size=size)
        return entry.value

    def put(self, entity_type: EntityType, key: str, value: Any) -> None:
        """Store ``value`` under ``key`` with the entity type's TTL."""
        entity_type = EntityType(entity_type)
        if not isinstance(key, str) or not key.strip():
            raise ValidationError("Cache key must be a non-empty string", {"key": repr(key)})
        if value is None:
            raise ValidationError("Refusing to cache an empty value", {"key": key})

        now = self.clock()
        entry = CacheEntry(
            key=key,
            entity_type=entity_type,
            value=value,
            stored_at=now,
            ttl_seconds=self.policy(entity_type).ttl_seconds,
            last_accessed=now,
        )

        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_lru_locked()
            self._entries[key] = entry
            self._entries.move_to_end(key)
            size = len(self._entries)

        if self.metrics:
            self.metrics.set_gauge("cache_entries", size)

    async def get_or_fetch(
        self,
        entity_type: EntityType,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        timeout: Optional[float] = None,
    ) -> CacheLookup:
        """Serve from cache or await ``fetch`` and keep its result.

        Failures and timeouts raise ``UpstreamUnavailableError`` and leave the
        cache untouched. A ``None`` result means "not found upstream" and is
        returned as a miss without being cached.
        """
        entity_type = EntityType(entity_type)
        cached = self.get(entity_type, key)
        if cached is not None:
            return CacheLookup(value=cached, hit=True, key=key)

        value = await self._fetch(entity_type, key, fetch, timeout)
        if value is None:
            self.logger.debug("Upstream returned nothing; not caching", entity_type=entity_type.value, key=key)
            return CacheLookup(value=None, hit=False, key=key)

        self.put(entity_type, key, value)
        return CacheLookup(value=value, hit=False, key=key)

    async def refresh(
        self,
        entity_type: EntityType,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        timeout: Optional[float] = None,
    ) -> CacheLookup:
        """Bypass the cached value and replace it with a fresh fetch.

        A ``None`` result drops the existing entry; a failure keeps it.
        """
        entity_type = EntityType(entity_type)
        value = await self._fetch(entity_type, key, fetch, timeout)
        if value is None:
            with self._lock:
                self._entries.pop(key, None)
            return CacheLookup(value=None, hit=False, key=key)

        self.put(entity_type, key, value)
        return CacheLookup(value=value, hit=False, key=key)

    async def fetch_uncached(
        self,
        entity_type: EntityType,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        timeout: Optional[float] = None,
    ) -> Any:
        """Run ``fetch`` with the usual timeout and failure mapping; store nothing."""
        return await self._fetch(EntityType(entity_type), key, fetch, timeout)

    async def _fetch(
        self,
        entity_type: EntityType,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        timeout: Optional[float],
    ) -> Any:
        start = time.perf_counter()
        failed = True
        try:
            with trace_operation("cache.fetch", entity_type=entity_type.value, cache_key=key):
                if timeout is not None:
                    value = await asyncio.wait_for(fetch(), timeout)
                else:
                    value = await fetch()
            failed = False
            return value
        except asyncio.TimeoutError:
            self.logger.warning("Upstream fetch timed out", entity_type=entity_type.value, key=key, timeout=timeout)
            raise UpstreamUnavailableError(
                entity_type.value,
                "fetch timed out",
                {"key": key, "timeout_seconds": timeout},
            )
        except BookingLayerException:
            raise
        except Exception as exc:
            self.logger.error("Upstream fetch failed", entity_type=entity_type.value, key=key, error=str(exc))
            raise UpstreamUnavailableError(entity_type.value, str(exc) or type(exc).__name__, {"key": key}) from exc
        finally:
            duration = time.perf_counter() - start
            with self._lock:
                self._fetches += 1
                self._fetch_latency_total += duration
                if failed:
                    self._fetch_failures += 1
            if self.metrics:
                self.metrics.observe_histogram(
                    "cache_fetch_duration_seconds",
                    duration,
                    entity_type=entity_type.value,
                )

    def invalidate(self, pattern: str) -> int:
        """Remove keys matching ``pattern``.

        Patterns containing ``*``, ``?`` or ``[`` are shell globs; anything
        else is a key prefix (``"category:"`` drops every category entry).
        """
        is_glob = any(char in pattern for char in "*?[")

        def matches(key: str) -> bool:
            if is_glob:
                return fnmatch.fnmatchcase(key, pattern)
            return key.startswith(pattern)

        with self._lock:
            doomed = [key for key in self._entries if matches(key)]
            for key in doomed:
                del self._entries[key]
            size = len(self._entries)

        if self.metrics:
            self.metrics.set_gauge("cache_entries", size)
        self.logger.info("Cache invalidated", pattern=pattern, removed=len(doomed))
        return len(doomed)

    def clear(self) -> int:
        """Drop every entry and reset counters."""
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            self._hits = self._misses = 0
            self._fetches = self._fetch_failures = 0
            self._fetch_latency_total = 0.0
            self._evictions = 0

        if self.metrics:
            self.metrics.set_gauge("cache_entries", 0)
        self.logger.info("Cache cleared", removed=removed)
        return removed

    def sweep(self) -> int:
        """Remove expired entries; returns how many were dropped."""
        now = self.clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if not entry.is_fresh(now)]
            for key in expired:
                del self._entries[key]
            size = len(self._entries)

        if expired:
            self.logger.debug("Expired cache entries swept", removed=len(expired))
        if self.metrics:
            self.metrics.set_gauge("cache_entries", size)
        return len(expired)

    def _evict_lru_locked(self) -> None:
        count = max(1, int(self.max_entries * EVICTION_FRACTION))
        for _ in range(min(count, len(self._entries))):
            self._entries.popitem(last=False)
            self._evictions += 1
        self.logger.info("Evicted least recently used cache entries", evicted=count)

    async def start(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def shutdown(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                self.sweep()
            except Exception as exc:
                self.logger.error("Cache cleanup failed", error=str(exc))

    async def preload_category(self, category_id: int) -> Dict[str, Any]:
        """Warm the default product page of one category."""
        if isinstance(category_id, bool) or not isinstance(category_id, int) or category_id <= 0:
            raise ValidationError("Category id must be a positive integer", {"category_id": repr(category_id)})
        fetcher = self._require_fetcher()

        key = category_products_key(category_id)
        outcome = await self._warm_entry(
            EntityType.CATEGORY_PRODUCTS,
            key,
            lambda: fetcher.fetch_category_products(category_id, DEFAULT_CATEGORY_PAGE_SIZE, 0),
        )
        if outcome["result"] == "error":
            raise UpstreamUnavailableError(
                EntityType.CATEGORY_PRODUCTS.value,
                outcome["error"] or "warm failed",
                {"category_id": category_id, "key": key},
            )
        return {"category_id": category_id, **outcome}

    async def initialize_cache(self) -> Dict[str, Any]:
        """Warm category lists and the popular categories' product pages.

        Returns a summary describing plan size, warmed entries, misses and errors.
        """
        fetcher = self._require_fetcher()
        plan = self._build_warm_plan(fetcher)
        summary: Dict[str, Any] = {
            "planned": len(plan),
            "warmed": 0,
            "already_cached": 0,
            "misses": 0,
            "errors": [],
        }

        results = await asyncio.gather(
            *(self._warm_entry(entity_type, key, fetch) for entity_type, key, fetch in plan),
            return_exceptions=True,
        )

        for outcome in results:
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                summary["errors"].append(str(outcome))
                continue

            result = outcome["result"]
            if result == "warmed":
                summary["warmed"] += 1
            elif result == "already_cached":
                summary["already_cached"] += 1
            elif result == "miss":
                summary["misses"] += 1
            else:
                summary["errors"].append(f"{outcome['key']}: {outcome.get('error') or 'unknown error'}")

        self.logger.info(
            "Cache warm completed",
            planned=summary["planned"],
            warmed=summary["warmed"],
            already_cached=summary["already_cached"],
            misses=summary["misses"],
            errors=len(summary["errors"]),
        )
        return summary

    def _build_warm_plan(
        self,
        fetcher: CatalogFetcher,
    ) -> List[Tuple[EntityType, str, Callable[[], Awaitable[Any]]]]:
        plan: List[Tuple[EntityType, str, Callable[[], Awaitable[Any]]]] = [
            (EntityType.CATEGORIES, categories_key(True), lambda: fetcher.fetch_categories(visible_only=True)),
            (EntityType.CATEGORIES, categories_key(False), lambda: fetcher.fetch_categories(visible_only=False)),
        ]
        for category_id in self.warm_plan.popular_categories():
            plan.append((
                EntityType.CATEGORY_PRODUCTS,
                category_products_key(category_id),
                lambda category_id=category_id: fetcher.fetch_category_products(
                    category_id, DEFAULT_CATEGORY_PAGE_SIZE, 0
                ),
            ))
        return plan

    async def _warm_entry(
        self,
        entity_type: EntityType,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
    ) -> Dict[str, Any]:
        async with self._warm_semaphore:
            error: Optional[str] = None
            try:
                lookup = await self.get_or_fetch(entity_type, key, fetch)
                if lookup.hit:
                    result = "already_cached"
                elif lookup.value is None:
                    result = "miss"
                else:
                    result = "warmed"
            except BookingLayerException as exc:
                error = exc.message
                result = "error"
                self.logger.error("Failed to warm cache entry", entity_type=entity_type.value, key=key, error=error)

            if self.metrics:
                self.metrics.increment_counter("cache_warm_total", result=result)

            return {"key": key, "entity_type": entity_type.value, "result": result, "error": error}

    def _require_fetcher(self) -> CatalogFetcher:
        if self.catalog_fetcher is None:
            raise ValidationError("Cache warming requires a catalog fetcher")
        return self.catalog_fetcher

    def _snapshot(self) -> Tuple[List[CacheEntry], Dict[str, float]]:
        with self._lock:
            entries = list(self._entries.values())
            counters = {
                "hits": self._hits,
                "misses": self._misses,
                "fetches": self._fetches,
                "fetch_failures": self._fetch_failures,
                "fetch_latency_total": self._fetch_latency_total,
                "evictions": self._evictions,
            }
        return entries, counters

    @staticmethod
    def _memory_usage(entries: List[CacheEntry]) -> int:
        total = 0
        for entry in entries:
            total += len(entry.key)
            try:
                total += len(to_json(entry.value, fallback=str))
            except (TypeError, ValueError):
                continue
        return total

    def _freshness(self, entries: List[CacheEntry], now: float) -> Dict[str, int]:
        """Fresh below half the TTL, stale in the second half, expired past it."""
        counts = {"fresh": 0, "stale": 0, "expired": 0}
        for entry in entries:
            age = entry.age(now)
            if age >= entry.ttl_seconds:
                counts["expired"] += 1
            elif age >= entry.ttl_seconds / 2:
                counts["stale"] += 1
            else:
                counts["fresh"] += 1
        return counts

    def health_status(self) -> Dict[str, Any]:
        """Advisory health summary for operators."""
        now = self.clock()
        entries, counters = self._snapshot()
        total_requests = counters["hits"] + counters["misses"]
        hit_rate = counters["hits"] / total_requests if total_requests else None
        freshness = self._freshness(entries, now)
        memory_usage = self._memory_usage(entries)

        status = "healthy"
        recommendations: List[str] = []

        if hit_rate is not None:
            if hit_rate < 0.5:
                status = "critical"
                recommendations.append("Hit rate is low - consider cache warming or increasing TTL")
            elif hit_rate < 0.7:
                status = "warning"
                recommendations.append("Hit rate could be improved - consider cache optimization")

        if entries:
            stale_ratio = (freshness["stale"] + freshness["expired"]) / len(entries)
            if stale_ratio > 0.3:
                if status == "healthy":
                    status = "warning"
                recommendations.append("High ratio of stale/expired entries - consider background refresh")

        if memory_usage > MEMORY_WARNING_BYTES:
            if status == "healthy":
                status = "warning"
            recommendations.append("High memory usage - consider cache size limits")

        if not recommendations:
            recommendations.append("Cache is performing well")

        oldest_age = max((entry.age(now) for entry in entries), default=None)
        return {
            "status": status,
            "entry_count": len(entries),
            "hit_rate": hit_rate,
            "oldest_entry_age_seconds": oldest_age,
            "freshness": freshness,
            "memory_usage_bytes": memory_usage,
            "recommendations": recommendations,
        }

    def performance_metrics(self) -> Dict[str, Any]:
        now = self.clock()
        entries, counters = self._snapshot()
        total_requests = counters["hits"] + counters["misses"]
        hit_rate = counters["hits"] / total_requests if total_requests else 0.0
        avg_latency_ms = (
            counters["fetch_latency_total"] / counters["fetches"] * 1000 if counters["fetches"] else 0.0
        )
        if entries:
            data_freshness = sum(
                max(0.0, 1 - entry.age(now) / entry.ttl_seconds) for entry in entries
            ) / len(entries)
        else:
            data_freshness = 1.0

        return {
            "hits": counters["hits"],
            "misses": counters["misses"],
            "hit_rate": hit_rate,
            "miss_rate": (1 - hit_rate) if total_requests else 0.0,
            "total_requests": total_requests,
            "fetches": counters["fetches"],
            "fetch_failures": counters["fetch_failures"],
            "avg_fetch_latency_ms": round(avg_latency_ms, 3),
            "evictions": counters["evictions"],
            "cache_size": len(entries),
            "memory_usage_bytes": self._memory_usage(entries),
            "data_freshness": round(data_freshness, 4),
        }

    def _record_lookup(self, entity_type: EntityType, hit: bool, size: int) -> None:
        if not self.metrics:
            return
        metric = "cache_hits_total" if hit else "cache_misses_total"
        self.metrics.increment_counter(metric, entity_type=entity_type.value)
        self.metrics.set_gauge("cache_entries", size)
