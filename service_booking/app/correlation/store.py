"""
Booking correlation store.

Keeps a booking submission keyed by order number across the payment redirect
and webhook round trips. Two backends share one interface: an in-process map
with a periodic sweep, and Redis with native key expiry for deployments that
run more than one instance.
"""

import asyncio
import copy
import json
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

import redis.asyncio as redis

from shared.errors import ConfigurationMissingError, ValidationError
from shared.logging import get_logger
from .order_keys import is_valid_order_key, normalize_order_number, order_number_variations

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_BOOKING_TTL = 3600
DEFAULT_SWEEP_INTERVAL = 600.0


@dataclass
class CorrelationEntry:
    """A stored booking submission and every key it is stored under."""

    order_key: str
    payload: Dict[str, Any]
    created_at: float
    expires_at: float
    aliases: List[str] = field(default_factory=list)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_json(self) -> str:
        return json.dumps({
            "order_key": self.order_key,
            "payload": self.payload,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "aliases": self.aliases,
        })

    @classmethod
    def from_json(cls, raw: str) -> "CorrelationEntry":
        data = json.loads(raw)
        return cls(
            order_key=data["order_key"],
            payload=data["payload"],
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            aliases=list(data.get("aliases") or [data["order_key"]]),
        )


class CorrelationStore(ABC):
    """Order key -> booking payload with a fixed time-to-live."""

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_BOOKING_TTL,
        *,
        clock: Callable[[], float] = time.time,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("booking.correlation_store")

    @abstractmethod
    async def store(self, order_key: str, payload: Dict[str, Any]) -> None:
        """Store a payload under the normalized key, the raw key and any earlier aliases."""

    @abstractmethod
    async def retrieve(self, order_key: str) -> Optional[Dict[str, Any]]:
        """Return the payload, or None when unknown or expired."""

    @abstractmethod
    async def remove(self, order_key: str) -> None:
        """Remove every key of the entry found under the raw or normalized key. Idempotent."""

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        """Operational counters over distinct entries; never used for correctness."""

    async def start(self) -> None:
        return None

    async def shutdown(self) -> None:
        return None

    async def retrieve_with_fallbacks(self, order_key: str) -> Optional[Dict[str, Any]]:
        """Try the exact key, then each order number variation in priority order."""
        found = await self.locate_with_fallbacks(order_key)
        return found[1] if found else None

    async def locate_with_fallbacks(self, order_key: str) -> Optional[Tuple[str, Dict[str, Any]]]:
        """Like ``retrieve_with_fallbacks`` but also return the key that matched."""
        if not is_valid_order_key(order_key):
            return None

        payload = await self.retrieve(order_key)
        if payload is not None:
            return order_key, payload

        for variation in order_number_variations(order_key):
            if variation == order_key:
                continue
            payload = await self.retrieve(variation)
            if payload is not None:
                self.logger.info(
                    "Booking found using order number variation",
                    order_number=order_key,
                    variation=variation,
                )
                self._record("retrieve_fallback", "hit")
                return variation, payload

        self.logger.info("No booking found for any order number variation", order_number=order_key)
        self._record("retrieve_fallback", "miss")
        return None

    @staticmethod
    def _aliases_for(
        order_key: str,
        normalized: str,
        previous: Optional[CorrelationEntry],
        now: float,
    ) -> List[str]:
        aliases = [normalized]
        if previous is not None and not previous.is_expired(now):
            aliases.extend(previous.aliases)
        aliases.append(order_key)
        return list(dict.fromkeys(aliases))

    def _record(self, operation: str, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter(
                "correlation_store_operations_total",
                operation=operation,
                result=result,
            )

    @staticmethod
    def _require_valid_key(order_key: Any) -> None:
        if not is_valid_order_key(order_key):
            raise ValidationError("Order number must be a non-empty string", {"order_number": repr(order_key)})


class InMemoryCorrelationStore(CorrelationStore):
    """Process-local correlation store with lookup-time expiry and a periodic sweep."""

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_BOOKING_TTL,
        *,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.time,
        metrics: Optional["MetricsCollector"] = None,
    ):
        super().__init__(ttl_seconds, clock=clock, metrics=metrics)
        self.sweep_interval_seconds = sweep_interval_seconds
        self._entries: Dict[str, CorrelationEntry] = {}
        self._lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    async def store(self, order_key: str, payload: Dict[str, Any]) -> None:
        self._require_valid_key(order_key)

        now = self.clock()
        normalized = normalize_order_number(order_key)
        entry = CorrelationEntry(
            order_key=normalized,
            payload=copy.deepcopy(payload),
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )

        with self._lock:
            entry.aliases = self._aliases_for(order_key, normalized, self._entries.get(normalized), now)
            for alias in entry.aliases:
                self._entries[alias] = entry

        self.logger.info(
            "Stored booking data",
            order_number=order_key,
            normalized=normalized,
            expires_at=entry.expires_at,
        )
        self._record("store", "ok")

    async def retrieve(self, order_key: str) -> Optional[Dict[str, Any]]:
        if not is_valid_order_key(order_key):
            return None

        now = self.clock()
        with self._lock:
            entry = self._entries.get(order_key)
            if entry is not None and entry.is_expired(now):
                del self._entries[order_key]
                entry = None
                expired = True
            else:
                expired = False

        if entry is None:
            self.logger.debug("Booking data not found", order_number=order_key, expired=expired)
            self._record("retrieve", "miss")
            return None

        self._record("retrieve", "hit")
        return copy.deepcopy(entry.payload)

    async def remove(self, order_key: str) -> None:
        if not is_valid_order_key(order_key):
            return

        keys = {order_key, normalize_order_number(order_key)}
        with self._lock:
            for key in list(keys):
                entry = self._entries.get(key)
                if entry is not None:
                    keys.update(entry.aliases)
            removed = [key for key in keys if self._entries.pop(key, None) is not None]

        if removed:
            self.logger.info("Removed booking data", order_number=order_key, keys=sorted(removed))
        self._record("remove", "ok")

    async def stats(self) -> Dict[str, Any]:
        now = self.clock()
        with self._lock:
            entries = list({id(entry): entry for entry in self._entries.values()}.values())

        expired = sum(1 for entry in entries if entry.is_expired(now))
        oldest = min((entry.created_at for entry in entries), default=None)
        return {
            "total_entries": len(entries),
            "expired_entries": expired,
            "oldest_entry_timestamp": oldest,
        }

    def sweep(self) -> int:
        """Drop expired entries; returns how many keys were removed."""
        now = self.clock()
        with self._lock:
            expired_keys = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired_keys:
                del self._entries[key]

        if expired_keys:
            self.logger.info("Swept expired booking data", removed=len(expired_keys))
        return len(expired_keys)

    async def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            self.logger.info("Correlation store sweep started", interval_seconds=self.sweep_interval_seconds)

    async def shutdown(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
            self.logger.info("Correlation store sweep stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception as exc:
                self.logger.error("Correlation store sweep failed", error=str(exc))


class RedisCorrelationStore(CorrelationStore):
    """Correlation store shared across instances through Redis native expiry."""

    KEY_PREFIX = "booking:"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        ttl_seconds: int = DEFAULT_BOOKING_TTL,
        *,
        client: Optional[redis.Redis] = None,
        clock: Callable[[], float] = time.time,
        metrics: Optional["MetricsCollector"] = None,
    ):
        super().__init__(ttl_seconds, clock=clock, metrics=metrics)
        self.redis_url = redis_url
        self.redis: Optional[redis.Redis] = client

    async def start(self) -> None:
        if self.redis is not None:
            return
        if not self.redis_url:
            raise ConfigurationMissingError("redis_url", "Redis URL is required for the redis correlation backend")

        self.redis = redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            health_check_interval=30,
        )
        self.logger.info("Redis correlation store started")

    async def shutdown(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis correlation store stopped")

    def _client(self) -> redis.Redis:
        if self.redis is None:
            raise ConfigurationMissingError("redis_url", "Redis correlation store is not started")
        return self.redis

    def _key(self, order_key: str) -> str:
        return f"{self.KEY_PREFIX}{order_key}"

    async def store(self, order_key: str, payload: Dict[str, Any]) -> None:
        self._require_valid_key(order_key)

        client = self._client()
        now = self.clock()
        normalized = normalize_order_number(order_key)
        previous = await self._load(client, self._key(normalized))
        entry = CorrelationEntry(
            order_key=normalized,
            payload=payload,
            created_at=now,
            expires_at=now + self.ttl_seconds,
            aliases=self._aliases_for(order_key, normalized, previous, now),
        )
        raw = entry.to_json()

        for alias in entry.aliases:
            await client.set(self._key(alias), raw, ex=self.ttl_seconds)

        self.logger.info("Stored booking data", order_number=order_key, normalized=normalized, backend="redis")
        self._record("store", "ok")

    async def retrieve(self, order_key: str) -> Optional[Dict[str, Any]]:
        if not is_valid_order_key(order_key):
            return None

        raw = await self._client().get(self._key(order_key))
        if raw is None:
            self._record("retrieve", "miss")
            return None

        try:
            entry = CorrelationEntry.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            self.logger.warning("Discarding undecodable booking record", order_number=order_key, error=str(exc))
            self._record("retrieve", "miss")
            return None

        if entry.is_expired(self.clock()):
            self._record("retrieve", "miss")
            return None

        self._record("retrieve", "hit")
        return entry.payload

    async def remove(self, order_key: str) -> None:
        if not is_valid_order_key(order_key):
            return

        client = self._client()
        keys = {self._key(order_key), self._key(normalize_order_number(order_key))}
        for key in list(keys):
            entry = await self._load(client, key)
            if entry is not None:
                keys.update(self._key(alias) for alias in entry.aliases)
        await client.delete(*sorted(keys))
        self._record("remove", "ok")

    async def stats(self) -> Dict[str, Any]:
        client = self._client()
        now = self.clock()
        entries: Dict[str, CorrelationEntry] = {}

        async for key in client.scan_iter(match=f"{self.KEY_PREFIX}*"):
            entry = await self._load(client, key)
            if entry is not None:
                entries[entry.order_key] = entry

        expired = sum(1 for entry in entries.values() if entry.is_expired(now))
        oldest = min((entry.created_at for entry in entries.values()), default=None)
        return {
            "total_entries": len(entries),
            "expired_entries": expired,
            "oldest_entry_timestamp": oldest,
        }

    async def ping(self) -> bool:
        return bool(await self._client().ping())

    @staticmethod
    async def _load(client: redis.Redis, key: str) -> Optional[CorrelationEntry]:
        raw = await client.get(key)
        if raw is None:
            return None
        try:
            return CorrelationEntry.from_json(raw)
        except (ValueError, KeyError, TypeError):
            return None


def create_correlation_store(
    backend: str,
    *,
    redis_url: Optional[str] = None,
    ttl_seconds: int = DEFAULT_BOOKING_TTL,
    sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL,
    metrics: Optional["MetricsCollector"] = None,
) -> CorrelationStore:
    """Build the configured correlation store backend."""
    if backend == "redis":
        return RedisCorrelationStore(redis_url, ttl_seconds, metrics=metrics)
    if backend == "memory":
        return InMemoryCorrelationStore(
            ttl_seconds,
            sweep_interval_seconds=sweep_interval_seconds,
            metrics=metrics,
        )
    raise ValidationError(f"Unknown correlation backend: {backend}", {"backend": backend})
