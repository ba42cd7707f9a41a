"""
Pickup resolution chain: local index, then a single-product upstream call,
then an explicit empty result.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

from shared.errors import BookingLayerException, ValidationError
from shared.logging import get_logger
from ..caching.cache_manager import CacheManager
from ..caching.entities import EntityType, build_cache_key
from ..models import PickupAccuracy, PickupLocation, PickupSource
from .index import PickupIndex

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


PRODUCT_CODE_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

PickupFetcher = Callable[[str], Awaitable[List[PickupLocation]]]


@dataclass
class PickupResolution:
    """Terminal state of one pickup lookup."""

    product_code: str
    source: PickupSource
    accuracy: PickupAccuracy
    pickups: List[PickupLocation] = field(default_factory=list)
    location_mappings: List[str] = field(default_factory=list)
    last_accessed: Optional[str] = None
    access_count: Optional[int] = None
    note: Optional[str] = None
    message: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "productCode": self.product_code,
            "pickups": [pickup.model_dump(by_alias=True, exclude_none=True) for pickup in self.pickups],
            "locationMappings": self.location_mappings,
            "source": self.source.value,
            "accuracy": self.accuracy.value,
        }
        if self.source == PickupSource.LOCAL_FILES:
            body["lastAccessed"] = self.last_accessed
            body["accessCount"] = self.access_count
        if self.note:
            body["note"] = self.note
        if self.message:
            body["message"] = self.message
        return body


def validate_product_code(product_code: Any) -> str:
    if not isinstance(product_code, str) or not PRODUCT_CODE_PATTERN.match(product_code):
        raise ValidationError("Invalid product code", {"product_code": repr(product_code)})
    return product_code


class PickupResolver:
    """Resolve pickups for a product without ever failing the request."""

    def __init__(
        self,
        index: PickupIndex,
        cache_manager: CacheManager,
        fetch_pickups: PickupFetcher,
        *,
        timeout: Optional[float] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.index = index
        self.cache_manager = cache_manager
        self.fetch_pickups = fetch_pickups
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("booking.pickup_resolver")

    async def resolve(self, product_code: str) -> PickupResolution:
        product_code = validate_product_code(product_code)

        indexed = self.index.lookup(product_code)
        if indexed is not None and indexed.has_pickup_data:
            touched = self.index.record_access(product_code) or indexed
            self._record(PickupSource.LOCAL_FILES)
            return PickupResolution(
                product_code=product_code,
                source=PickupSource.LOCAL_FILES,
                accuracy=PickupAccuracy.HIGH,
                pickups=touched.pickups,
                location_mappings=touched.location_mappings,
                last_accessed=touched.last_accessed,
                access_count=touched.access_count,
            )

        pickups = await self._fetch_upstream(product_code)
        if pickups:
            self._record(PickupSource.REZDY_API)
            return PickupResolution(
                product_code=product_code,
                source=PickupSource.REZDY_API,
                accuracy=PickupAccuracy.HIGH,
                pickups=pickups,
                note="Fetched from Rezdy API - consider adding to local data files",
            )

        self._record(PickupSource.NONE)
        return PickupResolution(
            product_code=product_code,
            source=PickupSource.NONE,
            accuracy=PickupAccuracy.LOW,
            message="No pickup data available for this product",
        )

    async def _fetch_upstream(self, product_code: str) -> List[PickupLocation]:
        # never cached: an index miss asks upstream on every request
        try:
            pickups = await self.cache_manager.fetch_uncached(
                EntityType.PICKUPS,
                build_cache_key("pickups", product_code),
                lambda: self.fetch_pickups(product_code),
                timeout=self.timeout,
            )
        except BookingLayerException as exc:
            self.logger.warning(
                "Upstream pickup lookup failed; resolving to no data",
                product_code=product_code,
                code=exc.code,
                error=exc.message,
            )
            return []
        return list(pickups or [])

    def _record(self, source: PickupSource) -> None:
        self.logger.debug("Pickup resolution", source=source.value)
        if self.metrics:
            self.metrics.increment_counter("pickup_resolutions_total", source=source.value)
