"""
Local pickup index built from the pickup data files.

The index is rebuilt off to the side and swapped in whole, so readers see
either the previous snapshot or the new one.
"""

import json
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from shared.logging import get_logger
from ..models import PickupLocation


SUPPORTED_LOCATIONS = ["Brisbane", "Gold Coast", "Brisbane Loop"]

# keyword (lower case) -> service region
LOCATION_MAPPINGS: Dict[str, str] = {
    "brisbane marriott": "Brisbane",
    "marriott": "Brisbane",
    "howard st": "Brisbane",
    "royal on the park": "Brisbane",
    "alice st": "Brisbane",
    "alice street": "Brisbane",
    "emporium southbank": "Brisbane",
    "grey st": "Brisbane",
    "grey street": "Brisbane",

    "sheraton grand mirage": "Gold Coast",
    "sheraton": "Gold Coast",
    "seaworld dr": "Gold Coast",
    "main beach": "Gold Coast",
    "star casino": "Gold Coast",
    "the star casino": "Gold Coast",
    "star gold coast": "Gold Coast",
    "casino dr": "Gold Coast",
    "broadbeach": "Gold Coast",
    "voco gold coast": "Gold Coast",
    "voco": "Gold Coast",
    "hamilton ave": "Gold Coast",
    "surfers paradise": "Gold Coast",

    "southbank": "Brisbane Loop",
    "grey st south brisbane": "Brisbane Loop",
    "petrie terrace": "Brisbane Loop",
    "sexton st": "Brisbane Loop",
    "roma st": "Brisbane Loop",
    "windmill cafe": "Brisbane Loop",
    "anzac square": "Brisbane Loop",
    "ann st": "Brisbane Loop",
    "ann street": "Brisbane Loop",
    "howard smith wharves": "Brisbane Loop",
    "boundary st": "Brisbane Loop",
    "boundary street": "Brisbane Loop",
    "kangaroo point": "Brisbane Loop",
    "river terrace": "Brisbane Loop",
    "kangaroo point cliffs": "Brisbane Loop",
}


def normalize_location_name(location: Optional[str]) -> Optional[str]:
    """Map free text to a supported region, or None when nothing matches."""
    if not location or not location.strip():
        return None

    trimmed = location.strip()
    if trimmed in SUPPORTED_LOCATIONS:
        return trimmed

    lower = trimmed.lower()
    for keyword, region in LOCATION_MAPPINGS.items():
        if keyword in lower:
            return region

    for region in SUPPORTED_LOCATIONS:
        if region.lower() in lower:
            return region
    return None


def _address_text(address: Union[str, Dict[str, Any], None]) -> str:
    if isinstance(address, dict):
        return " ".join(str(value) for value in address.values() if value)
    return address or ""


def extract_location_mappings(pickups: List[PickupLocation]) -> List[str]:
    """Regions served by a product, in first-seen order."""
    regions: List[str] = []
    for pickup in pickups:
        search_text = " ".join([
            pickup.location_name or "",
            _address_text(pickup.address),
            pickup.additional_instructions or "",
        ]).lower()
        for keyword, region in LOCATION_MAPPINGS.items():
            if keyword in search_text and region not in regions:
                regions.append(region)
    return regions


@dataclass
class IndexedPickupData:
    """Pickup data for one product."""

    product_code: str
    pickups: List[PickupLocation]
    location_mappings: List[str]
    has_pickup_data: bool
    last_accessed: Optional[str] = None
    access_count: int = 0


@dataclass
class IndexSnapshot:
    products: Dict[str, IndexedPickupData] = field(default_factory=dict)
    location_index: Dict[str, List[str]] = field(default_factory=dict)
    products_with_pickups: int = 0
    last_updated: Optional[str] = None

    @property
    def total_products(self) -> int:
        return len(self.products)


class PickupIndex:
    """In-memory index over ``<data_dir>/*.json`` pickup files."""

    def __init__(self, data_dir: Union[str, Path], *, clock: Callable[[], float] = time.time):
        self.data_dir = Path(data_dir)
        self.clock = clock
        self.logger = get_logger("booking.pickup_index")
        self._lock = threading.Lock()
        self._snapshot: Optional[IndexSnapshot] = None

    @property
    def is_built(self) -> bool:
        return self._snapshot is not None

    def _now_iso(self) -> str:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc).isoformat()

    def refresh_index(self) -> Dict[str, Any]:
        """Rebuild from disk and swap the snapshot in atomically."""
        started = time.perf_counter()
        snapshot = self._build()

        with self._lock:
            self._snapshot = snapshot

        self.logger.info(
            "Pickup index built",
            total_products=snapshot.total_products,
            products_with_pickups=snapshot.products_with_pickups,
            locations=sorted(snapshot.location_index),
            build_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return {
            "total_products": snapshot.total_products,
            "products_with_pickups": snapshot.products_with_pickups,
            "last_updated": snapshot.last_updated,
        }

    def _build(self) -> IndexSnapshot:
        snapshot = IndexSnapshot(last_updated=self._now_iso())
        if not self.data_dir.is_dir():
            self.logger.warning("Pickup data directory not found", path=str(self.data_dir))
            return snapshot

        for path in sorted(self.data_dir.glob("*.json")):
            try:
                entry = self._load_file(path)
            except (OSError, ValueError, TypeError, KeyError, PydanticValidationError) as exc:
                self.logger.warning("Skipping unreadable pickup file", file=path.name, error=str(exc))
                continue

            snapshot.products[entry.product_code] = entry
            if entry.has_pickup_data:
                snapshot.products_with_pickups += 1
            for region in entry.location_mappings:
                snapshot.location_index.setdefault(region, []).append(entry.product_code)

        return snapshot

    @staticmethod
    def _load_file(path: Path) -> IndexedPickupData:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            raise ValueError("pickup file must contain an object")

        product_code = data.get("productCode") or path.stem
        raw_pickups = data.get("pickups") or []
        if not isinstance(raw_pickups, list):
            raise ValueError("pickups must be a list")

        pickups = [PickupLocation.from_upstream(item) for item in raw_pickups]
        return IndexedPickupData(
            product_code=str(product_code),
            pickups=pickups,
            location_mappings=extract_location_mappings(pickups),
            has_pickup_data=bool(pickups),
            last_accessed=data.get("lastAccessed"),
            access_count=int(data.get("accessCount") or 0),
        )

    def lookup(self, product_code: str) -> Optional[IndexedPickupData]:
        """Return a copy of the indexed entry without touching usage telemetry."""
        with self._lock:
            snapshot = self._snapshot
            entry = snapshot.products.get(product_code) if snapshot else None
            return replace(entry, pickups=list(entry.pickups)) if entry else None

    def record_access(self, product_code: str) -> Optional[IndexedPickupData]:
        """Bump ``last_accessed`` and ``access_count``; returns the updated copy."""
        with self._lock:
            snapshot = self._snapshot
            entry = snapshot.products.get(product_code) if snapshot else None
            if entry is None:
                return None
            entry.last_accessed = self._now_iso()
            entry.access_count += 1
            return replace(entry, pickups=list(entry.pickups))

    def products_for_location(self, location: str) -> List[str]:
        region = normalize_location_name(location)
        if region is None:
            return []
        with self._lock:
            snapshot = self._snapshot
            return list(snapshot.location_index.get(region, [])) if snapshot else []

    def filter_product_codes(self, product_codes: List[str], location: Optional[str]) -> Dict[str, Any]:
        """Keep the codes that have a pickup in ``location``'s region."""
        if not location or location == "all":
            return {
                "filtered_products": list(product_codes),
                "stats": {
                    "total_products": len(product_codes),
                    "filtered_count": len(product_codes),
                    "has_local_data": 0,
                    "location": "all",
                },
            }

        region = normalize_location_name(location)
        if region is None:
            return {
                "filtered_products": [],
                "stats": {
                    "total_products": len(product_codes),
                    "filtered_count": 0,
                    "has_local_data": 0,
                    "location": location,
                },
            }

        with self._lock:
            snapshot = self._snapshot or IndexSnapshot()
            valid = set(snapshot.location_index.get(region, []))
            filtered = [code for code in product_codes if code in valid]
            has_local_data = sum(1 for code in filtered if code in snapshot.products)

        return {
            "filtered_products": filtered,
            "stats": {
                "total_products": len(product_codes),
                "filtered_count": len(filtered),
                "has_local_data": has_local_data,
                "location": region,
            },
        }

    def location_stats(self) -> Dict[str, Any]:
        with self._lock:
            snapshot = self._snapshot or IndexSnapshot()
            location_counts = {
                region: len(snapshot.location_index.get(region, []))
                for region in SUPPORTED_LOCATIONS
            }
            total = snapshot.total_products
            with_pickups = snapshot.products_with_pickups

        return {
            "total_products": total,
            "products_with_pickups": with_pickups,
            "location_counts": location_counts,
            "coverage": (with_pickups / total * 100) if total else 0.0,
        }

    def index_metadata(self) -> Dict[str, Any]:
        with self._lock:
            snapshot = self._snapshot

        if snapshot is None:
            return {
                "is_built": False,
                "last_updated": None,
                "total_products": 0,
                "products_with_pickups": 0,
                "available_locations": [],
            }
        return {
            "is_built": True,
            "last_updated": snapshot.last_updated,
            "total_products": snapshot.total_products,
            "products_with_pickups": snapshot.products_with_pickups,
            "available_locations": sorted(snapshot.location_index),
        }
