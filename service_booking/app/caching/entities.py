"""
Cached entity types, their TTL policy and cache key canonicalization.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class EntityType(str, Enum):
    """Upstream entity types held by the read-through cache."""
    CATEGORIES = "categories"
    CATEGORY_PRODUCTS = "category_products"
    PRODUCTS = "products"
    PRODUCT = "product"
    AVAILABILITY = "availability"
    PICKUPS = "pickups"


@dataclass(frozen=True)
class CachePolicy:
    """TTL and HTTP caching policy for one entity type."""

    key_prefix: str
    ttl_seconds: int
    stale_while_revalidate: int

    @property
    def cache_control(self) -> str:
        return (
            f"public, s-maxage={self.ttl_seconds}, "
            f"stale-while-revalidate={self.stale_while_revalidate}"
        )


DEFAULT_POLICIES: Dict[EntityType, CachePolicy] = {
    EntityType.CATEGORIES: CachePolicy("categories", 1800, 3600),
    EntityType.CATEGORY_PRODUCTS: CachePolicy("category", 1800, 3600),
    EntityType.PRODUCTS: CachePolicy("products", 1800, 3600),
    EntityType.PRODUCT: CachePolicy("tour", 3600, 7200),
    EntityType.AVAILABILITY: CachePolicy("availability", 60, 120),
    EntityType.PICKUPS: CachePolicy("pickups", 1800, 3600),
}


def resolve_policies(overrides: Optional[Mapping[str, int]] = None) -> Dict[EntityType, CachePolicy]:
    """Apply per-entity TTL overrides (keyed by entity type value) to the defaults.

    Stale-while-revalidate stays at twice the TTL when a TTL is overridden.
    """
    policies = dict(DEFAULT_POLICIES)
    for name, ttl in (overrides or {}).items():
        entity_type = EntityType(name)
        ttl = int(ttl)
        if ttl <= 0:
            raise ValueError(f"TTL override for {name} must be positive")
        policies[entity_type] = replace(policies[entity_type], ttl_seconds=ttl, stale_while_revalidate=ttl * 2)
    return policies


def _format_param(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_cache_key(prefix: str, *parts: Any, **params: Any) -> str:
    """Join prefix and parts with ':' and append sorted ``name=value`` params.

    ``build_cache_key("availability", "PWQF1Y", startTime="2025-01-01")`` gives
    ``availability:PWQF1Y:startTime=2025-01-01``. ``None`` params are dropped.
    """
    segments = [prefix] + [_format_param(part) for part in parts]
    query = "&".join(
        f"{name}={_format_param(value)}"
        for name, value in sorted(params.items())
        if value is not None
    )
    if query:
        segments.append(query)
    return ":".join(segments)
