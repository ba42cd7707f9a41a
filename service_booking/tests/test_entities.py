"""
Unit tests for cache policies, key building and the warm plan loader.
"""

import json

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_booking.app.caching.entities import (
    DEFAULT_POLICIES,
    EntityType,
    build_cache_key,
    resolve_policies,
)
from service_booking.app.caching.warm_plan import DEFAULT_POPULAR_CATEGORIES, WarmPlanLoader


class TestCachePolicies:
    """Test cases for entity cache policies."""

    def test_every_entity_type_has_a_policy(self):
        assert set(DEFAULT_POLICIES) == set(EntityType)

    def test_default_ttls(self):
        assert DEFAULT_POLICIES[EntityType.CATEGORIES].ttl_seconds == 1800
        assert DEFAULT_POLICIES[EntityType.PRODUCT].ttl_seconds == 3600
        assert DEFAULT_POLICIES[EntityType.AVAILABILITY].ttl_seconds == 60

    def test_cache_control_header(self):
        policy = DEFAULT_POLICIES[EntityType.AVAILABILITY]
        assert policy.cache_control == "public, s-maxage=60, stale-while-revalidate=120"

    def test_overrides(self):
        policies = resolve_policies({"product": 600})
        assert policies[EntityType.PRODUCT].ttl_seconds == 600
        assert policies[EntityType.PRODUCT].stale_while_revalidate == 1200
        assert policies[EntityType.CATEGORIES] == DEFAULT_POLICIES[EntityType.CATEGORIES]

    def test_invalid_overrides(self):
        with pytest.raises(ValueError):
            resolve_policies({"product": 0})
        with pytest.raises(ValueError):
            resolve_policies({"bogus": 60})


class TestBuildCacheKey:
    """Test cases for build_cache_key."""

    def test_parts_only(self):
        assert build_cache_key("category", 5, "products", 100, 0) == "category:5:products:100:0"

    def test_params_are_sorted_and_none_dropped(self):
        key = build_cache_key("availability", "PWQF1Y", startTime="2025-01-01", endTime="2025-01-02", participants=None)
        assert key == "availability:PWQF1Y:endTime=2025-01-02&startTime=2025-01-01"

    def test_equal_params_give_equal_keys(self):
        first = build_cache_key("products", limit=100, offset=0)
        second = build_cache_key("products", offset=0, limit=100)
        assert first == second

    def test_booleans_are_lowercase(self):
        assert build_cache_key("categories", visibleOnly=True) == "categories:visibleOnly=true"


class TestWarmPlanLoader:
    """Test cases for WarmPlanLoader."""

    def test_defaults_without_file(self):
        assert WarmPlanLoader().popular_categories() == DEFAULT_POPULAR_CATEGORIES

    def test_reads_file(self, tmp_path):
        path = tmp_path / "plan.json"
        path.write_text(json.dumps({"popular_categories": [7, "8", 7, -1, "x"], "max_categories": 10}))

        assert WarmPlanLoader(path).popular_categories() == [7, 8]

    def test_limit(self, tmp_path):
        path = tmp_path / "plan.json"
        path.write_text(json.dumps({"popular_categories": [1, 2, 3, 4], "max_categories": 3}))

        loader = WarmPlanLoader(path)
        assert loader.popular_categories() == [1, 2, 3]
        assert loader.popular_categories(limit=2) == [1, 2]

    def test_malformed_file_falls_back(self, tmp_path):
        path = tmp_path / "plan.json"
        path.write_text("{not json")

        assert WarmPlanLoader(path, [9]).popular_categories() == [9]

    def test_refresh_rereads(self, tmp_path):
        path = tmp_path / "plan.json"
        path.write_text(json.dumps({"popular_categories": [1]}))
        loader = WarmPlanLoader(path)

        path.write_text(json.dumps({"popular_categories": [2, 3]}))
        loader.refresh()

        assert loader.popular_categories() == [2, 3]
