"""
Unit tests for the booking correlation stores.
"""

import asyncio
import json

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_booking.app.correlation.store import (
    InMemoryCorrelationStore,
    RedisCorrelationStore,
    create_correlation_store,
)
from shared.errors import ConfigurationMissingError, ValidationError


BOOKING = {
    "product": {"code": "PWQF1Y", "name": "Hop on Hop off"},
    "contact": {"firstName": "Ada", "lastName": "Lovelace", "email": "ada@example.com"},
    "pricing": {"total": 120.0},
}


class TestInMemoryCorrelationStore:
    """Test cases for InMemoryCorrelationStore."""

    @pytest.fixture
    def store(self, clock, metrics):
        return InMemoryCorrelationStore(3600, clock=clock, metrics=metrics)

    @pytest.mark.asyncio
    async def test_store_then_retrieve(self, store):
        await store.store("ORD-1", BOOKING)
        assert await store.retrieve("ORD-1") == BOOKING

    @pytest.mark.asyncio
    async def test_raw_and_normalized_keys_both_resolve(self, store):
        await store.store("ORDER-77", BOOKING)
        assert await store.retrieve("ORDER-77") == BOOKING
        assert await store.retrieve("ORD-77") == BOOKING

    @pytest.mark.asyncio
    async def test_returned_payload_is_a_copy(self, store):
        payload = {"pricing": {"total": 10}}
        await store.store("ORD-2", payload)
        payload["pricing"]["total"] = 999

        first = await store.retrieve("ORD-2")
        first["pricing"]["total"] = 0
        assert (await store.retrieve("ORD-2"))["pricing"]["total"] == 10

    @pytest.mark.asyncio
    async def test_expires_at_exact_ttl(self, store, clock):
        await store.store("ORD-3", BOOKING)
        clock.advance(3599)
        assert await store.retrieve("ORD-3") == BOOKING
        clock.advance(1)
        assert await store.retrieve("ORD-3") is None

    @pytest.mark.asyncio
    async def test_overwrite_resets_expiry(self, store, clock):
        await store.store("ORD-4", {"v": 1})
        clock.advance(3000)
        await store.store("ORD-4", {"v": 2})
        clock.advance(3000)
        assert await store.retrieve("ORD-4") == {"v": 2}

    @pytest.mark.asyncio
    async def test_remove_clears_raw_and_normalized(self, store):
        await store.store("REF-5", BOOKING)
        await store.remove("REF-5")
        assert await store.retrieve("REF-5") is None
        assert await store.retrieve("ORD-5") is None

    @pytest.mark.asyncio
    async def test_remove_by_normalized_key_drops_raw_alias(self, store):
        await store.store("1001", BOOKING)
        await store.remove("ORD-1001")
        assert await store.retrieve("1001") is None
        assert await store.retrieve_with_fallbacks("1001") is None

    @pytest.mark.asyncio
    async def test_restore_keeps_every_alias(self, store):
        await store.store("1002", {"v": 1})
        await store.store("ORDER-1002", {"v": 2})

        assert await store.retrieve("1002") == {"v": 2}
        assert (await store.stats())["total_entries"] == 1

        await store.remove("ORDER-1002")
        for key in ("1002", "ORD-1002", "ORDER-1002"):
            assert await store.retrieve(key) is None

    @pytest.mark.asyncio
    async def test_locate_reports_matched_key(self, store):
        await store.store("ORD-1003", BOOKING)
        assert await store.locate_with_fallbacks("1003") == ("ORD-1003", BOOKING)
        assert await store.locate_with_fallbacks("ORD-404") is None

    @pytest.mark.asyncio
    async def test_remove_is_idempotent(self, store):
        await store.remove("ORD-missing")
        await store.remove("ORD-missing")

    @pytest.mark.asyncio
    async def test_invalid_key_rejected_on_store(self, store):
        with pytest.raises(ValidationError):
            await store.store("   ", BOOKING)

    @pytest.mark.asyncio
    async def test_invalid_key_is_a_miss_on_retrieve(self, store):
        assert await store.retrieve("") is None
        assert await store.retrieve_with_fallbacks("") is None

    @pytest.mark.asyncio
    async def test_fallbacks_find_reformatted_order_number(self, store, metrics):
        await store.store("ORD-1700000000000", BOOKING)

        assert await store.retrieve_with_fallbacks("1700000000000") == BOOKING
        assert await store.retrieve_with_fallbacks("order-1700000000000") == BOOKING
        assert await store.retrieve_with_fallbacks("ORD%2D1700000000000") == BOOKING
        assert metrics.count("correlation_store_operations_total", operation="retrieve_fallback", result="hit") == 3

    @pytest.mark.asyncio
    async def test_fallbacks_miss_when_absent(self, store, metrics):
        assert await store.retrieve_with_fallbacks("ORD-404") is None
        assert metrics.count("correlation_store_operations_total", operation="retrieve_fallback", result="miss") == 1

    @pytest.mark.asyncio
    async def test_sweep_and_stats(self, store, clock):
        await store.store("ORDER-6", BOOKING)
        await store.store("ORD-7", BOOKING)

        stats = await store.stats()
        assert stats["total_entries"] == 2
        assert stats["expired_entries"] == 0
        assert stats["oldest_entry_timestamp"] == clock()

        clock.advance(3600)
        assert (await store.stats())["expired_entries"] == 2
        assert store.sweep() == 3
        assert (await store.stats())["total_entries"] == 0

    @pytest.mark.asyncio
    async def test_start_and_shutdown_sweep_task(self, clock):
        store = InMemoryCorrelationStore(1, sweep_interval_seconds=0.01, clock=clock)
        await store.store("ORD-8", BOOKING)
        clock.advance(5)

        await store.start()
        await asyncio.sleep(0.05)
        await store.shutdown()

        assert (await store.stats())["total_entries"] == 0


class TestRedisCorrelationStore:
    """Test cases for RedisCorrelationStore."""

    @pytest.fixture
    def store(self, fake_redis, clock, metrics):
        return RedisCorrelationStore(ttl_seconds=3600, client=fake_redis, clock=clock, metrics=metrics)

    @pytest.mark.asyncio
    async def test_store_sets_native_expiry(self, store, fake_redis):
        await store.store("ORDER-9", BOOKING)
        assert ("booking:ORD-9", 3600, False) in fake_redis.set_calls
        assert ("booking:ORDER-9", 3600, False) in fake_redis.set_calls

    @pytest.mark.asyncio
    async def test_round_trip_and_fallbacks(self, store):
        await store.store("ORD-10", BOOKING)
        assert await store.retrieve("ORD-10") == BOOKING
        assert await store.retrieve_with_fallbacks("REF-10") == BOOKING

    @pytest.mark.asyncio
    async def test_expired_record_is_a_miss(self, store, clock):
        await store.store("ORD-11", BOOKING)
        clock.advance(3600)
        assert await store.retrieve("ORD-11") is None

    @pytest.mark.asyncio
    async def test_undecodable_record_is_a_miss(self, store, fake_redis):
        await fake_redis.set("booking:ORD-12", "not json")
        assert await store.retrieve("ORD-12") is None

        await fake_redis.set("booking:ORD-13", json.dumps({"payload": {}}))
        assert await store.retrieve("ORD-13") is None

    @pytest.mark.asyncio
    async def test_remove(self, store):
        await store.store("ORDER-14", BOOKING)
        await store.remove("ORDER-14")
        assert await store.retrieve("ORD-14") is None
        assert await store.retrieve("ORDER-14") is None

    @pytest.mark.asyncio
    async def test_remove_by_normalized_key_drops_raw_alias(self, store, fake_redis):
        await store.store("1001", BOOKING)
        await store.store("REF-1001", BOOKING)
        await store.remove("ORD-1001")

        assert not [key for key in fake_redis.data if key.startswith("booking:")]
        assert await store.retrieve_with_fallbacks("1001") is None

    @pytest.mark.asyncio
    async def test_stats_counts_entries_not_keys(self, store):
        await store.store("ORD-15", BOOKING)
        await store.store("REF-16", BOOKING)
        stats = await store.stats()
        assert stats["total_entries"] == 2
        assert stats["expired_entries"] == 0

    @pytest.mark.asyncio
    async def test_ping_and_shutdown(self, store, fake_redis):
        assert await store.ping() is True
        await store.shutdown()
        assert fake_redis.closed
        assert store.redis is None

    @pytest.mark.asyncio
    async def test_operations_require_start(self):
        store = RedisCorrelationStore(None)
        with pytest.raises(ConfigurationMissingError):
            await store.store("ORD-1", BOOKING)
        with pytest.raises(ConfigurationMissingError):
            await store.start()


class TestCreateCorrelationStore:
    """Test cases for create_correlation_store."""

    def test_memory_backend(self):
        store = create_correlation_store("memory", ttl_seconds=60)
        assert isinstance(store, InMemoryCorrelationStore)
        assert store.ttl_seconds == 60

    def test_redis_backend(self):
        store = create_correlation_store("redis", redis_url="redis://localhost:6379/0")
        assert isinstance(store, RedisCorrelationStore)
        assert store.redis is None

    def test_unknown_backend(self):
        with pytest.raises(ValidationError):
            create_correlation_store("memcached")
