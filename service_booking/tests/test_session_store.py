"""
Unit tests for the Redis session store.
"""

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_booking.app.sessions.store import SessionStore, is_valid_session_id
from shared.errors import ConfigurationMissingError, ValidationError


class TestSessionStore:
    """Test cases for SessionStore."""

    @pytest.fixture
    def store(self, fake_redis, clock, metrics):
        return SessionStore(default_ttl=3600, client=fake_redis, clock=clock, metrics=metrics)

    @pytest.mark.asyncio
    async def test_create_and_get(self, store, clock):
        session = await store.create_session("demo@example.com")

        assert is_valid_session_id(session.id)
        assert session.expires_at == clock() + 3600

        loaded = await store.get_session(session.id)
        assert loaded == session

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, store):
        first = await store.create_session("a@example.com")
        second = await store.create_session("a@example.com")
        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_custom_ttl(self, store, fake_redis):
        session = await store.create_session("a@example.com", ttl_seconds=60)
        assert (f"session:{session.id}", 60, False) in fake_redis.set_calls

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ttl", [0, -5])
    async def test_non_positive_ttl_rejected(self, store, fake_redis, ttl):
        with pytest.raises(ValidationError):
            await store.create_session("a@example.com", ttl_seconds=ttl)

        session = await store.create_session("a@example.com")
        with pytest.raises(ValidationError):
            await store.refresh_session(session.id, ttl_seconds=ttl)
        assert len(fake_redis.set_calls) == 1

    @pytest.mark.asyncio
    async def test_blank_subject_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.create_session("  ")

    @pytest.mark.asyncio
    async def test_session_expires(self, store, clock):
        session = await store.create_session("a@example.com")
        clock.advance(3600)
        assert await store.get_session(session.id) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("session_id", [None, "", "abc", "Z" * 32, "../" + "a" * 29])
    async def test_malformed_id_is_a_miss_without_redis_lookup(self, session_id):
        store = SessionStore()
        assert await store.get_session(session_id) is None

    @pytest.mark.asyncio
    async def test_undecodable_record_is_a_miss(self, store, fake_redis):
        session_id = "a" * 32
        await fake_redis.set(f"session:{session_id}", "{broken")
        assert await store.get_session(session_id) is None

    @pytest.mark.asyncio
    async def test_refresh_slides_expiry(self, store, clock, fake_redis):
        session = await store.create_session("a@example.com")
        clock.advance(3000)

        await store.refresh_session(session.id)
        assert (f"session:{session.id}", 3600, True) in fake_redis.set_calls

        clock.advance(3000)
        refreshed = await store.get_session(session.id)
        assert refreshed is not None
        assert refreshed.expires_at == clock() + 600

    @pytest.mark.asyncio
    async def test_refresh_missing_session_is_noop(self, store, fake_redis):
        await store.refresh_session("b" * 32)
        assert fake_redis.set_calls == []

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, store):
        session = await store.create_session("a@example.com")
        await store.delete_session(session.id)
        await store.delete_session(session.id)
        assert await store.get_session(session.id) is None

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, store, metrics):
        session = await store.create_session("a@example.com")
        await store.get_session(session.id)
        await store.delete_session(session.id)

        assert metrics.count("session_operations_total", operation="create") == 1
        assert metrics.count("session_operations_total", operation="get") == 1
        assert metrics.count("session_operations_total", operation="delete") == 1

    @pytest.mark.asyncio
    async def test_requires_connection(self):
        store = SessionStore()
        with pytest.raises(ConfigurationMissingError):
            await store.create_session("a@example.com")
        with pytest.raises(ConfigurationMissingError):
            await store.start()

    @pytest.mark.asyncio
    async def test_close(self, store, fake_redis):
        assert await store.ping() is True
        await store.close()
        assert fake_redis.closed
