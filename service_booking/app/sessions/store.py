"""
Redis-backed session store.

Session records live at ``session:<id>`` with a native Redis expiry, so the
backing store is the only source of truth for session lifetime.
"""

import json
import re
import secrets
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional, TYPE_CHECKING

import redis.asyncio as redis

from shared.errors import ConfigurationMissingError, ValidationError
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_SESSION_TTL = 3600
SESSION_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")


@dataclass
class Session:
    """An authenticated session."""

    id: str
    subject: str
    created_at: float
    expires_at: float

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "Session":
        data = json.loads(raw)
        return cls(
            id=str(data["id"]),
            subject=str(data["subject"]),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
        )


def is_valid_session_id(session_id: Optional[str]) -> bool:
    return isinstance(session_id, str) and bool(SESSION_ID_PATTERN.match(session_id))


class SessionStore:
    """Create, read, refresh and revoke sessions in Redis."""

    KEY_PREFIX = "session:"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        default_ttl: int = DEFAULT_SESSION_TTL,
        *,
        client: Optional[redis.Redis] = None,
        clock: Callable[[], float] = time.time,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.redis_url = redis_url
        self.default_ttl = default_ttl
        self.redis: Optional[redis.Redis] = client
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("booking.session_store")

    async def start(self) -> None:
        """Open the Redis connection pool."""
        if self.redis is not None:
            return
        if not self.redis_url:
            raise ConfigurationMissingError("redis_url", "Redis URL is required for the session store")

        self.redis = redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            health_check_interval=30,
        )
        self.logger.info("Session store started")

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Session store stopped")

    async def ping(self) -> bool:
        return bool(await self._client().ping())

    def _client(self) -> redis.Redis:
        if self.redis is None:
            raise ConfigurationMissingError("redis_url", "Session store is not connected")
        return self.redis

    def _key(self, session_id: str) -> str:
        return f"{self.KEY_PREFIX}{session_id}"

    def _resolve_ttl(self, ttl_seconds: Optional[int]) -> int:
        if ttl_seconds is None:
            return self.default_ttl
        if ttl_seconds <= 0:
            raise ValidationError("Session TTL must be positive", {"ttl_seconds": ttl_seconds})
        return ttl_seconds

    async def create_session(self, subject: str, ttl_seconds: Optional[int] = None) -> Session:
        """Persist a new session for ``subject`` with a fresh random id."""
        if not isinstance(subject, str) or not subject.strip():
            raise ValidationError("Session subject must be a non-empty string")

        ttl = self._resolve_ttl(ttl_seconds)
        now = self.clock()
        session = Session(
            id=secrets.token_hex(16),
            subject=subject,
            created_at=now,
            expires_at=now + ttl,
        )

        await self._client().set(self._key(session.id), session.to_json(), ex=ttl)
        self.logger.info("Session created", session=session.id[:8], ttl_seconds=ttl)
        self._record("create")
        return session

    async def get_session(self, session_id: Optional[str]) -> Optional[Session]:
        """Return the session, or None for malformed, unknown or undecodable ids."""
        if not is_valid_session_id(session_id):
            return None

        raw = await self._client().get(self._key(session_id))
        self._record("get")
        if raw is None:
            return None

        try:
            return Session.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            self.logger.warning("Discarding undecodable session record", session=session_id[:8], error=str(exc))
            return None

    async def refresh_session(self, session_id: Optional[str], ttl_seconds: Optional[int] = None) -> None:
        """Slide the expiry forward; no-op when the session is gone."""
        ttl = self._resolve_ttl(ttl_seconds)
        session = await self.get_session(session_id)
        if session is None:
            return

        session.expires_at = self.clock() + ttl
        await self._client().set(self._key(session.id), session.to_json(), ex=ttl, xx=True)
        self._record("refresh")

    async def delete_session(self, session_id: Optional[str]) -> None:
        if not is_valid_session_id(session_id):
            return

        await self._client().delete(self._key(session_id))
        self.logger.info("Session deleted", session=session_id[:8])
        self._record("delete")

    def _record(self, operation: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("session_operations_total", operation=operation)
