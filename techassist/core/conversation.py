"""
Redis-backed conversation state.

Key pattern: techassist:v1:conversation:{tenant_id}:{phone}

Holds the open scheduling attempt and the handoff marker for one client.
Gracefully handles Redis unavailability with an in-memory fallback.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from redis.exceptions import RedisError

from techassist.config import settings
from techassist.infra.redis import APP_PREFIX, get_redis

logger = logging.getLogger(__name__)

CONVERSATION_PREFIX = f"{APP_PREFIX}conversation:"


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class ConversationState:
    """Per-client conversation memory."""

    tenant_id: str
    phone: str
    scheduling: Optional[dict[str, Any]] = None
    handoff_until: Optional[datetime] = None
    last_intent: Optional[str] = None
    updated_at: datetime = field(default_factory=_utcnow)

    def is_handed_off(self, now: Optional[datetime] = None) -> bool:
        if self.handoff_until is None:
            return False
        return (now or _utcnow()) < self.handoff_until

    def to_json(self) -> str:
        return json.dumps({
            "tenant_id": self.tenant_id,
            "phone": self.phone,
            "scheduling": self.scheduling,
            "handoff_until": self.handoff_until.isoformat() if self.handoff_until else None,
            "last_intent": self.last_intent,
            "updated_at": self.updated_at.isoformat(),
        })

    @classmethod
    def from_json(cls, raw: str) -> "ConversationState":
        data = json.loads(raw)
        handoff_until = data.get("handoff_until")
        return cls(
            tenant_id=data["tenant_id"],
            phone=data["phone"],
            scheduling=data.get("scheduling"),
            handoff_until=datetime.fromisoformat(handoff_until) if handoff_until else None,
            last_intent=data.get("last_intent"),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


class ConversationStore:
    """Conversation state in Redis, falling back to process memory."""

    def __init__(self, ttl: Optional[int] = None):
        self._ttl = ttl or settings.conversation_ttl
        self._in_memory_fallback: dict[str, ConversationState] = {}
        self._fallback_expiry: dict[str, datetime] = {}

    def _key(self, tenant_id: str, phone: str) -> str:
        """Generate Redis key."""
        return f"{CONVERSATION_PREFIX}{tenant_id}:{phone}"

    async def get(self, tenant_id: str, phone: str) -> ConversationState:
        """Load state, returning an empty one when absent."""
        key = self._key(tenant_id, phone)
        redis = await get_redis()

        if redis:
            try:
                raw = await redis.get(key)
                if raw:
                    return ConversationState.from_json(raw)
                return ConversationState(tenant_id=tenant_id, phone=phone)
            except RedisError as e:
                logger.error(f"Failed to load conversation {key}: {e}")

        self._evict_expired()
        state = self._in_memory_fallback.get(key)
        return state or ConversationState(tenant_id=tenant_id, phone=phone)

    async def save(self, state: ConversationState) -> None:
        state.updated_at = _utcnow()
        key = self._key(state.tenant_id, state.phone)
        ttl = self._ttl
        if state.handoff_until is not None:
            remaining = int((state.handoff_until - state.updated_at).total_seconds())
            ttl = max(ttl, remaining)

        redis = await get_redis()
        if redis:
            try:
                await redis.setex(key, ttl, state.to_json())
                return
            except RedisError as e:
                logger.error(f"Failed to save conversation {key}: {e}")

        self._evict_expired()
        self._in_memory_fallback[key] = state
        self._fallback_expiry[key] = state.updated_at + timedelta(seconds=ttl)
        logger.warning(f"Redis unavailable, conversation {key} kept in memory")

    def _evict_expired(self) -> None:
        """Drop fallback entries past their TTL, as Redis would."""
        now = _utcnow()
        for key in [k for k, expires in self._fallback_expiry.items() if expires <= now]:
            self._in_memory_fallback.pop(key, None)
            del self._fallback_expiry[key]

    async def clear(self, tenant_id: str, phone: str) -> None:
        key = self._key(tenant_id, phone)
        self._in_memory_fallback.pop(key, None)
        self._fallback_expiry.pop(key, None)
        redis = await get_redis()
        if redis:
            try:
                await redis.delete(key)
            except RedisError as e:
                logger.error(f"Failed to clear conversation {key}: {e}")
