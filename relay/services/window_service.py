"""24-hour customer service window per customer.

The active conversation's ``expires_at`` is the durable record; Redis holds
``window:{customer_id}`` as a read-through cache with a TTL equal to the time
left in the window.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from relay.logging_config import get_logger
from relay.models import Conversation
from relay.schemas.content import Direction
from relay.services import conversation_service

logger = get_logger("window_service")

KEY_PREFIX = "window:"


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class WindowStore:
    def __init__(self, redis_client=None, *, window_hours: int = 24):
        self.redis = redis_client
        self.window = timedelta(hours=window_hours)

    async def get_expiry(
        self,
        db: Session,
        customer_id,
        conversation: Optional[Conversation] = None,
    ) -> Optional[datetime]:
        """Cache first, then the durable conversation (refilling the cache)."""
        cached = await self._cache_get(customer_id)
        if cached is not None:
            return cached

        if conversation is None:
            conversation = conversation_service.get_active_conversation(db, customer_id)
        if conversation is None or conversation.expires_at is None:
            return None
        expires_at = _aware(conversation.expires_at)
        await self._cache_set(customer_id, expires_at)
        return expires_at

    async def is_within_window(self, db: Session, customer_id) -> Optional[bool]:
        """True/False when known, None when the lookup itself failed."""
        try:
            expires_at = await self.get_expiry(db, customer_id)
        except SQLAlchemyError as exc:
            logger.warning(
                "Window lookup failed",
                extra={"context": {"customer_id": customer_id, "error": str(exc)}},
            )
            return None
        if expires_at is None:
            return False
        return expires_at > datetime.now(timezone.utc)

    async def extend_window(
        self,
        db: Session,
        customer_id,
        direction: Direction,
        conversation: Optional[Conversation] = None,
    ) -> datetime:
        """Inbound always extends to now + window; outbound only opens a window when none is open.

        The expiry never moves backwards. Returns the resulting expiry.
        """
        now = datetime.now(timezone.utc)
        current = await self.get_expiry(db, customer_id, conversation)
        if direction == Direction.OUTBOUND and current is not None and current > now:
            return current

        expires_at = now + self.window
        if current is not None and current > expires_at:
            expires_at = current

        if conversation is None:
            conversation = conversation_service.get_active_conversation(db, customer_id)
        if conversation is not None:
            if conversation.expires_at is None or _aware(conversation.expires_at) < expires_at:
                conversation.expires_at = expires_at

        await self._cache_set(customer_id, expires_at)
        return expires_at

    async def _cache_get(self, customer_id) -> Optional[datetime]:
        if self.redis is None:
            return None
        try:
            value = await self.redis.get(f"{KEY_PREFIX}{customer_id}")
        except Exception as exc:
            logger.warning("Window cache read failed", extra={"context": {"customer_id": customer_id, "error": str(exc)}})
            return None
        if not value:
            return None
        try:
            return _aware(datetime.fromisoformat(value))
        except ValueError:
            return None

    async def _cache_set(self, customer_id, expires_at: datetime) -> None:
        if self.redis is None:
            return
        ttl = int((expires_at - datetime.now(timezone.utc)).total_seconds())
        if ttl <= 0:
            return
        try:
            await self.redis.set(f"{KEY_PREFIX}{customer_id}", expires_at.isoformat(), ex=ttl)
        except Exception as exc:
            logger.warning("Window cache write failed", extra={"context": {"customer_id": customer_id, "error": str(exc)}})
