"""Attribution of inbound messages to the ads and posts that referred them."""

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from relay.logging_config import get_logger
from relay.models import Customer, Message, Referral
from relay.services.fanout_service import Fanout

logger = get_logger("referral_service")

REFERRAL_KEY_PREFIX = "referral:"
REFERRAL_USERS_PREFIX = "referral:users:"


class ReferralTracker:
    def __init__(self, fanout: Fanout, redis_client=None):
        self.fanout = fanout
        self.redis = redis_client

    async def track(self, db: Session, customer: Customer, message: Message, referral: dict[str, Any]) -> bool:
        """Store the referral for ``message`` once, bump its counters and announce it.

        Returns False when the message was already attributed.
        """
        stmt = (
            insert(Referral)
            .values(
                id=uuid.uuid4(),
                customer_id=customer.id,
                whatsapp_message_id=message.whatsapp_message_id,
                source_url=referral.get("source_url"),
                source_id=referral.get("source_id"),
                source_type=referral.get("source_type"),
                headline=referral.get("headline"),
                body=referral.get("body"),
                media_type=referral.get("media_type"),
                campaign_id=referral.get("ctwa_clid"),
                referral_metadata={"raw": referral},
            )
            .on_conflict_do_nothing(index_elements=["whatsapp_message_id"])
        )
        created = db.execute(stmt).rowcount > 0
        db.commit()
        if not created:
            return False

        source_id = referral.get("source_id") or "unknown"
        await self.count(source_id, customer.id)
        await self.fanout.notify_referral(
            customer.assigned_operator_id,
            {
                "customer_id": str(customer.id),
                "conversation_id": str(message.conversation_id),
                "whatsapp_message_id": message.whatsapp_message_id,
                "source_id": source_id,
                "source_type": referral.get("source_type"),
                "campaign": referral.get("ctwa_clid"),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
        logger.info(
            "Referral tracked",
            extra={"context": {"source_id": source_id, "customer_id": customer.id}},
        )
        return True

    async def count(self, source_id: str, customer_id) -> None:
        """Clicks and unique users per referral source, shared across instances."""
        if self.redis is None:
            return
        key = f"{REFERRAL_KEY_PREFIX}{source_id}"
        try:
            await self.redis.hincrby(key, "clicks", 1)
            if await self.redis.sadd(f"{REFERRAL_USERS_PREFIX}{source_id}", str(customer_id)):
                await self.redis.hincrby(key, "unique_users", 1)
        except Exception as exc:
            logger.warning("Referral counter update failed", extra={"context": {"source_id": source_id, "error": str(exc)}})
