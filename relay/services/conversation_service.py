import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session, joinedload

from relay.config import settings
from relay.logging_config import get_logger
from relay.models import Conversation
from relay.services.state_machine import ConversationStatus, expire_conversation

logger = get_logger("conversation_service")


class ConversationKind(str, Enum):
    CUSTOMER_INITIATED = "customer_initiated"
    BUSINESS_INITIATED = "business_initiated"
    REFERRAL_CONVERSION = "referral_conversion"


def get_active_conversation(db: Session, customer_id, channel_id: Optional[str] = None) -> Optional[Conversation]:
    query = db.query(Conversation).filter(
        Conversation.customer_id == customer_id,
        Conversation.status == ConversationStatus.ACTIVE.value,
    )
    if channel_id is not None:
        query = query.filter(Conversation.channel_id == channel_id)
    return query.order_by(Conversation.expires_at.desc()).first()


def list_active_conversations(db: Session, *, limit: int = 20, offset: int = 0) -> tuple[list[Conversation], int]:
    """Active conversations, most recent activity first, with their customers loaded."""
    query = db.query(Conversation).filter(Conversation.status == ConversationStatus.ACTIVE.value)
    total = query.count()
    conversations = (
        query.options(joinedload(Conversation.customer))
        .order_by(Conversation.last_message_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return conversations, total


def get_or_create_active(
    db: Session,
    *,
    customer_id,
    channel_id: str,
    kind: ConversationKind,
    now: Optional[datetime] = None,
) -> Conversation:
    """Return the single active conversation for (customer, channel), creating it if needed."""
    now = now or datetime.now(timezone.utc)
    stmt = (
        insert(Conversation)
        .values(
            id=uuid.uuid4(),
            customer_id=customer_id,
            channel_id=channel_id,
            status=ConversationStatus.ACTIVE.value,
            kind=kind.value,
            last_message_at=now,
            expires_at=now + timedelta(hours=settings.conversation_window_hours),
            conversation_metadata={},
        )
        .on_conflict_do_nothing(
            index_elements=["customer_id", "channel_id"],
            index_where=text("status = 'active'"),
        )
    )
    result = db.execute(stmt)
    if result.rowcount:
        logger.info(
            "Conversation opened",
            extra={"context": {"customer_id": customer_id, "channel_id": channel_id, "kind": kind.value}},
        )
    return get_active_conversation(db, customer_id, channel_id)


def touch(db: Session, conversation: Conversation, at: datetime) -> None:
    if conversation.last_message_at is None or at > conversation.last_message_at:
        conversation.last_message_at = at


def expire_stale_conversations(db: Session, now: Optional[datetime] = None, batch_size: int = 500) -> int:
    """Mark active conversations whose window has passed as expired. Rows are never deleted."""
    now = now or datetime.now(timezone.utc)
    stale = (
        db.query(Conversation)
        .filter(
            Conversation.status == ConversationStatus.ACTIVE.value,
            Conversation.expires_at < now,
        )
        .limit(batch_size)
        .with_for_update(skip_locked=True)
        .all()
    )
    for conversation in stale:
        conversation.status = expire_conversation(ConversationStatus(conversation.status)).value
    db.commit()
    if stale:
        logger.info("Expired conversations", extra={"context": {"count": len(stale)}})
    return len(stale)
