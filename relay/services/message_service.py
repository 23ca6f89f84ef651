"""Idempotent message persistence keyed by the provider message id."""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from relay.models import Message
from relay.schemas.message import MessageOut


def get_by_provider_id(db: Session, whatsapp_message_id: str) -> Optional[Message]:
    return db.query(Message).filter(Message.whatsapp_message_id == whatsapp_message_id).first()


def upsert_message(
    db: Session,
    *,
    whatsapp_message_id: str,
    conversation_id,
    customer_id,
    operator_id,
    direction: str,
    type: str,
    content: dict[str, Any],
    status: str,
    timestamp: datetime,
    window_expires_at: Optional[datetime] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> tuple[Message, bool]:
    """Insert the message unless one with the same provider id exists.

    Returns the stored row and whether this call created it.
    """
    stmt = (
        insert(Message)
        .values(
            id=uuid.uuid4(),
            whatsapp_message_id=whatsapp_message_id,
            conversation_id=conversation_id,
            customer_id=customer_id,
            operator_id=operator_id,
            direction=direction,
            type=type,
            content=content,
            status=status,
            timestamp=timestamp,
            window_expires_at=window_expires_at,
            message_metadata=metadata or {},
        )
        .on_conflict_do_nothing(index_elements=["whatsapp_message_id"])
    )
    result = db.execute(stmt)
    created = result.rowcount > 0
    return get_by_provider_id(db, whatsapp_message_id), created


def update_status(
    db: Session,
    message: Message,
    status: str,
    metadata_patch: Optional[dict[str, Any]] = None,
) -> Message:
    """Set the delivery status and merge ``metadata_patch`` over the stored metadata."""
    message.status = status
    if metadata_patch:
        # reassign so the JSONB column is flagged dirty
        message.message_metadata = {**(message.message_metadata or {}), **metadata_patch}
    return message


def list_by_provider_ids(db: Session, conversation_id, whatsapp_message_ids: list[str]) -> list[Message]:
    if not whatsapp_message_ids:
        return []
    return (
        db.query(Message)
        .filter(
            Message.conversation_id == conversation_id,
            Message.whatsapp_message_id.in_(whatsapp_message_ids),
        )
        .all()
    )


def list_conversation_messages(db: Session, conversation_id, *, limit: int = 50, offset: int = 0) -> list[Message]:
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.timestamp.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def serialize_message(message: Message) -> dict[str, Any]:
    return MessageOut.model_validate(message).model_dump(mode="json")
