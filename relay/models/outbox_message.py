import uuid

from sqlalchemy import Column, Index, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from relay.database import Base


class OutboxMessage(Base):
    """Queued outbound message; the table doubles as work queue and dead-letter queue."""

    __tablename__ = "outbox_messages"
    __table_args__ = (Index("ix_outbox_messages_status_next_attempt", "status", "next_attempt_at"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    destination = Column(Text, nullable=False)
    type = Column(Text, nullable=False)
    content = Column(JSONB, nullable=False)
    variables = Column(JSONB)
    message_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, PROCESSING, SENT, DEAD, DEAD_RECORDED
    retry_count = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(TIMESTAMP(timezone=True))
    locked_until = Column(TIMESTAMP(timezone=True))
    provider_message_id = Column(Text)
    failed_message_id = Column(UUID(as_uuid=True))
    last_error = Column(JSONB)
    enqueued_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
