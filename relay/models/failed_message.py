import uuid

from sqlalchemy import Column, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from relay.database import Base


class FailedMessage(Base):
    __tablename__ = "failed_messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    outbox_message_id = Column(UUID(as_uuid=True), unique=True)
    whatsapp_message_id = Column(Text, unique=True)
    destination = Column(Text, nullable=False)
    type = Column(Text, nullable=False)
    content = Column(JSONB, nullable=False)
    error_code = Column(Text, nullable=False)
    error_message = Column(Text, nullable=False)
    error_details = Column(JSONB)
    retry_count = Column(Integer, nullable=False, default=0)
    status = Column(Text, nullable=False, default="pending_retry")  # pending_retry, failed, resolved
    last_retry_at = Column(TIMESTAMP(timezone=True))
    resolved_at = Column(TIMESTAMP(timezone=True))
    failure_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
