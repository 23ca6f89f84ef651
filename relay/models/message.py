import uuid

from sqlalchemy import Column, ForeignKey, Index, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from relay.database import Base


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (Index("ix_messages_conversation_timestamp", "conversation_id", "timestamp"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    whatsapp_message_id = Column(Text, nullable=False, unique=True)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False)
    operator_id = Column(UUID(as_uuid=True))
    direction = Column(Text, nullable=False)  # inbound, outbound
    type = Column(Text, nullable=False)
    content = Column(JSONB, nullable=False)
    status = Column(Text, nullable=False)  # sent, delivered, read, failed
    timestamp = Column(TIMESTAMP(timezone=True), nullable=False)
    window_expires_at = Column(TIMESTAMP(timezone=True))
    message_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    conversation = relationship("Conversation", back_populates="messages")
