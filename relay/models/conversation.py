import uuid

from sqlalchemy import Column, ForeignKey, Index, Text, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from relay.database import Base


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        # at most one active conversation per customer/channel pair
        Index(
            "uq_conversations_active_pair",
            "customer_id",
            "channel_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
        ),
        Index("ix_conversations_status_expires_at", "status", "expires_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False)
    channel_id = Column(Text, nullable=False)  # business phone_number_id
    status = Column(Text, nullable=False, default="active")  # active, expired, closed
    kind = Column(Text, nullable=False)  # customer_initiated, business_initiated, referral_conversion
    last_message_at = Column(TIMESTAMP(timezone=True), nullable=False)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=False)
    conversation_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    customer = relationship("Customer", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation")
