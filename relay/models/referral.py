import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from relay.database import Base


class Referral(Base):
    """Click-to-WhatsApp ad or post that started an inbound message."""

    __tablename__ = "referrals"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False)
    whatsapp_message_id = Column(Text, nullable=False, unique=True)
    source_url = Column(Text)
    source_id = Column(Text)
    source_type = Column(Text)  # ad, post
    headline = Column(Text)
    body = Column(Text)
    media_type = Column(Text)
    campaign_id = Column(Text)  # ctwa_clid
    referral_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
