import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from relay.database import Base


class Customer(Base):
    __tablename__ = "customers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    whatsapp_id = Column(Text, nullable=False, unique=True)
    phone_number = Column(Text, nullable=False)
    name = Column(Text)
    assigned_operator_id = Column(UUID(as_uuid=True), ForeignKey("operators.id"))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    assigned_operator = relationship("Operator")
    conversations = relationship("Conversation", back_populates="customer")
