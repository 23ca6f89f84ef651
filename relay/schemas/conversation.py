from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class CustomerSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: Optional[str] = None
    phone_number: str


class ConversationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    channel_id: str
    status: str
    kind: str
    last_message_at: datetime
    expires_at: datetime
    customer: Optional[CustomerSummary] = None
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("conversation_metadata", "metadata")
    )


class ActiveConversationsResponse(BaseModel):
    conversations: list[ConversationOut]
    total: int
    page: int
    pages: int


class MarkReadRequest(BaseModel):
    message_ids: list[str] = Field(min_length=1, max_length=500)


class MarkReadResponse(BaseModel):
    conversation_id: UUID
    updated: int
