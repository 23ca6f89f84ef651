from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from relay.schemas.content import MessageType


class SendMessageRequest(BaseModel):
    to: str = Field(min_length=1)
    type: MessageType
    content: dict[str, Any]
    variables: Optional[dict[str, Any]] = None


class SendMessageResponse(BaseModel):
    success: bool
    queued_id: UUID
    status: str = "queued"


class BulkSendRequest(BaseModel):
    messages: list[SendMessageRequest] = Field(min_length=1, max_length=500)


class BulkSendItem(BaseModel):
    to: str
    success: bool
    queued_id: Optional[UUID] = None
    error: Optional[dict[str, Any]] = None


class BulkSendResponse(BaseModel):
    queued: int
    failed: int
    results: list[BulkSendItem]


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    whatsapp_message_id: str
    conversation_id: UUID
    customer_id: UUID
    direction: str
    type: str
    content: dict[str, Any]
    status: str
    timestamp: datetime
    window_expires_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("message_metadata", "metadata"))


class MessageHistoryResponse(BaseModel):
    conversation_id: UUID
    messages: list[MessageOut]
    limit: int
    offset: int


class FailedMessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    outbox_message_id: Optional[UUID] = None
    whatsapp_message_id: Optional[str] = None
    destination: str
    type: str
    content: dict[str, Any]
    error_code: str
    error_message: str
    error_details: Optional[dict[str, Any]] = None
    retry_count: int
    status: str
    last_retry_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class RetryResponse(BaseModel):
    success: bool
    failed_message_id: UUID
    queued_id: UUID
    retry_count: int
