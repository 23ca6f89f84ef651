"""Typed message content, one model per message type tag."""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    LOCATION = "location"
    CONTACTS = "contacts"
    INTERACTIVE = "interactive"
    BUTTON = "button"
    REACTION = "reaction"
    TEMPLATE = "template"
    UNKNOWN = "unknown"


MEDIA_TYPES = {MessageType.IMAGE, MessageType.VIDEO, MessageType.AUDIO, MessageType.DOCUMENT}


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    body: str
    preview_url: bool = False


class _MediaFields(BaseModel):
    media_id: str
    mime_type: Optional[str] = None
    sha256: Optional[str] = None
    caption: Optional[str] = None
    url: Optional[str] = None  # resolved through the provider media API


class ImageContent(_MediaFields):
    type: Literal["image"] = "image"


class VideoContent(_MediaFields):
    type: Literal["video"] = "video"


class AudioContent(_MediaFields):
    type: Literal["audio"] = "audio"
    voice: bool = False


class DocumentContent(_MediaFields):
    type: Literal["document"] = "document"
    filename: str = "untitled"


class LocationContent(BaseModel):
    type: Literal["location"] = "location"
    latitude: float
    longitude: float
    name: Optional[str] = None
    address: Optional[str] = None
    url: Optional[str] = None


class ContactsContent(BaseModel):
    type: Literal["contacts"] = "contacts"
    contacts: list[dict[str, Any]]


class ReplyOption(BaseModel):
    id: str
    title: str
    description: Optional[str] = None


class InteractiveContent(BaseModel):
    type: Literal["interactive"] = "interactive"
    interactive_type: str
    button_reply: Optional[ReplyOption] = None
    list_reply: Optional[ReplyOption] = None


class ButtonContent(BaseModel):
    type: Literal["button"] = "button"
    text: str
    payload: Optional[str] = None


class ReactionContent(BaseModel):
    type: Literal["reaction"] = "reaction"
    message_id: str
    emoji: Optional[str] = None


class TemplateContent(BaseModel):
    type: Literal["template"] = "template"
    name: str
    language: Any = None
    components: list[dict[str, Any]] = Field(default_factory=list)


class UnknownContent(BaseModel):
    type: Literal["unknown"] = "unknown"
    original_type: Optional[str] = None
    errors: list[dict[str, Any]] = Field(default_factory=list)


MessageContent = Annotated[
    Union[
        TextContent,
        ImageContent,
        VideoContent,
        AudioContent,
        DocumentContent,
        LocationContent,
        ContactsContent,
        InteractiveContent,
        ButtonContent,
        ReactionContent,
        TemplateContent,
        UnknownContent,
    ],
    Field(discriminator="type"),
]

content_adapter: TypeAdapter[MessageContent] = TypeAdapter(MessageContent)


def parse_content(data: dict[str, Any]) -> MessageContent:
    """Validate a stored ``content`` dict back into its typed model."""
    return content_adapter.validate_python(data)
