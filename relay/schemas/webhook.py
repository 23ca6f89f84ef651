"""WhatsApp Cloud API webhook payload shapes.

The envelope (``entry[].changes[].value``) is walked as plain dicts so that a
single malformed message or status can be skipped without rejecting the rest
of the batch; each item is validated on its own with the models below.
"""

from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class WebhookMetadata(_ProviderModel):
    display_phone_number: Optional[str] = None
    phone_number_id: str


class WebhookProfile(_ProviderModel):
    name: Optional[str] = None


class WebhookContact(_ProviderModel):
    wa_id: str
    profile: Optional[WebhookProfile] = None


class WebhookError(_ProviderModel):
    code: Optional[int] = None
    title: Optional[str] = None
    message: Optional[str] = None
    error_data: Optional[dict[str, Any]] = None
    href: Optional[str] = None


class WebhookText(_ProviderModel):
    body: str
    preview_url: Optional[bool] = None


class WebhookMedia(_ProviderModel):
    id: str
    mime_type: Optional[str] = None
    sha256: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None
    voice: Optional[bool] = None


class WebhookLocation(_ProviderModel):
    latitude: float
    longitude: float
    name: Optional[str] = None
    address: Optional[str] = None
    url: Optional[str] = None


class WebhookReplyOption(_ProviderModel):
    id: str
    title: str
    description: Optional[str] = None


class WebhookInteractive(_ProviderModel):
    type: str  # button_reply, list_reply, nfm_reply
    button_reply: Optional[WebhookReplyOption] = None
    list_reply: Optional[WebhookReplyOption] = None


class WebhookButton(_ProviderModel):
    text: str
    payload: Optional[str] = None


class WebhookReaction(_ProviderModel):
    message_id: str
    emoji: Optional[str] = None  # empty when a reaction is removed


class WebhookReferral(_ProviderModel):
    source_url: Optional[str] = None
    source_id: Optional[str] = None
    source_type: Optional[str] = None
    headline: Optional[str] = None
    body: Optional[str] = None
    media_type: Optional[str] = None
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    ctwa_clid: Optional[str] = None


class WebhookContext(_ProviderModel):
    id: Optional[str] = None
    from_number: Optional[str] = Field(default=None, validation_alias=AliasChoices("from", "from_number"))
    forwarded: Optional[bool] = None
    frequently_forwarded: Optional[bool] = None


class WebhookMessage(_ProviderModel):
    id: str
    from_number: str = Field(validation_alias=AliasChoices("from", "from_number"))
    timestamp: str
    type: str
    text: Optional[WebhookText] = None
    image: Optional[WebhookMedia] = None
    video: Optional[WebhookMedia] = None
    audio: Optional[WebhookMedia] = None
    document: Optional[WebhookMedia] = None
    location: Optional[WebhookLocation] = None
    contacts: Optional[list[dict[str, Any]]] = None
    interactive: Optional[WebhookInteractive] = None
    button: Optional[WebhookButton] = None
    reaction: Optional[WebhookReaction] = None
    template: Optional[dict[str, Any]] = None
    referral: Optional[WebhookReferral] = None
    context: Optional[WebhookContext] = None
    errors: list[WebhookError] = Field(default_factory=list)


class ConversationInfo(_ProviderModel):
    id: str
    origin: Optional[dict[str, Any]] = None
    expiration_timestamp: Optional[str] = None


class PricingInfo(_ProviderModel):
    billable: Optional[bool] = None
    pricing_model: Optional[str] = None
    category: Optional[str] = None


class WebhookStatus(_ProviderModel):
    id: str
    status: Literal["sent", "delivered", "read", "failed"]
    timestamp: Optional[str] = None
    recipient_id: Optional[str] = None
    conversation: Optional[ConversationInfo] = None
    pricing: Optional[PricingInfo] = None
    errors: list[WebhookError] = Field(default_factory=list)


class WebhookValue(_ProviderModel):
    messaging_product: Literal["whatsapp"]
    metadata: WebhookMetadata
    contacts: list[WebhookContact] = Field(default_factory=list)
    messages: list[dict[str, Any]] = Field(default_factory=list)
    statuses: list[dict[str, Any]] = Field(default_factory=list)


class WebhookResult(BaseModel):
    """Per-request processing summary; returned to the provider with HTTP 200."""

    messages_received: int = 0
    messages_created: int = 0
    duplicates: int = 0
    statuses_applied: int = 0
    skipped: int = 0
