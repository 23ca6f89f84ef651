from relay.schemas.content import Direction, MessageContent, MessageStatus, MessageType, parse_content
from relay.schemas.message import SendMessageRequest, SendMessageResponse
from relay.schemas.webhook import WebhookMessage, WebhookResult, WebhookStatus

__all__ = [
    "Direction",
    "MessageContent",
    "MessageStatus",
    "MessageType",
    "parse_content",
    "SendMessageRequest",
    "SendMessageResponse",
    "WebhookMessage",
    "WebhookResult",
    "WebhookStatus",
]
