"""Normalization of WhatsApp Cloud API webhooks into stored messages and statuses."""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from relay.logging_config import get_logger
from relay.schemas.content import (
    MEDIA_TYPES,
    AudioContent,
    ButtonContent,
    ContactsContent,
    Direction,
    DocumentContent,
    ImageContent,
    InteractiveContent,
    LocationContent,
    MessageContent,
    MessageStatus,
    MessageType,
    ReactionContent,
    ReplyOption,
    TemplateContent,
    TextContent,
    UnknownContent,
    VideoContent,
)
from relay.schemas.webhook import WebhookMessage, WebhookResult, WebhookStatus, WebhookValue
from relay.services import conversation_service, customer_service, message_service
from relay.services.conversation_service import ConversationKind
from relay.services.fanout_service import Fanout
from relay.services.referral_service import ReferralTracker
from relay.services.status_service import StatusReconciler
from relay.services.whatsapp_client import WhatsAppClient
from relay.services.window_service import WindowStore

logger = get_logger("webhook_service")

SIGNATURE_PREFIX = "sha256="


def verify_signature(raw_body: bytes, header: Optional[str], app_secret: str) -> bool:
    if not app_secret or not header or not header.startswith(SIGNATURE_PREFIX):
        return False
    expected = SIGNATURE_PREFIX + hmac.new(app_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, header)


def verify_subscription(
    mode: Optional[str],
    token: Optional[str],
    challenge: Optional[str],
    verify_token: str,
) -> Optional[str]:
    """Return the challenge to echo for a valid handshake, else None."""
    if mode != "subscribe" or not verify_token or token is None:
        return None
    if not hmac.compare_digest(token, verify_token):
        return None
    return challenge


def parse_timestamp(value: Optional[str]) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return datetime.now(timezone.utc)


def _text_content(msg: WebhookMessage) -> MessageContent:
    return TextContent(body=msg.text.body, preview_url=bool(msg.text.preview_url))


def _media_content(model):
    def build(msg: WebhookMessage) -> MessageContent:
        media = getattr(msg, msg.type)
        fields = {
            "media_id": media.id,
            "mime_type": media.mime_type,
            "sha256": media.sha256,
            "caption": media.caption,
        }
        if model is DocumentContent and media.filename:
            fields["filename"] = media.filename
        if model is AudioContent:
            fields["voice"] = bool(media.voice)
        return model(**fields)

    return build


def _location_content(msg: WebhookMessage) -> MessageContent:
    return LocationContent(**msg.location.model_dump(include={"latitude", "longitude", "name", "address", "url"}))


def _contacts_content(msg: WebhookMessage) -> MessageContent:
    return ContactsContent(contacts=msg.contacts)


def _interactive_content(msg: WebhookMessage) -> MessageContent:
    interactive = msg.interactive

    def option(reply):
        return ReplyOption(**reply.model_dump(include={"id", "title", "description"})) if reply else None

    return InteractiveContent(
        interactive_type=interactive.type,
        button_reply=option(interactive.button_reply),
        list_reply=option(interactive.list_reply),
    )


def _button_content(msg: WebhookMessage) -> MessageContent:
    return ButtonContent(text=msg.button.text, payload=msg.button.payload)


def _reaction_content(msg: WebhookMessage) -> MessageContent:
    return ReactionContent(message_id=msg.reaction.message_id, emoji=msg.reaction.emoji or None)


def _template_content(msg: WebhookMessage) -> MessageContent:
    template = msg.template
    return TemplateContent(
        name=template.get("name", ""),
        language=template.get("language"),
        components=template.get("components") or [],
    )


CONTENT_HANDLERS: dict[str, Callable[[WebhookMessage], MessageContent]] = {
    MessageType.TEXT.value: _text_content,
    MessageType.IMAGE.value: _media_content(ImageContent),
    MessageType.VIDEO.value: _media_content(VideoContent),
    MessageType.AUDIO.value: _media_content(AudioContent),
    MessageType.DOCUMENT.value: _media_content(DocumentContent),
    MessageType.LOCATION.value: _location_content,
    MessageType.CONTACTS.value: _contacts_content,
    MessageType.INTERACTIVE.value: _interactive_content,
    MessageType.BUTTON.value: _button_content,
    MessageType.REACTION.value: _reaction_content,
    MessageType.TEMPLATE.value: _template_content,
}


def build_content(msg: WebhookMessage) -> MessageContent:
    """Typed content for a provider message; unrecognised or incomplete payloads become ``unknown``."""
    handler = CONTENT_HANDLERS.get(msg.type)
    if handler is not None and getattr(msg, msg.type, None) is not None:
        return handler(msg)
    return UnknownContent(
        original_type=msg.type,
        errors=[error.model_dump(exclude_none=True) for error in msg.errors],
    )


def build_metadata(msg: WebhookMessage, profile_name: Optional[str]) -> dict[str, Any]:
    metadata: dict[str, Any] = {}
    if msg.context:
        metadata["context"] = msg.context.model_dump(exclude_none=True)
    if msg.referral:
        metadata["referral"] = msg.referral.model_dump(exclude_none=True)
    if msg.errors:
        metadata["errors"] = [error.model_dump(exclude_none=True) for error in msg.errors]
    if profile_name:
        metadata["profile_name"] = profile_name
    return metadata


def iter_changes(payload: dict[str, Any]):
    """Yield (index, value dict) for every change whose field is ``messages``."""
    entries = payload.get("entry")
    if not isinstance(entries, list):
        return
    for entry_index, entry in enumerate(entries):
        if not isinstance(entry, dict) or not isinstance(entry.get("changes"), list):
            continue
        for change_index, change in enumerate(entry["changes"]):
            if not isinstance(change, dict) or change.get("field") != "messages":
                continue
            yield f"{entry_index}.{change_index}", change.get("value")


class WebhookNormalizer:
    def __init__(
        self,
        window_store: WindowStore,
        status_reconciler: StatusReconciler,
        fanout: Fanout,
        whatsapp_client: Optional[WhatsAppClient] = None,
        referral_tracker: Optional[ReferralTracker] = None,
    ):
        self.window_store = window_store
        self.status_reconciler = status_reconciler
        self.fanout = fanout
        self.whatsapp_client = whatsapp_client
        self.referral_tracker = referral_tracker

    async def handle_webhook(self, db: Session, payload: dict[str, Any]) -> WebhookResult:
        """Process every message and status in the envelope; bad entries are skipped, never fatal."""
        result = WebhookResult()
        for position, raw_value in iter_changes(payload):
            try:
                value = WebhookValue.model_validate(raw_value)
            except PydanticValidationError as exc:
                result.skipped += 1
                logger.warning(
                    "Skipping invalid webhook change",
                    extra={"context": {"position": position, "errors": exc.errors(include_url=False)}},
                )
                continue

            channel_id = value.metadata.phone_number_id
            profiles = {contact.wa_id: contact.profile.name if contact.profile else None for contact in value.contacts}

            for raw_message in value.messages:
                result.messages_received += 1
                try:
                    msg = WebhookMessage.model_validate(raw_message)
                    created = await self.handle_message(db, channel_id, msg, profiles.get(msg.from_number))
                except PydanticValidationError as exc:
                    result.skipped += 1
                    logger.warning(
                        "Skipping malformed message",
                        extra={"context": {"position": position, "errors": exc.errors(include_url=False)}},
                    )
                    continue
                except Exception as exc:
                    db.rollback()
                    result.skipped += 1
                    logger.error(
                        "Message processing failed",
                        extra={"context": {"position": position, "message_id": raw_message.get("id"), "error": str(exc)}},
                        exc_info=True,
                    )
                    continue
                if created:
                    result.messages_created += 1
                else:
                    result.duplicates += 1

            for raw_status in value.statuses:
                try:
                    status = WebhookStatus.model_validate(raw_status)
                    await self.handle_status(db, status)
                except PydanticValidationError as exc:
                    result.skipped += 1
                    logger.warning(
                        "Skipping malformed status",
                        extra={"context": {"position": position, "errors": exc.errors(include_url=False)}},
                    )
                    continue
                except Exception as exc:
                    db.rollback()
                    result.skipped += 1
                    logger.error(
                        "Status processing failed",
                        extra={"context": {"position": position, "status_id": raw_status.get("id"), "error": str(exc)}},
                        exc_info=True,
                    )
                    continue
                result.statuses_applied += 1

        logger.info("Webhook processed", extra={"context": result.model_dump()})
        return result

    async def handle_message(
        self,
        db: Session,
        channel_id: str,
        msg: WebhookMessage,
        profile_name: Optional[str] = None,
    ) -> bool:
        """Store one inbound message. Returns False when it was already stored."""
        if message_service.get_by_provider_id(db, msg.id) is not None:
            logger.info("Duplicate inbound message", extra={"context": {"whatsapp_message_id": msg.id}})
            return False

        sent_at = parse_timestamp(msg.timestamp)
        customer = customer_service.get_or_create_customer(db, msg.from_number, profile_name)
        kind = ConversationKind.REFERRAL_CONVERSION if msg.referral else ConversationKind.CUSTOMER_INITIATED
        conversation = conversation_service.get_or_create_active(
            db,
            customer_id=customer.id,
            channel_id=channel_id,
            kind=kind,
        )
        window_expires_at = await self.window_store.extend_window(db, customer.id, Direction.INBOUND, conversation)
        conversation_service.touch(db, conversation, sent_at)

        content = build_content(msg)
        await self._resolve_media_url(content)

        message, created = message_service.upsert_message(
            db,
            whatsapp_message_id=msg.id,
            conversation_id=conversation.id,
            customer_id=customer.id,
            operator_id=customer.assigned_operator_id,
            direction=Direction.INBOUND.value,
            type=content.type,
            content=content.model_dump(mode="json"),
            status=MessageStatus.DELIVERED.value,
            timestamp=sent_at,
            window_expires_at=window_expires_at,
            metadata=build_metadata(msg, profile_name),
        )
        db.commit()

        if created:
            operator_id = customer_service.resolve_operator_id(db, customer.id)
            await self.fanout.notify_message(operator_id, message_service.serialize_message(message))
            if msg.referral and self.referral_tracker is not None:
                await self._track_referral(db, customer, message, msg)
        return created

    async def handle_status(self, db: Session, status: WebhookStatus):
        return await self.status_reconciler.apply_status(
            db,
            status.id,
            MessageStatus(status.status),
            conversation_info=status.conversation.model_dump(exclude_none=True) if status.conversation else None,
            pricing_info=status.pricing.model_dump(exclude_none=True) if status.pricing else None,
            errors=[error.model_dump(exclude_none=True) for error in status.errors],
            timestamp=parse_timestamp(status.timestamp) if status.timestamp else None,
        )

    async def _track_referral(self, db: Session, customer, message, msg: WebhookMessage) -> None:
        try:
            await self.referral_tracker.track(db, customer, message, msg.referral.model_dump(exclude_none=True))
        except Exception as exc:
            db.rollback()
            logger.warning(
                "Referral tracking failed",
                extra={"context": {"whatsapp_message_id": msg.id, "error": str(exc)}},
            )

    async def _resolve_media_url(self, content: MessageContent) -> None:
        if self.whatsapp_client is None or MessageType(content.type) not in MEDIA_TYPES:
            return
        try:
            info = await self.whatsapp_client.get_media_url(content.media_id)
        except Exception as exc:
            logger.warning(
                "Media URL lookup failed",
                extra={"context": {"media_id": content.media_id, "error": str(exc)}},
            )
            return
        if info and info.get("url"):
            content.url = info["url"]
