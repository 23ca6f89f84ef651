from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from relay.logging_config import get_logger
from relay.models import Message
from relay.schemas.content import MessageStatus
from relay.services import customer_service, message_service
from relay.services.fanout_service import Fanout
from relay.services.retry_service import RetryManager

logger = get_logger("status_service")


class StatusReconciler:
    def __init__(self, retry_manager: RetryManager, fanout: Fanout):
        self.retry_manager = retry_manager
        self.fanout = fanout

    async def apply_status(
        self,
        db: Session,
        whatsapp_message_id: str,
        status: MessageStatus,
        conversation_info: Optional[dict[str, Any]] = None,
        pricing_info: Optional[dict[str, Any]] = None,
        errors: Optional[list[dict[str, Any]]] = None,
        timestamp: Optional[datetime] = None,
    ) -> Optional[Message]:
        """Apply a provider status callback to the stored message.

        Statuses can arrive before the message row exists; those are logged
        and dropped. The last status received wins. Operators hear about the
        status before any failure handling runs.
        """
        message = message_service.get_by_provider_id(db, whatsapp_message_id)
        if message is None:
            logger.warning(
                "Status for unknown message",
                extra={"context": {"whatsapp_message_id": whatsapp_message_id, "status": status.value}},
            )
            return None

        status_at = timestamp or datetime.now(timezone.utc)
        patch: dict[str, Any] = {"status": {"status": status.value, "timestamp": status_at.isoformat()}}
        if conversation_info:
            patch["conversation"] = conversation_info
        if pricing_info:
            patch["pricing"] = pricing_info
        message_service.update_status(db, message, status.value, patch)
        db.commit()

        await self._emit_status(db, message, status, status_at, errors)

        if status == MessageStatus.FAILED and errors:
            # replays of the same failed status are absorbed by the failure record
            await self.retry_manager.handle_delivery_failure(db, message, errors)
        return message

    async def mark_as_read(self, db: Session, conversation_id, whatsapp_message_ids: list[str]) -> list[Message]:
        """Mark messages of one conversation as read on the operator side."""
        messages = message_service.list_by_provider_ids(db, conversation_id, whatsapp_message_ids)
        if not messages:
            return []

        read_at = datetime.now(timezone.utc)
        for message in messages:
            message_service.update_status(
                db,
                message,
                MessageStatus.READ.value,
                {"status": {"status": MessageStatus.READ.value, "timestamp": read_at.isoformat()}},
            )
        db.commit()

        for message in messages:
            await self._emit_status(db, message, MessageStatus.READ, read_at)
        logger.info(
            "Messages marked as read",
            extra={"context": {"conversation_id": conversation_id, "count": len(messages)}},
        )
        return messages

    async def _emit_status(
        self,
        db: Session,
        message: Message,
        status: MessageStatus,
        status_at: datetime,
        errors: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        try:
            operator_id = customer_service.resolve_operator_id(db, message.customer_id)
            await self.fanout.notify_status(
                operator_id,
                {
                    "message_id": str(message.id),
                    "whatsapp_message_id": message.whatsapp_message_id,
                    "conversation_id": str(message.conversation_id),
                    "status": status.value,
                    "timestamp": status_at.isoformat(),
                    "errors": errors or [],
                },
            )
        except Exception as exc:
            logger.warning(
                "Status fanout failed",
                extra={"context": {"whatsapp_message_id": message.whatsapp_message_id, "error": str(exc)}},
            )
