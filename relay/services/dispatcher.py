"""Outbound sends: request validation and enqueueing, and the worker pool that delivers queued rows."""

from __future__ import annotations

import asyncio
import copy
import re
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from relay.errors import LeaseLostError, MessageExpiredError, MissingVariableError, RelayError, ValidationError, WindowClosedError
from relay.logging_config import bind, get_logger
from relay.models import Message, OutboxMessage
from relay.schemas.content import MEDIA_TYPES, Direction, MessageStatus, MessageType
from relay.schemas.message import BulkSendItem, SendMessageRequest
from relay.services import conversation_service, customer_service, message_service, outbox_service
from relay.services.conversation_service import ConversationKind
from relay.services.fanout_service import Fanout
from relay.services.rate_limiter import RateLimiter
from relay.services.retry_service import AttemptOutcome, RetryManager, error_payload
from relay.services.state_machine import OUTBOX_STATUS_FOR, DeliveryState, transition
from relay.services.whatsapp_client import WhatsAppClient
from relay.services.window_service import WindowStore

logger = get_logger("dispatcher")

VARIABLE_PATTERN = re.compile(r"{{([^{}]+)}}")
DESTINATION_PATTERN = re.compile(r"^\+?\d{7,15}$")

OUTBOUND_TYPES = {
    MessageType.TEXT,
    MessageType.IMAGE,
    MessageType.VIDEO,
    MessageType.AUDIO,
    MessageType.DOCUMENT,
    MessageType.LOCATION,
    MessageType.CONTACTS,
    MessageType.INTERACTIVE,
    MessageType.REACTION,
    MessageType.TEMPLATE,
}

REQUIRED_FIELDS = {
    MessageType.TEXT: ("body",),
    MessageType.TEMPLATE: ("name",),
    MessageType.LOCATION: ("latitude", "longitude"),
    MessageType.CONTACTS: ("contacts",),
    MessageType.INTERACTIVE: ("type",),
    MessageType.REACTION: ("message_id",),
}


def _variable_value(value: Any) -> Any:
    if isinstance(value, dict) and "value" in value:
        return value["value"]
    return value


def referenced_variables(content: Any) -> set[str]:
    if isinstance(content, str):
        return {name.strip() for name in VARIABLE_PATTERN.findall(content)}
    if isinstance(content, dict):
        return set().union(*(referenced_variables(value) for value in content.values())) if content else set()
    if isinstance(content, list):
        return set().union(*(referenced_variables(value) for value in content)) if content else set()
    return set()


def substitute_variables(content: dict[str, Any], variables: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """Replace ``{{key}}`` in every string of ``content``, however deeply nested.

    Raises MissingVariableError listing every referenced key that has no value.
    """
    variables = variables or {}
    missing = sorted(referenced_variables(content) - set(variables))
    if missing:
        raise MissingVariableError(missing)

    def render(value: Any) -> Any:
        if isinstance(value, str):
            return VARIABLE_PATTERN.sub(lambda match: str(_variable_value(variables[match.group(1).strip()])), value)
        if isinstance(value, dict):
            return {key: render(item) for key, item in value.items()}
        if isinstance(value, list):
            return [render(item) for item in value]
        return copy.deepcopy(value)

    return render(content)


def normalize_destination(destination: str) -> str:
    destination = (destination or "").strip().replace(" ", "")
    if not DESTINATION_PATTERN.match(destination):
        raise ValidationError("Invalid destination phone number", code="INVALID_DESTINATION", details={"to": destination})
    return destination.lstrip("+")


def validate_content(message_type: MessageType, content: dict[str, Any]) -> None:
    if message_type not in OUTBOUND_TYPES:
        raise ValidationError(
            f"Message type '{message_type.value}' cannot be sent",
            code="UNSUPPORTED_MESSAGE_TYPE",
            details={"type": message_type.value},
        )
    if not isinstance(content, dict) or not content:
        raise ValidationError("Message content is required", code="INVALID_CONTENT")
    if message_type in MEDIA_TYPES:
        required = ("id",) if "id" in content else ("link",)
    else:
        required = REQUIRED_FIELDS.get(message_type, ())
    missing = [name for name in required if content.get(name) in (None, "")]
    if missing:
        raise ValidationError(
            f"Content for '{message_type.value}' is missing fields: {', '.join(missing)}",
            code="INVALID_CONTENT",
            details={"missing_fields": missing},
        )


class OutboundDispatcher:
    def __init__(self, window_store: WindowStore):
        self.window_store = window_store

    async def send(
        self,
        db: Session,
        destination: str,
        message_type: MessageType,
        content: dict[str, Any],
        variables: Optional[dict[str, Any]] = None,
    ) -> OutboxMessage:
        """Validate and enqueue one message; delivery happens later on the worker pool."""
        message_type = MessageType(message_type)
        destination = normalize_destination(destination)
        validate_content(message_type, content)
        rendered = substitute_variables(content, variables)
        await self._check_window(db, destination, message_type)

        row = outbox_service.enqueue_outbox_message(
            db,
            destination=destination,
            type=message_type.value,
            content=rendered,
            variables=variables,
        )
        logger.info(
            "Message queued",
            extra={"context": {"outbox_id": row.id, "destination": destination, "type": message_type.value}},
        )
        return row

    async def send_bulk(self, db: Session, requests: list[SendMessageRequest]) -> list[BulkSendItem]:
        results = []
        for request in requests:
            try:
                row = await self.send(db, request.to, request.type, request.content, request.variables)
            except RelayError as exc:
                results.append(BulkSendItem(to=request.to, success=False, error=exc.to_dict()))
                continue
            results.append(BulkSendItem(to=request.to, success=True, queued_id=row.id))
        return results

    async def _check_window(self, db: Session, destination: str, message_type: MessageType) -> None:
        if message_type == MessageType.TEMPLATE:
            return
        customer = customer_service.get_customer_by_whatsapp_id(db, destination)
        within = await self.window_store.is_within_window(db, customer.id) if customer else False
        if within:
            return
        raise WindowClosedError(
            "Conversation window is closed; only template messages can be sent",
            details={"to": destination, "window": "unknown" if within is None else "closed"},
        )


class OutboxWorker:
    """Claims queued rows and delivers them: rate limit, provider call, persistence, fanout."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client: WhatsAppClient,
        rate_limiter: RateLimiter,
        window_store: WindowStore,
        retry_manager: RetryManager,
        fanout: Fanout,
        *,
        channel_id: str,
        batch_size: int = 10,
        batch_wait_ms: int = 100,
        lease_seconds: int = 300,
        message_ttl_seconds: int = 86400,
    ):
        self.session_factory = session_factory
        self.client = client
        self.rate_limiter = rate_limiter
        self.window_store = window_store
        self.retry_manager = retry_manager
        self.fanout = fanout
        self.channel_id = channel_id
        self.batch_size = batch_size
        self.batch_wait_ms = batch_wait_ms
        self.lease_seconds = lease_seconds
        self.message_ttl = timedelta(seconds=message_ttl_seconds)

    def _claim(self, limit: int) -> list[dict[str, Any]]:
        db = self.session_factory()
        try:
            return outbox_service.claim_pending_outbox(db, limit=limit, lease_seconds=self.lease_seconds)
        finally:
            db.close()

    async def run_once(self) -> dict[str, int]:
        rows = self._claim(self.batch_size)
        if rows and len(rows) < self.batch_size and self.batch_wait_ms > 0:
            # short batch: give the queue a moment to fill up
            await asyncio.sleep(self.batch_wait_ms / 1000)
            rows += self._claim(self.batch_size - len(rows))
        if not rows:
            return {}

        results = await asyncio.gather(*(self.process_row(row) for row in rows), return_exceptions=True)
        counts: Counter = Counter()
        for row, result in zip(rows, results):
            if isinstance(result, BaseException):
                counts["errors"] += 1
                logger.error(
                    "Outbox row processing crashed",
                    extra={"context": {"outbox_id": row["id"], "error": str(result)}},
                )
            else:
                counts[result.value] += 1
        return dict(counts)

    async def run(self, interval_seconds: float = 1.0) -> None:
        while True:
            try:
                await asyncio.sleep(interval_seconds)
                results = await self.run_once()
                if results:
                    logger.info("Outbox worker processed", extra={"context": results})
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Outbox worker loop failed", extra={"context": {"error": str(exc)}})

    def decide_ack(self, row: dict[str, Any], error: Optional[Exception]) -> DeliveryState:
        """The one place that turns an attempt's outcome into the row's next state."""
        if error is None:
            return DeliveryState.ACKED
        outcome = self.retry_manager.policy.decide(row["retry_count"], error)
        if outcome == AttemptOutcome.RETRY:
            return DeliveryState.RETRIED
        return DeliveryState.DEAD_LETTERED

    async def process_row(self, row: dict[str, Any]) -> DeliveryState:
        log = bind(logger, outbox_id=row["id"], destination=row["destination"])
        state = transition(DeliveryState.RECEIVED, DeliveryState.PROCESSING)
        db = self.session_factory()
        try:
            delivered: Optional[tuple[Message, bool]] = None
            error: Optional[Exception] = None
            try:
                delivered = await self._deliver(db, row)
            except LeaseLostError:
                db.rollback()
                log.warning("Outbox lease lost, row left to its new owner")
                return state
            except Exception as exc:
                db.rollback()
                error = exc
                log.warning("Send attempt failed", context={"error": str(exc), "retry_count": row["retry_count"]})

            state = transition(state, self.decide_ack(row, error))
            if state == DeliveryState.ACKED:
                outbox_service.mark_sent(db, outbox_id=row["id"], provider_message_id=row["provider_message_id"])
            elif state == DeliveryState.RETRIED:
                self.retry_manager.schedule_retry(db, row, error)
            else:
                record = self.retry_manager.dead_letter(db, row, error)
            db.commit()
            log.info("Outbox row settled", context={"outbox_status": OUTBOX_STATUS_FOR[state]})

            if state == DeliveryState.ACKED:
                message, created = delivered
                if created:
                    operator_id = customer_service.resolve_operator_id(db, message.customer_id)
                    await self.fanout.notify_message(operator_id, message_service.serialize_message(message))
            else:
                if state == DeliveryState.DEAD_LETTERED:
                    await self.retry_manager.announce_failure(
                        db,
                        {
                            "failed_message_id": str(record.id),
                            "outbox_id": str(row["id"]),
                            "destination": row["destination"],
                            "error": error_payload(error),
                            "resend_scheduled": False,
                        },
                        destination=row["destination"],
                    )
                await self.retry_manager.after_failure(
                    db,
                    error,
                    {"outbox_id": str(row["id"]), "destination": row["destination"]},
                )
            return state
        finally:
            db.close()

    def _renew_lease(self, db: Session, row: dict[str, Any]) -> None:
        locked_until = outbox_service.renew_lease(
            db,
            outbox_id=row["id"],
            claimed_until=row.get("locked_until"),
            lease_seconds=self.lease_seconds,
        )
        if locked_until is None:
            raise LeaseLostError("Outbox lease lost while waiting to send", details={"outbox_id": str(row["id"])})
        row["locked_until"] = locked_until

    def _check_ttl(self, row: dict[str, Any]) -> None:
        enqueued_at = row.get("enqueued_at")
        if enqueued_at is None:
            return
        if enqueued_at.tzinfo is None:
            enqueued_at = enqueued_at.replace(tzinfo=timezone.utc)
        if datetime.now(timezone.utc) - enqueued_at > self.message_ttl:
            raise MessageExpiredError(
                "Queued message expired before it could be sent",
                details={"enqueued_at": enqueued_at.isoformat()},
            )

    async def _deliver(self, db: Session, row: dict[str, Any]) -> tuple[Message, bool]:
        provider_message_id = row.get("provider_message_id")
        if not provider_message_id:
            self._check_ttl(row)
            await self.rate_limiter.acquire(row["destination"])
            self._renew_lease(db, row)
            provider_message_id = await self.client.send_message(row["destination"], row["type"], row["content"])
            outbox_service.record_provider_id(db, outbox_id=row["id"], provider_message_id=provider_message_id)
            row["provider_message_id"] = provider_message_id

        now = datetime.now(timezone.utc)
        customer = customer_service.get_or_create_customer(db, row["destination"])
        conversation = conversation_service.get_or_create_active(
            db,
            customer_id=customer.id,
            channel_id=self.channel_id,
            kind=ConversationKind.BUSINESS_INITIATED,
        )
        window_expires_at = await self.window_store.extend_window(db, customer.id, Direction.OUTBOUND, conversation)
        conversation_service.touch(db, conversation, now)

        message, created = message_service.upsert_message(
            db,
            whatsapp_message_id=provider_message_id,
            conversation_id=conversation.id,
            customer_id=customer.id,
            operator_id=customer.assigned_operator_id,
            direction=Direction.OUTBOUND.value,
            type=row["type"],
            content={"type": row["type"], **row["content"]},
            status=MessageStatus.SENT.value,
            timestamp=now,
            window_expires_at=window_expires_at,
            metadata={**(row.get("metadata") or {}), "outbox_message_id": str(row["id"])},
        )
        if row.get("failed_message_id"):
            self.retry_manager.resolve(db, row["failed_message_id"])
        return message, created
