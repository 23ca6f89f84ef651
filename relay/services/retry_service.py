"""Retry scheduling, dead-lettering and failure records for outbound sends.

Retries are queue-level: a failed row goes back to PENDING with a
``next_attempt_at`` in the future, so backoff survives restarts and no
coroutine sleeps on it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy.orm import Session

from relay.errors import ConflictError, MessageExpiredError, NotFoundError, ProviderError, ProviderNetworkError, RelayError
from relay.logging_config import get_logger
from relay.models import FailedMessage, Message, OutboxMessage
from relay.schemas.content import Direction, MessageStatus
from relay.services import customer_service, failed_message_service, message_service, outbox_service
from relay.services.fanout_service import Fanout
from relay.services.notification_service import OperatorNotifier
from relay.services.state_machine import FailedMessageStatus
from relay.services.whatsapp_client import map_error_code

logger = get_logger("retry_service")

CRITICAL_CODES = {"AUTH_FAILED", "ACCOUNT_BLOCKED", "API_VERSION_INVALID"}
NON_RETRYABLE_CODES = {"INVALID_RECIPIENT", "BLOCKED_RECIPIENT", "INVALID_MESSAGE_FORMAT", "MESSAGE_EXPIRED"}
RETRYABLE_HTTP_STATUSES = {429, 502, 503, 504}

METRICS_TOTAL_KEY = "metrics:failures:total"
METRICS_HOURLY_PREFIX = "metrics:failures:hourly:"
METRICS_HOURLY_TTL_SECONDS = 7 * 24 * 3600


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    TERMINAL = "terminal"
    UNCLASSIFIED = "unclassified"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RETRY = "retry"
    TERMINAL = "terminal"


def classify(error: Exception) -> ErrorClass:
    if isinstance(error, ProviderNetworkError):
        return ErrorClass.TRANSIENT
    if isinstance(error, MessageExpiredError):
        return ErrorClass.TERMINAL
    if isinstance(error, ProviderError):
        if error.code in CRITICAL_CODES or error.code in NON_RETRYABLE_CODES:
            return ErrorClass.TERMINAL
        if error.http_status in RETRYABLE_HTTP_STATUSES or error.code == "RATE_LIMITED":
            return ErrorClass.TRANSIENT
        return ErrorClass.UNCLASSIFIED
    if isinstance(error, RelayError) and error.status_code == 400:
        return ErrorClass.TERMINAL
    return ErrorClass.UNCLASSIFIED


def is_critical(error: Exception) -> bool:
    return isinstance(error, RelayError) and error.code in CRITICAL_CODES


def error_payload(error: Exception) -> dict[str, Any]:
    if isinstance(error, RelayError):
        return error.to_dict()
    return {
        "code": "INTERNAL_ERROR",
        "message": str(error) or type(error).__name__,
        "details": {"exception": type(error).__name__},
    }


@dataclass
class RetryPolicy:
    max_retries: int = 3
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 3600.0

    def backoff_seconds(self, attempt: int) -> float:
        return min(self.base_delay_seconds * 2**attempt, self.max_delay_seconds)

    def decide(self, retry_count: int, error: Exception) -> AttemptOutcome:
        if classify(error) == ErrorClass.TERMINAL:
            return AttemptOutcome.TERMINAL
        if retry_count >= self.max_retries:
            return AttemptOutcome.TERMINAL
        return AttemptOutcome.RETRY


class RetryManager:
    def __init__(
        self,
        policy: RetryPolicy,
        notifier: OperatorNotifier,
        redis_client=None,
        fanout: Optional[Fanout] = None,
    ):
        self.policy = policy
        self.notifier = notifier
        self.redis = redis_client
        self.fanout = fanout

    def schedule_retry(self, db: Session, row: dict[str, Any], error: Exception) -> datetime:
        """Stage the row for redelivery after the backoff delay. The caller commits."""
        delay = self.policy.backoff_seconds(row["retry_count"])
        next_attempt_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
        outbox_service.schedule_retry(
            db,
            outbox_id=row["id"],
            retry_count=row["retry_count"] + 1,
            next_attempt_at=next_attempt_at,
            last_error=error_payload(error),
        )
        logger.info(
            "Send retry scheduled",
            extra={
                "context": {
                    "outbox_id": row["id"],
                    "retry_count": row["retry_count"] + 1,
                    "delay_seconds": delay,
                }
            },
        )
        return next_attempt_at

    def dead_letter(self, db: Session, row: dict[str, Any], error: Exception) -> FailedMessage:
        """Write the failure record and move the row to the dead-letter queue. The caller commits."""
        payload = error_payload(error)
        record = None
        if row.get("failed_message_id"):
            record = failed_message_service.get_failed_message(db, row["failed_message_id"])
        if record is not None:
            if record.status != FailedMessageStatus.FAILED.value:
                failed_message_service.set_status(
                    db,
                    record,
                    FailedMessageStatus.FAILED,
                    error=payload,
                    retry_count=row["retry_count"],
                )
        else:
            record = failed_message_service.create_failed_record(
                db,
                outbox_message_id=row["id"],
                destination=row["destination"],
                type=row["type"],
                content=row["content"],
                error=payload,
                retry_count=row["retry_count"],
                status=FailedMessageStatus.FAILED,
                metadata=row.get("metadata") or {},
            )
        outbox_service.mark_dead(db, outbox_id=row["id"], last_error=payload, failed_message_id=record.id)
        logger.warning(
            "Send dead-lettered",
            extra={"context": {"outbox_id": row["id"], "error_code": payload["code"], "retry_count": row["retry_count"]}},
        )
        return record

    async def after_failure(self, db: Session, error: Exception, context: dict[str, Any]) -> None:
        """Metrics and operator notification; runs after the outcome is committed."""
        await self.record_metrics(error_payload(error)["code"])
        if is_critical(error):
            await self.notifier.notify_critical(db, error_payload(error), context)

    async def announce_failure(
        self,
        db: Session,
        payload: dict[str, Any],
        *,
        customer_id=None,
        destination: Optional[str] = None,
    ) -> None:
        """Emit ``message_failed`` to the customer's operator and conversation viewers."""
        if self.fanout is None:
            return
        try:
            if customer_id is None and destination:
                customer = customer_service.get_customer_by_whatsapp_id(db, destination)
                customer_id = customer.id if customer else None
            operator_id = customer_service.resolve_operator_id(db, customer_id) if customer_id else None
            await self.fanout.notify_failed(operator_id, {**payload, "timestamp": datetime.now(timezone.utc).isoformat()})
        except Exception as exc:
            logger.warning("Failure event not sent", extra={"context": {"error": str(exc)}})

    async def record_metrics(self, error_code: str) -> None:
        if self.redis is None:
            return
        hour_key = f"{METRICS_HOURLY_PREFIX}{datetime.now(timezone.utc).strftime('%Y%m%d%H')}"
        try:
            pipe = self.redis.pipeline(transaction=False)
            pipe.hincrby(METRICS_TOTAL_KEY, error_code, 1)
            pipe.hincrby(hour_key, error_code, 1)
            pipe.expire(hour_key, METRICS_HOURLY_TTL_SECONDS)
            await pipe.execute()
        except Exception as exc:
            logger.warning("Failure metrics update failed", extra={"context": {"error": str(exc)}})

    def resolve(self, db: Session, failed_message_id) -> Optional[FailedMessage]:
        record = failed_message_service.get_failed_message(db, failed_message_id)
        if record is None or record.status == FailedMessageStatus.RESOLVED.value:
            return record
        if record.status == FailedMessageStatus.FAILED.value:
            # a manual retry that raced a dead-letter still counts as delivered
            failed_message_service.set_status(db, record, FailedMessageStatus.PENDING_RETRY)
        return failed_message_service.set_status(db, record, FailedMessageStatus.RESOLVED)

    def drain_dead_letters(self, db: Session, *, limit: int = 10) -> int:
        """Make sure every DEAD row has a failure record, then mark it DEAD_RECORDED."""
        rows = outbox_service.claim_dead_letters(db, limit=limit)
        for row in rows:
            if row.failed_message_id is None and failed_message_service.get_by_outbox_id(db, row.id) is None:
                record = failed_message_service.create_failed_record(
                    db,
                    outbox_message_id=row.id,
                    destination=row.destination,
                    type=row.type,
                    content=row.content,
                    error=row.last_error or {"code": "UNKNOWN_ERROR", "message": "Dead-lettered without error"},
                    retry_count=row.retry_count,
                    status=FailedMessageStatus.FAILED,
                    metadata=row.message_metadata or {},
                )
                row.failed_message_id = record.id
            row.status = outbox_service.DEAD_RECORDED
            row.updated_at = datetime.now(timezone.utc)
        db.commit()
        if rows:
            logger.info("Dead letters recorded", extra={"context": {"count": len(rows)}})
        return len(rows)

    async def handle_delivery_failure(
        self,
        db: Session,
        message: Message,
        errors: list[dict[str, Any]],
    ) -> FailedMessage:
        """Record a failure reported by a status callback and schedule a re-send when it can help."""
        first = errors[0] if errors else {}
        provider_code = first.get("code") if isinstance(first.get("code"), int) else None
        error = ProviderError(
            first.get("message") or first.get("title") or "Message delivery failed",
            code=map_error_code(None, provider_code),
            provider_code=provider_code,
            details={"errors": errors},
        )
        payload = error_payload(error)

        customer = customer_service.get_customer(db, message.customer_id)
        destination = customer.whatsapp_id if customer else (message.message_metadata or {}).get("to", "")
        content = {key: value for key, value in (message.content or {}).items() if key != "type"}

        record, created = failed_message_service.insert_failed_record(
            db,
            whatsapp_message_id=message.whatsapp_message_id,
            destination=destination,
            type=message.type,
            content=content,
            error=payload,
            retry_count=0,
            status=FailedMessageStatus.PENDING_RETRY,
        )
        if not created:
            logger.info(
                "Delivery failure already recorded",
                extra={"context": {"whatsapp_message_id": message.whatsapp_message_id, "failed_message_id": record.id}},
            )
            return record
        message_service.update_status(db, message, MessageStatus.FAILED.value, {"error": payload})

        retryable = classify(error) != ErrorClass.TERMINAL and message.direction == Direction.OUTBOUND.value
        if retryable:
            failed_message_service.set_status(db, record, FailedMessageStatus.PENDING_RETRY, retry_count=1)
            outbox_service.enqueue_outbox_message(
                db,
                destination=destination,
                type=message.type,
                content=content,
                metadata={"resend_of": message.whatsapp_message_id},
                retry_count=1,
                failed_message_id=record.id,
                next_attempt_at=datetime.now(timezone.utc) + timedelta(seconds=self.policy.backoff_seconds(0)),
            )
        else:
            failed_message_service.set_status(db, record, FailedMessageStatus.FAILED)
            db.commit()

        logger.warning(
            "Delivery failed",
            extra={
                "context": {
                    "whatsapp_message_id": message.whatsapp_message_id,
                    "error_code": payload["code"],
                    "resend_scheduled": retryable,
                }
            },
        )
        await self.announce_failure(
            db,
            {
                "failed_message_id": str(record.id),
                "whatsapp_message_id": message.whatsapp_message_id,
                "conversation_id": str(message.conversation_id),
                "error": payload,
                "resend_scheduled": retryable,
            },
            customer_id=message.customer_id,
        )
        await self.after_failure(db, error, {"whatsapp_message_id": message.whatsapp_message_id})
        return record

    def retry_failed_message(self, db: Session, failed_id) -> tuple[FailedMessage, OutboxMessage]:
        """Manually put a failed message back on the queue with its stored retry count."""
        record = failed_message_service.get_failed_message(db, failed_id)
        if record is None:
            raise NotFoundError("Failed message not found", details={"id": str(failed_id)})
        if record.status == FailedMessageStatus.RESOLVED.value:
            raise ConflictError("Failed message already resolved", code="ALREADY_RESOLVED", details={"id": str(failed_id)})

        failed_message_service.set_status(db, record, FailedMessageStatus.PENDING_RETRY)
        row = outbox_service.enqueue_outbox_message(
            db,
            destination=record.destination,
            type=record.type,
            content=record.content,
            metadata={"manual_retry": True},
            retry_count=record.retry_count,
            failed_message_id=record.id,
        )
        logger.info(
            "Manual retry queued",
            extra={"context": {"failed_message_id": record.id, "outbox_id": row.id, "retry_count": record.retry_count}},
        )
        return record, row
