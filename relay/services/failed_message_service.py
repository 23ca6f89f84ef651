import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from relay.models import FailedMessage
from relay.services.state_machine import FailedMessageStatus, resolve_failure, transition


def get_failed_message(db: Session, failed_id) -> Optional[FailedMessage]:
    return db.query(FailedMessage).filter(FailedMessage.id == failed_id).first()


def get_by_outbox_id(db: Session, outbox_id) -> Optional[FailedMessage]:
    return db.query(FailedMessage).filter(FailedMessage.outbox_message_id == outbox_id).first()


def get_by_whatsapp_message_id(db: Session, whatsapp_message_id: str) -> Optional[FailedMessage]:
    return db.query(FailedMessage).filter(FailedMessage.whatsapp_message_id == whatsapp_message_id).first()


def list_failed_messages(
    db: Session,
    *,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[FailedMessage]:
    query = db.query(FailedMessage)
    if status:
        query = query.filter(FailedMessage.status == status)
    return query.order_by(FailedMessage.created_at.desc()).offset(offset).limit(limit).all()


def insert_failed_record(
    db: Session,
    *,
    destination: str,
    type: str,
    content: dict[str, Any],
    error: dict[str, Any],
    retry_count: int,
    status: FailedMessageStatus,
    outbox_message_id=None,
    whatsapp_message_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> tuple[FailedMessage, bool]:
    """Write one failure record per outbox row or provider message id.

    Returns the record and whether this call created it.
    """
    existing = _find_existing(db, outbox_message_id, whatsapp_message_id)
    if existing:
        return existing, False

    now = datetime.now(timezone.utc)
    record_id = uuid.uuid4()
    stmt = (
        insert(FailedMessage)
        .values(
            id=record_id,
            outbox_message_id=outbox_message_id,
            whatsapp_message_id=whatsapp_message_id,
            destination=destination,
            type=type,
            content=content,
            error_code=error.get("code") or "PROVIDER_ERROR",
            error_message=error.get("message") or "",
            error_details=error.get("details"),
            retry_count=retry_count,
            status=status.value,
            failure_metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing()
    )
    result = db.execute(stmt)
    if result.rowcount:
        return get_failed_message(db, record_id), True
    return _find_existing(db, outbox_message_id, whatsapp_message_id), False


def create_failed_record(db: Session, **fields) -> FailedMessage:
    record, _ = insert_failed_record(db, **fields)
    return record


def _find_existing(db: Session, outbox_message_id, whatsapp_message_id) -> Optional[FailedMessage]:
    if outbox_message_id is not None:
        return get_by_outbox_id(db, outbox_message_id)
    if whatsapp_message_id is not None:
        return get_by_whatsapp_message_id(db, whatsapp_message_id)
    return None


def set_status(
    db: Session,
    record: FailedMessage,
    status: FailedMessageStatus,
    *,
    error: Optional[dict[str, Any]] = None,
    retry_count: Optional[int] = None,
) -> FailedMessage:
    now = datetime.now(timezone.utc)
    if status == FailedMessageStatus.RESOLVED:
        record.status = resolve_failure(FailedMessageStatus(record.status)).value
        record.resolved_at = now
    else:
        record.status = transition(FailedMessageStatus(record.status), status).value
    if status == FailedMessageStatus.PENDING_RETRY:
        record.last_retry_at = now
    if error:
        record.error_code = error.get("code") or record.error_code
        record.error_message = error.get("message") or record.error_message
        record.error_details = error.get("details")
    if retry_count is not None:
        record.retry_count = retry_count
    record.updated_at = now
    return record
