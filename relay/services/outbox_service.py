"""Durable outbound work queue on the ``outbox_messages`` table.

PENDING rows are the live queue, DEAD rows the dead-letter queue. A claimed
row is PROCESSING with a lease in ``locked_until``; leases that run out are
released back to PENDING so a crashed worker's rows are redelivered.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import text, update
from sqlalchemy.orm import Session

from relay.models import OutboxMessage

PENDING = "PENDING"
PROCESSING = "PROCESSING"
SENT = "SENT"
DEAD = "DEAD"
DEAD_RECORDED = "DEAD_RECORDED"


def enqueue_outbox_message(
    db: Session,
    *,
    destination: str,
    type: str,
    content: dict[str, Any],
    variables: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
    retry_count: int = 0,
    failed_message_id=None,
    next_attempt_at: datetime | None = None,
) -> OutboxMessage:
    now = datetime.now(timezone.utc)
    row = OutboxMessage(
        id=uuid.uuid4(),
        destination=destination,
        type=type,
        content=content,
        variables=variables,
        message_metadata=metadata or {},
        status=PENDING,
        retry_count=retry_count,
        next_attempt_at=next_attempt_at,
        failed_message_id=failed_message_id,
        enqueued_at=now,
        updated_at=now,
    )
    db.add(row)
    db.commit()
    return row


def claim_pending_outbox(db: Session, *, limit: int = 10, lease_seconds: int = 300) -> list[dict[str, Any]]:
    rows = (
        db.execute(
            text(
                """
                WITH cte AS (
                    SELECT id
                    FROM outbox_messages
                    WHERE status = 'PENDING'
                      AND (next_attempt_at IS NULL OR next_attempt_at <= NOW())
                    ORDER BY enqueued_at
                    LIMIT :limit
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE outbox_messages
                SET status = 'PROCESSING',
                    locked_until = NOW() + make_interval(secs => :lease_seconds),
                    updated_at = NOW()
                FROM cte
                WHERE outbox_messages.id = cte.id
                RETURNING outbox_messages.id,
                          outbox_messages.destination,
                          outbox_messages.type,
                          outbox_messages.content,
                          outbox_messages.metadata,
                          outbox_messages.retry_count,
                          outbox_messages.provider_message_id,
                          outbox_messages.failed_message_id,
                          outbox_messages.enqueued_at,
                          outbox_messages.locked_until
                """
            ),
            {"limit": limit, "lease_seconds": lease_seconds},
        )
        .mappings()
        .all()
    )
    db.commit()
    return [dict(row) for row in rows]


def release_expired_leases(db: Session) -> int:
    result = db.execute(
        text(
            """
            UPDATE outbox_messages
            SET status = 'PENDING',
                locked_until = NULL,
                updated_at = NOW()
            WHERE status = 'PROCESSING'
              AND locked_until < NOW()
            """
        )
    )
    db.commit()
    return result.rowcount


def renew_lease(db: Session, *, outbox_id, claimed_until: datetime | None, lease_seconds: int) -> datetime | None:
    """Push the lease out if the caller still holds it; None once the row was released or re-claimed."""
    locked_until = db.execute(
        text(
            """
            UPDATE outbox_messages
            SET locked_until = NOW() + make_interval(secs => :lease_seconds),
                updated_at = NOW()
            WHERE id = :id
              AND status = 'PROCESSING'
              AND locked_until = :claimed_until
            RETURNING locked_until
            """
        ),
        {"id": outbox_id, "claimed_until": claimed_until, "lease_seconds": lease_seconds},
    ).scalar_one_or_none()
    db.commit()
    return locked_until


def record_provider_id(db: Session, *, outbox_id, provider_message_id: str) -> None:
    """Persist the provider id right after acceptance; a redelivered row then skips the send."""
    mark_outbox_status(db, outbox_id=outbox_id, status=PROCESSING, provider_message_id=provider_message_id)
    db.commit()


def mark_outbox_status(
    db: Session,
    *,
    outbox_id,
    status: str,
    last_error: dict[str, Any] | None = None,
    **fields: Any,
) -> None:
    """Stage a status change; the caller commits together with the rest of the outcome."""
    values = {"status": status, "updated_at": datetime.now(timezone.utc), **fields}
    if status != PROCESSING:
        values["locked_until"] = None
    if last_error is not None:
        values["last_error"] = last_error
    db.execute(update(OutboxMessage).where(OutboxMessage.id == outbox_id).values(**values))


def mark_sent(db: Session, *, outbox_id, provider_message_id: str) -> None:
    mark_outbox_status(db, outbox_id=outbox_id, status=SENT, provider_message_id=provider_message_id)


def schedule_retry(
    db: Session,
    *,
    outbox_id,
    retry_count: int,
    next_attempt_at: datetime,
    last_error: dict[str, Any],
) -> None:
    mark_outbox_status(
        db,
        outbox_id=outbox_id,
        status=PENDING,
        last_error=last_error,
        retry_count=retry_count,
        next_attempt_at=next_attempt_at,
    )


def mark_dead(db: Session, *, outbox_id, last_error: dict[str, Any], failed_message_id=None) -> None:
    fields = {"failed_message_id": failed_message_id} if failed_message_id else {}
    mark_outbox_status(db, outbox_id=outbox_id, status=DEAD, last_error=last_error, **fields)


def claim_dead_letters(db: Session, *, limit: int = 10) -> list[OutboxMessage]:
    """Lock DEAD rows for the caller's transaction; nothing is committed here."""
    return (
        db.query(OutboxMessage)
        .filter(OutboxMessage.status == DEAD)
        .order_by(OutboxMessage.updated_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .all()
    )
