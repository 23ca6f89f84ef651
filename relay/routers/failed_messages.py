from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from relay.database import get_db
from relay.errors import RelayError
from relay.pipeline import Pipeline
from relay.routers.deps import get_pipeline, http_error
from relay.schemas.message import FailedMessageOut, RetryResponse
from relay.services import failed_message_service

router = APIRouter()


@router.get("/failed-messages", response_model=list[FailedMessageOut])
def list_failed(
    status: Optional[str] = Query(default=None, pattern="^(pending_retry|failed|resolved)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    records = failed_message_service.list_failed_messages(db, status=status, limit=limit, offset=offset)
    return [FailedMessageOut.model_validate(record) for record in records]


@router.post("/failed-messages/{failed_id}/retry", response_model=RetryResponse, status_code=202)
def retry_failed(
    failed_id: UUID,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    try:
        record, row = pipeline.retry_manager.retry_failed_message(db, failed_id)
    except RelayError as exc:
        raise http_error(exc) from exc
    return RetryResponse(success=True, failed_message_id=record.id, queued_id=row.id, retry_count=row.retry_count)
