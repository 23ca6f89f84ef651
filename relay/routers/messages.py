from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from relay.database import get_db
from relay.errors import RelayError
from relay.pipeline import Pipeline
from relay.routers.deps import get_pipeline, http_error
from relay.schemas.message import (
    BulkSendRequest,
    BulkSendResponse,
    MessageHistoryResponse,
    MessageOut,
    SendMessageRequest,
    SendMessageResponse,
)
from relay.services import message_service

router = APIRouter()


@router.post("/messages", response_model=SendMessageResponse, status_code=202)
async def send_message(
    request: SendMessageRequest,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Queue one outbound message. Validation errors come back synchronously as 400."""
    try:
        row = await pipeline.dispatcher.send(db, request.to, request.type, request.content, request.variables)
    except RelayError as exc:
        raise http_error(exc) from exc
    return SendMessageResponse(success=True, queued_id=row.id)


@router.post("/messages/bulk", response_model=BulkSendResponse, status_code=202)
async def send_bulk(
    request: BulkSendRequest,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    results = await pipeline.dispatcher.send_bulk(db, request.messages)
    queued = sum(1 for item in results if item.success)
    return BulkSendResponse(queued=queued, failed=len(results) - queued, results=results)


@router.get("/conversations/{conversation_id}/messages", response_model=MessageHistoryResponse)
def conversation_history(
    conversation_id: UUID,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    messages = message_service.list_conversation_messages(db, conversation_id, limit=limit, offset=offset)
    return MessageHistoryResponse(
        conversation_id=conversation_id,
        messages=[MessageOut.model_validate(message) for message in messages],
        limit=limit,
        offset=offset,
    )
