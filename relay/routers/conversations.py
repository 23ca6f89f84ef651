import math
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from relay.database import get_db
from relay.pipeline import Pipeline
from relay.routers.deps import get_pipeline
from relay.schemas.conversation import (
    ActiveConversationsResponse,
    ConversationOut,
    MarkReadRequest,
    MarkReadResponse,
)
from relay.services import conversation_service

router = APIRouter()


@router.get("/conversations", response_model=ActiveConversationsResponse)
def active_conversations(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    conversations, total = conversation_service.list_active_conversations(db, limit=limit, offset=(page - 1) * limit)
    return ActiveConversationsResponse(
        conversations=[ConversationOut.model_validate(conversation) for conversation in conversations],
        total=total,
        page=page,
        pages=math.ceil(total / limit),
    )


@router.post("/conversations/{conversation_id}/read", response_model=MarkReadResponse)
async def mark_read(
    conversation_id: UUID,
    request: MarkReadRequest,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    messages = await pipeline.status_reconciler.mark_as_read(db, conversation_id, request.message_ids)
    return MarkReadResponse(conversation_id=conversation_id, updated=len(messages))
