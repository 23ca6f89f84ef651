import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from relay.config import settings
from relay.database import get_db
from relay.logging_config import get_logger
from relay.pipeline import Pipeline
from relay.routers.deps import get_pipeline
from relay.schemas.webhook import WebhookResult
from relay.services.webhook_service import verify_signature, verify_subscription

logger = get_logger("webhook")

router = APIRouter()


@router.get("/webhook", response_class=PlainTextResponse)
def verify_webhook(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
):
    challenge = verify_subscription(hub_mode, hub_verify_token, hub_challenge, settings.whatsapp_webhook_verify_token)
    if challenge is None:
        logger.warning("Webhook verification rejected", extra={"context": {"mode": hub_mode}})
        raise HTTPException(status_code=403, detail="Verification failed")
    return challenge


@router.post("/webhook", response_model=WebhookResult)
async def receive_webhook(
    request: Request,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    raw_body = await request.body()
    if not verify_signature(raw_body, request.headers.get("X-Hub-Signature-256"), settings.whatsapp_app_secret):
        logger.warning("Webhook signature rejected", extra={"context": {"bytes": len(raw_body)}})
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    return await pipeline.normalizer.handle_webhook(db, payload)
