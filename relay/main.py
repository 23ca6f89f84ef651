import asyncio
import os
from typing import Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from relay.config import settings
from relay.database import SessionLocal
from relay.logging_config import get_logger, setup_logging
from relay.pipeline import build_pipeline
from relay.redis_client import close_redis, create_subscriber_client, get_redis
from relay.routers import conversations, failed_messages, messages, realtime, webhook
from relay.services import conversation_service, outbox_service

setup_logging(settings.log_level)

app = FastAPI(
    title="WhatsApp Relay",
    description="WhatsApp Cloud API message pipeline",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(messages.router)
app.include_router(conversations.router)
app.include_router(failed_messages.router)
app.include_router(realtime.router)

app.state.pipeline = build_pipeline(settings, redis_client=get_redis(), session_factory=SessionLocal)

worker_logger = get_logger("background")
_background_tasks: list[asyncio.Task] = []


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_background_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("OUTBOX_WORKER_ENABLED"), default=True)


async def _periodic(name: str, interval_seconds: float, job: Callable[[Session], int]) -> None:
    """Run ``job`` every ``interval_seconds`` with a fresh session per run."""
    while True:
        try:
            await asyncio.sleep(max(interval_seconds, 0.1))
            db = SessionLocal()
            try:
                count = job(db)
            finally:
                db.close()
            if count:
                worker_logger.info(f"{name} done", extra={"context": {"count": count}})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(f"{name} failed", extra={"context": {"error": str(exc)}})


@app.on_event("startup")
async def start_background_tasks() -> None:
    if not _is_background_enabled() or _background_tasks:
        return
    pipeline = app.state.pipeline
    for _ in range(max(settings.outbox_worker_concurrency, 1)):
        _background_tasks.append(
            asyncio.create_task(pipeline.worker.run(settings.outbox_worker_interval_seconds))
        )
    _background_tasks.append(
        asyncio.create_task(
            _periodic(
                "Dead-letter drain",
                settings.dead_letter_drain_interval_seconds,
                lambda db: pipeline.retry_manager.drain_dead_letters(db, limit=settings.outbox_batch_size),
            )
        )
    )
    _background_tasks.append(
        asyncio.create_task(
            _periodic(
                "Conversation expiry sweep",
                settings.conversation_sweep_interval_seconds,
                conversation_service.expire_stale_conversations,
            )
        )
    )
    _background_tasks.append(
        asyncio.create_task(
            _periodic("Lease reclaim", settings.lease_reclaim_interval_seconds, outbox_service.release_expired_leases)
        )
    )
    if pipeline.fanout.redis is not None:
        _background_tasks.append(asyncio.create_task(pipeline.fanout.run_subscriber(create_subscriber_client)))
    worker_logger.info("Background tasks started", extra={"context": {"tasks": len(_background_tasks)}})


@app.on_event("shutdown")
async def stop_background_tasks() -> None:
    for task in _background_tasks:
        task.cancel()
    for task in _background_tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    _background_tasks.clear()
    await app.state.pipeline.whatsapp_client.aclose()
    await close_redis()


@app.get("/health")
async def health():
    return {"status": "ok"}
