"""Construction of the message pipeline components, wired by constructor injection."""

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from relay.config import Settings, settings as default_settings
from relay.database import SessionLocal
from relay.services.dispatcher import OutboundDispatcher, OutboxWorker
from relay.services.fanout_service import ConnectionManager, Fanout
from relay.services.notification_service import OperatorNotifier
from relay.services.rate_limiter import RateLimiter
from relay.services.referral_service import ReferralTracker
from relay.services.retry_service import RetryManager, RetryPolicy
from relay.services.status_service import StatusReconciler
from relay.services.webhook_service import WebhookNormalizer
from relay.services.whatsapp_client import WhatsAppClient
from relay.services.window_service import WindowStore


@dataclass
class Pipeline:
    settings: Settings
    connections: ConnectionManager
    fanout: Fanout
    window_store: WindowStore
    whatsapp_client: WhatsAppClient
    rate_limiter: RateLimiter
    retry_manager: RetryManager
    status_reconciler: StatusReconciler
    normalizer: WebhookNormalizer
    dispatcher: OutboundDispatcher
    worker: OutboxWorker


def build_pipeline(
    config: Optional[Settings] = None,
    redis_client=None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> Pipeline:
    config = config or default_settings
    connections = ConnectionManager()
    fanout = Fanout(connections, redis_client)
    window_store = WindowStore(redis_client, window_hours=config.conversation_window_hours)
    whatsapp_client = WhatsAppClient(
        access_token=config.whatsapp_access_token,
        phone_number_id=config.whatsapp_phone_number_id,
        graph_url=config.whatsapp_graph_url,
        api_version=config.whatsapp_api_version,
        timeout_seconds=config.whatsapp_request_timeout_seconds,
        redis_client=redis_client,
    )
    rate_limiter = RateLimiter(
        redis_client,
        max_requests=config.rate_limit_max_requests,
        window_seconds=config.rate_limit_window_seconds,
    )
    retry_manager = RetryManager(
        RetryPolicy(
            max_retries=config.max_retries,
            base_delay_seconds=config.retry_base_delay_seconds,
            max_delay_seconds=config.retry_max_delay_seconds,
        ),
        OperatorNotifier(fanout),
        redis_client,
        fanout=fanout,
    )
    status_reconciler = StatusReconciler(retry_manager, fanout)
    normalizer = WebhookNormalizer(
        window_store,
        status_reconciler,
        fanout,
        whatsapp_client,
        referral_tracker=ReferralTracker(fanout, redis_client),
    )
    dispatcher = OutboundDispatcher(window_store)
    worker = OutboxWorker(
        session_factory,
        whatsapp_client,
        rate_limiter,
        window_store,
        retry_manager,
        fanout,
        channel_id=config.whatsapp_phone_number_id,
        batch_size=config.outbox_batch_size,
        batch_wait_ms=config.outbox_batch_wait_ms,
        lease_seconds=config.outbox_lease_seconds,
        message_ttl_seconds=config.message_ttl_seconds,
    )
    return Pipeline(
        settings=config,
        connections=connections,
        fanout=fanout,
        window_store=window_store,
        whatsapp_client=whatsapp_client,
        rate_limiter=rate_limiter,
        retry_manager=retry_manager,
        status_reconciler=status_reconciler,
        normalizer=normalizer,
        dispatcher=dispatcher,
        worker=worker,
    )
