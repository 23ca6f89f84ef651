"""In-memory fakes for Redis and the repository modules."""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from relay.services import failed_message_service, message_service
from relay.services.state_machine import FailedMessageStatus


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.advance(seconds)
        await asyncio.sleep(0)


class FakePipeline:
    def __init__(self, redis: "FakeRedis", fail: bool = False):
        self.redis = redis
        self.calls = []
        self.fail = fail

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self

        return queue

    async def execute(self):
        if self.fail:
            raise ConnectionError("redis down")
        return [await getattr(self.redis, name)(*args, **kwargs) for name, args, kwargs in self.calls]


class FakeRedis:
    """Just enough of redis.asyncio for the pipeline: strings, counters, hashes, TTLs, publish."""

    def __init__(self, clock: FakeClock | None = None):
        self.clock = clock or FakeClock()
        self.data: dict[str, object] = {}
        self.expiry: dict[str, float] = {}
        self.published: list[tuple[str, str]] = []
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis down")

    def _purge(self, key):
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= self.clock():
            self.data.pop(key, None)
            self.expiry.pop(key, None)

    async def get(self, key):
        self._check()
        self._purge(key)
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        if ex is not None:
            self.expiry[key] = self.clock() + ex
        return True

    async def incr(self, key):
        self._check()
        self._purge(key)
        self.data[key] = int(self.data.get(key, 0)) + 1
        return self.data[key]

    async def expire(self, key, seconds):
        self._check()
        if key in self.data:
            self.expiry[key] = self.clock() + seconds
        return True

    async def pttl(self, key):
        self._check()
        self._purge(key)
        if key not in self.data:
            return -2
        if key not in self.expiry:
            return -1
        return int((self.expiry[key] - self.clock()) * 1000)

    async def hincrby(self, key, field, amount):
        self._check()
        bucket = self.data.setdefault(key, {})
        bucket[field] = bucket.get(field, 0) + amount
        return bucket[field]

    async def sadd(self, key, member):
        self._check()
        members = self.data.setdefault(key, set())
        if member in members:
            return 0
        members.add(member)
        return 1

    async def publish(self, channel, payload):
        self._check()
        self.published.append((channel, payload))
        return 1

    def pipeline(self, transaction=True):
        return FakePipeline(self, fail=self.fail)


class FakeStore:
    """In-memory stand-in for the repository modules, patched in where the services import them."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    DEAD = "DEAD"
    DEAD_RECORDED = "DEAD_RECORDED"

    def __init__(self):
        self.operators = {}
        self.customers = {}
        self.conversations = {}
        self.messages = {}
        self.outbox = {}
        self.failed = {}
        self.offset = timedelta(0)

    def now(self):
        return datetime.now(timezone.utc) + self.offset

    # customers

    def add_operator(self, is_admin=True, notify_errors=True):
        operator = SimpleNamespace(id=uuid.uuid4(), name="Op", is_admin=is_admin, notify_errors=notify_errors)
        self.operators[operator.id] = operator
        return operator

    def get_default_operator_id(self, db):
        admins = [operator for operator in self.operators.values() if operator.is_admin]
        return admins[0].id if admins else None

    def get_customer(self, db, customer_id):
        return self.customers.get(customer_id)

    def get_customer_by_whatsapp_id(self, db, whatsapp_id):
        return next((c for c in self.customers.values() if c.whatsapp_id == whatsapp_id), None)

    def get_or_create_customer(self, db, whatsapp_id, name=None):
        customer = self.get_customer_by_whatsapp_id(db, whatsapp_id)
        if customer is None:
            customer = SimpleNamespace(
                id=uuid.uuid4(),
                whatsapp_id=whatsapp_id,
                phone_number=f"+{whatsapp_id}",
                name=name,
                assigned_operator_id=self.get_default_operator_id(db),
            )
            self.customers[customer.id] = customer
        return customer

    def resolve_operator_id(self, db, customer_id):
        customer = self.customers.get(customer_id)
        return customer.assigned_operator_id if customer else None

    # conversations

    def get_active_conversation(self, db, customer_id, channel_id=None):
        for conversation in self.conversations.values():
            if conversation.customer_id != customer_id or conversation.status != "active":
                continue
            if channel_id is None or conversation.channel_id == channel_id:
                return conversation
        return None

    def get_or_create_active(self, db, *, customer_id, channel_id, kind, now=None):
        conversation = self.get_active_conversation(db, customer_id, channel_id)
        if conversation is None:
            now = now or datetime.now(timezone.utc)
            conversation = SimpleNamespace(
                id=uuid.uuid4(),
                customer_id=customer_id,
                channel_id=channel_id,
                status="active",
                kind=kind.value,
                last_message_at=now,
                expires_at=now + timedelta(hours=24),
                conversation_metadata={},
            )
            self.conversations[conversation.id] = conversation
        return conversation

    def touch(self, db, conversation, at):
        if at > conversation.last_message_at:
            conversation.last_message_at = at

    # messages

    def get_by_provider_id(self, db, whatsapp_message_id):
        return self.messages.get(whatsapp_message_id)

    def list_by_provider_ids(self, db, conversation_id, whatsapp_message_ids):
        return [
            self.messages[wamid]
            for wamid in whatsapp_message_ids
            if wamid in self.messages and str(self.messages[wamid].conversation_id) == str(conversation_id)
        ]

    def upsert_message(self, db, *, whatsapp_message_id, metadata=None, **fields):
        existing = self.messages.get(whatsapp_message_id)
        if existing is not None:
            return existing, False
        message = SimpleNamespace(
            id=uuid.uuid4(),
            whatsapp_message_id=whatsapp_message_id,
            message_metadata=metadata or {},
            **fields,
        )
        self.messages[whatsapp_message_id] = message
        return message, True

    update_status = staticmethod(message_service.update_status)
    serialize_message = staticmethod(message_service.serialize_message)

    # outbox

    def enqueue_outbox_message(
        self,
        db,
        *,
        destination,
        type,
        content,
        variables=None,
        metadata=None,
        retry_count=0,
        failed_message_id=None,
        next_attempt_at=None,
    ):
        row = SimpleNamespace(
            id=uuid.uuid4(),
            destination=destination,
            type=type,
            content=content,
            variables=variables,
            message_metadata=metadata or {},
            status=self.PENDING,
            retry_count=retry_count,
            next_attempt_at=next_attempt_at,
            provider_message_id=None,
            locked_until=None,
            failed_message_id=failed_message_id,
            last_error=None,
            enqueued_at=self.now(),
            updated_at=self.now(),
        )
        self.outbox[row.id] = row
        return row

    def claim_pending_outbox(self, db, *, limit=10, lease_seconds=300):
        claimed = []
        for row in self.outbox.values():
            if len(claimed) >= limit:
                break
            if row.status != self.PENDING:
                continue
            if row.next_attempt_at is not None and row.next_attempt_at > self.now():
                continue
            row.status = self.PROCESSING
            row.locked_until = self.now() + timedelta(seconds=lease_seconds)
            claimed.append(
                {
                    "id": row.id,
                    "destination": row.destination,
                    "type": row.type,
                    "content": row.content,
                    "metadata": row.message_metadata,
                    "retry_count": row.retry_count,
                    "provider_message_id": row.provider_message_id,
                    "failed_message_id": row.failed_message_id,
                    "enqueued_at": row.enqueued_at,
                    "locked_until": row.locked_until,
                }
            )
        return claimed

    def renew_lease(self, db, *, outbox_id, claimed_until, lease_seconds):
        row = self.outbox[outbox_id]
        if row.status != self.PROCESSING or row.locked_until != claimed_until:
            return None
        row.locked_until = self.now() + timedelta(seconds=lease_seconds)
        return row.locked_until

    def record_provider_id(self, db, *, outbox_id, provider_message_id):
        self.outbox[outbox_id].provider_message_id = provider_message_id

    def mark_sent(self, db, *, outbox_id, provider_message_id):
        row = self.outbox[outbox_id]
        row.status = self.SENT
        row.provider_message_id = provider_message_id

    def schedule_retry(self, db, *, outbox_id, retry_count, next_attempt_at, last_error):
        row = self.outbox[outbox_id]
        row.status = self.PENDING
        row.retry_count = retry_count
        row.next_attempt_at = next_attempt_at
        row.last_error = last_error

    def mark_dead(self, db, *, outbox_id, last_error, failed_message_id=None):
        row = self.outbox[outbox_id]
        row.status = self.DEAD
        row.last_error = last_error
        if failed_message_id:
            row.failed_message_id = failed_message_id

    def claim_dead_letters(self, db, *, limit=10):
        return [row for row in self.outbox.values() if row.status == self.DEAD][:limit]

    # failed messages

    def get_failed_message(self, db, failed_id):
        return self.failed.get(failed_id)

    def get_by_outbox_id(self, db, outbox_id):
        return next((r for r in self.failed.values() if r.outbox_message_id == outbox_id), None)

    def list_failed_messages(self, db, *, status=None, limit=50, offset=0):
        records = [r for r in self.failed.values() if status is None or r.status == status]
        return records[offset : offset + limit]

    def get_by_whatsapp_message_id(self, db, whatsapp_message_id):
        return next((r for r in self.failed.values() if r.whatsapp_message_id == whatsapp_message_id), None)

    def create_failed_record(self, db, **fields):
        record, _ = self.insert_failed_record(db, **fields)
        return record

    def insert_failed_record(
        self,
        db,
        *,
        destination,
        type,
        content,
        error,
        retry_count,
        status,
        outbox_message_id=None,
        whatsapp_message_id=None,
        metadata=None,
    ):
        if outbox_message_id is not None:
            existing = self.get_by_outbox_id(db, outbox_message_id)
        elif whatsapp_message_id is not None:
            existing = self.get_by_whatsapp_message_id(db, whatsapp_message_id)
        else:
            existing = None
        if existing:
            return existing, False
        record = SimpleNamespace(
            id=uuid.uuid4(),
            outbox_message_id=outbox_message_id,
            whatsapp_message_id=whatsapp_message_id,
            destination=destination,
            type=type,
            content=content,
            error_code=error.get("code"),
            error_message=error.get("message") or "",
            error_details=error.get("details"),
            retry_count=retry_count,
            status=FailedMessageStatus(status).value,
            last_retry_at=None,
            resolved_at=None,
            failure_metadata=metadata or {},
            created_at=self.now(),
            updated_at=self.now(),
        )
        self.failed[record.id] = record
        return record, True

    set_status = staticmethod(failed_message_service.set_status)


REPOSITORY_TARGETS = [
    "relay.services.dispatcher.outbox_service",
    "relay.services.dispatcher.customer_service",
    "relay.services.dispatcher.conversation_service",
    "relay.services.dispatcher.message_service",
    "relay.services.retry_service.outbox_service",
    "relay.services.retry_service.failed_message_service",
    "relay.services.retry_service.customer_service",
    "relay.services.retry_service.message_service",
    "relay.services.webhook_service.customer_service",
    "relay.services.webhook_service.conversation_service",
    "relay.services.webhook_service.message_service",
    "relay.services.window_service.conversation_service",
    "relay.services.status_service.message_service",
    "relay.services.status_service.customer_service",
]

