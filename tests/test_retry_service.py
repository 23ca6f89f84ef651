import asyncio
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from relay.errors import ConflictError, MessageExpiredError, NotFoundError, ProviderError, ProviderNetworkError
from relay.services.retry_service import (
    AttemptOutcome,
    ErrorClass,
    RetryManager,
    RetryPolicy,
    classify,
    error_payload,
    is_critical,
)


def provider_error(code="PROVIDER_ERROR", http_status=400, provider_code=None):
    return ProviderError("boom", http_status=http_status, code=code, provider_code=provider_code)


class TestClassify:
    @pytest.mark.parametrize("status", [429, 502, 503, 504])
    def test_retryable_http_statuses_are_transient(self, status):
        assert classify(provider_error("PROVIDER_UNAVAILABLE", http_status=status)) == ErrorClass.TRANSIENT

    def test_network_error_is_transient(self):
        assert classify(ProviderNetworkError("reset")) == ErrorClass.TRANSIENT

    @pytest.mark.parametrize(
        "code",
        ["INVALID_RECIPIENT", "BLOCKED_RECIPIENT", "INVALID_MESSAGE_FORMAT", "AUTH_FAILED", "ACCOUNT_BLOCKED"],
    )
    def test_terminal_codes(self, code):
        assert classify(provider_error(code)) == ErrorClass.TERMINAL

    def test_expired_message_is_terminal(self):
        assert classify(MessageExpiredError("too old")) == ErrorClass.TERMINAL

    def test_other_errors_are_unclassified(self):
        assert classify(provider_error("PROVIDER_ERROR", http_status=400)) == ErrorClass.UNCLASSIFIED
        assert classify(RuntimeError("db gone")) == ErrorClass.UNCLASSIFIED

    def test_critical_codes(self):
        assert is_critical(provider_error("API_VERSION_INVALID")) is True
        assert is_critical(provider_error("INVALID_RECIPIENT")) is False
        assert is_critical(RuntimeError("x")) is False

    def test_payload_for_plain_exception(self):
        payload = error_payload(KeyError("conversation"))
        assert payload["code"] == "INTERNAL_ERROR"
        assert payload["details"]["exception"] == "KeyError"


class TestRetryPolicy:
    def test_backoff_doubles(self):
        policy = RetryPolicy()
        assert [policy.backoff_seconds(n) for n in range(4)] == [5.0, 10.0, 20.0, 40.0]

    def test_backoff_strictly_increases_up_to_max(self):
        policy = RetryPolicy(base_delay_seconds=5, max_delay_seconds=3600)
        delays = [policy.backoff_seconds(n) for n in range(15)]
        capped = delays.index(3600)
        assert all(a < b for a, b in zip(delays[:capped], delays[1 : capped + 1]))
        assert all(delay == 3600 for delay in delays[capped:])

    def test_transient_retries_until_limit(self):
        policy = RetryPolicy(max_retries=3)
        error = provider_error("PROVIDER_UNAVAILABLE", http_status=503)
        assert [policy.decide(n, error) for n in range(4)] == [
            AttemptOutcome.RETRY,
            AttemptOutcome.RETRY,
            AttemptOutcome.RETRY,
            AttemptOutcome.TERMINAL,
        ]

    def test_terminal_never_retries(self):
        assert RetryPolicy().decide(0, provider_error("INVALID_RECIPIENT")) == AttemptOutcome.TERMINAL


def _row(store, **overrides):
    row = store.enqueue_outbox_message(None, destination="15550001111", type="text", content={"body": "hi"})
    data = {
        "id": row.id,
        "destination": row.destination,
        "type": row.type,
        "content": row.content,
        "metadata": {},
        "retry_count": row.retry_count,
        "provider_message_id": None,
        "failed_message_id": None,
    }
    data.update(overrides)
    return data


class TestRetryManager:
    def test_schedule_retry_sets_next_attempt(self, store, notifier, db_session):
        manager = RetryManager(RetryPolicy(), notifier)
        row = _row(store, retry_count=1)

        before = datetime.now(timezone.utc)
        next_attempt_at = manager.schedule_retry(db_session, row, provider_error("PROVIDER_UNAVAILABLE", 503))

        stored = store.outbox[row["id"]]
        assert stored.status == "PENDING"
        assert stored.retry_count == 2
        assert (next_attempt_at - before).total_seconds() >= 10
        assert stored.last_error["code"] == "PROVIDER_UNAVAILABLE"

    def test_dead_letter_writes_one_record(self, store, notifier, db_session):
        manager = RetryManager(RetryPolicy(), notifier)
        row = _row(store)

        first = manager.dead_letter(db_session, row, provider_error("INVALID_RECIPIENT"))
        second = manager.dead_letter(db_session, row, provider_error("INVALID_RECIPIENT"))

        assert first is second
        assert len(store.failed) == 1
        assert first.status == "failed"
        assert first.retry_count == 0
        assert store.outbox[row["id"]].status == "DEAD"
        assert store.outbox[row["id"]].failed_message_id == first.id

    def test_dead_letter_reuses_linked_record(self, store, notifier, db_session):
        manager = RetryManager(RetryPolicy(), notifier)
        record = store.create_failed_record(
            db_session,
            destination="15550001111",
            type="text",
            content={"body": "hi"},
            error={"code": "PROVIDER_UNAVAILABLE", "message": "x"},
            retry_count=3,
            status="pending_retry",
        )
        row = _row(store, retry_count=3, failed_message_id=record.id)

        result = manager.dead_letter(db_session, row, provider_error("PROVIDER_UNAVAILABLE", 503))

        assert result is record
        assert len(store.failed) == 1
        assert record.status == "failed"

    def test_critical_error_notifies_operators(self, notifier, db_session):
        manager = RetryManager(RetryPolicy(), notifier)

        asyncio.run(manager.after_failure(db_session, provider_error("AUTH_FAILED", 401, 190), {"outbox_id": "1"}))

        notifier.notify_critical.assert_awaited_once()
        error, context = notifier.notify_critical.await_args.args[1:]
        assert error["code"] == "AUTH_FAILED"
        assert context == {"outbox_id": "1"}

    def test_non_critical_error_does_not_notify(self, notifier, db_session):
        manager = RetryManager(RetryPolicy(), notifier)

        asyncio.run(manager.after_failure(db_session, provider_error("INVALID_RECIPIENT"), {}))

        notifier.notify_critical.assert_not_awaited()

    def test_failure_metrics(self, notifier, db_session, fake_redis):
        manager = RetryManager(RetryPolicy(), notifier, fake_redis)

        asyncio.run(manager.record_metrics("RATE_LIMITED"))
        asyncio.run(manager.record_metrics("RATE_LIMITED"))

        assert fake_redis.data["metrics:failures:total"] == {"RATE_LIMITED": 2}
        hourly = [key for key in fake_redis.data if key.startswith("metrics:failures:hourly:")]
        assert len(hourly) == 1
        assert hourly[0] in fake_redis.expiry

    def test_metrics_failure_is_swallowed(self, notifier, fake_redis):
        fake_redis.fail = True
        manager = RetryManager(RetryPolicy(), notifier, fake_redis)

        asyncio.run(manager.record_metrics("RATE_LIMITED"))


class TestDeadLetterDrain:
    def test_records_missing_failure_and_marks_recorded(self, store, notifier, db_session):
        manager = RetryManager(RetryPolicy(), notifier)
        row = store.enqueue_outbox_message(db_session, destination="15550001111", type="text", content={"body": "hi"})
        row.status = "DEAD"
        row.retry_count = 3
        row.last_error = {"code": "PROVIDER_UNAVAILABLE", "message": "503"}

        assert manager.drain_dead_letters(db_session) == 1
        assert manager.drain_dead_letters(db_session) == 0

        assert row.status == "DEAD_RECORDED"
        assert len(store.failed) == 1
        record = next(iter(store.failed.values()))
        assert record.outbox_message_id == row.id
        assert record.retry_count == 3
        db_session.commit.assert_called()

    def test_existing_record_is_not_duplicated(self, store, notifier, db_session):
        manager = RetryManager(RetryPolicy(), notifier)
        row = _row(store)
        manager.dead_letter(db_session, row, provider_error("INVALID_RECIPIENT"))

        manager.drain_dead_letters(db_session)

        assert len(store.failed) == 1
        assert store.outbox[row["id"]].status == "DEAD_RECORDED"


def _outbound_message(store, whatsapp_id="15550001111"):
    customer = store.get_or_create_customer(None, whatsapp_id)
    message, _ = store.upsert_message(
        None,
        whatsapp_message_id="wamid.OUT1",
        conversation_id=uuid.uuid4(),
        customer_id=customer.id,
        operator_id=None,
        direction="outbound",
        type="text",
        content={"type": "text", "body": "hello"},
        status="sent",
        timestamp=datetime.now(timezone.utc),
        window_expires_at=None,
    )
    return message


class TestDeliveryFailure:
    def test_retryable_failure_schedules_resend(self, store, notifier, db_session):
        manager = RetryManager(RetryPolicy(), notifier)
        message = _outbound_message(store)

        record = asyncio.run(
            manager.handle_delivery_failure(db_session, message, [{"code": 131048, "title": "Spam rate limit hit"}])
        )

        assert record.status == "pending_retry"
        assert record.retry_count == 1
        assert record.error_code == "RATE_LIMITED"
        assert message.status == "failed"
        assert message.message_metadata["error"]["code"] == "RATE_LIMITED"
        queued = [row for row in store.outbox.values() if row.failed_message_id == record.id]
        assert len(queued) == 1
        assert queued[0].content == {"body": "hello"}
        assert queued[0].destination == "15550001111"
        assert queued[0].next_attempt_at is not None

    def test_terminal_failure_is_recorded_as_failed(self, store, notifier, db_session):
        manager = RetryManager(RetryPolicy(), notifier)
        message = _outbound_message(store)

        record = asyncio.run(
            manager.handle_delivery_failure(db_session, message, [{"code": 131026, "title": "Undeliverable"}])
        )

        assert record.status == "failed"
        assert record.whatsapp_message_id == "wamid.OUT1"
        assert store.outbox == {}
        notifier.notify_critical.assert_not_awaited()

    def test_critical_failure_notifies(self, store, notifier, db_session):
        manager = RetryManager(RetryPolicy(), notifier)
        message = _outbound_message(store)

        asyncio.run(manager.handle_delivery_failure(db_session, message, [{"code": 368, "title": "Blocked"}]))

        notifier.notify_critical.assert_awaited_once()

    def test_repeated_failure_is_recorded_and_resent_once(self, store, notifier, db_session):
        manager = RetryManager(RetryPolicy(), notifier)
        message = _outbound_message(store)
        errors = [{"code": 131048, "title": "Spam rate limit hit"}]

        first = asyncio.run(manager.handle_delivery_failure(db_session, message, errors))
        second = asyncio.run(manager.handle_delivery_failure(db_session, message, errors))

        assert second is first
        assert len(store.failed) == 1
        assert len(store.outbox) == 1
        assert first.retry_count == 1

    def test_failure_is_announced_to_operators(self, store, notifier, fanout, db_session):
        operator = store.add_operator()
        manager = RetryManager(RetryPolicy(), notifier, fanout=fanout)
        message = _outbound_message(store)

        record = asyncio.run(
            manager.handle_delivery_failure(db_session, message, [{"code": 131026, "title": "Undeliverable"}])
        )

        operator_id, payload = fanout.notify_failed.await_args.args
        assert operator_id == operator.id
        assert payload["failed_message_id"] == str(record.id)
        assert payload["conversation_id"] == str(message.conversation_id)
        assert payload["error"]["code"] == "INVALID_RECIPIENT"
        assert payload["resend_scheduled"] is False

    def test_failure_event_errors_are_swallowed(self, store, notifier, fanout, db_session):
        fanout.notify_failed.side_effect = RuntimeError("socket gone")
        manager = RetryManager(RetryPolicy(), notifier, fanout=fanout)

        asyncio.run(manager.announce_failure(db_session, {"error": {}}, destination="15550001111"))

        fanout.notify_failed.assert_awaited_once()


class TestManualRetry:
    def _record(self, store, status):
        record = store.create_failed_record(
            None,
            destination="15550001111",
            type="text",
            content={"body": "hi"},
            error={"code": "PROVIDER_UNAVAILABLE", "message": "503"},
            retry_count=3,
            status="failed",
        )
        record.status = status
        return record

    def test_missing_record(self, store, notifier, db_session):
        manager = RetryManager(RetryPolicy(), notifier)
        with pytest.raises(NotFoundError):
            manager.retry_failed_message(db_session, uuid.uuid4())

    def test_resolved_record_conflicts(self, store, notifier, db_session):
        manager = RetryManager(RetryPolicy(), notifier)
        record = self._record(store, "resolved")
        with pytest.raises(ConflictError):
            manager.retry_failed_message(db_session, record.id)

    def test_requeues_with_stored_retry_count(self, store, notifier, db_session):
        manager = RetryManager(RetryPolicy(), notifier)
        record = self._record(store, "failed")

        result, row = manager.retry_failed_message(db_session, record.id)

        assert result.status == "pending_retry"
        assert result.last_retry_at is not None
        assert row.retry_count == 3
        assert row.failed_message_id == record.id
        assert row.content == {"body": "hi"}

    def test_resolve_after_success(self, store, notifier, db_session):
        manager = RetryManager(RetryPolicy(), notifier)
        record = self._record(store, "pending_retry")

        manager.resolve(db_session, record.id)

        assert record.status == "resolved"
        assert record.resolved_at is not None


class TestErrorPayload:
    def test_provider_error_payload(self):
        payload = error_payload(provider_error("RATE_LIMITED", 429, 130429))
        assert payload["code"] == "RATE_LIMITED"
        assert payload["details"]["http_status"] == 429
        assert payload["details"]["provider_code"] == 130429

    def test_expired_payload(self):
        assert error_payload(MessageExpiredError("old"))["code"] == "MESSAGE_EXPIRED"


def test_notifier_gets_session(store, notifier):
    db = SimpleNamespace(commit=lambda: None)
    manager = RetryManager(RetryPolicy(), notifier)

    asyncio.run(manager.after_failure(db, provider_error("ACCOUNT_BLOCKED"), {}))

    assert notifier.notify_critical.await_args.args[0] is db
