import json
import logging
from uuid import uuid4

import pytest
from pydantic import ValidationError

from relay.logging_config import JSONFormatter, bind, get_logger
from relay.schemas.content import ImageContent, TextContent, UnknownContent, parse_content
from relay.schemas.message import BulkSendRequest, SendMessageRequest
from relay.schemas.webhook import WebhookMessage, WebhookStatus


class TestContent:
    def test_stored_content_round_trips_to_its_model(self):
        assert isinstance(parse_content({"type": "text", "body": "hi"}), TextContent)
        image = parse_content({"type": "image", "media_id": "M1", "caption": "look"})
        assert isinstance(image, ImageContent)
        assert image.caption == "look"

    def test_unknown_tag_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_content({"type": "sticker", "media_id": "M1"})

    def test_unknown_content_keeps_original_type(self):
        content = parse_content({"type": "unknown", "original_type": "ephemeral"})
        assert isinstance(content, UnknownContent)
        assert content.errors == []


class TestWebhookShapes:
    def test_sender_alias(self):
        message = WebhookMessage.model_validate(
            {"from": "15550001111", "id": "wamid.1", "timestamp": "1", "type": "text", "text": {"body": "x"}}
        )
        assert message.from_number == "15550001111"

    def test_unexpected_provider_fields_are_kept(self):
        status = WebhookStatus.model_validate({"id": "wamid.1", "status": "sent", "biz_opaque_callback_data": "abc"})
        assert status.model_extra == {"biz_opaque_callback_data": "abc"}


class TestRequests:
    def test_send_request_needs_destination(self):
        with pytest.raises(ValidationError):
            SendMessageRequest(to="", type="text", content={"body": "x"})

    def test_bulk_limits(self):
        item = {"to": "15550001111", "type": "template", "content": {"name": "welcome"}}
        with pytest.raises(ValidationError):
            BulkSendRequest(messages=[])
        with pytest.raises(ValidationError):
            BulkSendRequest(messages=[item] * 501)
        assert len(BulkSendRequest(messages=[item] * 500).messages) == 500


class TestLogging:
    def test_json_line_with_context(self, caplog):
        outbox_id = uuid4()
        with caplog.at_level(logging.INFO):
            get_logger("test").info("Queued", extra={"context": {"outbox_id": outbox_id}})

        data = json.loads(JSONFormatter().format(caplog.records[-1]))

        assert data["level"] == "INFO"
        assert data["logger"] == "relay.test"
        assert data["message"] == "Queued"
        assert data["context"] == {"outbox_id": str(outbox_id)}

    def test_bound_context_merges_with_call_context(self, caplog):
        log = bind(get_logger("test"), outbox_id="o-1")

        with caplog.at_level(logging.INFO):
            log.warning("Retry", context={"retry_count": 2})

        assert caplog.records[-1].context == {"outbox_id": "o-1", "retry_count": 2}
