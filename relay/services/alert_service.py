"""Operator alerts pushed to a Telegram chat."""

import time
from typing import Optional

import httpx

from relay.config import settings
from relay.logging_config import get_logger

logger = get_logger("alert_service")

ALERT_COOLDOWN_SECONDS = 300
LEVEL_MARKERS = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}

_last_sent: dict[str, float] = {}


def _format(level: str, message: str, context: Optional[dict]) -> str:
    body = f"{LEVEL_MARKERS.get(level, '📢')} *{level}* relay\n\n{message}"
    if context:
        lines = "\n".join(f"  {key}: {value}" for key, value in context.items())
        body += f"\n\n```\n{lines}\n```"
    return body


def _in_cooldown(key: str) -> bool:
    now = time.monotonic()
    last = _last_sent.get(key)
    if last is not None and now - last < ALERT_COOLDOWN_SECONDS:
        return True
    _last_sent[key] = now
    return False


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send an alert to the ops chat.

    Identical level/message pairs are sent at most once per cooldown period,
    so a failing dependency does not flood the chat.

    Returns:
        True if Telegram accepted the alert
    """
    if not settings.alert_bot_token or not settings.alert_chat_id:
        logger.warning("Alert not configured", extra={"context": {"level": level, "alert": message}})
        return False

    if _in_cooldown(f"{level}:{message}"):
        return False

    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(
                f"https://api.telegram.org/bot{settings.alert_bot_token}/sendMessage",
                json={
                    "chat_id": settings.alert_chat_id,
                    "text": _format(level, message, context),
                    "parse_mode": "Markdown",
                },
            )
            return response.status_code == 200
    except httpx.HTTPError as exc:
        logger.error("Failed to send alert", extra={"context": {"error": str(exc)}})
        return False


def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("CRITICAL", message, context)


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("WARNING", message, context)
