"""WhatsApp Cloud API client: message send and media resolution."""

from __future__ import annotations

import json
from typing import Any, Optional

import httpx

from relay.errors import ProviderError, ProviderNetworkError
from relay.logging_config import get_logger

logger = get_logger("whatsapp_client")

MEDIA_CACHE_PREFIX = "media:"
MEDIA_CACHE_TTL_SECONDS = 3600

PROVIDER_CODE_MAP = {
    0: "AUTH_FAILED",
    10: "AUTH_FAILED",
    190: "AUTH_FAILED",
    200: "AUTH_FAILED",
    368: "ACCOUNT_BLOCKED",
    131031: "ACCOUNT_BLOCKED",
    12: "API_VERSION_INVALID",
    1006: "INVALID_RECIPIENT",
    131021: "INVALID_RECIPIENT",
    131026: "INVALID_RECIPIENT",
    131030: "INVALID_RECIPIENT",
    131049: "BLOCKED_RECIPIENT",
    131050: "BLOCKED_RECIPIENT",
    100: "INVALID_MESSAGE_FORMAT",
    131008: "INVALID_MESSAGE_FORMAT",
    131009: "INVALID_MESSAGE_FORMAT",
    131051: "INVALID_MESSAGE_FORMAT",
    132000: "INVALID_MESSAGE_FORMAT",
    132001: "INVALID_MESSAGE_FORMAT",
    132012: "INVALID_MESSAGE_FORMAT",
    4: "RATE_LIMITED",
    80007: "RATE_LIMITED",
    130429: "RATE_LIMITED",
    131048: "RATE_LIMITED",
    131056: "RATE_LIMITED",
}


def map_error_code(http_status: Optional[int], provider_code: Optional[int]) -> str:
    if provider_code is not None and provider_code in PROVIDER_CODE_MAP:
        return PROVIDER_CODE_MAP[provider_code]
    if http_status is not None and http_status >= 500:
        return "PROVIDER_UNAVAILABLE"
    return "PROVIDER_ERROR"


def error_from_response(response: httpx.Response) -> ProviderError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    error = body.get("error") if isinstance(body, dict) else None
    error = error if isinstance(error, dict) else {}

    provider_code = error.get("code")
    if not isinstance(provider_code, int):
        provider_code = None
    details = {}
    error_data = error.get("error_data")
    if isinstance(error_data, dict) and error_data.get("details"):
        details["provider_details"] = error_data["details"]
    if error.get("error_subcode") is not None:
        details["error_subcode"] = error["error_subcode"]
    if error.get("fbtrace_id"):
        details["fbtrace_id"] = error["fbtrace_id"]

    return ProviderError(
        error.get("message") or f"WhatsApp API returned HTTP {response.status_code}",
        http_status=response.status_code,
        code=map_error_code(response.status_code, provider_code),
        provider_code=provider_code,
        details=details,
    )


def build_send_payload(to: str, message_type: str, content: dict[str, Any]) -> dict[str, Any]:
    if message_type == "contacts":
        # the API takes a bare list of contact cards
        content = content["contacts"]
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to,
        "type": message_type,
        message_type: content,
    }


class WhatsAppClient:
    def __init__(
        self,
        *,
        access_token: str,
        phone_number_id: str,
        graph_url: str = "https://graph.facebook.com",
        api_version: str = "v21.0",
        timeout_seconds: float = 30.0,
        redis_client=None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.base_url = f"{graph_url.rstrip('/')}/{api_version}"
        self.redis = redis_client
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    async def send_message(self, to: str, message_type: str, content: dict[str, Any]) -> str:
        """Send one message and return the provider message id (``wamid``)."""
        url = f"{self.base_url}/{self.phone_number_id}/messages"
        try:
            response = await self._http.post(
                url,
                json=build_send_payload(to, message_type, content),
                headers=self._headers,
            )
        except httpx.RequestError as exc:
            raise ProviderNetworkError(f"WhatsApp API request failed: {exc}") from exc

        if response.status_code >= 400:
            raise error_from_response(response)

        data = response.json()
        messages = data.get("messages") or []
        if not messages or not messages[0].get("id"):
            raise ProviderError(
                "WhatsApp API response has no message id",
                http_status=response.status_code,
                details={"response": data},
            )
        return messages[0]["id"]

    async def get_media_url(self, media_id: str) -> Optional[dict[str, Any]]:
        """Resolve a media id to its download info; cached for an hour."""
        cache_key = f"{MEDIA_CACHE_PREFIX}{media_id}"
        if self.redis is not None:
            try:
                cached = await self.redis.get(cache_key)
                if cached:
                    return json.loads(cached)
            except Exception as exc:
                logger.warning("Media cache read failed", extra={"context": {"media_id": media_id, "error": str(exc)}})

        try:
            response = await self._http.get(f"{self.base_url}/{media_id}", headers=self._headers)
        except httpx.RequestError as exc:
            raise ProviderNetworkError(f"WhatsApp media lookup failed: {exc}") from exc
        if response.status_code >= 400:
            raise error_from_response(response)

        info = response.json()
        if self.redis is not None:
            try:
                await self.redis.set(cache_key, json.dumps(info), ex=MEDIA_CACHE_TTL_SECONDS)
            except Exception as exc:
                logger.warning("Media cache write failed", extra={"context": {"media_id": media_id, "error": str(exc)}})
        return info

    async def download_media(self, url: str) -> bytes:
        try:
            response = await self._http.get(url, headers=self._headers)
        except httpx.RequestError as exc:
            raise ProviderNetworkError(f"WhatsApp media download failed: {exc}") from exc
        if response.status_code >= 400:
            raise error_from_response(response)
        return response.content

    async def aclose(self) -> None:
        await self._http.aclose()
