"""Real-time distribution of message and status events to operator sockets.

Delivery is best-effort and at-most-once per connected socket; nothing is
kept for operators who are offline. Every event is delivered to local
sockets and published on a Redis channel so other instances can deliver it
to theirs.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections import defaultdict
from typing import Any, Optional

from fastapi import WebSocket

from relay.logging_config import get_logger

logger = get_logger("fanout")

WS_EVENTS_CHANNEL = "relay:ws_events"

EVENT_MESSAGE = "whatsapp_message"
EVENT_STATUS = "whatsapp_status"
EVENT_CRITICAL = "critical_error"
EVENT_FAILED = "message_failed"
EVENT_REFERRAL = "referral_tracked"


def operator_room(operator_id) -> str:
    return f"operator:{operator_id}"


def conversation_room(conversation_id) -> str:
    return f"conversation:{conversation_id}"


class ConnectionManager:
    def __init__(self):
        self.rooms: dict[str, set[WebSocket]] = defaultdict(set)
        self.memberships: dict[WebSocket, set[str]] = defaultdict(set)

    async def connect(self, websocket: WebSocket, operator_id: str) -> None:
        await websocket.accept()
        self.join(websocket, operator_room(operator_id))
        logger.info("WS connected", extra={"context": {"operator_id": operator_id}})

    def disconnect(self, websocket: WebSocket) -> None:
        for room in self.memberships.pop(websocket, set()):
            members = self.rooms.get(room)
            if members is None:
                continue
            members.discard(websocket)
            if not members:
                del self.rooms[room]

    def join(self, websocket: WebSocket, room: str) -> None:
        self.rooms[room].add(websocket)
        self.memberships[websocket].add(room)

    def leave(self, websocket: WebSocket, room: str) -> None:
        members = self.rooms.get(room)
        if members is not None:
            members.discard(websocket)
            if not members:
                del self.rooms[room]
        self.memberships.get(websocket, set()).discard(room)

    async def send_to_rooms(self, rooms: list[str], message: dict[str, Any]) -> int:
        """Send once to every socket in any of ``rooms``; returns how many sends succeeded."""
        targets: dict[WebSocket, None] = {}
        for room in rooms:
            for websocket in self.rooms.get(room, ()):
                targets[websocket] = None

        delivered = 0
        for websocket in targets:
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as exc:
                logger.info("WS send failed, dropping socket", extra={"context": {"rooms": rooms, "error": str(exc)}})
                self.disconnect(websocket)
        return delivered


class Fanout:
    def __init__(self, manager: ConnectionManager, redis_client=None, *, channel: str = WS_EVENTS_CHANNEL):
        self.manager = manager
        self.redis = redis_client
        self.channel = channel
        self.instance_id = uuid.uuid4().hex

    async def publish(self, rooms: list[str], event: str, data: dict[str, Any]) -> None:
        """Deliver ``event`` to ``rooms``. Never raises."""
        message = {"event": event, "data": data}
        try:
            await self.manager.send_to_rooms(rooms, message)
        except Exception as exc:
            logger.warning("Local fanout failed", extra={"context": {"event": event, "error": str(exc)}})

        if self.redis is None:
            return
        try:
            payload = json.dumps({"origin": self.instance_id, "rooms": rooms, "message": message}, default=str)
            await self.redis.publish(self.channel, payload)
        except Exception as exc:
            logger.warning("WS event publish failed", extra={"context": {"event": event, "error": str(exc)}})

    async def notify_message(self, operator_id, message: dict[str, Any]) -> None:
        await self.publish(self._rooms(operator_id, message.get("conversation_id")), EVENT_MESSAGE, message)

    async def notify_status(self, operator_id, status: dict[str, Any]) -> None:
        await self.publish(self._rooms(operator_id, status.get("conversation_id")), EVENT_STATUS, status)

    async def notify_critical(self, operator_id, payload: dict[str, Any]) -> None:
        await self.publish([operator_room(operator_id)], EVENT_CRITICAL, payload)

    async def notify_failed(self, operator_id, payload: dict[str, Any]) -> None:
        await self.publish(self._rooms(operator_id, payload.get("conversation_id")), EVENT_FAILED, payload)

    async def notify_referral(self, operator_id, payload: dict[str, Any]) -> None:
        await self.publish(self._rooms(operator_id, payload.get("conversation_id")), EVENT_REFERRAL, payload)

    @staticmethod
    def _rooms(operator_id, conversation_id: Optional[Any]) -> list[str]:
        rooms = []
        if operator_id is not None:
            rooms.append(operator_room(operator_id))
        if conversation_id is not None:
            rooms.append(conversation_room(conversation_id))
        return rooms

    async def deliver_remote(self, raw: str) -> None:
        """Handle one pub/sub payload from another instance."""
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Malformed WS event on channel", extra={"context": {"channel": self.channel}})
            return
        if payload.get("origin") == self.instance_id:
            return
        message = payload.get("message")
        if not message:
            return
        await self.manager.send_to_rooms(payload.get("rooms") or [], message)

    async def listen(self, subscriber_client) -> None:
        """Forward events published by other instances to local sockets until cancelled."""
        pubsub = subscriber_client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(self.channel)
        logger.info("WS event subscriber started", extra={"context": {"channel": self.channel}})
        try:
            async for item in pubsub.listen():
                if item and item.get("type") == "message":
                    await self.deliver_remote(item.get("data"))
        finally:
            try:
                await pubsub.unsubscribe(self.channel)
                await pubsub.aclose()
            except Exception as exc:
                logger.warning("WS event subscriber close failed", extra={"context": {"error": str(exc)}})

    async def run_subscriber(self, subscriber_factory, retry_seconds: float = 5.0) -> None:
        """Keep a subscriber alive; reconnects after Redis errors."""
        while True:
            client = subscriber_factory()
            try:
                await self.listen(client)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.warning("WS event subscriber failed", extra={"context": {"error": str(exc)}})
                await asyncio.sleep(retry_seconds)
            finally:
                await client.aclose()
