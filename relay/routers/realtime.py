from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from relay.logging_config import get_logger
from relay.services.fanout_service import conversation_room

logger = get_logger("realtime")

router = APIRouter()

JOIN_ACTION = "join_conversation"
LEAVE_ACTION = "leave_conversation"


@router.websocket("/ws/{operator_id}")
async def operator_socket(websocket: WebSocket, operator_id: str):
    manager = websocket.app.state.pipeline.connections
    await manager.connect(websocket, operator_id)
    try:
        while True:
            command = await websocket.receive_json()
            if not isinstance(command, dict):
                continue
            action = command.get("action")
            conversation_id = command.get("conversation_id")
            if action not in (JOIN_ACTION, LEAVE_ACTION) or not conversation_id:
                await websocket.send_json({"event": "error", "data": {"message": "Unknown command"}})
                continue
            room = conversation_room(conversation_id)
            if action == JOIN_ACTION:
                manager.join(websocket, room)
                await websocket.send_json({"event": "conversation_joined", "data": {"conversation_id": conversation_id}})
            else:
                manager.leave(websocket, room)
                await websocket.send_json({"event": "conversation_left", "data": {"conversation_id": conversation_id}})
    except WebSocketDisconnect:
        logger.info("WS disconnected", extra={"context": {"operator_id": operator_id}})
    except ValueError as exc:
        logger.warning("WS bad frame", extra={"context": {"operator_id": operator_id, "error": str(exc)}})
        await websocket.close(code=1003)
    finally:
        manager.disconnect(websocket)
