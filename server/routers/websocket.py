"""WebSocket endpoint for per-job workflow updates.

Clients send:
    {"type": "subscribe_job", "jobId": "..."}
    {"type": "unsubscribe_job", "jobId": "..."}
and receive:
    {"type": "workflow_update", "data": <job event>}
"""

from typing import Any, Dict

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from core.container import container
from core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(tags=["websocket"])


async def _safe_send(websocket: WebSocket, message: Dict[str, Any]) -> None:
    try:
        await websocket.send_json(message)
    except Exception as e:
        logger.warning("WebSocket send failed", error=str(e))


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    bridge = container.event_bridge()
    await websocket.accept()
    logger.info("WebSocket client connected")

    try:
        while True:
            data = await websocket.receive_json()
            msg_type = data.get("type", "") if isinstance(data, dict) else ""
            job_id = data.get("jobId") if isinstance(data, dict) else None

            if msg_type in ("subscribe_job", "unsubscribe_job") and not job_id:
                await _safe_send(websocket, {"type": "error", "message": "jobId is required"})
                continue

            if msg_type == "subscribe_job":
                await bridge.subscribe(websocket, job_id)
                await _safe_send(websocket, {"type": "subscribed", "jobId": job_id})
            elif msg_type == "unsubscribe_job":
                await bridge.unsubscribe(websocket, job_id)
                await _safe_send(websocket, {"type": "unsubscribed", "jobId": job_id})
            elif msg_type == "ping":
                await _safe_send(websocket, {"type": "pong"})
            else:
                logger.warning("Unknown message type", msg_type=msg_type)
                await _safe_send(websocket, {
                    "type": "error",
                    "code": "UNKNOWN_MESSAGE_TYPE",
                    "message": f"Unknown message type: {msg_type}",
                })
    except WebSocketDisconnect:
        pass
    except ValueError as e:
        logger.warning("Invalid WebSocket message", error=str(e))
    finally:
        await bridge.disconnect(websocket)
        logger.info("WebSocket client disconnected")
