"""
WebSocket endpoint + generation event bridge.

WS /ws/events         push generation progress/terminal events to the UI
events_to_ws_bridge   background task, event queue → ConnectionManager.broadcast

The coordinator's listener only does ``queue.put_nowait``; one bridge task
drains the queue, so events reach clients in the order they were emitted.
"""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from services.generation import GenerationEvent

logger = logging.getLogger("loadout.websocket")

router = APIRouter()

PROGRESS_CHANNEL = "generation:progress"


# ---------------------------------------------------------------------------
# Connection Manager
# ---------------------------------------------------------------------------

class ConnectionManager:
    """Manages active WebSocket connections and broadcasts messages."""

    def __init__(self) -> None:
        self.connections: list[WebSocket] = []

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self.connections.append(ws)
        logger.info("WS client connected (%d total)", len(self.connections))

    def disconnect(self, ws: WebSocket) -> None:
        if ws in self.connections:
            self.connections.remove(ws)
        logger.info("WS client disconnected (%d remaining)", len(self.connections))

    async def broadcast(self, message: str) -> None:
        dead: list[WebSocket] = []
        for ws in list(self.connections):
            try:
                await ws.send_text(message)
            except Exception:
                dead.append(ws)
        for ws in dead:
            if ws in self.connections:
                self.connections.remove(ws)
        if dead:
            logger.debug("Removed %d dead WS connections", len(dead))


manager = ConnectionManager()


def encode_event(event: GenerationEvent) -> str:
    return json.dumps({"channel": PROGRESS_CHANNEL, "data": event.model_dump(mode="json")})


def queue_listener(queue: asyncio.Queue):
    """Coordinator listener that hands events to the bridge without awaiting."""
    def _listener(event: GenerationEvent) -> None:
        queue.put_nowait(event)
    return _listener


# ---------------------------------------------------------------------------
# WebSocket Endpoint
# ---------------------------------------------------------------------------

@router.websocket("/ws/events")
async def ws_events(websocket: WebSocket) -> None:
    await manager.connect(websocket)
    try:
        coordinator = websocket.app.state.coordinator
        active = coordinator.active_job
        await websocket.send_json({
            "type": "snapshot",
            "data": {"active_job_id": active.id if active else None},
        })

        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as exc:
        logger.debug("WS error: %s", exc)
        manager.disconnect(websocket)


# ---------------------------------------------------------------------------
# Event queue → WebSocket Bridge (background task)
# ---------------------------------------------------------------------------

async def events_to_ws_bridge(
    queue: asyncio.Queue, connections: ConnectionManager = manager
) -> None:
    """Drain generation events from ``queue`` and broadcast them in order."""
    logger.info("Events→WS bridge started on channel %s", PROGRESS_CHANNEL)
    while True:
        event = await queue.get()
        try:
            await connections.broadcast(encode_event(event))
        except Exception as exc:
            logger.error("Events→WS bridge error: %s", exc)
        finally:
            queue.task_done()
