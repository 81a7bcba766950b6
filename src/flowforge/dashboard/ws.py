"""WebSocket fan-out of run status changes to dashboard clients."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from flowforge.observe.events import RunEvent

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Subscription:
    """Optional filters a client passes as query parameters on connect."""

    workflow_id: str | None = None
    run_id: str | None = None

    def wants(self, event: RunEvent) -> bool:
        if self.workflow_id is not None and event.workflow_id != self.workflow_id:
            return False
        if self.run_id is not None and event.run_id != self.run_id:
            return False
        return True


def status_message(event: RunEvent) -> dict:
    return {
        "type": "workflow:status",
        "event": event.event_type.value,
        "stepId": event.step_id or None,
        "data": event.run,
    }


class WebSocketManager:

    def __init__(self):
        self.clients: dict[WebSocket, Subscription] = {}

    async def connect(self, websocket: WebSocket, subscription: Subscription | None = None):
        await websocket.accept()
        self.clients[websocket] = subscription or Subscription()

    def disconnect(self, websocket: WebSocket):
        self.clients.pop(websocket, None)

    async def on_run_event(self, event: RunEvent):
        targets = [ws for ws, sub in self.clients.items() if sub.wants(event)]
        if targets:
            await self._send(targets, json.dumps(status_message(event), default=str))

    async def _send(self, targets: list[WebSocket], message: str):
        for websocket in targets:
            try:
                await websocket.send_text(message)
            except Exception:
                _log.debug("Dropping websocket client after failed send", exc_info=True)
                self.disconnect(websocket)


def create_ws_router(ws_manager: WebSocketManager) -> APIRouter:
    router = APIRouter()

    @router.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        subscription = Subscription(
            workflow_id=websocket.query_params.get("workflowId"),
            run_id=websocket.query_params.get("runId"),
        )
        await ws_manager.connect(websocket, subscription)
        try:
            while True:
                # Server push only; inbound messages are ignored.
                await websocket.receive_text()
        except WebSocketDisconnect:
            ws_manager.disconnect(websocket)

    return router
