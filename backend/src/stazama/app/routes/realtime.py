"""WebSocket feed of inspection request row changes.

Each connection subscribes to the realtime hub under the identity from its
``?token=`` query parameter, so every client only receives rows it may read.

Protocol:
    server -> {"type": "postgres_changes", "payload": {"eventType", "table", "new", "old"}}
    client -> {"type": "ping"}  ->  server replies {"type": "pong"}
"""

import json
import logging
import uuid as uuid_mod
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder

from stazama.domain.enums import UserRole
from stazama.infra.database import async_session
from stazama.services.auth_service import decode_token, get_profile
from stazama.services.permissions import Caller
from stazama.services.realtime_hub import REQUESTS_TABLE, ChangePayload, realtime_hub

logger = logging.getLogger(__name__)
router = APIRouter(tags=["websocket"])


class ConnectionManager:
    """Tracks open sockets and the hub subscription each one holds."""

    def __init__(self, hub=None):
        self.hub = hub or realtime_hub
        self.active_connections: dict[str, WebSocket] = {}
        self.subscriptions: dict[str, int] = {}

    async def connect(self, websocket: WebSocket, client_id: str, caller: Caller):
        """Accept a WebSocket and start forwarding row changes to it."""
        await websocket.accept()
        self.active_connections[client_id] = websocket

        async def forward(payload: ChangePayload):
            await self.send_json(
                client_id,
                {"type": "postgres_changes", "payload": jsonable_encoder(payload.as_dict())},
            )

        self.subscriptions[client_id] = self.hub.subscribe(caller, forward)

    def disconnect(self, client_id: str):
        """Drop the connection and its hub subscription."""
        self.active_connections.pop(client_id, None)
        sub_id = self.subscriptions.pop(client_id, None)
        if sub_id is not None:
            self.hub.unsubscribe(sub_id)

    async def send_json(self, client_id: str, data: dict):
        """Send JSON to a specific client."""
        ws = self.active_connections.get(client_id)
        if ws:
            try:
                await ws.send_json(data)
            except Exception:
                logger.warning("Failed to send to client %s, removing", client_id)
                self.disconnect(client_id)


manager = ConnectionManager()


async def _caller_for_token(token: Optional[str]) -> Optional[Caller]:
    if not token:
        return None
    payload = decode_token(token)
    if not payload or "sub" not in payload:
        return None
    async with async_session() as session:
        profile = await get_profile(session, payload["sub"])
    if profile is None or not profile.is_active:
        return None
    return Caller(user_id=profile.id, role=UserRole.parse(profile.role))


@router.websocket(f"/ws/realtime/{REQUESTS_TABLE}")
async def inspection_request_changes(websocket: WebSocket, token: Optional[str] = None):
    caller = await _caller_for_token(token)
    if caller is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    client_id = f"rt_{uuid_mod.uuid4().hex[:8]}"
    await manager.connect(websocket, client_id, caller)
    logger.info("Realtime client connected: %s (user=%s)", client_id, caller.user_id)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if not isinstance(msg, dict):
                continue
            if msg.get("type") == "ping":
                await manager.send_json(client_id, {"type": "pong"})
    except WebSocketDisconnect:
        manager.disconnect(client_id)
        logger.info("Realtime client disconnected: %s", client_id)
    except Exception as e:
        logger.error("Realtime WebSocket error for %s: %s", client_id, e)
        manager.disconnect(client_id)
