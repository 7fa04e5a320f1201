from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, WebSocket, status
from sqlalchemy.orm import Session
from starlette.websockets import WebSocketDisconnect

from auth.deps import WebSocketAuthError, resolve_websocket_user
from db.database import get_db
from realtime.session import ChannelClosedError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["detections"])


class WebSocketChannel:
    def __init__(self, websocket: WebSocket):
        self._websocket = websocket

    async def send_json(self, payload: dict[str, Any]) -> None:
        try:
            await self._websocket.send_json(payload)
        except (WebSocketDisconnect, RuntimeError) as exc:
            raise ChannelClosedError(str(exc)) from exc


@router.websocket("/api/detections/ws")
async def detections_socket(websocket: WebSocket, db: Annotated[Session, Depends(get_db)]):
    try:
        user = resolve_websocket_user(websocket, db)
    except WebSocketAuthError as exc:
        logger.info("[ws] Rejected connection: %s", exc)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    finally:
        # Release the pooled connection; the socket may stay open for hours
        db.close()

    await websocket.accept()

    manager = websocket.app.state.session_manager
    state = await manager.connect(WebSocketChannel(websocket), user.id if user else None)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", status.WS_1000_NORMAL_CLOSURE))
            # Clients may send JSON as text or binary frames
            raw = message.get("text") or message.get("bytes") or ""
            await manager.handle_message(state, raw)
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(state)
