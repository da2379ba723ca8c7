from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from app.api import get_hub
from services.broadcast import BroadcastHub

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def realtime(websocket: WebSocket, hub: BroadcastHub = Depends(get_hub)) -> None:
    await websocket.accept()
    client = await hub.connect(websocket)
    try:
        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except json.JSONDecodeError:
                hub.send_error(client.client_id, "Messages must be JSON objects.")
                continue
            try:
                hub.dispatch(client.client_id, message)
            except KeyError:
                # Dropped by the hub after a failed send.
                break
    except WebSocketDisconnect:
        logger.debug("Websocket closed by peer", extra={"client_id": client.client_id})
    finally:
        await hub.disconnect(client.client_id)
