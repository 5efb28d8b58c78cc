"""
WebSocket endpoint: UiMessage JSON in, OutboundMessage JSON out.

Every connected socket drives the same TaskController and receives every
outbound message.
"""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from web.state import _WSRef
import web.state as _state

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    wsr = _WSRef(ws)
    controller = _state.get_controller()
    _state.attach_client(wsr)
    await controller.post_state()
    try:
        while True:
            raw = await ws.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await wsr.send_json({"type": "error", "payload": {"message": "Invalid JSON"}})
                continue
            await controller.handle_message(data)
    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected")
    finally:
        wsr.ws = None
        await _state.detach_client(wsr)
