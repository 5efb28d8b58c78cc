"""
Shared mutable state for the web server.

The CLI fills in the working directory, backend and storage location at
startup; route modules get the single TaskController through get_controller().
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from backend import Backend, LocalBackend
from bedrock_service import BedrockService
from config import app_config
from controller import ServiceFactory, TaskController
from sessions import ConversationStore, GlobalStateStore

logger = logging.getLogger(__name__)

# ============================================================
# Globals
# ============================================================

_working_directory: str = app_config.working_directory
_storage_directory: str = app_config.storage_directory
_backend: Optional[Backend] = None  # Set at startup
_service_factory: Optional[ServiceFactory] = None  # Defaults to BedrockService per model

_controller: Optional[TaskController] = None
_clients: Set["_WSRef"] = set()
_forwarder: Optional[asyncio.Task] = None


def _default_service_factory(model_id: str) -> BedrockService:
    return BedrockService(model_id=model_id)


def get_controller() -> TaskController:
    """Build the controller on first use so tests and the CLI can configure state first."""
    global _controller, _backend
    if _controller is None:
        if _backend is None:
            _backend = LocalBackend(_working_directory)
        store = ConversationStore(_storage_directory)
        state_store = GlobalStateStore(_storage_directory)
        _controller = TaskController(
            store,
            state_store,
            _service_factory or _default_service_factory,
            _backend,
        )
        logger.info(f"Task controller ready (workspace: {_backend.working_directory}, storage: {_storage_directory})")
    return _controller


def reset() -> None:
    """Forget the controller; the next get_controller() builds a new one."""
    global _controller, _forwarder
    _controller = None
    _clients.clear()
    _forwarder = None


# ============================================================
# Outbox fan-out
# ============================================================

async def _forward_outbox(controller: TaskController) -> None:
    while True:
        message = await controller.outbox.get()
        payload = message.to_dict()
        for client in list(_clients):
            await client.send_json(payload)


def attach_client(wsr: "_WSRef") -> None:
    """Register a socket; every outbound message goes to every attached socket."""
    global _forwarder
    _clients.add(wsr)
    if _forwarder is None:
        _forwarder = asyncio.create_task(_forward_outbox(get_controller()))


async def detach_client(wsr: "_WSRef") -> None:
    global _forwarder
    _clients.discard(wsr)
    if not _clients and _forwarder is not None:
        task, _forwarder = _forwarder, None
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


async def close_clients() -> None:
    """Detach every socket and stop forwarding. Called on server shutdown."""
    for wsr in list(_clients):
        wsr.ws = None
        await detach_client(wsr)


# ============================================================
# WebSocket reference wrapper (for disconnect-safe sends)
# ============================================================

class _WSRef:
    """Mutable WebSocket reference that drops sends once disconnected."""
    __slots__ = ("ws",)

    def __init__(self, ws: Optional[WebSocket]):
        self.ws: Optional[WebSocket] = ws

    async def send_json(self, data: Dict[str, Any]) -> None:
        _ws = self.ws
        if _ws is None:
            return
        try:
            await _ws.send_json(data)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"WebSocket send failed, marking disconnected: {e}")
            self.ws = None
