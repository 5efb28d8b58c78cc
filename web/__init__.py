"""
Bedrock Dev web server.
FastAPI + WebSocket bridge to the TaskController.

Run:  python -m web [--port 8765] [--dir /path/to/project]
"""

import logging

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI

import web.state as _state
from web import api_tasks, chat

logger = logging.getLogger(__name__)

# ============================================================
# FastAPI application
# ============================================================

app = FastAPI(title="Bedrock Dev")


@app.on_event("shutdown")
async def _on_shutdown():
    """Stop the running task before the server exits. Its events are already on disk."""
    controller = _state._controller
    if controller is not None:
        await controller.abort()
        logger.info("Shutdown: active task stopped")
    await _state.close_clients()


# ============================================================
# Include routers from submodules
# ============================================================

app.include_router(api_tasks.router)
app.include_router(chat.router)
