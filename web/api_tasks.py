"""
Task history REST API endpoints.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse, Response

from messages import EXPORT_FORMATS
from sessions import TaskNotFoundError
import web.state as _state

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/history")
async def list_history():
    """Task history, newest first."""
    controller = _state.get_controller()
    return JSONResponse([item.to_dict() for item in controller.store.list_history()])


@router.get("/api/state")
async def get_state():
    return JSONResponse(_state.get_controller().get_state())


@router.get("/api/tasks/{task_id}/export")
async def export_task(task_id: str, format: str = "json"):
    if format not in EXPORT_FORMATS:
        return JSONResponse({"error": f"Unsupported export format: {format}"}, status_code=400)
    controller = _state.get_controller()
    try:
        artifact = controller.export_task(task_id, format)
    except TaskNotFoundError as e:
        return JSONResponse({"error": str(e)}, status_code=404)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return Response(
        content=artifact.content,
        media_type=artifact.media_type,
        headers={"Content-Disposition": f'attachment; filename="{artifact.filename}"'},
    )


@router.delete("/api/tasks/{task_id}")
async def delete_task(task_id: str):
    controller = _state.get_controller()
    try:
        if controller.store.get_history_item(task_id) is None:
            return JSONResponse({"error": f"Task not found: {task_id}"}, status_code=404)
        await controller.delete_task(task_id)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    logger.info(f"Deleted task {task_id} via API")
    return JSONResponse({"deleted": task_id})
