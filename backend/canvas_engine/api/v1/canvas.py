"""
Canvas execution API endpoints.

Thin adapter over CanvasService: request parsing, status codes and error
mapping only. A locked canvas, a busy node or a patch that was already
reviewed is a 409, a rejected patch a 422, a node that cannot run a 400.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from canvas_engine.api.dependencies import get_actor, get_canvas_service
from canvas_engine.errors import (
    CanvasEngineError,
    CanvasNotFoundError,
    InvalidNodeError,
    LockContentionError,
    NodeBusyError,
    PatchNotFoundError,
    PatchRejectedError,
    PatchStateError,
    TaskNotFoundError,
)
from canvas_engine.models.canvas import NodeResult, Task
from canvas_engine.models.patch import Patch
from canvas_engine.services.canvas_service import Actor, BatchRunResult, CanvasService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/canvas", tags=["canvas"])


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class RunNodeRequest(BaseModel):
    api_key: Optional[str] = None
    wait: bool = False


class PatchRequest(BaseModel):
    operations: List[Dict[str, Any]]


class SelectOutputRequest(BaseModel):
    index: int = Field(ge=0)


class BatchRunRequest(BaseModel):
    node_ids: Optional[List[str]] = None
    api_key: Optional[str] = None


class TaskResponse(BaseModel):
    id: str
    node_id: str
    canvas_id: str
    status: str
    batch_id: Optional[str] = None
    error: Optional[str] = None
    result: Optional[NodeResult] = None
    attempts: int
    created_at: Any
    started_at: Optional[Any] = None
    finished_at: Optional[Any] = None
    duration_ms: Optional[int] = None

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls.model_validate(task.model_dump(exclude={"api_key"}))


class LockResponse(BaseModel):
    canvas_id: str
    locked: bool
    holder: Optional[str] = None


def _http_error(e: CanvasEngineError) -> HTTPException:
    if isinstance(e, NodeBusyError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(e), "task_id": e.task_id},
        )
    if isinstance(e, (LockContentionError, PatchStateError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, PatchRejectedError):
        return HTTPException(
            status_code=422,
            detail={"message": e.reason, "operation_index": e.operation_index},
        )
    if isinstance(e, (CanvasNotFoundError, TaskNotFoundError, PatchNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, InvalidNodeError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/{canvas_id}/nodes/{node_id}/run",
    response_model=TaskResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def run_node(
    canvas_id: str,
    node_id: str,
    request: RunNodeRequest,
    actor: Actor = Depends(get_actor),
    service: CanvasService = Depends(get_canvas_service),
):
    """Queue a run of a single node. With wait=true, responds once the run finishes."""
    try:
        task = await service.run_node(
            canvas_id, node_id, actor, api_key=request.api_key, wait=request.wait
        )
        return TaskResponse.from_task(task)
    except CanvasEngineError as e:
        raise _http_error(e)


@router.post("/{canvas_id}/batches", response_model=BatchRunResult)
async def run_batch(
    canvas_id: str,
    request: BatchRunRequest,
    actor: Actor = Depends(get_actor),
    service: CanvasService = Depends(get_canvas_service),
):
    try:
        return await service.run_batch(
            canvas_id, node_ids=request.node_ids, api_key=request.api_key, actor=actor
        )
    except CanvasEngineError as e:
        raise _http_error(e)


@router.get("/{canvas_id}/tasks/{task_id}", response_model=TaskResponse)
async def get_task(
    canvas_id: str,
    task_id: str,
    service: CanvasService = Depends(get_canvas_service),
):
    try:
        task = await service.get_task(task_id, canvas_id)
    except CanvasEngineError as e:
        raise _http_error(e)
    return TaskResponse.from_task(task)


@router.post("/{canvas_id}/tasks/{task_id}/cancel")
async def cancel_task(
    canvas_id: str,
    task_id: str,
    actor: Actor = Depends(get_actor),
    service: CanvasService = Depends(get_canvas_service),
):
    try:
        cancelled = await service.cancel_task(canvas_id, task_id, actor)
    except CanvasEngineError as e:
        raise _http_error(e)
    return {"task_id": task_id, "cancelled": cancelled}


@router.post("/{canvas_id}/patches", response_model=Patch)
async def apply_patch(
    canvas_id: str,
    request: PatchRequest,
    actor: Actor = Depends(get_actor),
    service: CanvasService = Depends(get_canvas_service),
):
    """
    Apply a JSON-Patch to the canvas graph; all operations or none.

    Agent patches come back pending and wait for a user to accept them.
    """
    try:
        return await service.apply_patch(canvas_id, request.operations, actor)
    except CanvasEngineError as e:
        raise _http_error(e)


@router.get("/{canvas_id}/patches/{patch_id}", response_model=Patch)
async def get_patch(
    canvas_id: str,
    patch_id: str,
    service: CanvasService = Depends(get_canvas_service),
):
    try:
        patch = await service.repository.get_patch(patch_id)
    except CanvasEngineError as e:
        raise _http_error(e)
    if patch.canvas_id != canvas_id:
        raise HTTPException(status_code=404, detail=f"Patch {patch_id} not found")
    return patch


@router.post("/{canvas_id}/patches/{patch_id}/accept", response_model=Patch)
async def accept_patch(
    canvas_id: str,
    patch_id: str,
    actor: Actor = Depends(get_actor),
    service: CanvasService = Depends(get_canvas_service),
):
    try:
        return await service.accept_patch(canvas_id, patch_id, actor)
    except CanvasEngineError as e:
        raise _http_error(e)


@router.post("/{canvas_id}/patches/{patch_id}/reject", response_model=Patch)
async def reject_patch(
    canvas_id: str,
    patch_id: str,
    actor: Actor = Depends(get_actor),
    service: CanvasService = Depends(get_canvas_service),
):
    try:
        return await service.reject_patch(canvas_id, patch_id, actor)
    except CanvasEngineError as e:
        raise _http_error(e)


@router.put("/{canvas_id}/nodes/{node_id}/selected-output", response_model=NodeResult)
async def select_output(
    canvas_id: str,
    node_id: str,
    request: SelectOutputRequest,
    actor: Actor = Depends(get_actor),
    service: CanvasService = Depends(get_canvas_service),
):
    try:
        return await service.select_output(canvas_id, node_id, request.index, actor)
    except CanvasEngineError as e:
        raise _http_error(e)


@router.get("/{canvas_id}/lock", response_model=LockResponse)
async def get_lock(
    canvas_id: str,
    service: CanvasService = Depends(get_canvas_service),
):
    lock = service.lock_status(canvas_id)
    return LockResponse(canvas_id=canvas_id, locked=lock is not None, holder=lock.holder if lock else None)


@router.delete("/{canvas_id}/lock", response_model=LockResponse)
async def force_release_lock(
    canvas_id: str,
    actor: Actor = Depends(get_actor),
    service: CanvasService = Depends(get_canvas_service),
):
    """Release a stuck agent lock."""
    released = service.lock_manager.force_release(canvas_id)
    if released:
        logger.warning("Lock on canvas %s force released by %s", canvas_id, actor.id)
    return LockResponse(canvas_id=canvas_id, locked=False)


@router.get("/{canvas_id}/events")
async def stream_events(
    canvas_id: str,
    service: CanvasService = Depends(get_canvas_service),
):
    """Server-sent events for lock changes and agent patches on a canvas."""
    queue = service.lock_manager.subscribe(canvas_id)

    async def event_generator():
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=15)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(event.model_dump(mode='json'))}\n\n"
        finally:
            service.lock_manager.unsubscribe(canvas_id, queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
