"""
FastAPI dependencies: the process-wide CanvasService and the calling actor.

Authentication happens upstream; the gateway forwards the resolved caller
in the X-Actor-Kind / X-Actor-Id headers.
"""

import logging
from typing import Literal, Optional

from fastapi import Header, HTTPException, status

from canvas_engine.config import Settings, get_settings
from canvas_engine.db.repository import InMemoryCanvasRepository, InMemoryTaskStore
from canvas_engine.services.canvas_lock import CanvasLockManager
from canvas_engine.services.canvas_service import Actor, CanvasService
from canvas_engine.services.node_orchestrator import NodeOrchestrator
from canvas_engine.services.patch_applier import PatchApplier
from canvas_engine.services.processors import build_default_registry
from canvas_engine.services.processors.generation import MediaProvider
from canvas_engine.services.processors.text import TextProvider
from canvas_engine.services.task_queue import TaskQueue

logger = logging.getLogger(__name__)

_service: Optional[CanvasService] = None


def create_canvas_service(
    settings: Optional[Settings] = None,
    text_provider: Optional[TextProvider] = None,
    media_provider: Optional[MediaProvider] = None,
) -> CanvasService:
    """Wire a CanvasService from settings using the configured storage backend."""
    settings = settings or get_settings()

    if settings.storage_backend == "supabase":
        from canvas_engine.db.supabase import SupabaseCanvasRepository, SupabaseTaskStore

        task_store = SupabaseTaskStore()
        repository = SupabaseCanvasRepository()
    else:
        task_store = InMemoryTaskStore()
        repository = InMemoryCanvasRepository(task_store=task_store)
    logger.info("Canvas storage backend: %s", settings.storage_backend)

    orchestrator = NodeOrchestrator(
        repository,
        build_default_registry(text_provider, media_provider),
        timeout=settings.node_run_timeout_s,
    )
    queue = TaskQueue(
        orchestrator,
        task_store,
        workers=settings.worker_count,
        max_attempts=settings.max_attempts,
        retry_base_delay=settings.retry_base_delay_s,
        retry_max_delay=settings.retry_max_delay_s,
    )
    return CanvasService(
        repository,
        queue,
        CanvasLockManager(ttl=settings.canvas_lock_ttl_s),
        PatchApplier(),
    )


def set_canvas_service(service: Optional[CanvasService]) -> None:
    global _service
    _service = service


def get_canvas_service() -> CanvasService:
    if _service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Canvas service is not running",
        )
    return _service


def get_actor(
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_kind: Literal["user", "agent"] = Header(default="user"),
) -> Actor:
    if not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Actor-Id header",
        )
    return Actor(kind=x_actor_kind, id=x_actor_id)
