import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from canvas_engine.api.dependencies import create_canvas_service, set_canvas_service
from canvas_engine.api.routes import api_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan: start the task workers and reconcile
    tasks left over from a previous process.
    """
    logger.info("Starting canvas engine...")
    service = create_canvas_service()
    set_canvas_service(service)
    await service.task_queue.recover_orphaned_tasks()
    await service.task_queue.start()
    logger.info("Canvas engine startup complete")

    yield

    logger.info("Shutting down canvas engine...")
    await service.task_queue.stop()
    set_canvas_service(None)
    logger.info("Canvas engine shutdown complete")


app = FastAPI(
    title="Canvas Engine",
    description="Graph execution core for a visual node canvas: input resolution, node runs, and agent patches.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[],
    allow_origin_regex=r"^https:\/\/.*\.vercel\.app$|^http:\/\/localhost:\d+$|^http:\/\/127\.0\.0\.1:\d+$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(api_router)
