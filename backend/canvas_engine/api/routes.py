from fastapi import APIRouter

from canvas_engine.api.v1 import canvas

api_router = APIRouter(prefix="/api", tags=["canvas-engine"])

api_router.include_router(canvas.router, prefix="/v1", tags=["canvas"])


@api_router.get("/")
def read_root():
    return {"message": "canvas-engine"}
