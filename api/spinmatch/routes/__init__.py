from fastapi import APIRouter, FastAPI

from .admin import router as admin_router
from .events import router as events_router
from .pairs import router as pairs_router
from .queue import router as queue_router


def include_modular_routers(app: FastAPI) -> None:
    app.include_router(queue_router, tags=["queue"])
    app.include_router(pairs_router, prefix="/pairs", tags=["pairs"])
    app.include_router(events_router, tags=["events"])
    app.include_router(admin_router, prefix="/admin", tags=["admin"])


__all__ = ["include_modular_routers", "APIRouter"]
