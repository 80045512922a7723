"""API v1 module.

Contains all v1 API routes.
"""

from fastapi import APIRouter

from tryon.api.v1.stores import router as stores_router
from tryon.api.v1.tryon import router as tryon_router

router = APIRouter(prefix="/api/v1")
router.include_router(tryon_router)
router.include_router(stores_router)

__all__ = ["router"]
