from fastapi import APIRouter

from .endpoints import accounting, health

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(accounting.router)
