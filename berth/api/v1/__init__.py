"""API v1 router."""

from fastapi import APIRouter

from berth.api.v1.admin import router as admin_router
from berth.api.v1.containers import router as containers_router
from berth.api.v1.terminals import router as terminals_router

router = APIRouter()

router.include_router(containers_router, prefix="/containers", tags=["containers"])
router.include_router(terminals_router, prefix="/terminals", tags=["terminals"])
router.include_router(admin_router)  # /admin prefix is in the router itself
