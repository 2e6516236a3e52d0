from __future__ import annotations

from fastapi import APIRouter

from app.api.routers import queries

router = APIRouter(prefix="/api/v1")
router.include_router(queries.router)
