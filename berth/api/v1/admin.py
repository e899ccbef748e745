"""Admin API endpoints.

Manual janitor trigger, so tests and operators do not depend on timing.
"""

from __future__ import annotations

import time

from fastapi import APIRouter
from pydantic import BaseModel

from berth.api.dependencies import ServicesDep

router = APIRouter(prefix="/admin", tags=["admin"])


class GCTaskResult(BaseModel):
    task_name: str
    cleaned_count: int
    errors: list[str]


class GCRunResponse(BaseModel):
    results: list[GCTaskResult]
    total_cleaned: int
    total_errors: int
    duration_ms: int


@router.post("/gc/run", response_model=GCRunResponse)
async def run_gc(services: ServicesDep) -> GCRunResponse:
    """Run one janitor cycle and one rate-limit sweep synchronously."""
    start = time.monotonic()

    results = await services.janitor.run_once()
    results += await services.sweeper.run_once()

    return GCRunResponse(
        results=[
            GCTaskResult(
                task_name=r.task_name,
                cleaned_count=r.cleaned_count,
                errors=r.errors,
            )
            for r in results
        ],
        total_cleaned=sum(r.cleaned_count for r in results),
        total_errors=sum(len(r.errors) for r in results),
        duration_ms=int((time.monotonic() - start) * 1000),
    )
