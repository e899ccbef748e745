"""RateLimitSweepGC - purge expired admission records."""

from __future__ import annotations

from typing import TYPE_CHECKING

from berth.services.gc.base import GCResult, GCTask

if TYPE_CHECKING:
    from berth.services.ratelimit import AdmissionGuard


class RateLimitSweepGC(GCTask):
    def __init__(self, guard: "AdmissionGuard") -> None:
        self._guard = guard

    @property
    def name(self) -> str:
        return "rate_limit_sweep"

    async def run(self) -> GCResult:
        return GCResult(cleaned_count=self._guard.sweep())
