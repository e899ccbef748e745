"""Fixed-window rate limiting per caller identity.

The first request of a window opens a record ``{count: 0, reset_time:
now + window}``; every request increments ``count`` and is rejected once it
exceeds ``max_requests``. ``check_limit`` has no await points, so a check
and its increment happen atomically on the event loop.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from berth.config import AdmissionConfig
from berth.errors import RateLimitError

logger = structlog.get_logger()


@dataclass
class RateLimitRecord:
    count: int
    reset_time: float


class RateLimiter:
    """One fixed-window limiter, keyed by caller identity."""

    def __init__(
        self,
        name: str,
        *,
        window_seconds: float,
        max_requests: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._clock = clock
        self._records: dict[str, RateLimitRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def check_limit(self, identity: str) -> RateLimitRecord:
        """Count one request for ``identity``.

        Raises:
            RateLimitError: When the window's budget is exhausted
        """
        now = self._clock()
        record = self._records.get(identity)
        if record is None or now >= record.reset_time:
            record = RateLimitRecord(count=0, reset_time=now + self.window_seconds)
            self._records[identity] = record

        record.count += 1
        if record.count > self.max_requests:
            remaining = record.reset_time - now
            logger.info(
                "ratelimit.rejected",
                limiter=self.name,
                identity=identity,
                retry_after=math.ceil(remaining),
            )
            raise RateLimitError(
                retry_after=remaining,
                details={"limit": self.name, "max_requests": self.max_requests},
            )
        return record

    def sweep(self) -> int:
        """Drop expired records. Returns the number removed."""
        now = self._clock()
        expired = [k for k, r in self._records.items() if now >= r.reset_time]
        for key in expired:
            del self._records[key]
        return len(expired)


class AdmissionGuard:
    """One RateLimiter per operation class."""

    def __init__(
        self,
        config: AdmissionConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.enabled = config.enabled
        self._limiters = {
            name: RateLimiter(
                name,
                window_seconds=rule.window_seconds,
                max_requests=rule.max_requests,
                clock=clock,
            )
            for name, rule in config.rules.items()
        }

    def limiter(self, operation: str) -> RateLimiter | None:
        return self._limiters.get(operation)

    def check(self, operation: str, identity: str) -> None:
        """Admit or reject one request of ``operation`` from ``identity``.

        Raises:
            RateLimitError: When the caller is over the limit
        """
        if not self.enabled:
            return
        limiter = self._limiters.get(operation)
        if limiter is None:
            # No rule configured for this operation class
            return
        limiter.check_limit(identity)

    def sweep(self) -> int:
        return sum(limiter.sweep() for limiter in self._limiters.values())
