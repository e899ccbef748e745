"""Cleanup tasks."""

from berth.services.gc.tasks.idle_terminal import IdleTerminalGC
from berth.services.gc.tasks.rate_limit import RateLimitSweepGC

__all__ = ["IdleTerminalGC", "RateLimitSweepGC"]
