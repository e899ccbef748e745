"""Background cleanup for Berth.

- IdleTerminalGC: terminal sessions idle past the timeout or already exited
- RateLimitSweepGC: expired admission guard records

Each runs on its own GCScheduler so the two intervals stay independent.
"""

from berth.services.gc.base import GCResult, GCTask
from berth.services.gc.scheduler import GCScheduler

__all__ = ["GCResult", "GCScheduler", "GCTask"]
