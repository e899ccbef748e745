"""Janitor task base classes and result structures."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class GCResult:
    """Result of one task execution.

    Attributes:
        task_name: Name of the task
        cleaned_count: Number of resources reclaimed
        errors: Error messages for failed cleanups
    """

    task_name: str = ""
    cleaned_count: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, error: str) -> None:
        self.errors.append(error)


class GCTask(ABC):
    """A periodic cleanup job.

    - IdleTerminalGC: close idle or exited terminal sessions
    - RateLimitSweepGC: purge expired admission records
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Task name (for logging)."""
        ...

    @abstractmethod
    async def run(self) -> GCResult:
        """Execute the task once.

        Failures on individual resources are collected in ``GCResult.errors``
        instead of aborting the task.
        """
        ...
