"""Terminal session model."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from berth.drivers.base import PtyProcess
from berth.utils.datetime import utcnow


class TerminalState(str, Enum):
    """Terminal session lifecycle: created -> active -> closed."""

    CREATED = "created"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class TerminalSession:
    """An interactive shell attached to one playground container."""

    id: str
    playground_id: str
    process: PtyProcess
    state: TerminalState = TerminalState.CREATED
    cols: int = 80
    rows: int = 24
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)

    # Output produced by the process, drained by read_output
    output: asyncio.Queue[bytes] = field(default_factory=lambda: asyncio.Queue(maxsize=1024))
    # Bytes dropped because the buffer was full
    dropped_bytes: int = 0
    pump_task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def is_active(self) -> bool:
        return self.state == TerminalState.ACTIVE and self.process.is_alive

    def touch(self) -> None:
        self.last_activity = utcnow()

    def idle_seconds(self, now: datetime | None = None) -> float:
        return ((now or utcnow()) - self.last_activity).total_seconds()
