"""IdleTerminalGC - close idle or exited terminal sessions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from berth.services.gc.base import GCResult, GCTask

if TYPE_CHECKING:
    from berth.managers.terminal import TerminalManager


class IdleTerminalGC(GCTask):
    def __init__(self, terminals: "TerminalManager") -> None:
        self._terminals = terminals

    @property
    def name(self) -> str:
        return "idle_terminal"

    async def run(self) -> GCResult:
        closed = await self._terminals.cleanup_sessions()
        return GCResult(cleaned_count=closed)
