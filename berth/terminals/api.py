"""Runtime API terminal backend (aiodocker exec / pod exec websocket)."""

from __future__ import annotations

from berth.drivers.base import ContainerInfo, PtyProcess
from berth.terminals.base import TerminalBackend


class ApiTerminalBackend(TerminalBackend):
    async def _open(
        self,
        container: ContainerInfo,
        cmd: list[str],
        *,
        cols: int,
        rows: int,
        env: dict[str, str] | None,
        workdir: str | None,
    ) -> PtyProcess:
        return await self._driver.open_pty(
            container.container_id,
            cmd,
            cols=cols,
            rows=rows,
            workdir=workdir,
            env=env,
        )
