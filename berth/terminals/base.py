"""TerminalBackend base class.

Every backend starts the shell through a small wrapper that records its PID
inside the container. Closing a session then kills that PID through the
runtime's exec facility, so a shell stuck in a foreground program does not
outlive its session regardless of how the PTY was attached.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod

import structlog

from berth.drivers.base import ContainerInfo, Driver, PtyProcess

logger = structlog.get_logger()

_PID_WRAPPER = 'echo $$ > "$0"; exec "$@"'


class TrackedPty(PtyProcess):
    """PtyProcess whose in-container process is killed on terminate."""

    def __init__(
        self,
        inner: PtyProcess,
        *,
        driver: Driver,
        container_id: str,
        pidfile: str,
    ) -> None:
        self._inner = inner
        self._driver = driver
        self._container_id = container_id
        self._pidfile = pidfile
        self._terminated = False
        self._log = logger.bind(container_id=container_id, pidfile=pidfile)

    @property
    def is_alive(self) -> bool:
        return not self._terminated and self._inner.is_alive

    async def read(self) -> bytes:
        return await self._inner.read()

    async def write(self, data: bytes) -> None:
        await self._inner.write(data)

    async def resize(self, cols: int, rows: int) -> None:
        await self._inner.resize(cols, rows)

    async def terminate(self) -> None:
        if self._terminated:
            return
        self._terminated = True

        try:
            await self._inner.terminate()
        finally:
            await self._kill_remote()

    async def _kill_remote(self) -> None:
        script = (
            f'pid=$(cat {self._pidfile} 2>/dev/null) && '
            f'{{ kill -9 -- -"$pid" 2>/dev/null; kill -9 "$pid" 2>/dev/null; }}; '
            f'rm -f {self._pidfile}'
        )
        try:
            await self._driver.exec(self._container_id, ["/bin/sh", "-c", script])
        except Exception as e:
            # Container may already be gone; the process went with it
            self._log.warning("terminal.kill_failed", error=str(e))


class TerminalBackend(ABC):
    """Spawns interactive shells with a PTY inside playground containers."""

    def __init__(self, driver: Driver) -> None:
        self._driver = driver

    async def spawn(
        self,
        container: ContainerInfo,
        shell: list[str],
        *,
        cols: int,
        rows: int,
        env: dict[str, str] | None = None,
        workdir: str | None = None,
    ) -> PtyProcess:
        """Start ``shell`` in ``container`` attached to a fresh PTY."""
        pidfile = f"/tmp/berth-pty-{uuid.uuid4().hex}.pid"
        cmd = ["/bin/sh", "-c", _PID_WRAPPER, pidfile, *shell]

        inner = await self._open(
            container, cmd, cols=cols, rows=rows, env=env, workdir=workdir
        )
        return TrackedPty(
            inner,
            driver=self._driver,
            container_id=container.container_id,
            pidfile=pidfile,
        )

    @abstractmethod
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
        """Attach ``cmd`` to a PTY."""
        ...
