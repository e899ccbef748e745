"""TerminalManager - interactive shell sessions inside playground containers.

One session per playground, id ``<playground_id>-terminal``. Creating a
session for a playground that already has one closes the old PTY first.

Each session has an output pump task that moves PTY output into a bounded
buffer (oldest chunks are dropped when it is full) and refreshes
``last_activity``. The janitor closes sessions that have been idle too long
or whose process has exited.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import structlog

from berth.concurrency import KeyedLock
from berth.config import Settings, get_settings
from berth.errors import BerthError, NotFoundError, ValidationError
from berth.managers.container import ContainerManager
from berth.models.terminal import TerminalSession, TerminalState
from berth.terminals import TerminalBackend
from berth.utils.datetime import utcnow

logger = structlog.get_logger()


def session_id_for(playground_id: str) -> str:
    return f"{playground_id}-terminal"


class TerminalManager:
    """Manages terminal session lifecycle."""

    def __init__(
        self,
        containers: ContainerManager,
        backend: TerminalBackend,
        settings: Settings | None = None,
    ) -> None:
        self._containers = containers
        self._backend = backend
        self._settings = settings or get_settings()
        self._cfg = self._settings.terminal
        self._log = logger.bind(manager="terminal")

        self._locks = KeyedLock()
        # session id -> session
        self._sessions: dict[str, TerminalSession] = {}

        # A removed container takes its shell with it
        containers.on_remove(self.close_playground_sessions)

    @property
    def idle_timeout(self) -> timedelta:
        return timedelta(seconds=self._cfg.idle_timeout_seconds)

    def __len__(self) -> int:
        return len(self._sessions)

    async def create_session(self, playground_id: str) -> TerminalSession:
        """Spawn a shell in the playground's container, replacing any old session.

        Raises:
            NotFoundError: If the playground has no container
        """
        session_id = session_id_for(playground_id)

        async with self._locks.hold(session_id):
            # Starts a stopped container; adopts one this process has not seen
            container = await self._containers.start_container(playground_id)

            previous = self._sessions.get(session_id)
            if previous is not None:
                self._log.info("terminal.replace", session_id=session_id)
                await self._close(previous)

            process = await self._backend.spawn(
                container,
                self._cfg.shell,
                cols=self._cfg.cols,
                rows=self._cfg.rows,
                env={"TERM": self._cfg.term},
                workdir=self._containers.workdir,
            )

            session = TerminalSession(
                id=session_id,
                playground_id=playground_id,
                process=process,
                cols=self._cfg.cols,
                rows=self._cfg.rows,
                output=asyncio.Queue(maxsize=self._cfg.output_buffer_chunks),
            )
            session.state = TerminalState.ACTIVE
            session.pump_task = asyncio.create_task(
                self._pump(session), name=f"terminal-pump-{session_id}"
            )
            self._sessions[session_id] = session

        self._log.info(
            "terminal.created",
            session_id=session_id,
            playground_id=playground_id,
            backend=self._cfg.backend,
        )
        return session

    async def _pump(self, session: TerminalSession) -> None:
        """Move PTY output into the session buffer until EOF."""
        try:
            while True:
                data = await session.process.read()
                if not data:
                    break
                if session.output.full():
                    dropped = session.output.get_nowait()
                    session.dropped_bytes += len(dropped)
                session.output.put_nowait(data)
                session.touch()
        except Exception:
            self._log.exception("terminal.pump.failed", session_id=session.id)
        self._log.info("terminal.exited", session_id=session.id)

    def get_session(self, session_id: str) -> TerminalSession | None:
        return self._sessions.get(session_id)

    def _active(self, session_id: str) -> TerminalSession:
        session = self._sessions.get(session_id)
        if session is None or not session.is_active:
            raise NotFoundError(
                f"Terminal session not found: {session_id}",
                details={"session_id": session_id},
            )
        return session

    async def write_to_session(self, session_id: str, data: bytes) -> None:
        """Forward input to the shell.

        Raises:
            NotFoundError: If the session is absent or no longer active
        """
        session = self._active(session_id)
        await session.process.write(data)
        session.touch()

    async def resize_session(self, session_id: str, cols: int, rows: int) -> None:
        """Change the terminal size.

        Raises:
            ValidationError: If either dimension is not positive
            NotFoundError: If the session is absent or no longer active
        """
        if cols <= 0 or rows <= 0:
            raise ValidationError(
                f"Invalid terminal size {cols}x{rows}",
                details={"cols": cols, "rows": rows},
            )
        session = self._active(session_id)
        await session.process.resize(cols, rows)
        session.cols, session.rows = cols, rows
        session.touch()

    async def read_output(self, session_id: str, *, timeout: float = 1.0) -> bytes:
        """Drain buffered output, waiting up to ``timeout`` for the first chunk.

        Returns b"" if nothing arrives in time.

        Raises:
            NotFoundError: If the session is absent
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(
                f"Terminal session not found: {session_id}",
                details={"session_id": session_id},
            )

        chunks: list[bytes] = []
        if session.output.empty():
            if not session.is_active:
                return b""
            try:
                chunks.append(await asyncio.wait_for(session.output.get(), timeout))
            except TimeoutError:
                return b""

        while not session.output.empty():
            chunks.append(session.output.get_nowait())
        return b"".join(chunks)

    async def close_session(self, session_id: str) -> None:
        """Close a session and kill its process. Absent sessions are not an error."""
        async with self._locks.hold(session_id):
            session = self._sessions.get(session_id)
            if session is None:
                return
            await self._close(session)

        await self._locks.discard(session_id)

    async def _close(self, session: TerminalSession) -> None:
        self._sessions.pop(session.id, None)
        session.state = TerminalState.CLOSED

        if session.pump_task is not None and not session.pump_task.done():
            session.pump_task.cancel()
            try:
                await session.pump_task
            except asyncio.CancelledError:
                pass

        try:
            await session.process.terminate()
        except BerthError as e:
            self._log.warning("terminal.terminate_failed", session_id=session.id, error=str(e))

        self._log.info("terminal.closed", session_id=session.id)

    async def close_playground_sessions(self, playground_id: str) -> None:
        """Close the playground's session, if any."""
        await self.close_session(session_id_for(playground_id))

    async def cleanup_sessions(self) -> int:
        """Close sessions idle past the timeout or whose process exited.

        Returns:
            Number of sessions closed
        """
        now = utcnow()
        timeout = self.idle_timeout
        stale = [
            session.id
            for session in list(self._sessions.values())
            if not session.is_active or now - session.last_activity > timeout
        ]

        closed = 0
        for session_id in stale:
            async with self._locks.hold(session_id):
                session = self._sessions.get(session_id)
                # Replaced by a fresh session since the scan
                if session is None or (
                    session.is_active and now - session.last_activity <= timeout
                ):
                    continue
                self._log.info(
                    "terminal.cleanup",
                    session_id=session_id,
                    idle_seconds=session.idle_seconds(now),
                    active=session.is_active,
                )
                await self._close(session)
                closed += 1
            await self._locks.discard(session_id)

        return closed

    async def close_all(self) -> None:
        """Close every session (shutdown)."""
        for session_id in list(self._sessions):
            await self.close_session(session_id)
