"""Runtime CLI terminal backend.

Runs ``docker exec -it`` / ``kubectl exec -it`` locally on a PTY pair owned
by Berth. The CLI only learns about size changes through SIGWINCH, and the
child has no controlling terminal, so resize sets the window size on the
PTY and signals the child explicitly.
"""

from __future__ import annotations

import asyncio
import fcntl
import os
import signal
import struct
import termios

import structlog

from berth.drivers.base import ContainerInfo, PtyProcess
from berth.errors import ContainerRuntimeError
from berth.terminals.base import TerminalBackend

logger = structlog.get_logger()


def set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


class LocalPtyProcess(PtyProcess):
    """A local child process attached to the slave side of a PTY."""

    def __init__(self, proc: asyncio.subprocess.Process, master_fd: int) -> None:
        self._proc = proc
        self._master_fd = master_fd
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()
        self._eof = False
        self._closed = False
        self._write_waiter: asyncio.Future[None] | None = None
        self._log = logger.bind(backend="cli", pid=proc.pid)

        # Writes wait on the loop instead of blocking it when the child stops reading
        os.set_blocking(master_fd, False)
        asyncio.get_running_loop().add_reader(master_fd, self._on_readable)

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, 65536)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the child side is closed
            data = b""
        if not data:
            self._stop_reading()
            self._queue.put_nowait(b"")
            return
        self._queue.put_nowait(data)

    def _stop_reading(self) -> None:
        if not self._eof:
            self._eof = True
            asyncio.get_running_loop().remove_reader(self._master_fd)

    @property
    def is_alive(self) -> bool:
        return not self._closed and self._proc.returncode is None and not self._eof

    async def read(self) -> bytes:
        if self._closed or (self._eof and self._queue.empty()):
            return b""
        return await self._queue.get()

    async def write(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            if self._closed:
                raise ContainerRuntimeError("Terminal process is closed")
            try:
                written = os.write(self._master_fd, view)
            except BlockingIOError:
                await self._wait_writable()
                continue
            view = view[written:]

    async def _wait_writable(self) -> None:
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._write_waiter = waiter
        loop.add_writer(
            self._master_fd, lambda: waiter.done() or waiter.set_result(None)
        )
        try:
            await waiter
        finally:
            self._write_waiter = None
            if not self._closed:
                loop.remove_writer(self._master_fd)

    async def resize(self, cols: int, rows: int) -> None:
        set_winsize(self._master_fd, cols, rows)
        if self._proc.returncode is None:
            self._proc.send_signal(signal.SIGWINCH)

    async def terminate(self) -> None:
        if self._closed:
            return
        self._closed = True

        self._stop_reading()
        asyncio.get_running_loop().remove_writer(self._master_fd)
        if self._write_waiter is not None and not self._write_waiter.done():
            self._write_waiter.set_exception(
                ContainerRuntimeError("Terminal process closed during write")
            )
        if self._proc.returncode is None:
            try:
                os.killpg(self._proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        await self._proc.wait()
        os.close(self._master_fd)
        # Wake a reader blocked on the queue
        self._queue.put_nowait(b"")
        self._log.info("cli.pty.closed", returncode=self._proc.returncode)


class CliTerminalBackend(TerminalBackend):
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
        argv = self._driver.cli_exec_command(container, cmd, workdir=workdir, env=env)

        master_fd, slave_fd = os.openpty()
        try:
            set_winsize(slave_fd, cols, rows)
            local_env = dict(os.environ)
            if env and "TERM" in env:
                local_env["TERM"] = env["TERM"]

            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=local_env,
                start_new_session=True,
            )
        except OSError as e:
            os.close(master_fd)
            raise ContainerRuntimeError(
                f"Failed to run {argv[0]}: {e}",
                details={"argv": argv[:2]},
            ) from e
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        logger.info("cli.pty.spawned", argv=argv[:3], pid=proc.pid, cols=cols, rows=rows)
        return LocalPtyProcess(proc, master_fd)
