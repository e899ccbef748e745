"""Unit tests for the CLI terminal backend.

FakeDriver's ``cli_exec_command`` returns the command unchanged, so the
"remote" shell is a local /bin/sh on a real PTY.
"""

from __future__ import annotations

import asyncio
import sys

import pytest

from berth.drivers.base import ContainerSpec
from berth.errors import ContainerRuntimeError
from berth.terminals.cli import CliTerminalBackend
from tests.fakes import FakeDriver

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="requires a POSIX pty")


class _MissingBinaryDriver(FakeDriver):
    def cli_exec_command(self, container, cmd, *, workdir=None, env=None):  # noqa: ANN001, ANN201
        return ["/nonexistent/berth-cli", *cmd]


async def _running(driver: FakeDriver, workdir: str):
    container_id = await driver.create(
        ContainerSpec(name="playground-p1", image="i", command=[], workdir=workdir)
    )
    await driver.start(container_id)
    return await driver.inspect(container_id)


async def _read_until(pty, needle: bytes, timeout: float = 5.0) -> bytes:
    buf = b""

    async def _loop():
        nonlocal buf
        while needle not in buf:
            chunk = await pty.read()
            if not chunk:
                break
            buf += chunk

    await asyncio.wait_for(_loop(), timeout)
    return buf


class TestCliBackend:
    @pytest.mark.asyncio
    async def test_interactive_shell(self, tmp_path):
        driver = FakeDriver()
        container = await _running(driver, str(tmp_path))
        backend = CliTerminalBackend(driver)

        pty = await backend.spawn(
            container, ["/bin/sh"], cols=80, rows=24, env={"TERM": "dumb"}
        )
        try:
            assert pty.is_alive
            await pty.write(b"echo $((20 + 22))\n")
            output = await _read_until(pty, b"42")
            assert b"42" in output

            await pty.resize(100, 40)
            await pty.write(b"stty size\n")
            output = await _read_until(pty, b"40 100")
            assert b"40 100" in output
        finally:
            await pty.terminate()

        assert not pty.is_alive
        assert await pty.read() == b""

    @pytest.mark.asyncio
    async def test_shell_exit_is_eof(self, tmp_path):
        driver = FakeDriver()
        container = await _running(driver, str(tmp_path))
        pty = await CliTerminalBackend(driver).spawn(
            container, ["/bin/sh", "-c", "echo bye"], cols=80, rows=24
        )
        try:
            output = await _read_until(pty, b"\x00never")
            assert b"bye" in output
            assert not pty.is_alive
        finally:
            await pty.terminate()

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        driver = _MissingBinaryDriver()
        container = await _running(driver, str(tmp_path))

        with pytest.raises(ContainerRuntimeError):
            await CliTerminalBackend(driver).spawn(container, ["/bin/sh"], cols=80, rows=24)

    @pytest.mark.asyncio
    async def test_write_to_stalled_shell_does_not_block_loop(self, tmp_path):
        driver = FakeDriver()
        container = await _running(driver, str(tmp_path))
        pty = await CliTerminalBackend(driver).spawn(
            container,
            ["/bin/sh", "-c", "stty raw -echo; echo ready; exec sleep 30"],
            cols=80,
            rows=24,
        )
        try:
            await _read_until(pty, b"ready")

            # Far more than the kernel buffers while nothing reads the slave side
            writer = asyncio.create_task(pty.write(b"x" * (1 << 20)))
            await asyncio.sleep(0.2)
            assert not writer.done()
        finally:
            await pty.terminate()

        with pytest.raises(ContainerRuntimeError):
            await writer
