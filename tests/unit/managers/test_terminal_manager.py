"""Unit tests for TerminalManager.

Sessions are spawned through ApiTerminalBackend on FakeDriver, which hands
out in-memory FakePty objects (see ``FakeDriver.ptys``).
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from berth.config import Settings
from berth.errors import NotFoundError, ValidationError
from berth.managers import ContainerManager, TerminalManager
from berth.managers.terminal.terminal import session_id_for
from berth.models.container import ContainerConfig
from berth.models.terminal import TerminalState
from berth.provisioners import MinimalProvisioner
from berth.terminals import ApiTerminalBackend
from berth.utils.datetime import utcnow
from tests.fakes import FakeDriver


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        container={"workdir": str(tmp_path)},
        terminal={"output_buffer_chunks": 4},
    )


@pytest.fixture
def driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def containers(driver: FakeDriver, settings: Settings) -> ContainerManager:
    return ContainerManager(driver, MinimalProvisioner(), settings)


@pytest.fixture
async def terminals(driver: FakeDriver, containers: ContainerManager, settings: Settings):
    manager = TerminalManager(containers, ApiTerminalBackend(driver), settings)
    yield manager
    await manager.close_all()


@pytest.fixture
async def playground(containers: ContainerManager) -> str:
    await containers.create_container(ContainerConfig(playground_id="p1"))
    return "p1"


async def _until(predicate, timeout: float = 1.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_session(self, terminals, driver, playground, settings):
        session = await terminals.create_session(playground)

        assert session.id == session_id_for(playground) == "p1-terminal"
        assert session.state == TerminalState.ACTIVE
        assert session.is_active
        assert (session.cols, session.rows) == (80, 24)

        pty = driver.ptys[0]
        # Shell is wrapped so its PID is recorded inside the container
        assert pty.cmd[:2] == ["/bin/sh", "-c"]
        assert pty.cmd[3].startswith("/tmp/berth-pty-")
        assert pty.cmd[4:] == settings.terminal.shell

    @pytest.mark.asyncio
    async def test_create_twice_replaces_old_session(self, terminals, driver, playground):
        first = await terminals.create_session(playground)
        second = await terminals.create_session(playground)

        assert first is not second
        assert first.state == TerminalState.CLOSED
        assert driver.ptys[0].killed
        assert not driver.ptys[1].killed
        assert terminals.get_session("p1-terminal") is second
        assert len(terminals) == 1

    @pytest.mark.asyncio
    async def test_create_without_container(self, terminals):
        with pytest.raises(NotFoundError):
            await terminals.create_session("nope")
        assert len(terminals) == 0

    @pytest.mark.asyncio
    async def test_create_starts_stopped_container(
        self, terminals, containers, driver, playground
    ):
        await containers.stop_container(playground)

        session = await terminals.create_session(playground)

        assert session.is_active
        info = await containers.get_container(playground)
        assert info.is_running


class TestIO:
    @pytest.mark.asyncio
    async def test_write_forwards_input(self, terminals, driver, playground):
        session = await terminals.create_session(playground)
        before = session.last_activity

        await terminals.write_to_session(session.id, b"ls\n")

        assert driver.ptys[0].inputs == [b"ls\n"]
        assert session.last_activity >= before

    @pytest.mark.asyncio
    async def test_read_output(self, terminals, driver, playground):
        session = await terminals.create_session(playground)
        driver.ptys[0].feed(b"hello ")
        driver.ptys[0].feed(b"world")

        await _until(lambda: session.output.qsize() == 2)

        assert await terminals.read_output(session.id) == b"hello world"
        assert await terminals.read_output(session.id, timeout=0.01) == b""

    @pytest.mark.asyncio
    async def test_read_output_waits_for_data(self, terminals, driver, playground):
        session = await terminals.create_session(playground)

        async def later():
            await asyncio.sleep(0.02)
            driver.ptys[0].feed(b"late")

        task = asyncio.create_task(later())
        data = await terminals.read_output(session.id, timeout=1.0)
        await task

        assert data == b"late"

    @pytest.mark.asyncio
    async def test_full_buffer_drops_oldest(self, terminals, driver, playground):
        session = await terminals.create_session(playground)
        for i in range(6):
            driver.ptys[0].feed(f"{i}".encode())

        await _until(lambda: driver.ptys[0]._output.empty() and session.output.full())

        assert await terminals.read_output(session.id) == b"2345"
        assert session.dropped_bytes == 2

    @pytest.mark.asyncio
    async def test_resize(self, terminals, driver, playground):
        session = await terminals.create_session(playground)

        await terminals.resize_session(session.id, 120, 40)

        assert driver.ptys[0].resizes == [(120, 40)]
        assert (session.cols, session.rows) == (120, 40)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("cols", "rows"), [(0, 24), (80, 0), (-1, -1)])
    async def test_resize_rejects_non_positive(self, terminals, playground, cols, rows):
        session = await terminals.create_session(playground)

        with pytest.raises(ValidationError):
            await terminals.resize_session(session.id, cols, rows)

    @pytest.mark.asyncio
    async def test_unknown_session(self, terminals):
        with pytest.raises(NotFoundError):
            await terminals.write_to_session("nope-terminal", b"x")
        with pytest.raises(NotFoundError):
            await terminals.resize_session("nope-terminal", 80, 24)
        with pytest.raises(NotFoundError):
            await terminals.read_output("nope-terminal")

    @pytest.mark.asyncio
    async def test_write_to_exited_session(self, terminals, driver, playground):
        session = await terminals.create_session(playground)
        driver.ptys[0].finish()

        await _until(lambda: session.pump_task.done())

        with pytest.raises(NotFoundError):
            await terminals.write_to_session(session.id, b"x")


class TestClose:
    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, terminals, driver, playground):
        session = await terminals.create_session(playground)

        await terminals.close_session(session.id)
        await terminals.close_session(session.id)

        assert driver.ptys[0].killed
        assert session.state == TerminalState.CLOSED
        assert session.pump_task.done()
        assert terminals.get_session(session.id) is None

    @pytest.mark.asyncio
    async def test_close_kills_recorded_pid(self, terminals, driver, playground):
        session = await terminals.create_session(playground)
        pidfile = driver.ptys[0].cmd[3]

        await terminals.close_session(session.id)

        kill_script = driver.exec_calls[-1][-1]
        assert pidfile in kill_script
        assert "kill -9" in kill_script

    @pytest.mark.asyncio
    async def test_close_playground_sessions(self, terminals, playground):
        await terminals.create_session(playground)

        await terminals.close_playground_sessions(playground)

        assert len(terminals) == 0

    @pytest.mark.asyncio
    async def test_removing_container_closes_session(
        self, terminals, containers, driver, playground
    ):
        session = await terminals.create_session(playground)

        await containers.remove_container(playground)

        assert await containers.get_container(playground) is None
        assert terminals.get_session(session.id) is None
        assert session.state == TerminalState.CLOSED
        assert driver.ptys[0].killed

    @pytest.mark.asyncio
    async def test_session_cannot_be_created_after_removal(
        self, terminals, containers, playground
    ):
        await containers.remove_container(playground)

        with pytest.raises(NotFoundError):
            await terminals.create_session(playground)
        assert len(terminals) == 0


class TestCleanup:
    @pytest.mark.asyncio
    async def test_idle_session_is_closed(self, terminals, driver, playground):
        session = await terminals.create_session(playground)
        session.last_activity = utcnow() - timedelta(minutes=31)

        assert await terminals.cleanup_sessions() == 1
        assert driver.ptys[0].killed
        assert terminals.get_session(session.id) is None

    @pytest.mark.asyncio
    async def test_recent_session_is_kept(self, terminals, playground):
        session = await terminals.create_session(playground)
        session.last_activity = utcnow() - timedelta(minutes=5)

        assert await terminals.cleanup_sessions() == 0
        assert terminals.get_session(session.id) is session

    @pytest.mark.asyncio
    async def test_exited_session_is_closed(self, terminals, driver, playground):
        session = await terminals.create_session(playground)
        driver.ptys[0].finish()
        await _until(lambda: session.pump_task.done())

        assert await terminals.cleanup_sessions() == 1
        assert len(terminals) == 0

    @pytest.mark.asyncio
    async def test_output_counts_as_activity(self, terminals, driver, playground):
        session = await terminals.create_session(playground)
        session.last_activity = utcnow() - timedelta(minutes=31)

        driver.ptys[0].feed(b"tick")
        await _until(lambda: not session.output.empty())

        assert await terminals.cleanup_sessions() == 0
