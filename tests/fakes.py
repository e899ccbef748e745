"""Fake implementations for testing.

These fakes allow unit tests to run without a real container runtime.
``FakeDriver.exec`` runs commands in a local shell, with the playground's
working directory mapped to a temporary directory, so file operations can be
checked end to end.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from berth.drivers.base import (
    CommandResult,
    ContainerInfo,
    ContainerSpec,
    ContainerStatus,
    Driver,
    PtyProcess,
)
from berth.errors import ConflictError, NotFoundError
from berth.utils.datetime import utcnow


@dataclass
class FakeContainerState:
    """State of a fake container."""

    container_id: str
    spec: ContainerSpec
    status: ContainerStatus = ContainerStatus.CREATED
    created_at: Any = field(default_factory=utcnow)


class FakePty(PtyProcess):
    """In-memory PTY. Tests push output with ``feed`` and end it with ``finish``."""

    def __init__(self, cmd: list[str], *, cols: int, rows: int) -> None:
        self.cmd = cmd
        self.size = (cols, rows)
        self.inputs: list[bytes] = []
        self.resizes: list[tuple[int, int]] = []
        self.killed = False
        self._alive = True
        self._output: asyncio.Queue[bytes] = asyncio.Queue()

    @property
    def is_alive(self) -> bool:
        return self._alive

    def feed(self, data: bytes) -> None:
        self._output.put_nowait(data)

    def finish(self) -> None:
        """Simulate the shell exiting on its own."""
        self._alive = False
        self._output.put_nowait(b"")

    async def read(self) -> bytes:
        if not self._alive and self._output.empty():
            return b""
        return await self._output.get()

    async def write(self, data: bytes) -> None:
        self.inputs.append(data)

    async def resize(self, cols: int, rows: int) -> None:
        self.resizes.append((cols, rows))
        self.size = (cols, rows)

    async def terminate(self) -> None:
        self.killed = True
        self._alive = False
        self._output.put_nowait(b"")


class FakeDriver(Driver):
    """Fake driver for unit testing.

    Records calls for assertions and lets tests inject failures.
    """

    HOST_PORT_BASE = 40000

    def __init__(self) -> None:
        self._containers: dict[str, FakeContainerState] = {}
        self._next_container_id = 1

        self.create_calls: list[ContainerSpec] = []
        self.start_calls: list[str] = []
        self.stop_calls: list[str] = []
        self.destroy_calls: list[str] = []
        self.ensure_image_calls: list[str] = []
        self.exec_calls: list[list[str]] = []
        self.ptys: list[FakePty] = []

        # Failure injection
        self.start_exception: Exception | None = None
        self.exec_delay: float = 0.0
        # Yield inside create so concurrent callers interleave
        self.create_delay: float = 0.0

    @property
    def containers(self) -> dict[str, FakeContainerState]:
        return self._containers

    def _by_name(self, name: str) -> FakeContainerState | None:
        for state in self._containers.values():
            if state.spec.name == name:
                return state
        return None

    def _info(self, state: FakeContainerState) -> ContainerInfo:
        ports: dict[int, int] = {}
        if state.status == ContainerStatus.RUNNING:
            ports = {
                p: self.HOST_PORT_BASE + i for i, p in enumerate(state.spec.ports)
            }
        return ContainerInfo(
            container_id=state.container_id,
            name=state.spec.name,
            status=state.status,
            ports=ports,
            address="127.0.0.1",
            created_at=state.created_at,
            labels=dict(state.spec.labels),
        )

    async def create(self, spec: ContainerSpec) -> str:
        self.create_calls.append(spec)
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self._by_name(spec.name) is not None:
            raise ConflictError(f"Conflict on {spec.name}")

        container_id = f"fake-{self._next_container_id}"
        self._next_container_id += 1
        self._containers[container_id] = FakeContainerState(container_id, spec)
        return container_id

    async def start(self, container_id: str) -> None:
        self.start_calls.append(container_id)
        if self.start_exception is not None:
            raise self.start_exception
        state = self._get(container_id)
        state.status = ContainerStatus.RUNNING

    async def stop(self, container_id: str, *, timeout: int = 10) -> None:
        self.stop_calls.append(container_id)
        state = self._get(container_id)
        state.status = ContainerStatus.STOPPED

    async def destroy(self, container_id: str) -> None:
        self.destroy_calls.append(container_id)
        self._containers.pop(container_id, None)

    async def inspect(self, container_id: str) -> ContainerInfo:
        state = self._containers.get(container_id)
        if state is None:
            return ContainerInfo(
                container_id=container_id, name="", status=ContainerStatus.REMOVED
            )
        return self._info(state)

    async def find(self, name: str) -> ContainerInfo | None:
        state = self._by_name(name)
        return self._info(state) if state else None

    async def list_all(self, *, labels: dict[str, str]) -> list[ContainerInfo]:
        return [
            self._info(s)
            for s in self._containers.values()
            if all(s.spec.labels.get(k) == v for k, v in labels.items())
        ]

    async def ensure_image(self, image: str) -> None:
        self.ensure_image_calls.append(image)

    def _get(self, container_id: str) -> FakeContainerState:
        state = self._containers.get(container_id)
        if state is None:
            raise NotFoundError(f"Container not found: {container_id}")
        return state

    async def exec(
        self,
        container_id: str,
        cmd: list[str],
        *,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        self.exec_calls.append(cmd)
        state = self._get(container_id)
        if state.status != ContainerStatus.RUNNING:
            raise ConflictError(f"Container {container_id} is not running")

        if self.exec_delay:
            await asyncio.sleep(self.exec_delay)

        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=workdir,
            env=env,
        )
        stdout, _ = await proc.communicate()
        return CommandResult(
            output=stdout.decode("utf-8", errors="replace"),
            exit_code=proc.returncode,
        )

    async def open_pty(
        self,
        container_id: str,
        cmd: list[str],
        *,
        cols: int,
        rows: int,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> PtyProcess:
        state = self._get(container_id)
        if state.status != ContainerStatus.RUNNING:
            raise ConflictError(f"Container {container_id} is not running")
        pty = FakePty(cmd, cols=cols, rows=rows)
        self.ptys.append(pty)
        return pty

    def cli_exec_command(
        self,
        container: ContainerInfo,
        cmd: list[str],
        *,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> list[str]:
        return [*cmd]
