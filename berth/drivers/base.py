"""Driver base class - container runtime abstraction.

Driver is responsible ONLY for talking to the container runtime.
It does NOT handle:
- Per-playground serialization (ContainerManager owns the locks)
- Rate limiting
- Template bootstrap content
- Retry policy

Variants:
- DockerDriver: Local backend (aiodocker, one engine)
- K8sDriver: Clustered backend (kubernetes-asyncio, one Pod per playground)

Both translate engine failures into Berth errors:
404 -> NotFoundError, 409 -> ConflictError, anything else -> ContainerRuntimeError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ContainerStatus(str, Enum):
    """Container status from the orchestrator's perspective."""

    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVED = "removed"


@dataclass
class ContainerInfo:
    """Observed container state, always derived from runtime truth."""

    container_id: str
    name: str
    status: ContainerStatus
    # container port -> host port, only ports the runtime actually assigned
    ports: dict[int, int] = field(default_factory=dict)
    # host the published ports are reachable on
    address: str | None = None
    created_at: datetime | None = None
    labels: dict[str, str] = field(default_factory=dict)
    exit_code: int | None = None

    @property
    def is_running(self) -> bool:
        return self.status == ContainerStatus.RUNNING


@dataclass
class ContainerSpec:
    """Desired runtime shape of a playground container."""

    name: str
    image: str
    command: list[str]
    workdir: str
    env: dict[str, str] = field(default_factory=dict)
    ports: list[int] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    cpus: float = 0.5
    memory: str = "1g"
    pids_limit: int = 256
    stop_timeout: int = 10


@dataclass
class CommandResult:
    """Outcome of one exec call.

    ``output`` holds stdout and stderr merged in arrival order, with the
    runtime's stream framing removed.
    """

    output: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class PtyProcess(ABC):
    """An interactive process attached to a pseudo-terminal."""

    @property
    @abstractmethod
    def is_alive(self) -> bool:
        """Whether the process is still running."""
        ...

    @abstractmethod
    async def read(self) -> bytes:
        """Read the next chunk of terminal output.

        Returns:
            Output bytes, or b"" once the process has exited.
        """
        ...

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Forward bytes to the terminal input."""
        ...

    @abstractmethod
    async def resize(self, cols: int, rows: int) -> None:
        """Change the reported terminal dimensions."""
        ...

    @abstractmethod
    async def terminate(self) -> None:
        """Forcibly terminate the process and release its resources.

        Must be idempotent.
        """
        ...


def parse_memory(memory_str: str) -> int:
    """Parse memory string (e.g., '1g', '512m') to bytes."""
    memory_str = memory_str.lower().strip()
    multipliers = {
        "k": 1024,
        "m": 1024 * 1024,
        "g": 1024 * 1024 * 1024,
    }
    if memory_str[-1] in multipliers:
        return int(float(memory_str[:-1]) * multipliers[memory_str[-1]])
    return int(memory_str)


class Driver(ABC):
    """Abstract driver interface for playground containers.

    All containers created by a driver MUST carry the labels given in
    ``ContainerSpec.labels`` so ``list_all`` can discover them.
    """

    @abstractmethod
    async def create(self, spec: ContainerSpec) -> str:
        """Create a container without starting it.

        Raises:
            ConflictError: If a container with ``spec.name`` already exists

        Returns:
            Container ID
        """
        ...

    @abstractmethod
    async def start(self, container_id: str) -> None:
        """Start a container and wait until the runtime reports it running."""
        ...

    @abstractmethod
    async def stop(self, container_id: str, *, timeout: int = 10) -> None:
        """Gracefully stop a running container.

        Raises:
            NotFoundError: If the container does not exist
        """
        ...

    @abstractmethod
    async def destroy(self, container_id: str) -> None:
        """Remove a container. Absent containers are not an error."""
        ...

    @abstractmethod
    async def inspect(self, container_id: str) -> ContainerInfo:
        """Get current container state.

        Returns a ``REMOVED`` status instead of raising when the container
        no longer exists.
        """
        ...

    @abstractmethod
    async def find(self, name: str) -> ContainerInfo | None:
        """Resolve a container by its exact name, running or not."""
        ...

    @abstractmethod
    async def list_all(self, *, labels: dict[str, str]) -> list[ContainerInfo]:
        """List containers matching ALL given labels, running or not."""
        ...

    @abstractmethod
    async def ensure_image(self, image: str) -> None:
        """Make sure ``image`` is available according to the pull policy."""
        ...

    @abstractmethod
    async def exec(
        self,
        container_id: str,
        cmd: list[str],
        *,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        """Run a command to completion and capture its merged output.

        Raises:
            NotFoundError: If the container does not exist
        """
        ...

    @abstractmethod
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
        """Spawn an interactive process with a TTY through the runtime API."""
        ...

    @abstractmethod
    def cli_exec_command(
        self,
        container: ContainerInfo,
        cmd: list[str],
        *,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> list[str]:
        """Build the runtime CLI argv that attaches an interactive TTY.

        Used by the CLI terminal backend.
        """
        ...

    async def close(self) -> None:
        """Release client resources."""
        return None
