"""Docker driver implementation using aiodocker (Local backend).

One playground = one container named ``<prefix><playground_id>``.
Container ports are published with empty HostPort, so Docker picks an
ephemeral host port; the mapping is read back by inspecting the container.

Exec output is requested without a TTY, so Docker multiplexes stdout and
stderr into frames (8-byte header: stream type + payload length). aiodocker's
``Stream.read_out`` parses those headers and hands back bare payloads, which
are concatenated in arrival order.
"""

from __future__ import annotations

import shlex
from collections.abc import Iterator
from contextlib import AsyncExitStack, contextmanager
from typing import Any

import aiodocker
import structlog
from aiodocker.exceptions import DockerError

from berth.config import DriverConfig
from berth.drivers.base import (
    CommandResult,
    ContainerInfo,
    ContainerSpec,
    ContainerStatus,
    Driver,
    PtyProcess,
    parse_memory,
)
from berth.errors import ConflictError, ContainerRuntimeError, NotFoundError
from berth.utils.datetime import parse_runtime_timestamp
from berth.utils.retry import retry_async

logger = structlog.get_logger()


@contextmanager
def _translate_errors(action: str, target: str) -> Iterator[None]:
    """Map aiodocker failures onto Berth errors."""
    try:
        yield
    except DockerError as e:
        if e.status == 404:
            raise NotFoundError(
                f"Container not found: {target}",
                details={"action": action},
            ) from e
        if e.status == 409:
            raise ConflictError(
                f"Conflict on {target}: {e.message}",
                details={"action": action},
            ) from e
        raise ContainerRuntimeError(
            f"docker {action} failed for {target}: {e.message}",
            details={"action": action, "status": e.status},
        ) from e
    except OSError as e:
        # Daemon socket unreachable
        raise ContainerRuntimeError(
            f"docker {action} failed for {target}: {e}",
            details={"action": action},
        ) from e


def _map_status(docker_status: str) -> ContainerStatus:
    if docker_status in ("running", "restarting"):
        return ContainerStatus.RUNNING
    if docker_status == "created":
        return ContainerStatus.CREATED
    if docker_status == "removing":
        return ContainerStatus.REMOVED
    # exited, dead, paused
    return ContainerStatus.STOPPED


class DockerExecPty(PtyProcess):
    """Interactive exec session attached through the Docker API."""

    def __init__(self, exec_: Any, stack: AsyncExitStack, stream: Any) -> None:
        self._exec = exec_
        self._stack = stack
        self._stream = stream
        self._eof = False
        self._closed = False
        self._log = logger.bind(driver="docker", exec_id=exec_.id)

    @property
    def is_alive(self) -> bool:
        return not (self._eof or self._closed)

    async def read(self) -> bytes:
        if not self.is_alive:
            return b""
        msg = await self._stream.read_out()
        if msg is None:
            self._eof = True
            return b""
        return msg.data

    async def write(self, data: bytes) -> None:
        await self._stream.write_in(data)

    async def resize(self, cols: int, rows: int) -> None:
        with _translate_errors("exec.resize", self._exec.id):
            await self._exec.resize(h=rows, w=cols)

    async def terminate(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            # EOT first so an interactive shell exits on its own
            await self._stream.write_in(b"\x04")
        except Exception as e:
            self._log.debug("docker.pty.eot_failed", error=str(e))
        await self._stack.aclose()
        self._log.info("docker.pty.closed")


class DockerDriver(Driver):
    """Docker driver implementation using aiodocker."""

    def __init__(self, config: DriverConfig) -> None:
        socket_url = config.docker.socket
        if socket_url.startswith(("unix://", "tcp://", "http://", "https://")):
            self._socket = socket_url
        else:
            self._socket = f"unix://{socket_url}"

        self._network = config.docker.network
        self._host_address = config.docker.host_address
        self._cli_binary = config.docker.cli_binary
        self._pull_policy = config.image_pull_policy
        self._retry_attempts = config.retry_attempts
        self._retry_backoff = config.retry_backoff_seconds

        self._log = logger.bind(driver="docker")
        self._client: aiodocker.Docker | None = None

    async def _get_client(self) -> aiodocker.Docker:
        """Get or create the aiodocker client."""
        if self._client is None:
            self._client = aiodocker.Docker(url=self._socket)
        return self._client

    async def close(self) -> None:
        """Close the docker client."""
        if self._client is not None:
            await self._client.close()
            self._client = None

    def _resolve_ports(self, info: dict[str, Any]) -> dict[int, int]:
        """Read container port -> host port from inspect output.

        Docker returns e.g. {"3000/tcp": [{"HostIp": "0.0.0.0", "HostPort": "32768"}]};
        ports without an assigned binding are left out.
        """
        ports = info.get("NetworkSettings", {}).get("Ports") or {}
        mapping: dict[int, int] = {}
        for key, bindings in ports.items():
            if not bindings:
                continue
            host_port_str = bindings[0].get("HostPort")
            if not host_port_str:
                continue
            try:
                mapping[int(key.split("/")[0])] = int(host_port_str)
            except ValueError:
                self._log.warning("docker.port.unparseable", key=key, host_port=host_port_str)
        return mapping

    def _info_from_inspect(self, info: dict[str, Any]) -> ContainerInfo:
        state = info.get("State", {})
        return ContainerInfo(
            container_id=info.get("Id", ""),
            name=info.get("Name", "").lstrip("/"),
            status=_map_status(state.get("Status", "unknown")),
            ports=self._resolve_ports(info),
            address=self._host_address,
            created_at=parse_runtime_timestamp(info.get("Created")),
            labels=info.get("Config", {}).get("Labels") or {},
            exit_code=state.get("ExitCode"),
        )

    def _build_create_config(self, spec: ContainerSpec) -> dict[str, Any]:
        exposed_ports: dict[str, dict[str, Any]] = {}
        port_bindings: dict[str, list[dict[str, str]]] = {}
        for port in spec.ports:
            key = f"{port}/tcp"
            exposed_ports[key] = {}
            # Empty HostPort = ephemeral port chosen by the engine
            port_bindings[key] = [{"HostIp": "0.0.0.0", "HostPort": ""}]

        host_config: dict[str, Any] = {
            "PortBindings": port_bindings,
            "Memory": parse_memory(spec.memory),
            "NanoCpus": int(spec.cpus * 1e9),
            "PidsLimit": spec.pids_limit,
        }
        if self._network:
            host_config["NetworkMode"] = self._network

        return {
            "Image": spec.image,
            "Cmd": spec.command,
            "WorkingDir": spec.workdir,
            "Env": [f"{k}={v}" for k, v in spec.env.items()],
            "Labels": spec.labels,
            "ExposedPorts": exposed_ports,
            "HostConfig": host_config,
            "StopTimeout": spec.stop_timeout,
            "Tty": False,
            "OpenStdin": False,
        }

    async def create(self, spec: ContainerSpec) -> str:
        """Create a container without starting it."""
        client = await self._get_client()
        self._log.info(
            "docker.create",
            name=spec.name,
            image=spec.image,
            ports=spec.ports,
            network=self._network,
        )

        with _translate_errors("create", spec.name):
            container = await client.containers.create(
                config=self._build_create_config(spec),
                name=spec.name,
            )

        self._log.info("docker.created", container_id=container.id, name=spec.name)
        return container.id

    async def start(self, container_id: str) -> None:
        client = await self._get_client()
        self._log.info("docker.start", container_id=container_id)

        with _translate_errors("start", container_id):
            await client.containers.container(container_id).start()

    async def stop(self, container_id: str, *, timeout: int = 10) -> None:
        client = await self._get_client()
        self._log.info("docker.stop", container_id=container_id)

        with _translate_errors("stop", container_id):
            await client.containers.container(container_id).stop(t=timeout)

    async def destroy(self, container_id: str) -> None:
        client = await self._get_client()
        self._log.info("docker.destroy", container_id=container_id)

        try:
            with _translate_errors("destroy", container_id):
                await client.containers.container(container_id).delete(force=True)
        except NotFoundError:
            self._log.warning("docker.destroy.not_found", container_id=container_id)

    async def inspect(self, container_id: str) -> ContainerInfo:
        client = await self._get_client()

        try:
            with _translate_errors("inspect", container_id):
                info = await client.containers.container(container_id).show()
        except NotFoundError:
            return ContainerInfo(
                container_id=container_id,
                name="",
                status=ContainerStatus.REMOVED,
            )

        return self._info_from_inspect(info)

    async def find(self, name: str) -> ContainerInfo | None:
        """Resolve by exact name; the inspect endpoint accepts names as well as IDs."""
        client = await self._get_client()

        try:
            with _translate_errors("inspect", name):
                info = await client.containers.container(name).show()
        except NotFoundError:
            return None

        found = self._info_from_inspect(info)
        if found.name != name:
            # Docker resolves ID prefixes too; only exact names count
            return None
        return found

    async def list_all(self, *, labels: dict[str, str]) -> list[ContainerInfo]:
        client = await self._get_client()
        filters = {"label": [f"{k}={v}" for k, v in labels.items()]}

        self._log.debug("docker.list_all", filters=filters)

        with _translate_errors("list", "containers"):
            containers = await client.containers.list(all=True, filters=filters)

        infos: list[ContainerInfo] = []
        for container in containers:
            try:
                with _translate_errors("inspect", container.id):
                    info = await container.show()
            except NotFoundError:
                # Removed between list and inspect
                continue
            infos.append(self._info_from_inspect(info))

        self._log.debug("docker.list_all.result", count=len(infos))
        return infos

    async def _image_present(self, image: str) -> bool:
        client = await self._get_client()
        try:
            with _translate_errors("image.inspect", image):
                await client.images.inspect(image)
            return True
        except NotFoundError:
            return False

    async def _pull(self, image: str) -> None:
        client = await self._get_client()
        self._log.info("docker.image.pull", image=image)
        with _translate_errors("image.pull", image):
            await client.images.pull(image)
        self._log.info("docker.image.pulled", image=image)

    async def ensure_image(self, image: str) -> None:
        if self._pull_policy == "if_not_present" and await self._image_present(image):
            return

        if self._pull_policy == "never":
            if not await self._image_present(image):
                raise ContainerRuntimeError(
                    f"Image {image} not available locally and pull policy is 'never'",
                    details={"image": image},
                )
            return

        await retry_async(
            lambda: self._pull(image),
            attempts=self._retry_attempts,
            backoff=self._retry_backoff,
            retry_on=(ContainerRuntimeError,),
            operation="docker.image.pull",
        )

    async def _create_exec(
        self,
        container_id: str,
        cmd: list[str],
        *,
        tty: bool,
        workdir: str | None,
        env: dict[str, str] | None,
    ) -> Any:
        """Create an exec instance, retrying transient engine failures."""
        client = await self._get_client()
        container = client.containers.container(container_id)

        async def _create() -> Any:
            with _translate_errors("exec", container_id):
                return await container.exec(
                    cmd=cmd,
                    stdout=True,
                    stderr=True,
                    stdin=tty,
                    tty=tty,
                    workdir=workdir,
                    environment=env,
                )

        return await retry_async(
            _create,
            attempts=self._retry_attempts,
            backoff=self._retry_backoff,
            retry_on=(ContainerRuntimeError,),
            operation="docker.exec.create",
        )

    async def exec(
        self,
        container_id: str,
        cmd: list[str],
        *,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        exec_ = await self._create_exec(
            container_id, cmd, tty=False, workdir=workdir, env=env
        )

        chunks: list[bytes] = []
        with _translate_errors("exec.stream", container_id):
            async with exec_.start(detach=False) as stream:
                while True:
                    msg = await stream.read_out()
                    if msg is None:
                        break
                    chunks.append(msg.data)

            # Exit code is only known once the stream has ended
            inspect = await exec_.inspect()

        exit_code = inspect.get("ExitCode")
        result = CommandResult(
            output=b"".join(chunks).decode("utf-8", errors="replace"),
            exit_code=exit_code if exit_code is not None else -1,
        )
        self._log.debug(
            "docker.exec.done",
            container_id=container_id,
            exit_code=result.exit_code,
            output_bytes=sum(len(c) for c in chunks),
        )
        return result

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
        exec_ = await self._create_exec(
            container_id, cmd, tty=True, workdir=workdir, env=env
        )

        stack = AsyncExitStack()
        with _translate_errors("exec.attach", container_id):
            stream = await stack.enter_async_context(exec_.start(detach=False))

        pty = DockerExecPty(exec_, stack, stream)
        try:
            await pty.resize(cols, rows)
        except ContainerRuntimeError as e:
            # Size stays at the engine default; the session is still usable
            self._log.warning("docker.pty.initial_resize_failed", error=str(e))

        self._log.info(
            "docker.pty.opened",
            container_id=container_id,
            exec_id=exec_.id,
            cols=cols,
            rows=rows,
        )
        return pty

    def cli_exec_command(
        self,
        container: ContainerInfo,
        cmd: list[str],
        *,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> list[str]:
        argv = [self._cli_binary, "exec", "-it"]
        if workdir:
            argv.extend(["-w", workdir])
        for k, v in (env or {}).items():
            argv.extend(["-e", f"{k}={v}"])
        argv.append(container.name or container.container_id)
        argv.extend(cmd)
        self._log.debug("docker.cli_exec_command", argv=shlex.join(argv))
        return argv
