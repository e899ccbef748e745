"""ContainerManager - playground container lifecycle.

Owns the playground id -> container id map. Every lifecycle operation for
one playground id runs under that id's lock, so a create/create or
create/remove race cannot leave two containers or a dangling entry.

File operations are compositions over ``execute_command``.
"""

from __future__ import annotations

import asyncio
import base64
import shlex
from collections.abc import Awaitable, Callable
from posixpath import basename, dirname

import structlog

from berth.concurrency import KeyedLock
from berth.config import Settings, get_settings
from berth.drivers.base import (
    CommandResult,
    ContainerInfo,
    ContainerSpec,
    ContainerStatus,
    Driver,
)
from berth.errors import (
    BerthError,
    ConflictError,
    ContainerRuntimeError,
    NotFoundError,
    OperationTimeoutError,
)
from berth.models.container import ContainerConfig, FileEntry
from berth.provisioners import TemplateProvisioner
from berth.provisioners.base import minimal_script
from berth.validators import validate_workspace_path

logger = structlog.get_logger()

MANAGED_LABEL = "berth.managed"

_LANGUAGES = {
    "js": "javascript",
    "jsx": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "py": "python",
    "html": "html",
    "css": "css",
    "json": "json",
    "md": "markdown",
    "rs": "rust",
    "cpp": "cpp",
    "c": "c",
    "h": "c",
}

# Listing bounds
_FIND_MAX_DEPTH = 3
_FIND_MAX_RESULTS = 50

# Base64 characters per write command, well below the kernel's per-argument limit
_B64_CHUNK = 64 * 1024


def file_language(name: str) -> str:
    """Syntax-highlighting language for a file name."""
    _, dot, ext = name.rpartition(".")
    if not dot:
        return "plaintext"
    return _LANGUAGES.get(ext.lower(), "plaintext")


class ContainerManager:
    """Manages playground container lifecycle."""

    def __init__(
        self,
        driver: Driver,
        provisioner: TemplateProvisioner,
        settings: Settings | None = None,
    ) -> None:
        self._driver = driver
        self._provisioner = provisioner
        self._settings = settings or get_settings()
        self._cfg = self._settings.container
        self._log = logger.bind(manager="container")

        self._locks = KeyedLock()
        # playground id -> container id
        self._containers: dict[str, str] = {}
        # Awaited with the playground id after every removal
        self._removal_hooks: list[Callable[[str], Awaitable[None]]] = []

    @property
    def workdir(self) -> str:
        return self._cfg.workdir

    def container_name(self, playground_id: str) -> str:
        return f"{self._cfg.name_prefix}{playground_id}"

    def is_tracked(self, playground_id: str) -> bool:
        return playground_id in self._containers

    def on_remove(self, hook: Callable[[str], Awaitable[None]]) -> None:
        """Register a coroutine function to run after a container is removed."""
        self._removal_hooks.append(hook)

    def resolve_image(self, template: str, language: str) -> str:
        """Base image by template, then language, then the default."""
        images = self._cfg.images
        return images.get(template) or images.get(language) or self._cfg.default_image

    async def _bootstrap_script(self, template: str) -> str:
        try:
            return await self._provisioner.bootstrap(template)
        except Exception as e:
            self._log.warning(
                "container.bootstrap.fallback",
                template=template,
                error=str(e),
            )
            return minimal_script(self._cfg.workdir)

    async def _build_spec(self, config: ContainerConfig) -> ContainerSpec:
        script = await self._bootstrap_script(config.template)
        return ContainerSpec(
            name=self.container_name(config.playground_id),
            image=self.resolve_image(config.template, config.language),
            command=["/bin/sh", "-c", f"{script}\nexec {self._cfg.idle_command}"],
            workdir=self._cfg.workdir,
            env={
                "TEMPLATE": config.template,
                "LANGUAGE": config.language,
                "DEBIAN_FRONTEND": "noninteractive",
            },
            ports=list(config.ports if config.ports is not None else self._cfg.ports),
            labels={
                MANAGED_LABEL: "true",
                "berth.playground_id": config.playground_id,
                "berth.template": config.template,
            },
            cpus=self._cfg.resources.cpus,
            memory=self._cfg.resources.memory,
            pids_limit=self._cfg.pids_limit,
            stop_timeout=self._cfg.stop_timeout,
        )

    async def create_container(self, config: ContainerConfig) -> ContainerInfo:
        """Provision and start a playground container.

        Raises:
            ConflictError: If a container for the playground already exists
        """
        playground_id = config.playground_id
        name = self.container_name(playground_id)

        async with self._locks.hold(playground_id):
            existing = await self._driver.find(name)
            if existing is not None:
                raise ConflictError(
                    f"Container already exists: {name}",
                    details={"playground_id": playground_id, "status": existing.status.value},
                )

            spec = await self._build_spec(config)
            self._log.info(
                "container.create",
                playground_id=playground_id,
                template=config.template,
                language=config.language,
                image=spec.image,
            )

            await self._driver.ensure_image(spec.image)
            container_id = await self._driver.create(spec)

            try:
                await self._driver.start(container_id)
            except BaseException:
                self._log.warning("container.create.start_failed", playground_id=playground_id)
                try:
                    await self._driver.destroy(container_id)
                except BerthError as e:
                    self._log.error(
                        "container.create.cleanup_failed",
                        playground_id=playground_id,
                        container_id=container_id,
                        error=str(e),
                    )
                raise

            self._containers[playground_id] = container_id
            info = await self._driver.inspect(container_id)

        self._log.info(
            "container.created",
            playground_id=playground_id,
            container_id=container_id,
            ports=info.ports,
        )
        return info

    async def get_container(self, playground_id: str) -> ContainerInfo | None:
        """Current runtime state, running or not. None if absent."""
        return await self._driver.find(self.container_name(playground_id))

    async def list_containers(self) -> list[ContainerInfo]:
        """All containers carrying the managed label."""
        return await self._driver.list_all(labels={MANAGED_LABEL: "true"})

    async def start_container(self, playground_id: str) -> ContainerInfo:
        """Start a container, adopting it if it was created by another process.

        Raises:
            NotFoundError: If no container exists for the playground
        """
        async with self._locks.hold(playground_id):
            container_id = self._containers.get(playground_id)
            if container_id is None:
                found = await self._driver.find(self.container_name(playground_id))
                if found is None:
                    raise NotFoundError(
                        f"Container not found for playground: {playground_id}",
                        details={"playground_id": playground_id},
                    )
                container_id = found.container_id
                self._containers[playground_id] = container_id
                self._log.info(
                    "container.adopted",
                    playground_id=playground_id,
                    container_id=container_id,
                )

            info = await self._driver.inspect(container_id)
            if info.status == ContainerStatus.REMOVED:
                # Removed behind our back
                self._containers.pop(playground_id, None)
                raise NotFoundError(
                    f"Container not found for playground: {playground_id}",
                    details={"playground_id": playground_id},
                )
            if info.is_running:
                return info

            self._log.info("container.start", playground_id=playground_id)
            await self._driver.start(container_id)
            return await self._driver.inspect(container_id)

    async def stop_container(self, playground_id: str) -> None:
        """Gracefully stop a tracked container.

        Raises:
            NotFoundError: If the container is absent or not tracked
        """
        async with self._locks.hold(playground_id):
            container_id = self._tracked(playground_id)
            self._log.info("container.stop", playground_id=playground_id)
            await self._driver.stop(container_id, timeout=self._cfg.stop_timeout)

    async def remove_container(self, playground_id: str) -> None:
        """Stop and remove a container. Absent containers are not an error."""
        async with self._locks.hold(playground_id):
            container_id = self._containers.get(playground_id)
            if container_id is None:
                found = await self._driver.find(self.container_name(playground_id))
                container_id = found.container_id if found else None

            if container_id is not None:
                self._log.info(
                    "container.remove",
                    playground_id=playground_id,
                    container_id=container_id,
                )
                try:
                    await self._driver.stop(container_id, timeout=self._cfg.stop_timeout)
                except BerthError as e:
                    # Already stopped or already gone
                    self._log.debug("container.remove.stop_skipped", error=str(e))
                await self._driver.destroy(container_id)

            self._containers.pop(playground_id, None)

        await self._locks.discard(playground_id)

        # Outside the lock so a hook may call back into this manager
        for hook in self._removal_hooks:
            await hook(playground_id)

    def _tracked(self, playground_id: str) -> str:
        container_id = self._containers.get(playground_id)
        if container_id is None:
            raise NotFoundError(
                f"Container not found for playground: {playground_id}",
                details={"playground_id": playground_id},
            )
        return container_id

    async def execute_command(
        self,
        playground_id: str,
        command: str,
        *,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run ``command`` with ``/bin/sh -c`` in the workspace.

        Raises:
            NotFoundError: If the container is not tracked
            OperationTimeoutError: If ``timeout`` elapses first
        """
        container_id = self._tracked(playground_id)
        call = self._driver.exec(
            container_id,
            ["/bin/sh", "-c", command],
            workdir=self._cfg.workdir,
        )

        try:
            if timeout is None:
                result = await call
            else:
                result = await asyncio.wait_for(call, timeout=timeout)
        except TimeoutError as e:
            self._log.warning(
                "container.exec.timeout",
                playground_id=playground_id,
                timeout=timeout,
            )
            raise OperationTimeoutError(
                f"Command did not finish within {timeout}s",
                details={"playground_id": playground_id, "timeout": timeout},
            ) from e

        self._log.debug(
            "container.exec",
            playground_id=playground_id,
            exit_code=result.exit_code,
        )
        return result

    async def get_container_files(
        self,
        playground_id: str,
        path: str | None = None,
    ) -> list[FileEntry]:
        """List up to 50 entries, at most 3 levels below ``path``."""
        root = validate_workspace_path(path or self._cfg.workdir, root=self._cfg.workdir)
        quoted = shlex.quote(root)
        # The pipeline's status is head's, so check the directory up front
        result = await self.execute_command(
            playground_id,
            f"test -d {quoted} && find {quoted} -maxdepth {_FIND_MAX_DEPTH} "
            f"\\( -type f -o -type d \\) 2>/dev/null | head -{_FIND_MAX_RESULTS}",
        )
        if not result.success:
            raise NotFoundError(
                f"Cannot list {root}",
                details={"playground_id": playground_id, "path": root},
            )

        entries: list[FileEntry] = []
        for line in result.output.splitlines():
            file_path = line.strip()
            if not file_path:
                continue
            name = basename(file_path.rstrip("/"))
            is_folder = file_path.endswith("/") or "." not in name
            entries.append(
                FileEntry(
                    id=base64.b64encode(file_path.encode()).decode(),
                    name=name,
                    path=file_path,
                    type="folder" if is_folder else "file",
                    language=None if is_folder else file_language(name),
                )
            )
        return entries

    async def read_file(self, playground_id: str, path: str) -> str:
        """Return the file's content.

        Raises:
            NotFoundError: If the file cannot be read
        """
        file_path = validate_workspace_path(path, root=self._cfg.workdir)
        result = await self.execute_command(playground_id, f"cat -- {shlex.quote(file_path)}")
        if not result.success:
            raise NotFoundError(
                f"File not found: {file_path}",
                details={"playground_id": playground_id, "path": file_path},
            )
        return result.output

    async def write_file(self, playground_id: str, path: str, content: str) -> None:
        """Write ``content`` exactly, creating parent directories."""
        quoted = shlex.quote(content)
        # Quote escapes and multibyte characters make the argument longer than len(content)
        if len(quoted.encode()) > _B64_CHUNK:
            await self.write_bytes(playground_id, path, content.encode())
            return

        file_path = validate_workspace_path(path, root=self._cfg.workdir)
        result = await self.execute_command(
            playground_id,
            f"mkdir -p -- {shlex.quote(dirname(file_path))} && "
            f"printf '%s' {quoted} > {shlex.quote(file_path)}",
        )
        self._check_write(result, playground_id, file_path)

    async def read_bytes(self, playground_id: str, path: str) -> bytes:
        """Binary-safe read through base64 inside the container."""
        file_path = validate_workspace_path(path, root=self._cfg.workdir)
        result = await self.execute_command(
            playground_id, f"base64 < {shlex.quote(file_path)}"
        )
        if not result.success:
            raise NotFoundError(
                f"File not found: {file_path}",
                details={"playground_id": playground_id, "path": file_path},
            )
        # Line wrapping from base64(1) is ignored by the decoder
        return base64.b64decode(result.output)

    async def write_bytes(self, playground_id: str, path: str, data: bytes) -> None:
        """Binary-safe write, decoded inside the container in chunks."""
        file_path = validate_workspace_path(path, root=self._cfg.workdir)
        target = shlex.quote(file_path)
        encoded = base64.b64encode(data).decode()

        result = await self.execute_command(
            playground_id,
            f"mkdir -p -- {shlex.quote(dirname(file_path))} && : > {target}",
        )
        self._check_write(result, playground_id, file_path)

        # Chunk boundaries are multiples of 4 so each chunk decodes on its own
        for start in range(0, len(encoded), _B64_CHUNK):
            chunk = encoded[start : start + _B64_CHUNK]
            result = await self.execute_command(
                playground_id,
                f"printf '%s' {chunk} | base64 -d >> {target}",
            )
            self._check_write(result, playground_id, file_path)

    def _check_write(self, result: CommandResult, playground_id: str, file_path: str) -> None:
        if not result.success:
            raise ContainerRuntimeError(
                f"Failed to write {file_path}: {result.output.strip()}",
                details={
                    "playground_id": playground_id,
                    "path": file_path,
                    "exit_code": result.exit_code,
                },
            )
