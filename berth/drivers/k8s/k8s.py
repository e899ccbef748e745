"""Kubernetes driver implementation using kubernetes-asyncio (Clustered backend).

One playground = one Pod named ``<prefix><playground_id>``. Berth reaches the
playground's ports via the Pod IP directly; container ports map to themselves
on that address. No Service/Ingress is created per playground.

Kubernetes has no stop concept for Pods. ``stop`` keeps the Pod manifest in
memory and deletes the Pod; while a manifest is held the playground reports
``stopped``, and ``start`` recreates the Pod from it. The held manifests are
lost on restart, like every other Berth registry.

Exec goes through the pod exec websocket. Every frame starts with a channel
byte: 0 stdin, 1 stdout, 2 stderr, 3 error/status (JSON), 4 resize (JSON).
"""

from __future__ import annotations

import asyncio
import json
import shlex
from collections.abc import Iterator
from contextlib import AsyncExitStack, contextmanager
from typing import Any

import structlog
from aiohttp import WSMsgType
from kubernetes_asyncio import client, config
from kubernetes_asyncio.client import ApiClient, ApiException
from kubernetes_asyncio.stream import WsApiClient

from berth.config import DriverConfig
from berth.drivers.base import (
    CommandResult,
    ContainerInfo,
    ContainerSpec,
    ContainerStatus,
    Driver,
    PtyProcess,
)
from berth.errors import ConflictError, ContainerRuntimeError, NotFoundError
from berth.utils.retry import retry_async

logger = structlog.get_logger()

CONTAINER_NAME = "playground"

STDIN_CHANNEL = 0
STDOUT_CHANNEL = 1
STDERR_CHANNEL = 2
ERROR_CHANNEL = 3
RESIZE_CHANNEL = 4

_PULL_POLICIES = {
    "always": "Always",
    "if_not_present": "IfNotPresent",
    "never": "Never",
}


@contextmanager
def _translate_errors(action: str, target: str) -> Iterator[None]:
    """Map Kubernetes API failures onto Berth errors."""
    try:
        yield
    except ApiException as e:
        if e.status == 404:
            raise NotFoundError(
                f"Pod not found: {target}",
                details={"action": action},
            ) from e
        if e.status == 409:
            raise ConflictError(
                f"Conflict on {target}: {e.reason}",
                details={"action": action},
            ) from e
        raise ContainerRuntimeError(
            f"k8s {action} failed for {target}: {e.reason}",
            details={"action": action, "status": e.status},
        ) from e
    except OSError as e:
        raise ContainerRuntimeError(
            f"k8s {action} failed for {target}: {e}",
            details={"action": action},
        ) from e


def _parse_memory(memory_str: str) -> str:
    """Normalize memory string for K8s (e.g., '1g' -> '1Gi', '512m' -> '512Mi').

    K8s uses binary units (Ki, Mi, Gi) while config may use lowercase (k, m, g).
    """
    memory_str = memory_str.strip()
    if memory_str.endswith(("Ki", "Mi", "Gi", "Ti")):
        return memory_str
    suffix = memory_str[-1:].lower()
    if suffix in ("k", "m", "g"):
        return f"{memory_str[:-1]}{suffix.upper()}i"
    return memory_str


def wrap_command(
    cmd: list[str],
    *,
    workdir: str | None = None,
    env: dict[str, str] | None = None,
) -> list[str]:
    """Prefix ``cmd`` so it runs in ``workdir`` with ``env``.

    Pod exec has no working directory or environment parameters, so both are
    applied by a small shell trampoline inside the container.
    """
    wrapped = list(cmd)
    if workdir:
        wrapped = ["/bin/sh", "-c", 'cd "$0" && exec "$@"', workdir, *wrapped]
    if env:
        wrapped = ["env", *(f"{k}={v}" for k, v in env.items()), *wrapped]
    return wrapped


def parse_exit_code(payload: bytes | str) -> int:
    """Extract the exit code from an error-channel status message.

    ``{"status": "Success"}`` means 0. A non-zero exit arrives as
    ``{"status": "Failure", "reason": "NonZeroExitCode",
    "details": {"causes": [{"reason": "ExitCode", "message": "2"}]}}``.
    Anything else is reported as -1.
    """
    try:
        status = json.loads(payload)
    except (TypeError, ValueError):
        return -1

    if status.get("status") == "Success":
        return 0

    for cause in (status.get("details") or {}).get("causes") or []:
        if cause.get("reason") == "ExitCode":
            try:
                return int(cause.get("message", ""))
            except ValueError:
                return -1
    return -1


def _map_phase(phase: str | None) -> ContainerStatus:
    if phase == "Running":
        return ContainerStatus.RUNNING
    if phase == "Pending":
        return ContainerStatus.CREATED
    # Succeeded, Failed, Unknown
    return ContainerStatus.STOPPED


def _recreatable(pod: client.V1Pod) -> client.V1Pod:
    """Strip server-populated fields so the manifest can be submitted again."""
    spec = pod.spec
    spec.node_name = None
    # Token volumes are injected again by the API server on create
    injected = {
        v.name for v in spec.volumes or [] if v.name.startswith("kube-api-access-")
    }
    if injected:
        spec.volumes = [v for v in spec.volumes if v.name not in injected] or None
        for c in spec.containers:
            if c.volume_mounts:
                c.volume_mounts = [
                    m for m in c.volume_mounts if m.name not in injected
                ] or None

    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=pod.metadata.name,
            namespace=pod.metadata.namespace,
            labels=pod.metadata.labels,
        ),
        spec=spec,
    )


class K8sExecPty(PtyProcess):
    """Interactive exec session over the pod exec websocket."""

    def __init__(self, ws: Any, stack: AsyncExitStack, pod_name: str) -> None:
        self._ws = ws
        self._stack = stack
        self._eof = False
        self._closed = False
        self.exit_code: int | None = None
        self._log = logger.bind(driver="k8s", pod_name=pod_name)

    @property
    def is_alive(self) -> bool:
        return not (self._eof or self._closed)

    async def read(self) -> bytes:
        while self.is_alive:
            msg = await self._ws.receive()
            if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.CLOSING, WSMsgType.ERROR):
                self._eof = True
                break
            if msg.type != WSMsgType.BINARY or not msg.data:
                continue

            channel, payload = msg.data[0], msg.data[1:]
            if channel in (STDOUT_CHANNEL, STDERR_CHANNEL):
                if payload:
                    return payload
            elif channel == ERROR_CHANNEL:
                self.exit_code = parse_exit_code(payload)
                self._eof = True
        return b""

    async def write(self, data: bytes) -> None:
        await self._ws.send_bytes(bytes([STDIN_CHANNEL]) + data)

    async def resize(self, cols: int, rows: int) -> None:
        body = json.dumps({"Width": cols, "Height": rows}).encode()
        await self._ws.send_bytes(bytes([RESIZE_CHANNEL]) + body)

    async def terminate(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.send_bytes(bytes([STDIN_CHANNEL]) + b"\x04")
        except Exception as e:
            self._log.debug("k8s.pty.eot_failed", error=str(e))
        await self._stack.aclose()
        self._log.info("k8s.pty.closed")


class K8sDriver(Driver):
    """Kubernetes driver implementation using kubernetes-asyncio."""

    def __init__(self, config: DriverConfig) -> None:
        k8s_cfg = config.k8s

        self._namespace = k8s_cfg.namespace
        self._kubeconfig = k8s_cfg.kubeconfig
        self._image_pull_secrets = k8s_cfg.image_pull_secrets
        self._pod_startup_timeout = k8s_cfg.pod_startup_timeout
        self._label_prefix = k8s_cfg.label_prefix
        self._cli_binary = k8s_cfg.cli_binary
        self._pull_policy = _PULL_POLICIES[config.image_pull_policy]
        self._retry_attempts = config.retry_attempts
        self._retry_backoff = config.retry_backoff_seconds

        self._log = logger.bind(driver="k8s")
        self._api_client: ApiClient | None = None
        self._ws_client: WsApiClient | None = None
        self._config_loaded = False

        # pod name -> manifest of a stopped playground
        self._stopped: dict[str, client.V1Pod] = {}

    async def _ensure_config(self) -> None:
        """Load Kubernetes configuration once."""
        if self._config_loaded:
            return

        if self._kubeconfig:
            await config.load_kube_config(config_file=self._kubeconfig)
            self._log.info("k8s.config.loaded", source="kubeconfig", path=self._kubeconfig)
        else:
            config.load_incluster_config()
            self._log.info("k8s.config.loaded", source="incluster")

        self._config_loaded = True

    async def _core_api(self) -> client.CoreV1Api:
        await self._ensure_config()
        if self._api_client is None:
            self._api_client = ApiClient()
        return client.CoreV1Api(self._api_client)

    async def _ws_api(self) -> client.CoreV1Api:
        await self._ensure_config()
        if self._ws_client is None:
            self._ws_client = WsApiClient()
        return client.CoreV1Api(api_client=self._ws_client)

    async def close(self) -> None:
        """Close the API clients."""
        if self._api_client is not None:
            await self._api_client.close()
            self._api_client = None
        if self._ws_client is not None:
            await self._ws_client.close()
            self._ws_client = None

    def _build_pod(self, spec: ContainerSpec) -> client.V1Pod:
        memory_k8s = _parse_memory(spec.memory)
        resources = client.V1ResourceRequirements(
            limits={"cpu": str(spec.cpus), "memory": memory_k8s},
            requests={"cpu": str(spec.cpus / 2), "memory": memory_k8s},
        )

        container = client.V1Container(
            name=CONTAINER_NAME,
            image=spec.image,
            image_pull_policy=self._pull_policy,
            command=spec.command,
            working_dir=spec.workdir,
            ports=[client.V1ContainerPort(container_port=p) for p in spec.ports],
            env=[client.V1EnvVar(name=k, value=v) for k, v in spec.env.items()],
            resources=resources,
        )

        image_pull_secrets = None
        if self._image_pull_secrets:
            image_pull_secrets = [
                client.V1LocalObjectReference(name=secret)
                for secret in self._image_pull_secrets
            ]

        return client.V1Pod(
            metadata=client.V1ObjectMeta(
                name=spec.name,
                namespace=self._namespace,
                labels=dict(spec.labels),
            ),
            spec=client.V1PodSpec(
                containers=[container],
                image_pull_secrets=image_pull_secrets,
                restart_policy="Never",
                termination_grace_period_seconds=spec.stop_timeout,
            ),
        )

    def _info_from_pod(self, pod: client.V1Pod) -> ContainerInfo:
        status = _map_phase(pod.status.phase if pod.status else None)
        pod_ip = pod.status.pod_ip if pod.status else None

        ports: dict[int, int] = {}
        if pod_ip:
            for c in pod.spec.containers or []:
                for p in c.ports or []:
                    ports[p.container_port] = p.container_port

        exit_code = None
        for cs in (pod.status.container_statuses if pod.status else None) or []:
            if cs.state and cs.state.terminated:
                exit_code = cs.state.terminated.exit_code

        created_at = pod.metadata.creation_timestamp
        if created_at is not None and created_at.tzinfo is not None:
            created_at = created_at.replace(tzinfo=None) - created_at.utcoffset()

        return ContainerInfo(
            container_id=pod.metadata.name,
            name=pod.metadata.name,
            status=status,
            ports=ports,
            address=pod_ip,
            created_at=created_at,
            labels=pod.metadata.labels or {},
            exit_code=exit_code,
        )

    def _stopped_info(self, name: str) -> ContainerInfo:
        pod = self._stopped[name]
        return ContainerInfo(
            container_id=name,
            name=name,
            status=ContainerStatus.STOPPED,
            labels=pod.metadata.labels or {},
        )

    async def _read_pod(self, name: str) -> client.V1Pod | None:
        v1 = await self._core_api()
        try:
            with _translate_errors("read", name):
                return await v1.read_namespaced_pod(name=name, namespace=self._namespace)
        except NotFoundError:
            return None

    async def _wait_gone(self, name: str) -> None:
        for _ in range(self._pod_startup_timeout):
            if await self._read_pod(name) is None:
                return
            await asyncio.sleep(1)
        raise ContainerRuntimeError(
            f"Pod {name} was not deleted within {self._pod_startup_timeout}s"
        )

    async def create(self, spec: ContainerSpec) -> str:
        """Create a Pod. Returns the Pod name, which serves as the container id."""
        if spec.name in self._stopped:
            raise ConflictError(f"Pod {spec.name} already exists (stopped)")

        v1 = await self._core_api()
        pod = self._build_pod(spec)

        self._log.info(
            "k8s.create",
            pod_name=spec.name,
            image=spec.image,
            ports=spec.ports,
        )

        with _translate_errors("create", spec.name):
            await v1.create_namespaced_pod(namespace=self._namespace, body=pod)

        return spec.name

    async def start(self, container_id: str) -> None:
        """Wait for the Pod to be Running with an IP assigned.

        Pods start on their own after creation; a stopped playground is
        recreated from its held manifest first.
        """
        v1 = await self._core_api()

        manifest = self._stopped.pop(container_id, None)
        if manifest is not None:
            self._log.info("k8s.start.recreate", pod_name=container_id)
            try:
                with _translate_errors("create", container_id):
                    await v1.create_namespaced_pod(namespace=self._namespace, body=manifest)
            except BaseException:
                self._stopped[container_id] = manifest
                raise

        self._log.info(
            "k8s.start",
            pod_name=container_id,
            timeout=self._pod_startup_timeout,
        )

        for i in range(self._pod_startup_timeout):
            with _translate_errors("start", container_id):
                pod = await v1.read_namespaced_pod(
                    name=container_id,
                    namespace=self._namespace,
                )

            phase = pod.status.phase
            if phase == "Running" and pod.status.pod_ip:
                self._log.info("k8s.start.ready", pod_name=container_id, pod_ip=pod.status.pod_ip)
                return

            if phase in ("Failed", "Succeeded"):
                raise ContainerRuntimeError(
                    f"Pod {container_id} terminated with phase: {phase}"
                )

            self._log.debug(
                "k8s.start.waiting",
                pod_name=container_id,
                phase=phase,
                attempt=i + 1,
            )
            await asyncio.sleep(1)

        raise ContainerRuntimeError(
            f"Pod {container_id} failed to start within {self._pod_startup_timeout}s"
        )

    async def stop(self, container_id: str, *, timeout: int = 10) -> None:
        """Hold the Pod manifest and delete the Pod."""
        if container_id in self._stopped:
            return

        pod = await self._read_pod(container_id)
        if pod is None:
            raise NotFoundError(f"Pod not found: {container_id}")

        self._stopped[container_id] = _recreatable(pod)

        self._log.info("k8s.stop", pod_name=container_id)
        await self._delete_pod(container_id, grace_period=timeout)

    async def _delete_pod(self, name: str, *, grace_period: int) -> None:
        v1 = await self._core_api()
        try:
            with _translate_errors("delete", name):
                await v1.delete_namespaced_pod(
                    name=name,
                    namespace=self._namespace,
                    body=client.V1DeleteOptions(grace_period_seconds=grace_period),
                )
        except NotFoundError:
            self._log.warning("k8s.destroy.not_found", pod_name=name)
            return
        # The name stays taken until the Pod is fully gone
        await self._wait_gone(name)

    async def destroy(self, container_id: str) -> None:
        self._log.info("k8s.destroy", pod_name=container_id)
        self._stopped.pop(container_id, None)
        await self._delete_pod(container_id, grace_period=0)

    async def inspect(self, container_id: str) -> ContainerInfo:
        if container_id in self._stopped:
            return self._stopped_info(container_id)

        pod = await self._read_pod(container_id)
        if pod is None:
            return ContainerInfo(
                container_id=container_id,
                name="",
                status=ContainerStatus.REMOVED,
            )
        return self._info_from_pod(pod)

    async def find(self, name: str) -> ContainerInfo | None:
        if name in self._stopped:
            return self._stopped_info(name)

        pod = await self._read_pod(name)
        if pod is None:
            return None
        return self._info_from_pod(pod)

    async def list_all(self, *, labels: dict[str, str]) -> list[ContainerInfo]:
        v1 = await self._core_api()
        label_selector = ",".join(f"{k}={v}" for k, v in labels.items())

        self._log.debug("k8s.list_all", label_selector=label_selector)

        with _translate_errors("list", "pods"):
            pod_list = await v1.list_namespaced_pod(
                namespace=self._namespace,
                label_selector=label_selector,
            )

        infos = [self._info_from_pod(pod) for pod in pod_list.items]
        for name, pod in self._stopped.items():
            pod_labels = pod.metadata.labels or {}
            if all(pod_labels.get(k) == v for k, v in labels.items()):
                infos.append(self._stopped_info(name))

        self._log.debug("k8s.list_all.result", count=len(infos))
        return infos

    async def ensure_image(self, image: str) -> None:
        """Images are pulled by the kubelet according to the Pod's pull policy."""
        self._log.debug("k8s.ensure_image.delegated", image=image, policy=self._pull_policy)

    async def _connect_exec(
        self,
        container_id: str,
        cmd: list[str],
        *,
        tty: bool,
    ) -> Any:
        """Open the exec websocket, retrying transient failures."""
        v1_ws = await self._ws_api()

        async def _connect() -> Any:
            with _translate_errors("exec", container_id):
                return await v1_ws.connect_get_namespaced_pod_exec(
                    container_id,
                    self._namespace,
                    container=CONTAINER_NAME,
                    command=cmd,
                    stderr=True,
                    stdin=tty,
                    stdout=True,
                    tty=tty,
                    _preload_content=False,
                )

        return await retry_async(
            _connect,
            attempts=self._retry_attempts,
            backoff=self._retry_backoff,
            retry_on=(ContainerRuntimeError,),
            operation="k8s.exec.connect",
        )

    async def exec(
        self,
        container_id: str,
        cmd: list[str],
        *,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        if container_id in self._stopped:
            raise ContainerRuntimeError(f"Pod {container_id} is stopped")

        ws_ctx = await self._connect_exec(
            container_id, wrap_command(cmd, workdir=workdir, env=env), tty=False
        )

        chunks: list[bytes] = []
        exit_code = -1
        with _translate_errors("exec.stream", container_id):
            async with ws_ctx as ws:
                async for msg in ws:
                    if msg.type != WSMsgType.BINARY or not msg.data:
                        continue
                    channel, payload = msg.data[0], msg.data[1:]
                    if channel in (STDOUT_CHANNEL, STDERR_CHANNEL):
                        chunks.append(payload)
                    elif channel == ERROR_CHANNEL:
                        exit_code = parse_exit_code(payload)

        result = CommandResult(
            output=b"".join(chunks).decode("utf-8", errors="replace"),
            exit_code=exit_code,
        )
        self._log.debug(
            "k8s.exec.done",
            pod_name=container_id,
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
        ws_ctx = await self._connect_exec(
            container_id, wrap_command(cmd, workdir=workdir, env=env), tty=True
        )

        stack = AsyncExitStack()
        with _translate_errors("exec.attach", container_id):
            ws = await stack.enter_async_context(ws_ctx)

        pty = K8sExecPty(ws, stack, container_id)
        await pty.resize(cols, rows)

        self._log.info("k8s.pty.opened", pod_name=container_id, cols=cols, rows=rows)
        return pty

    def cli_exec_command(
        self,
        container: ContainerInfo,
        cmd: list[str],
        *,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> list[str]:
        argv = [
            self._cli_binary,
            "exec",
            "-it",
            "-n",
            self._namespace,
            "-c",
            CONTAINER_NAME,
            container.name or container.container_id,
            "--",
            *wrap_command(cmd, workdir=workdir, env=env),
        ]
        self._log.debug("k8s.cli_exec_command", argv=shlex.join(argv))
        return argv
