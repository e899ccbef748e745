"""Berth configuration management.

Configuration sources (in priority order):
1. Environment variables (BERTH_ prefix)
2. Config file (config.yaml)
3. Defaults
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class DockerConfig(BaseModel):
    """Docker driver configuration (Local backend)."""

    socket: str = "unix:///var/run/docker.sock"

    # Optional network to attach playground containers to.
    # None = Docker default bridge.
    network: str | None = None

    # Host address used to reach published ports (HostIp 0.0.0.0 is rewritten to this).
    host_address: str = "127.0.0.1"

    # Binary used by the CLI terminal backend.
    cli_binary: str = "docker"


class K8sConfig(BaseModel):
    """Kubernetes driver configuration (Clustered backend).

    Pods are reached by Pod IP directly; the container ports map to
    themselves on that address.
    """

    namespace: str = "berth"
    kubeconfig: str | None = None  # None = in-cluster config

    # Image pull secrets (for private registries)
    image_pull_secrets: list[str] = Field(default_factory=list)

    # Pod startup timeout in seconds
    pod_startup_timeout: int = 60

    # Pod labels prefix (for filtering)
    label_prefix: str = "berth"

    # Binary used by the CLI terminal backend.
    cli_binary: str = "kubectl"


class DriverConfig(BaseModel):
    """Driver layer configuration."""

    type: Literal["docker", "k8s"] = "docker"
    docker: DockerConfig = Field(default_factory=DockerConfig)
    k8s: K8sConfig = Field(default_factory=K8sConfig)

    # - "always": pull before every create
    # - "if_not_present": pull only on local miss (default)
    # - "never": fail if the image is not available locally
    image_pull_policy: Literal["always", "if_not_present", "never"] = "if_not_present"

    # Bounded retry (exponential backoff) around image pull and exec stream
    # establishment. Other runtime calls are not retried.
    retry_attempts: int = 3
    retry_backoff_seconds: float = 1.0


class ResourceSpec(BaseModel):
    """Container resource specification."""

    cpus: float = 0.5
    memory: str = "1g"


class ContainerSettings(BaseModel):
    """Playground container shape."""

    name_prefix: str = "playground-"
    workdir: str = "/workspace"

    # Container ports published with ephemeral host bindings.
    ports: list[int] = Field(default_factory=lambda: [3000, 5000, 8000, 8080])

    resources: ResourceSpec = Field(default_factory=ResourceSpec)
    pids_limit: int = 256

    # Seconds to wait for graceful stop before the runtime kills the container.
    stop_timeout: int = 10

    # Command appended after the bootstrap script to keep the sandbox alive.
    idle_command: str = "tail -f /dev/null"

    # Base image lookup, keyed by template id first, then language.
    images: dict[str, str] = Field(
        default_factory=lambda: {
            "react-js": "node:18-alpine",
            "node-js": "node:18-alpine",
            "next-js": "node:18-alpine",
            "javascript": "node:18-alpine",
            "typescript": "node:18-alpine",
            "python": "python:3.11-alpine",
            "cpp": "gcc:latest",
            "rust": "rust:1.70-alpine",
            "empty": "ubuntu:22.04",
        }
    )
    default_image: str = "ubuntu:22.04"


class ProvisionerConfig(BaseModel):
    """Template provisioner configuration.

    When ``bucket`` is unset the minimal provisioner is used and fresh
    containers start with an empty workspace.
    """

    bucket: str | None = None
    endpoint: str | None = None
    prefix: str = "base"
    region: str = "auto"
    access_key_id: str | None = None
    secret_access_key: str | None = None


class TerminalConfig(BaseModel):
    """Interactive terminal session configuration."""

    # - "api": exec/attach through the runtime's native API (aiodocker / k8s websocket)
    # - "cli": local PTY running `docker exec -it` / `kubectl exec -it`
    backend: Literal["api", "cli"] = "api"

    # Prefer bash, fall back to sh on minimal images.
    shell: list[str] = Field(
        default_factory=lambda: [
            "/bin/sh",
            "-c",
            "if command -v bash >/dev/null 2>&1; then exec bash; else exec sh; fi",
        ]
    )
    cols: int = 80
    rows: int = 24
    term: str = "xterm-256color"

    idle_timeout_seconds: int = 1800  # 30 minutes

    # Output chunks buffered per session before the oldest are dropped.
    output_buffer_chunks: int = 1024


class JanitorConfig(BaseModel):
    """Periodic sweep of idle or dead terminal sessions."""

    enabled: bool = True
    run_on_startup: bool = False
    interval_seconds: int = 300  # 5 minutes


class RateLimitRule(BaseModel):
    """Fixed-window limit for one operation class."""

    window_seconds: float
    max_requests: int


class AdmissionConfig(BaseModel):
    """Request admission guard configuration."""

    enabled: bool = True

    # Sweep interval for expired records
    interval_seconds: int = 60

    rules: dict[str, RateLimitRule] = Field(
        default_factory=lambda: {
            "container-create": RateLimitRule(window_seconds=60, max_requests=10),
            "container-exec": RateLimitRule(window_seconds=60, max_requests=120),
            "terminal-create": RateLimitRule(window_seconds=60, max_requests=30),
            "ai-heavy": RateLimitRule(window_seconds=60, max_requests=20),
            "inline-suggest": RateLimitRule(window_seconds=10, max_requests=10),
        }
    )


class PreviewConfig(BaseModel):
    """Preview reader configuration."""

    app_port: int = 3000
    timeout_seconds: float = 5.0


class Settings(BaseSettings):
    """Berth application settings."""

    model_config = SettingsConfigDict(
        env_prefix="BERTH_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    driver: DriverConfig = Field(default_factory=DriverConfig)
    container: ContainerSettings = Field(default_factory=ContainerSettings)
    provisioner: ProvisionerConfig = Field(default_factory=ProvisionerConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    janitor: JanitorConfig = Field(default_factory=JanitorConfig)
    admission: AdmissionConfig = Field(default_factory=AdmissionConfig)
    preview: PreviewConfig = Field(default_factory=PreviewConfig)


def _load_config_file() -> dict:
    """Load configuration from YAML file if exists.

    Looks for config file in order:
    1. BERTH_CONFIG_FILE environment variable
    2. ./config.yaml
    3. /etc/berth/config.yaml
    """
    import os

    config_paths = [
        os.environ.get("BERTH_CONFIG_FILE"),
        Path("config.yaml"),
        Path("/etc/berth/config.yaml"),
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Configuration is loaded from:
    1. YAML config file (if exists)
    2. Environment variables (override)
    3. Defaults
    """
    file_config = _load_config_file()
    return Settings(**file_config)
