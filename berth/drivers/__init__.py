"""Driver layer - container runtime abstraction."""

from berth.drivers.base import (
    CommandResult,
    ContainerInfo,
    ContainerSpec,
    ContainerStatus,
    Driver,
    PtyProcess,
)
from berth.drivers.docker import DockerDriver
from berth.drivers.k8s import K8sDriver

__all__ = [
    "CommandResult",
    "ContainerInfo",
    "ContainerSpec",
    "ContainerStatus",
    "DockerDriver",
    "Driver",
    "K8sDriver",
    "PtyProcess",
    "create_driver",
]


def create_driver(config) -> Driver:
    """Build the driver selected by ``config.type``."""
    if config.type == "k8s":
        return K8sDriver(config)
    return DockerDriver(config)
