from berth.drivers.docker.docker import DockerDriver, DockerExecPty

__all__ = ["DockerDriver", "DockerExecPty"]
