"""Template provisioners - workspace bootstrap scripts."""

from berth.provisioners.base import MinimalProvisioner, TemplateProvisioner
from berth.provisioners.object_storage import ObjectStorageProvisioner

__all__ = [
    "MinimalProvisioner",
    "ObjectStorageProvisioner",
    "TemplateProvisioner",
    "create_provisioner",
]


def create_provisioner(config, *, workdir: str = "/workspace") -> TemplateProvisioner:
    """Object storage when a bucket is configured, minimal otherwise."""
    if config.bucket:
        return ObjectStorageProvisioner(config, workdir=workdir)
    return MinimalProvisioner(workdir=workdir)
