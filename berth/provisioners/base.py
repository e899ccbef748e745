"""Template provisioner contract."""

from __future__ import annotations

import shlex
from abc import ABC, abstractmethod


class TemplateProvisioner(ABC):
    """Produces the shell script that populates a fresh workspace.

    The script runs as the first part of the container entrypoint, before
    the idle command. It must be POSIX sh (minimal images ship no bash) and
    should not abort the container on a failed step.
    """

    @abstractmethod
    async def bootstrap(self, template_id: str) -> str:
        """Return the bootstrap script for ``template_id``."""
        ...


class MinimalProvisioner(TemplateProvisioner):
    """Only creates the workspace directory."""

    def __init__(self, *, workdir: str = "/workspace") -> None:
        self._workdir = workdir

    async def bootstrap(self, template_id: str) -> str:
        return minimal_script(self._workdir)


def minimal_script(workdir: str) -> str:
    quoted = shlex.quote(workdir)
    return f"mkdir -p {quoted}\ncd {quoted}"
