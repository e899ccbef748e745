"""Manager layer - container and terminal lifecycle."""

from berth.managers.container import ContainerManager
from berth.managers.terminal import TerminalManager

__all__ = ["ContainerManager", "TerminalManager"]
