"""Berth data models."""

from berth.models.container import ContainerConfig, FileEntry
from berth.models.terminal import TerminalSession, TerminalState

__all__ = [
    "ContainerConfig",
    "FileEntry",
    "TerminalSession",
    "TerminalState",
]
