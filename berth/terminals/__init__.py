"""Terminal backends - how an interactive shell is attached to a container."""

from berth.terminals.api import ApiTerminalBackend
from berth.terminals.base import TerminalBackend
from berth.terminals.cli import CliTerminalBackend

__all__ = [
    "ApiTerminalBackend",
    "CliTerminalBackend",
    "TerminalBackend",
    "create_terminal_backend",
]


def create_terminal_backend(kind: str, driver) -> TerminalBackend:
    """Build the backend selected by ``terminal.backend``."""
    if kind == "cli":
        return CliTerminalBackend(driver)
    return ApiTerminalBackend(driver)
