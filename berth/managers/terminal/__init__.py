from berth.managers.terminal.terminal import TerminalManager

__all__ = ["TerminalManager"]
