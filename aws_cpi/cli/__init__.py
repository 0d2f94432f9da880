# CLI module: JSON request dispatch
from .commands import CLICommands

__all__ = ["CLICommands"]
