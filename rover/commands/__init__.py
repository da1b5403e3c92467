"""Top-level commands invoked by the CLI."""

from .inspect import InspectOutput, inspect_command
from .restart import RestartOutput, restart_command
from .run import RunCommandOutput, run_command

__all__ = [
    "InspectOutput",
    "inspect_command",
    "RestartOutput",
    "restart_command",
    "RunCommandOutput",
    "run_command",
]
