"""OpenCode adapter."""

from typing import List, Optional

from .base import Agent


class OpenCodeAgent(Agent):
    name = "opencode"
    binary = "opencode"

    def tool_arguments(self, model: Optional[str] = None) -> List[str]:
        args = ["run"]
        if model:
            args.extend(["--model", model])
        return args
