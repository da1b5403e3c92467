"""GitHub Copilot CLI adapter."""

from typing import List, Optional

from .base import Agent


class CopilotAgent(Agent):
    name = "copilot"
    binary = "copilot"

    def tool_arguments(self, model: Optional[str] = None) -> List[str]:
        args = ["--allow-all-tools", "--no-color"]
        if model:
            args.extend(["--model", model])
        return args
