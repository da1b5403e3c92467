"""Cursor agent CLI adapter."""

from typing import List, Optional

from .base import Agent


class CursorAgent(Agent):
    name = "cursor"
    binary = "cursor-agent"

    def tool_arguments(self, model: Optional[str] = None) -> List[str]:
        args = ["--print", "--force", "--output-format", "text"]
        if model:
            args.extend(["--model", model])
        return args

    def helper_arguments(self, json_mode: bool, model: Optional[str] = None) -> List[str]:
        args = ["--print", "--output-format", "text"]
        if model:
            args.extend(["--model", model])
        return args
