"""Qwen Code adapter."""

from typing import List, Optional

from .base import Agent


class QwenAgent(Agent):
    name = "qwen"
    binary = "qwen"

    def tool_arguments(self, model: Optional[str] = None) -> List[str]:
        args = ["--yolo"]
        if model:
            args.extend(["--model", model])
        return args

    def helper_arguments(self, json_mode: bool, model: Optional[str] = None) -> List[str]:
        return ["--model", model] if model else []
