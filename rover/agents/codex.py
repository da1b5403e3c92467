"""OpenAI Codex CLI adapter."""

from typing import List, Optional

from .base import Agent


class CodexAgent(Agent):
    name = "codex"
    binary = "codex"

    def tool_arguments(self, model: Optional[str] = None) -> List[str]:
        args = ["exec", "--dangerously-bypass-approvals-and-sandbox", "--skip-git-repo-check"]
        if model:
            args.extend(["--model", model])
        # Read the prompt from stdin
        args.append("-")
        return args

    def helper_arguments(self, json_mode: bool, model: Optional[str] = None) -> List[str]:
        args = ["exec", "--skip-git-repo-check", "--sandbox", "read-only"]
        if model:
            args.extend(["--model", model])
        args.append("-")
        return args
