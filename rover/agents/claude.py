"""Claude Code adapter."""

import json
from typing import Any, Dict, List, Optional

from ..launch import LaunchResult
from .base import Agent, AgentUsageStats, RecoveredOutput


class ClaudeAgent(Agent):
    name = "claude"
    binary = "claude"
    uses_json_format = True

    def tool_arguments(self, model: Optional[str] = None) -> List[str]:
        args = ["-p", "--dangerously-skip-permissions", "--output-format", "json"]
        if model:
            args.extend(["--model", model])
        return args

    def helper_arguments(self, json_mode: bool, model: Optional[str] = None) -> List[str]:
        args = ["-p", "--output-format", "json"]
        if model:
            args.extend(["--model", model])
        return args

    def extract_usage_stats(self, envelope: Dict[str, Any]) -> Optional[AgentUsageStats]:
        usage = envelope.get("usage")
        cost = envelope.get("total_cost_usd")
        model_usage = envelope.get("modelUsage")
        if not isinstance(usage, dict) and cost is None and not model_usage:
            return None

        tokens = None
        if isinstance(usage, dict):
            tokens = sum(
                usage.get(key) or 0
                for key in (
                    "input_tokens",
                    "output_tokens",
                    "cache_creation_input_tokens",
                    "cache_read_input_tokens",
                )
            )

        model = None
        if isinstance(model_usage, dict) and model_usage:
            model = next(iter(model_usage))

        return AgentUsageStats(
            tokens=tokens,
            cost=float(cost) if isinstance(cost, (int, float)) else None,
            model=model,
        )

    def recover_from_error(self, result: LaunchResult, prompt: str) -> Optional[RecoveredOutput]:
        """Use the response when Claude finished its turn but exited nonzero.

        This happens when a hook or MCP server fails after the final result
        was already printed.
        """
        if result.timed_out or result.canceled:
            return None
        try:
            envelope = json.loads(result.stdout.strip())
        except json.JSONDecodeError:
            return None
        if not isinstance(envelope, dict):
            return None
        if envelope.get("type") != "result" or envelope.get("is_error"):
            return None
        if not isinstance(envelope.get("result"), str) or not envelope["result"].strip():
            return None
        return RecoveredOutput(
            raw_output=result.stdout,
            notice=f"Claude exited with code {result.exit_code} after completing its response; using that response",
        )
