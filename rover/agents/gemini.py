"""Gemini CLI adapter."""

from typing import Any, Dict, List, Optional

from .base import Agent, AgentUsageStats


class GeminiAgent(Agent):
    name = "gemini"
    binary = "gemini"
    uses_json_format = True

    def tool_arguments(self, model: Optional[str] = None) -> List[str]:
        args = ["--yolo", "--output-format", "json"]
        if model:
            args.extend(["--model", model])
        return args

    def helper_arguments(self, json_mode: bool, model: Optional[str] = None) -> List[str]:
        args = ["--output-format", "json"]
        if model:
            args.extend(["--model", model])
        return args

    def extract_usage_stats(self, envelope: Dict[str, Any]) -> Optional[AgentUsageStats]:
        stats = envelope.get("stats")
        if not isinstance(stats, dict):
            return None
        models = stats.get("models")
        if not isinstance(models, dict) or not models:
            return None

        tokens = 0
        for model_stats in models.values():
            token_stats = model_stats.get("tokens") if isinstance(model_stats, dict) else None
            if isinstance(token_stats, dict):
                tokens += token_stats.get("total") or 0
        return AgentUsageStats(tokens=tokens or None, model=next(iter(models)))
