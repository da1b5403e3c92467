"""Agent CLI adapters and the factory that selects one by tool name."""

from enum import Enum
from typing import Dict, Optional, Type

from ..errors import UnknownAgentError
from .base import Agent, AgentUsageStats, RecoveredOutput, TaskExpansion
from .claude import ClaudeAgent
from .codex import CodexAgent
from .copilot import CopilotAgent
from .cursor import CursorAgent
from .gemini import GeminiAgent
from .opencode import OpenCodeAgent
from .qwen import QwenAgent


class AgentTool(str, Enum):
    """Supported agent tools."""

    CLAUDE = "claude"
    CODEX = "codex"
    COPILOT = "copilot"
    CURSOR = "cursor"
    GEMINI = "gemini"
    OPENCODE = "opencode"
    QWEN = "qwen"


AGENT_CLASSES: Dict[AgentTool, Type[Agent]] = {
    AgentTool.CLAUDE: ClaudeAgent,
    AgentTool.CODEX: CodexAgent,
    AgentTool.COPILOT: CopilotAgent,
    AgentTool.CURSOR: CursorAgent,
    AgentTool.GEMINI: GeminiAgent,
    AgentTool.OPENCODE: OpenCodeAgent,
    AgentTool.QWEN: QwenAgent,
}

AGENT_NAMES = tuple(tool.value for tool in AgentTool)


def create_agent(tool: str, model: Optional[str] = None) -> Agent:
    """Create the adapter for a tool name (case-insensitive).

    Raises:
        UnknownAgentError: If the tool is not one of AgentTool
    """
    try:
        key = AgentTool(tool.lower())
    except (ValueError, AttributeError):
        raise UnknownAgentError(f"Unknown AI agent: {tool}")
    return AGENT_CLASSES[key](model=model)


__all__ = [
    'Agent',
    'AgentTool',
    'AgentUsageStats',
    'AGENT_NAMES',
    'RecoveredOutput',
    'TaskExpansion',
    'create_agent',
]
