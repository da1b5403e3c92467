"""Base class for agent CLI adapters.

An adapter knows how to call one agent CLI: its binary, the arguments for a
non-interactive run, whether the output is wrapped in a JSON envelope, and
how to read usage statistics from it. On top of that it provides the
text-generation helpers used outside workflow steps (task expansion, commit
messages, merge conflict resolution, GitHub input extraction).
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..errors import parse_agent_error
from ..launch import LaunchResult, check_binary, launch
from ..parsing import extract_json_from_content, extract_response_content, parse_json_object

logger = logging.getLogger(__name__)

# Timeout (seconds) for helper invocations outside workflow steps
HELPER_TIMEOUT = 300


@dataclass
class AgentUsageStats:
    """Usage reported by an agent for one invocation."""
    tokens: Optional[int] = None
    cost: Optional[float] = None
    model: Optional[str] = None


@dataclass
class RecoveredOutput:
    """Output salvaged from a failed invocation.

    Attributes:
        raw_output: Output to parse as if the invocation had succeeded
        notice: Message shown to the user explaining the recovery
    """
    raw_output: str
    notice: str


@dataclass
class TaskExpansion:
    """Title and full description generated from a brief."""
    title: str
    description: str


EXPAND_TASK_PROMPT = """You are helping a developer turn a brief request into a task for a coding agent.

Project directory: {project_path}
{context}
Brief:
{brief}

Respond ONLY with a JSON object of this shape:
{{"title": "short imperative title (max 70 characters)", "description": "detailed description with acceptance criteria"}}
"""

EXPAND_ITERATION_PROMPT = """A coding agent already worked on this task. Turn the new instructions into the next iteration's task.
{context}
Previous plan:
{previous_plan}

Previous changes:
{previous_changes}

New instructions:
{instructions}

Respond ONLY with a JSON object of this shape:
{{"title": "short imperative title (max 70 characters)", "description": "what to do in this iteration"}}
"""

COMMIT_MESSAGE_PROMPT = """Write a git commit message for the work below.

Task title: {title}
Task description:
{description}

Iteration summaries:
{summaries}

Recent commit messages in this repository (match their style):
{commits}

Respond with the commit message only: a subject line under 72 characters, optionally followed by a blank line and a short body.
"""

MERGE_CONFLICT_PROMPT = """Resolve the git merge conflicts in {file_path}.

Context from the diff between the branches:
{diff_context}

File content with conflict markers:
{content}

Respond with the complete resolved file content only, without conflict markers, explanations or code fences.
"""

GITHUB_INPUTS_PROMPT = """Extract workflow inputs from this GitHub issue.

Issue:
{issue}

Inputs to extract:
{inputs}

Respond ONLY with a JSON object mapping each input name to its value. Omit inputs the issue doesn't mention.
"""


class Agent:
    """Adapter for one agent CLI.

    Subclasses set ``name`` and ``binary`` and override ``tool_arguments``.

    Args:
        model: Default model for this agent, None for the tool's default
    """

    name = ""
    binary = ""
    # Whether tool_arguments() asks the tool for a JSON envelope
    uses_json_format = False

    def __init__(self, model: Optional[str] = None):
        self.model = model

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r})"

    def tool_arguments(self, model: Optional[str] = None) -> List[str]:
        """Arguments for a non-interactive run reading the prompt from stdin."""
        raise NotImplementedError

    def helper_arguments(self, json_mode: bool, model: Optional[str] = None) -> List[str]:
        """Arguments for helper invocations; same as a step run by default."""
        return self.tool_arguments(model)

    def recover_from_error(self, result: LaunchResult, prompt: str) -> Optional[RecoveredOutput]:
        """Salvage a usable response from a failed run. Most tools can't."""
        return None

    def extract_usage_stats(self, envelope: Dict[str, Any]) -> Optional[AgentUsageStats]:
        """Read usage statistics from the tool's JSON envelope, if it has any."""
        return None

    def is_available(self) -> bool:
        return check_binary(self.binary)

    async def invoke(self, prompt: str, json_mode: bool = False, cwd: Optional[Path] = None) -> str:
        """Run the agent once and return its response text.

        Raises:
            AgentError: If the agent fails (classified, e.g. CreditExhaustedError)
        """
        result = await launch(
            self.binary,
            self.helper_arguments(json_mode, self.model),
            input=prompt,
            timeout=HELPER_TIMEOUT,
            cwd=str(cwd) if cwd else None,
        )
        if not result.ok:
            raise parse_agent_error(result.stderr, result.stdout, result.exit_code, self.name)
        content, _ = extract_response_content(result.stdout, self.name, self.uses_json_format)
        return content.strip()

    async def _invoke_json(self, prompt: str, cwd: Optional[Path] = None) -> Optional[Dict[str, Any]]:
        response = await self.invoke(prompt, json_mode=True, cwd=cwd)
        data = parse_json_object(response) or extract_json_from_content(response)
        if data is None:
            logger.warning(f"{self.name} did not return a JSON object", extra={"response": response[:500]})
        return data

    async def expand_task(
        self, brief: str, project_path: Path, context: Optional[str] = None
    ) -> Optional[TaskExpansion]:
        """Expand a one-line request into a task title and description."""
        prompt = EXPAND_TASK_PROMPT.format(
            project_path=project_path,
            context=f"\nAdditional context:\n{context}\n" if context else "",
            brief=brief,
        )
        data = await self._invoke_json(prompt, cwd=project_path)
        return _to_expansion(data)

    async def expand_iteration_instructions(
        self,
        instructions: str,
        previous_plan: Optional[str] = None,
        previous_changes: Optional[str] = None,
        context: Optional[str] = None,
    ) -> Optional[TaskExpansion]:
        """Turn follow-up instructions into the next iteration's title and description."""
        prompt = EXPAND_ITERATION_PROMPT.format(
            context=f"\nAdditional context:\n{context}\n" if context else "",
            previous_plan=previous_plan or "(none)",
            previous_changes=previous_changes or "(none)",
            instructions=instructions,
        )
        data = await self._invoke_json(prompt)
        return _to_expansion(data)

    async def generate_commit_message(
        self,
        title: str,
        description: str,
        recent_commits: Sequence[str],
        summaries: Sequence[str],
    ) -> Optional[str]:
        prompt = COMMIT_MESSAGE_PROMPT.format(
            title=title,
            description=description,
            summaries="\n".join(f"- {s}" for s in summaries) or "(none)",
            commits="\n".join(f"- {c}" for c in recent_commits) or "(none)",
        )
        message = await self.invoke(prompt)
        return message.strip("`\n ") or None

    async def resolve_merge_conflicts(
        self, file_path: str, diff_context: str, conflicted_content: str
    ) -> Optional[str]:
        """Ask the agent for a conflict-free version of a file.

        Returns None if the answer still contains conflict markers.
        """
        prompt = MERGE_CONFLICT_PROMPT.format(
            file_path=file_path, diff_context=diff_context, content=conflicted_content
        )
        resolved = await self.invoke(prompt)
        if "<<<<<<<" in resolved or ">>>>>>>" in resolved:
            logger.warning(f"{self.name} left conflict markers in {file_path}")
            return None
        return _strip_code_fence(resolved)

    async def extract_github_inputs(
        self, issue_description: str, inputs: Sequence[Any]
    ) -> Optional[Dict[str, str]]:
        """Fill workflow inputs from a GitHub issue body.

        Args:
            issue_description: Issue title and body
            inputs: WorkflowInput declarations to fill
        """
        listing = "\n".join(f"- {i.name} ({i.type}): {i.description}" for i in inputs)
        prompt = GITHUB_INPUTS_PROMPT.format(issue=issue_description, inputs=listing)
        data = await self._invoke_json(prompt)
        if data is None:
            return None
        names = {i.name for i in inputs}
        return {k: v if isinstance(v, str) else json.dumps(v) for k, v in data.items() if k in names}


def _to_expansion(data: Optional[Dict[str, Any]]) -> Optional[TaskExpansion]:
    if not data:
        return None
    title = data.get("title")
    description = data.get("description")
    if not isinstance(title, str) or not isinstance(description, str) or not title:
        return None
    return TaskExpansion(title=title.strip(), description=description.strip())


def _strip_code_fence(text: str) -> str:
    lines = text.splitlines()
    if len(lines) >= 2 and lines[0].startswith("```") and lines[-1].strip() == "```":
        return "\n".join(lines[1:-1]) + "\n"
    return text if text.endswith("\n") else text + "\n"
