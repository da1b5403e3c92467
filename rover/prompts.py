"""Prompt building for workflow steps.

Step prompts are templates using two placeholder forms:

    {{inputs.NAME}}                   a task input
    {{steps.STEP_ID.outputs.NAME}}    an output of an earlier step

File-typed step outputs are substituted with the file's content rather than
its path. After substitution, a block describing the expected output format
is appended so the response can be parsed automatically.
"""

import logging
import re
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

from .errors import WorkflowError
from .workflow import WorkflowManager, WorkflowStep

logger = logging.getLogger(__name__)

_PLACEHOLDER_PATTERN = re.compile(r'\{\{([^}]+)\}\}')

# Tools that fail to write files from relative paths unless told explicitly
RELATIVE_PATH_STRUGGLING_TOOLS = frozenset({"gemini", "qwen"})

# Where file-typed output content comes from when resolving a placeholder
FILE_SOURCE_DISK = "disk"
FILE_SOURCE_CAPTURED = "captured"


class ResolvedPrompt(NamedTuple):
    """A fully substituted prompt and the warnings produced while building it."""
    prompt: str
    warnings: List[str]


def generate_output_instructions(step: WorkflowStep, tool: Optional[str] = None) -> str:
    """Build the output format block appended to a step prompt.

    Args:
        step: The step whose declared outputs should be described
        tool: Active agent tool name

    Returns:
        Instruction text, or an empty string if the step declares no outputs
    """
    if not step.outputs:
        return ""

    string_outputs = step.string_outputs()
    file_outputs = step.file_outputs()

    parts = [
        "\n\n## OUTPUT REQUIREMENTS\n\n",
        "You MUST provide your response in the exact format specified below:\n\n",
    ]

    if string_outputs:
        parts.append("### JSON Response\n\n")
        parts.append("Return a JSON object with the following structure:\n\n")
        parts.append("```json\n{\n")
        for index, output in enumerate(string_outputs):
            comma = "," if index < len(string_outputs) - 1 else ""
            parts.append(f'  "{output.name}": "your_{output.name.lower()}_value_here"{comma}\n')
        parts.append("}\n```\n\n")
        parts.append("Where:\n")
        for output in string_outputs:
            parts.append(f"- `{output.name}`: {output.description}\n")
        parts.append("\n")

    if file_outputs:
        parts.append("### File Creation\n\n")
        parts.append("You MUST create the following files with the exact content needed:\n\n")
        for output in file_outputs:
            parts.append(f"- **{output.name}**: {output.description}\n")
            parts.append("  - Create this file in the current working directory\n")
            if tool in RELATIVE_PATH_STRUGGLING_TOOLS:
                parts.append(
                    "  - When creating the file, call the write_file tool using an absolute "
                    "path based on current directory. THIS IS MANDATORY\n"
                )
            parts.append(f"  - Filename: `{output.filename}`\n\n")
        parts.append(
            "IMPORTANT: All files must be created with appropriate content. "
            "Do not create empty or placeholder files.\n\n"
        )

    if string_outputs and file_outputs:
        parts.append("### Combined Response Format\n\n")
        parts.append("1. First, create all required files as specified above\n")
        parts.append("2. Then, provide the JSON response with the string outputs\n")
        parts.append("3. Make sure all files are created before ending your response\n\n")

    parts.append(
        "**CRITICAL**: Follow these output requirements exactly. "
        "Your response will be automatically parsed, so any deviation from the "
        "specified format will cause errors.\n"
    )
    return "".join(parts)


def build_context_message(context_dir: Path) -> Optional[str]:
    """Build the block that points the agent at a directory of context sources.

    Returns None when the directory has no ``index.md``.
    """
    context_dir = Path(context_dir)
    if not (context_dir / "index.md").exists():
        return None

    lines = [
        "\n\n**Context Sources:**",
        f"The context directory at `{context_dir}/` contains reference materials for this task.",
        f"Read the index file at `{context_dir}/index.md` for a complete overview of all "
        "available context sources and their descriptions.",
        "",
        "**Important:** Read the context index before proceeding with the task.",
        "",
    ]
    return "\n".join(lines)


class PlaceholderResolver:
    """Substitutes placeholders in a step's prompt template.

    Args:
        workflow: The workflow the step belongs to (for output type lookups)
        inputs: Task inputs
        steps_output: Outputs of steps that already ran, keyed by step id
        file_source: FILE_SOURCE_DISK to read file outputs from the path stored
            in the output map, FILE_SOURCE_CAPTURED to use the ``<name>_content``
            entry captured when the earlier step finished
        cwd: Directory relative file paths are resolved against
        context_message: Text prepended to every template before resolution
    """

    def __init__(
        self,
        workflow: WorkflowManager,
        inputs: Dict[str, str],
        steps_output: Dict[str, Dict[str, str]],
        file_source: str = FILE_SOURCE_DISK,
        cwd: Optional[Path] = None,
        context_message: Optional[str] = None,
    ):
        if file_source not in (FILE_SOURCE_DISK, FILE_SOURCE_CAPTURED):
            raise ValueError(f"Unknown file source '{file_source}'")
        self.workflow = workflow
        self.inputs = inputs
        self.steps_output = steps_output
        self.file_source = file_source
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()
        self.context_message = context_message

    def resolve(self, step: WorkflowStep, tool: Optional[str] = None) -> ResolvedPrompt:
        """Build the final prompt for a step.

        Unresolvable placeholders are left in place and reported as warnings;
        resolution never fails the step.

        Args:
            step: The step to build the prompt for
            tool: Active agent tool name (affects output instructions)

        Returns:
            ResolvedPrompt with the substituted prompt (output instructions
            appended) and the list of warnings
        """
        warnings: List[str] = []
        template = step.prompt
        if self.context_message:
            template = self.context_message + template

        def substitute(match: re.Match) -> str:
            replacement = self._resolve_placeholder(match.group(1), warnings)
            return match.group(0) if replacement is None else replacement

        prompt = _PLACEHOLDER_PATTERN.sub(substitute, template)
        prompt += generate_output_instructions(step, tool)

        if warnings:
            logger.warning(
                f"Prompt for step '{step.id}' has {len(warnings)} unresolved placeholder(s)",
                extra={"step_id": step.id, "warnings": warnings}
            )
        return ResolvedPrompt(prompt, warnings)

    def _resolve_placeholder(self, expression: str, warnings: List[str]) -> Optional[str]:
        parts = expression.strip().split(".")

        if len(parts) == 2 and parts[0] == "inputs":
            name = parts[1]
            if name not in self.inputs:
                warnings.append(f"Input '{name}' not provided")
                return None
            return str(self.inputs[name])

        if len(parts) == 4 and parts[0] == "steps" and parts[2] == "outputs":
            return self._resolve_step_output(parts[1], parts[3], warnings)

        warnings.append(f"Invalid placeholder format: '{expression.strip()}'")
        return None

    def _resolve_step_output(self, step_id: str, name: str, warnings: List[str]) -> Optional[str]:
        outputs = self.steps_output.get(step_id)
        if outputs is None:
            warnings.append(f"Step '{step_id}' has not been executed yet")
            return None
        if name not in outputs:
            warnings.append(f"Output '{name}' not found in step '{step_id}'")
            return None

        value = outputs[name]
        try:
            definition = self.workflow.get_step(step_id).get_output(name)
        except WorkflowError:
            definition = None
        if definition is None:
            warnings.append(f"The output '{name}' definition in step '{step_id}' is missing")
            return value

        if definition.type != "file":
            return value

        if self.file_source == FILE_SOURCE_CAPTURED:
            content = outputs.get(f"{name}_content")
            if content is None:
                warnings.append(f"File content for '{name}' not found in step '{step_id}'")
                return value
            return content

        return self._load_file(value, warnings)

    def _load_file(self, path_value: str, warnings: List[str]) -> str:
        """Read a file output from disk, falling back to the path on failure."""
        path = Path(path_value)
        if not path.is_absolute():
            path = self.cwd / path
        if not path.exists():
            warnings.append(f"File '{path_value}' does not exist")
            return path_value
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            warnings.append(f"Could not read file '{path_value}': {e}")
            return path_value
