"""Workflow definitions.

A workflow is a YAML file listing its inputs and an ordered sequence of agent
steps. Each step has a prompt template (see rover.prompts) and declares the
outputs the agent must produce.

Example:

    version: "1.0"
    name: swe
    description: Implement a change
    inputs:
      - name: description
        description: What to build
        type: string
        required: true
    defaults:
      tool: claude
    config:
      timeout: 1800
      continueOnError: false
    steps:
      - id: context
        type: agent
        name: Context analysis
        prompt: |
          Analyze {{inputs.description}}
        outputs:
          - name: complexity
            description: simple or complex
            type: string
          - name: context_file
            description: Findings
            type: file
            filename: context.md
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from .errors import WorkflowError

logger = logging.getLogger(__name__)

# Step timeout (seconds) used when neither the step nor the workflow set one
DEFAULT_STEP_TIMEOUT = 1800


class _WorkflowModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class WorkflowInput(_WorkflowModel):
    name: str = Field(min_length=1)
    description: str = ""
    type: Literal["string", "number", "boolean"] = "string"
    required: bool = False
    default: Optional[Any] = None


class WorkflowOutput(_WorkflowModel):
    name: str = Field(min_length=1)
    description: str = ""
    type: Literal["string", "file"] = "string"
    filename: Optional[str] = None


class StepConfig(_WorkflowModel):
    timeout: Optional[float] = Field(default=None, gt=0)


class WorkflowStep(_WorkflowModel):
    id: str = Field(min_length=1)
    type: Literal["agent"] = "agent"
    name: str = ""
    prompt: str
    tool: Optional[str] = None
    model: Optional[str] = None
    config: StepConfig = Field(default_factory=StepConfig)
    outputs: List[WorkflowOutput] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_outputs(self) -> "WorkflowStep":
        seen = set()
        for output in self.outputs:
            if output.name in seen:
                raise ValueError(f"Duplicate output '{output.name}' in step '{self.id}'")
            seen.add(output.name)
        if not self.name:
            self.name = self.id
        return self

    def string_outputs(self) -> List[WorkflowOutput]:
        return [o for o in self.outputs if o.type == "string"]

    def file_outputs(self) -> List[WorkflowOutput]:
        return [o for o in self.outputs if o.type == "file"]

    def get_output(self, name: str) -> Optional[WorkflowOutput]:
        for output in self.outputs:
            if output.name == name:
                return output
        return None


class WorkflowDefaults(_WorkflowModel):
    tool: Optional[str] = None
    model: Optional[str] = None


class WorkflowConfig(_WorkflowModel):
    timeout: Optional[float] = Field(default=None, gt=0)
    continue_on_error: bool = False


class Workflow(_WorkflowModel):
    version: str = "1.0"
    name: str = Field(min_length=1)
    description: str = ""
    inputs: List[WorkflowInput] = Field(default_factory=list)
    defaults: WorkflowDefaults = Field(default_factory=WorkflowDefaults)
    config: WorkflowConfig = Field(default_factory=WorkflowConfig)
    steps: List[WorkflowStep] = Field(min_length=1)

    @model_validator(mode="after")
    def _unique_steps(self) -> "Workflow":
        seen = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id '{step.id}'")
            seen.add(step.id)
        return self


@dataclass
class InputValidation:
    """Result of checking provided inputs against a workflow's declarations."""
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


class WorkflowManager:
    """Loaded workflow plus the lookups runners need."""

    def __init__(self, workflow: Workflow, path: Optional[Path] = None):
        self.workflow = workflow
        self.path = path

    @classmethod
    def load(cls, path: Path) -> "WorkflowManager":
        """Load and validate a workflow YAML file.

        Raises:
            WorkflowError: If the file is missing, not valid YAML, or fails validation
        """
        path = Path(path)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise WorkflowError(f"Workflow file not found: {path}") from e
        except OSError as e:
            raise WorkflowError(f"Failed to read workflow file {path}: {e}") from e

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowError(f"Invalid YAML in workflow {path}: {e}") from e

        return cls.from_dict(data, path)

    @classmethod
    def from_dict(cls, data: Any, path: Optional[Path] = None) -> "WorkflowManager":
        if not isinstance(data, dict):
            raise WorkflowError(f"Workflow {path} must be a mapping" if path else "Workflow must be a mapping")
        try:
            workflow = Workflow.model_validate(data)
        except ValidationError as e:
            raise WorkflowError(f"Invalid workflow {path or data.get('name', '')}: {e}") from e
        logger.debug(
            f"Loaded workflow '{workflow.name}' with {len(workflow.steps)} steps",
            extra={"workflow": workflow.name, "path": str(path) if path else None}
        )
        return cls(workflow, path)

    @property
    def name(self) -> str:
        return self.workflow.name

    @property
    def description(self) -> str:
        return self.workflow.description

    @property
    def steps(self) -> List[WorkflowStep]:
        return self.workflow.steps

    @property
    def inputs(self) -> List[WorkflowInput]:
        return self.workflow.inputs

    @property
    def continue_on_error(self) -> bool:
        return self.workflow.config.continue_on_error

    def get_step(self, step_id: str) -> WorkflowStep:
        """Return the step with the given id.

        Raises:
            WorkflowError: If no such step exists
        """
        for step in self.workflow.steps:
            if step.id == step_id:
                return step
        raise WorkflowError(f"Step '{step_id}' not found in workflow '{self.name}'")

    def get_step_tool(self, step_id: str, default_tool: Optional[str] = None) -> Optional[str]:
        """Tool for a step: step override, then the caller's default, then the workflow default."""
        step = self.get_step(step_id)
        return step.tool or default_tool or self.workflow.defaults.tool

    def get_step_model(self, step_id: str, default_model: Optional[str] = None) -> Optional[str]:
        step = self.get_step(step_id)
        return step.model or default_model or self.workflow.defaults.model

    def get_step_timeout(self, step_id: str, default_timeout: Optional[float] = None) -> float:
        """Timeout in seconds: step config, then workflow config, then the caller's default.

        A caller default of 0 means no limit.
        """
        step = self.get_step(step_id)
        if step.config.timeout:
            return step.config.timeout
        if self.workflow.config.timeout:
            return self.workflow.config.timeout
        if default_timeout is not None:
            return default_timeout
        return DEFAULT_STEP_TIMEOUT

    def input_defaults(self) -> Dict[str, str]:
        """Declared defaults as strings, for inputs that have one."""
        return {
            i.name: _stringify(i.default)
            for i in self.workflow.inputs
            if i.default is not None
        }

    def validate_inputs(self, inputs: Dict[str, str]) -> InputValidation:
        """Check provided inputs against the declared ones.

        Missing required inputs and values that don't match the declared type
        are errors; inputs the workflow doesn't declare are warnings.
        """
        result = InputValidation()
        declared = {i.name: i for i in self.workflow.inputs}

        for name, spec in declared.items():
            value = inputs.get(name)
            if value is None or value == "":
                if spec.required and spec.default is None:
                    result.errors.append(f"Required input '{name}' is missing")
                continue
            if spec.type == "number":
                try:
                    float(value)
                except ValueError:
                    result.errors.append(f"Input '{name}' must be a number, got '{value}'")
            elif spec.type == "boolean" and value.lower() not in ("true", "false"):
                result.errors.append(f"Input '{name}' must be true or false, got '{value}'")

        for name in inputs:
            if name not in declared:
                result.warnings.append(f"Unknown input '{name}' is not declared by the workflow")

        return result


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
