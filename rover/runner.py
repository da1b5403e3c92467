"""Subprocess step runner.

Runs one workflow step by invoking the agent CLI once with the resolved
prompt on stdin:

    resolve prompt -> launch -> (success -> parse outputs)
                              | (failure -> recover? -> classify)

While the agent runs, its stderr is watched for interactive login prompts.
A CLI waiting for the user to authenticate would otherwise hang until the
step timeout, so the first match cancels the process.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from .agents import Agent, create_agent
from .errors import (
    AgentError,
    AuthenticationError,
    CreditExhaustedError,
    OutputParseError,
    RunnerError,
    classify_failure,
    is_waiting_for_authentication,
)
from .launch import launch
from .parsing import ResponseParser
from .prompts import FILE_SOURCE_DISK, PlaceholderResolver

logger = logging.getLogger(__name__)

# Characters of recent stderr kept for matching prompts split across chunks
AUTH_BUFFER_SIZE = 4096


@dataclass
class RunnerStepResult:
    """Outcome of one step, whichever runner executed it.

    Attributes:
        id: Step id
        success: Whether the step produced its outputs
        error: Error message when it didn't
        error_code: Classified error code (e.g. CREDIT_EXHAUSTED)
        duration: Wall-clock seconds
        tokens: Tokens used, if the agent reported them
        cost: Cost in USD, if the agent reported it
        model: Model that answered, if the agent reported it
        outputs: The step's output map
    """
    id: str
    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = None
    duration: float = 0.0
    tokens: Optional[int] = None
    cost: Optional[float] = None
    model: Optional[str] = None
    outputs: Dict[str, str] = field(default_factory=dict)


class AuthPromptDetector:
    """Stderr callback that cancels the agent when it asks the user to log in.

    Keeps a rolling buffer of recent output so a prompt split across two
    chunks is still recognized.
    """

    def __init__(self, cancel_event: asyncio.Event, tool: str):
        self.cancel_event = cancel_event
        self.tool = tool
        self.detected = False
        self._buffer = ""

    def __call__(self, chunk: str) -> None:
        if self.detected:
            return
        self._buffer = (self._buffer + chunk)[-AUTH_BUFFER_SIZE:]
        if is_waiting_for_authentication(self._buffer):
            self.detected = True
            logger.warning(f"{self.tool} is waiting for authentication, canceling")
            self.cancel_event.set()


class Runner:
    """Executes a single workflow step through the agent's CLI.

    Args:
        workflow: WorkflowManager holding the step
        step_id: Id of the step to run
        inputs: Task inputs
        steps_output: Outputs of steps that already ran, keyed by step id
        default_tool: Tool chosen on the command line
        default_model: Model chosen on the command line
        status_manager: IterationStatusManager to report progress to
        total_steps: Number of steps in the workflow (for progress)
        step_index: Zero-based position of this step
        reporter: ConsoleReporter for user-facing output
        cwd: Working directory for the agent
        default_timeout: Step timeout (seconds) when the workflow sets none
        context_message: Context block prepended to the prompt

    Raises:
        RunnerError: If no tool is configured or none is available
    """

    def __init__(
        self,
        workflow,
        step_id: str,
        inputs: Dict[str, str],
        steps_output: Dict[str, Dict[str, str]],
        default_tool: Optional[str] = None,
        default_model: Optional[str] = None,
        status_manager=None,
        total_steps: int = 0,
        step_index: int = 0,
        reporter=None,
        cwd: Optional[Path] = None,
        default_timeout: Optional[float] = None,
        context_message: Optional[str] = None,
    ):
        self.workflow = workflow
        self.step = workflow.get_step(step_id)
        self.inputs = inputs
        self.steps_output = steps_output
        self.status_manager = status_manager
        self.total_steps = total_steps
        self.step_index = step_index
        self.reporter = reporter
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()
        self.context_message = context_message

        self.tool = self._select_tool(default_tool)
        self.model = workflow.get_step_model(step_id, default_model)
        self.agent: Agent = create_agent(self.tool, self.model)
        self.timeout = workflow.get_step_timeout(step_id, default_timeout)

    def _select_tool(self, default_tool: Optional[str]) -> str:
        tool = self.workflow.get_step_tool(self.step.id, default_tool)
        if not tool:
            raise RunnerError(f"No tool configured for step '{self.step.id}'")

        if create_agent(tool).is_available():
            return tool

        fallback = self.workflow.workflow.defaults.tool
        if fallback and fallback != tool and create_agent(fallback).is_available():
            logger.warning(f"Tool '{tool}' is not available, falling back to '{fallback}'")
            if self.reporter is not None:
                self.reporter.warning(f"Tool '{tool}' is not available, using '{fallback}' instead")
            return fallback

        raise RunnerError(f"Tool '{tool}' is not available. Please install it and try again.")

    def _update_progress(self, progress: int, step_name: str) -> None:
        if self.status_manager is None:
            return
        try:
            self.status_manager.update("running", step_name, progress=progress)
        except Exception as e:
            logger.warning(f"Failed to update iteration status: {e}")

    def _percentage(self, index: int) -> int:
        if not self.total_steps:
            return 0
        return int(index / self.total_steps * 100)

    async def run(self, output_dir: Optional[Path] = None) -> RunnerStepResult:
        """Run the step to completion.

        Never raises for agent failures; they are classified and reported in
        the returned result and in the output map's ``error*`` entries.

        Args:
            output_dir: Directory file outputs are moved into

        Returns:
            RunnerStepResult for the step
        """
        step = self.step
        start = time.monotonic()
        outputs: Dict[str, str] = {}
        result = RunnerStepResult(id=step.id, success=False, outputs=outputs)

        self._update_progress(self._percentage(self.step_index), step.name)
        if self.reporter is not None:
            self.reporter.step_started(step.name, self.tool, self.model, self.step_index, self.total_steps)

        resolver = PlaceholderResolver(
            self.workflow,
            self.inputs,
            self.steps_output,
            file_source=FILE_SOURCE_DISK,
            cwd=self.cwd,
            context_message=self.context_message,
        )
        resolved = resolver.resolve(step, self.tool)
        outputs["input_prompt"] = resolved.prompt
        if self.reporter is not None:
            self.reporter.prompt_warnings(resolved.warnings)
            self.reporter.prompt(step.name, resolved.prompt)

        cancel_event = asyncio.Event()
        detector = AuthPromptDetector(cancel_event, self.tool)

        logger.info(
            f"Running step '{step.id}' with {self.tool}",
            extra={"step_id": step.id, "tool": self.tool, "model": self.model, "timeout": self.timeout}
        )
        launch_result = await launch(
            self.agent.binary,
            self.agent.tool_arguments(self.model),
            input=resolved.prompt,
            timeout=self.timeout,
            cancel_event=cancel_event,
            on_stderr=detector,
            cwd=str(self.cwd),
        )

        raw_output = launch_result.stdout
        recovered = None
        if not launch_result.ok and not detector.detected:
            try:
                recovered = self.agent.recover_from_error(launch_result, resolved.prompt)
            except Exception as e:
                logger.warning(f"Recovery attempt for {self.tool} failed: {e}")
            if recovered is not None:
                raw_output = recovered.raw_output
                if self.reporter is not None:
                    self.reporter.warning(recovered.notice)

        outputs["raw_output"] = raw_output

        if launch_result.ok or recovered is not None:
            try:
                usage = ResponseParser(self.reporter, self.cwd).parse_subprocess_outputs(
                    step,
                    raw_output,
                    outputs,
                    self.tool,
                    self.agent.uses_json_format,
                    output_dir=output_dir,
                    usage_extractor=self.agent.extract_usage_stats,
                )
            except OutputParseError as e:
                error = AgentError(str(e))
                outputs.update(error.to_outputs())
                self._fail(result, error.message, error.code)
            else:
                result.success = True
                if usage is not None:
                    result.tokens = usage.tokens
                    result.cost = usage.cost
                    result.model = usage.model
        else:
            error = classify_failure(
                launch_result, self.tool, step.name, self.timeout, auth_detected=detector.detected
            )
            outputs.update(error.to_outputs())
            self._fail(result, error.message, error.code, error)

        result.duration = time.monotonic() - start

        if result.success:
            self._update_progress(self._percentage(self.step_index + 1), step.name)
            if self.reporter is not None:
                self.reporter.step_completed(step.name, result.duration)
                self.reporter.step_results(step.name, outputs)
                self.reporter.usage(result.tokens, result.cost, result.model)

        return result

    def _fail(self, result: RunnerStepResult, message: str, code: Optional[str], error=None) -> None:
        result.success = False
        result.error = message
        result.error_code = code
        logger.error(
            f"Step '{self.step.id}' failed: {message}",
            extra={"step_id": self.step.id, "tool": self.tool, "error_code": code}
        )
        if self.reporter is None:
            return
        hint = None
        if isinstance(error, AuthenticationError):
            hint = f"Please authenticate with {self.tool} (run `{self.agent.binary}` interactively) and try again."
        elif isinstance(error, CreditExhaustedError):
            hint = "The task can be restarted once credits are available."
        self.reporter.step_failed(self.step.name, message, hint)
        if error is not None:
            self.reporter.info(f"  Error type: {type(error).__name__} ({code})")
