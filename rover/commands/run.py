"""Run a workflow: the step orchestrator.

Loads the workflow, merges and validates inputs, then executes the steps in
order. Tools with an ACP mode (claude, copilot, opencode) run every step in
one persistent agent process through ACPRunner; other tools get a fresh
process per step through Runner. Outputs of each successful step become
available to later prompts.

When a status file is given, the iteration status is kept up to date and
finally marked completed, failed, or credit_exhausted (so the task can be
paused and restarted rather than failed).
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ..acp_runner import ACP_TOOLS, ACPRunner
from ..console import ConsoleReporter
from ..errors import CREDIT_EXHAUSTED
from ..iteration import IterationStatusManager
from ..parsing import stringify
from ..prompts import build_context_message
from ..runner import Runner, RunnerStepResult
from ..workflow import WorkflowManager

logger = logging.getLogger(__name__)


@dataclass
class RunCommandOutput:
    success: bool = False
    error: Optional[str] = None
    results: List[RunnerStepResult] = field(default_factory=list)


@dataclass
class _FailureCause:
    step_name: str
    error_code: Optional[str] = None


def parse_input_options(values: Sequence[str], reporter: Optional[ConsoleReporter] = None) -> Dict[str, str]:
    """Turn repeated ``--input key=value`` options into a mapping.

    Only the first ``=`` separates key from value. Malformed entries are
    skipped with a warning.
    """
    inputs: Dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        key = key.strip()
        if not sep or not key:
            if reporter is not None:
                reporter.warning(f"Ignoring malformed input '{item}' (expected key=value)")
            continue
        inputs[key] = value
    return inputs


def load_inputs_json(path: Path, reporter: Optional[ConsoleReporter] = None) -> Dict[str, str]:
    """Read inputs from a JSON object file. A missing or invalid file is skipped."""
    path = Path(path)
    if reporter is not None:
        reporter.info(f"Loading inputs from {path}")
    if not path.exists():
        if reporter is not None:
            reporter.warning(f"The provided JSON input file ({path}) does not exist. Skipping it.")
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        data = None
    if not isinstance(data, dict):
        if reporter is not None:
            reporter.warning(f"The provided JSON input file ({path}) is not a valid JSON. Skipping it.")
        return {}
    return {str(k): stringify(v) for k, v in data.items()}


def _handle_result(
    result: RunnerStepResult,
    step,
    workflow: WorkflowManager,
    steps_output: Dict[str, Dict[str, str]],
    reporter: ConsoleReporter,
) -> Optional[_FailureCause]:
    """Store a step's outputs; return the failure cause if the run must stop."""
    if result.success:
        steps_output[step.id] = result.outputs
        return None

    if not workflow.continue_on_error:
        reporter.error(
            f"Step '{step.name}' failed and continueOnError is false. Stopping workflow execution."
        )
        return _FailureCause(step.name, result.error_code)

    reporter.warning(f"Step '{step.name}' failed but continueOnError is true. Continuing with next step.")
    steps_output[step.id] = {}
    return None


async def _run_with_session(
    workflow: WorkflowManager,
    inputs: Dict[str, str],
    steps_output: Dict[str, Dict[str, str]],
    results: List[RunnerStepResult],
    tool: str,
    agent_model: Optional[str],
    status_manager: Optional[IterationStatusManager],
    reporter: ConsoleReporter,
    cwd: Path,
    output_dir: Optional[Path],
    context_message: Optional[str],
) -> Optional[_FailureCause]:
    reporter.info("ACP mode enabled")
    runner = ACPRunner(
        workflow,
        inputs,
        steps_output,
        tool=tool,
        default_model=agent_model,
        status_manager=status_manager,
        reporter=reporter,
        cwd=cwd,
        context_message=context_message,
    )
    try:
        await runner.initialize_connection()
        for step in workflow.steps:
            await runner.create_session()
            try:
                result = await runner.run_step(step.id, output_dir)
            finally:
                runner.close_session()
            results.append(result)
            cause = _handle_result(result, step, workflow, steps_output, reporter)
            if cause is not None:
                return cause
        return None
    finally:
        await runner.close()


async def _run_with_subprocess(
    workflow: WorkflowManager,
    inputs: Dict[str, str],
    steps_output: Dict[str, Dict[str, str]],
    results: List[RunnerStepResult],
    agent_tool: Optional[str],
    agent_model: Optional[str],
    status_manager: Optional[IterationStatusManager],
    reporter: ConsoleReporter,
    cwd: Path,
    output_dir: Optional[Path],
    context_message: Optional[str],
    timeout: Optional[float],
) -> Optional[_FailureCause]:
    total = len(workflow.steps)
    for index, step in enumerate(workflow.steps):
        runner = Runner(
            workflow,
            step.id,
            inputs,
            steps_output,
            default_tool=agent_tool,
            default_model=agent_model,
            status_manager=status_manager,
            total_steps=total,
            step_index=index,
            reporter=reporter,
            cwd=cwd,
            default_timeout=timeout,
            context_message=context_message,
        )
        result = await runner.run(output_dir)
        results.append(result)
        cause = _handle_result(result, step, workflow, steps_output, reporter)
        if cause is not None:
            return cause
    return None


async def run_command(
    workflow_path: Path,
    inputs: Sequence[str] = (),
    inputs_json: Optional[Path] = None,
    agent_tool: Optional[str] = None,
    agent_model: Optional[str] = None,
    output_dir: Optional[Path] = None,
    status_file: Optional[Path] = None,
    task_id: Optional[str] = None,
    context_dir: Optional[Path] = None,
    timeout: Optional[float] = None,
    use_acp: bool = True,
    reporter: Optional[ConsoleReporter] = None,
    cwd: Optional[Path] = None,
) -> RunCommandOutput:
    """Run every step of a workflow file.

    Args:
        workflow_path: Workflow YAML file
        inputs: ``key=value`` inputs; they override inputs_json
        inputs_json: JSON file with inputs
        agent_tool: Tool chosen on the command line
        agent_model: Model chosen on the command line
        output_dir: Existing directory file outputs are moved into
        status_file: Iteration ``status.json`` to keep up to date
        task_id: Task id recorded in the status file (required with status_file)
        context_dir: Directory of context sources with an ``index.md``
        timeout: Default step timeout in seconds
        use_acp: Use a persistent ACP session for tools that support it
        reporter: ConsoleReporter for output
        cwd: Working directory for the agent

    Returns:
        RunCommandOutput; never raises for step failures
    """
    reporter = reporter or ConsoleReporter()
    cwd = Path(cwd) if cwd is not None else Path.cwd()
    output = RunCommandOutput()
    status_manager: Optional[IterationStatusManager] = None
    failure: Optional[_FailureCause] = None

    if status_file is not None and not task_id:
        output.error = "--task-id is required when --status-file is provided"
        reporter.error(output.error)
        return output

    if output_dir is not None and not Path(output_dir).is_dir():
        output.error = (
            f'The "{output_dir}" directory does not exist or current user does not have permissions.'
        )
        reporter.error(output.error)
        return output

    if status_file is not None:
        try:
            status_manager = IterationStatusManager.create_initial(
                Path(status_file), task_id, "Starting workflow"
            )
        except Exception as e:
            output.error = f"Failed to initialize status file: {e}"
            reporter.error(output.error)
            return output

    start = time.monotonic()
    try:
        workflow = WorkflowManager.load(Path(workflow_path))

        context_message = None
        if context_dir is not None and Path(context_dir).exists():
            context_message = build_context_message(Path(context_dir))
            if context_message:
                reporter.context_injected()

        provided: Dict[str, str] = {}
        if inputs_json is not None:
            provided.update(load_inputs_json(Path(inputs_json), reporter))
        provided.update(parse_input_options(inputs, reporter))

        merged = dict(provided)
        defaults: List[str] = []
        for name, value in workflow.input_defaults().items():
            if name not in merged:
                merged[name] = value
                defaults.append(name)

        reporter.workflow_started(workflow.name, workflow.description, [s.name for s in workflow.steps])
        reporter.inputs_summary(merged, defaults)

        validation = workflow.validate_inputs(merged)
        for warning in validation.warnings:
            reporter.warning(warning)

        if not validation.valid:
            for error in validation.errors:
                reporter.error(error)
            output.error = f"Input validation failed: {', '.join(validation.errors)}"
        else:
            steps_output: Dict[str, Dict[str, str]] = {}
            tool = agent_tool or workflow.workflow.defaults.tool or "claude"

            if use_acp and tool.lower() in ACP_TOOLS:
                failure = await _run_with_session(
                    workflow, merged, steps_output, output.results, tool.lower(), agent_model,
                    status_manager, reporter, cwd, output_dir, context_message,
                )
            else:
                failure = await _run_with_subprocess(
                    workflow, merged, steps_output, output.results, agent_tool, agent_model,
                    status_manager, reporter, cwd, output_dir, context_message, timeout,
                )

            reporter.workflow_summary(output.results, time.monotonic() - start)

            failed = [r for r in output.results if not r.success]
            if failure is not None:
                output.error = f"Workflow stopped due to step failure: {failed[-1].error}"
            elif failed:
                output.error = f"{len(failed)} step(s) failed"
            else:
                output.success = True
                if status_manager is not None:
                    status_manager.complete("Workflow completed successfully")
    except Exception as e:
        logger.exception("Workflow run failed")
        output.success = False
        output.error = str(e)

    if not output.success:
        message = output.error or "Unknown error"
        if status_manager is not None:
            if failure is not None and failure.error_code == CREDIT_EXHAUSTED:
                status_manager.fail_credit_exhausted(failure.step_name, message)
            else:
                status_manager.fail("Workflow execution", message)
        reporter.error(message)

    return output
