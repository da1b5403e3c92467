"""Show a task's status, refreshed from its latest iteration."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from ..console import ConsoleReporter
from ..errors import RoverError, TaskNotFoundError
from ..task_description import TaskDescriptionManager, tasks_dir

logger = logging.getLogger(__name__)


@dataclass
class InspectOutput:
    success: bool = False
    error: Optional[str] = None
    task: Optional[Dict[str, Any]] = None


def _format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def inspect_command(
    project_root: Path,
    task_id: int,
    reporter: Optional[ConsoleReporter] = None,
    as_json: bool = False,
) -> InspectOutput:
    """Refresh the derived status of a task and print a summary.

    With ``as_json`` the whole task document is printed instead.
    """
    reporter = reporter or ConsoleReporter()
    output = InspectOutput()

    try:
        task = TaskDescriptionManager.load(tasks_dir(project_root) / str(task_id), task_id)
        task.update_status_from_iteration()
    except TaskNotFoundError:
        output.error = f"The task with ID {task_id} was not found"
        reporter.error(output.error)
        return output
    except RoverError as e:
        logger.error(f"Inspecting task {task_id} failed: {e}", extra={"task_id": task_id})
        output.error = str(e)
        reporter.error(output.error)
        return output

    output.success = True
    output.task = dict(task.data)

    if as_json:
        print(json.dumps(output.task, indent=2))
        return output

    print(f"Task {task.id}: {task.title}")
    print(f"  Status: {task.status.value}")
    print(f"  Workflow: {task.workflow_name}")
    print(f"  Iterations: {task.iterations}")
    if task.agent:
        model = f" ({task.agent_model})" if task.agent_model else ""
        print(f"  Agent: {task.agent}{model}")
    if task.branch_name:
        print(f"  Branch: {task.branch_name}")
    if task.worktree_path:
        print(f"  Workspace: {task.worktree_path}")
    if task.restart_count:
        print(f"  Restarts: {task.restart_count}")

    duration = task.get_duration()
    if duration is not None:
        print(f"  Duration: {_format_duration(duration)}")

    iteration = task.get_last_iteration()
    status = iteration.status() if iteration is not None else None
    if status is not None:
        print(f"  Current step: {status.current_step} ({status.progress}%)")

    if task.error:
        reporter.error(task.error)

    return output
