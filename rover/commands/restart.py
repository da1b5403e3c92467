"""Restart a task that never started, failed, or ran out of credits.

Moves the task back to IN_PROGRESS (counting the restart), makes sure it
has a workspace and an iteration directory, then starts a new sandbox. If
the sandbox cannot be started the task is reset to NEW so it can be
restarted again.
"""

import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

from ..console import ConsoleReporter
from ..errors import TaskNotFoundError
from ..iteration import ITERATION_FILENAME, IterationManager
from ..services import GitService, SandboxService
from ..state import now_iso
from ..task_description import RESTARTABLE_STATUSES, TaskDescriptionManager, tasks_dir

logger = logging.getLogger(__name__)

WORKSPACE_DIRNAME = "workspace"


@dataclass
class RestartOutput:
    success: bool = False
    error: Optional[str] = None
    task_id: Optional[int] = None
    title: Optional[str] = None
    status: Optional[str] = None
    restarted_at: Optional[str] = None


def generate_branch_name(task_id: int) -> str:
    return f"rover/task-{task_id}-{secrets.token_hex(4)}"


def _setup_workspace(
    task: TaskDescriptionManager,
    git: GitService,
    exclude_patterns: Sequence[str],
    reporter: ConsoleReporter,
) -> None:
    worktree_path = task.task_path / WORKSPACE_DIRNAME
    branch_name = generate_branch_name(task.id)
    try:
        git.create_worktree(worktree_path, branch_name, task.source_branch)
        if exclude_patterns:
            git.setup_sparse_checkout(worktree_path, list(exclude_patterns))
    except Exception as e:
        logger.warning(f"Workspace setup for task {task.id} failed: {e}")
        reporter.warning(f"Could not set up the workspace: {e}")
        return
    task.set_workspace(str(worktree_path), branch_name)
    reporter.success("Workspace setup complete")


async def restart_command(
    project_root: Path,
    task_id: int,
    git: GitService,
    sandbox_factory: Callable[[TaskDescriptionManager], SandboxService],
    reporter: Optional[ConsoleReporter] = None,
    exclude_patterns: Sequence[str] = (),
    env: Optional[Mapping[str, str]] = None,
) -> RestartOutput:
    """Restart a task and start a new sandbox for it.

    Args:
        project_root: Repository root holding ``.rover``
        task_id: Task to restart
        git: Git service used to create a missing worktree
        sandbox_factory: Builds the sandbox for the task
        reporter: ConsoleReporter for output
        exclude_patterns: Paths excluded from the worktree via sparse checkout
        env: Environment to read ROVER_AGENT_IMAGE and DOCKER_HOST from

    Returns:
        RestartOutput describing the outcome
    """
    reporter = reporter or ConsoleReporter()
    env = os.environ if env is None else env
    output = RestartOutput(task_id=task_id)

    try:
        task = TaskDescriptionManager.load(tasks_dir(project_root) / str(task_id), task_id)

        if task.status not in RESTARTABLE_STATUSES:
            output.error = (
                f"Task {task_id} is not in NEW, FAILED, or PAUSED_CREDITS status "
                f"(current: {task.status.value})"
            )
            reporter.error(output.error)
            reporter.info("Only NEW, FAILED, and PAUSED_CREDITS (credits exhausted) tasks can be restarted")
            return output

        restarted_at = now_iso()
        task.restart(restarted_at)

        if not task.worktree_path or not task.branch_name:
            _setup_workspace(task, git, exclude_patterns, reporter)

        iteration_path = task.get_iteration_path()
        iteration_path.mkdir(parents=True, exist_ok=True)
        if not (iteration_path / ITERATION_FILENAME).exists():
            IterationManager.create_initial(iteration_path, task.id, task.title, task.description)

        reporter.info(f"Restarting task {task.id}: {task.title}")
        reporter.info(f"  Workspace: {task.worktree_path or '(none)'}")
        reporter.info(f"  Branch: {task.branch_name or '(none)'}")

        task.mark_in_progress()

        agent_image = env.get("ROVER_AGENT_IMAGE")
        if agent_image:
            task.set_agent_image(agent_image)

        try:
            sandbox = sandbox_factory(task)
            container_id = await sandbox.create_and_start()
        except Exception:
            task.reset_to_new()
            raise

        docker_host = env.get("DOCKER_HOST")
        task.set_container_info(
            container_id,
            "running",
            {"dockerHost": docker_host} if docker_host else None,
        )
    except TaskNotFoundError:
        output.error = f"The task with ID {task_id} was not found"
        reporter.error(output.error)
        return output
    except Exception as e:
        logger.error(f"Restarting task {task_id} failed: {e}", extra={"task_id": task_id})
        output.error = f"There was an error restarting the task: {e}"
        reporter.error(output.error)
        return output

    output.success = True
    output.title = task.title
    output.status = task.status.value
    output.restarted_at = restarted_at
    reporter.success("Task restarted successfully!")
    return output
