"""Task documents (``.rover/tasks/<id>/description.json``).

``TaskDescriptionManager`` owns one task's document. Every mutating method
validates the whole document against ``rover.schemas.TaskDescription`` and
rewrites the file before returning, so an invalid document is never
persisted. Documents written by older releases are migrated on load (see
rover.migrations) and the original file is kept as ``description.json.backup``.
"""

import logging
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .errors import TaskNotFoundError, TaskSchemaError, TaskStateError, TaskValidationError
from .iteration import IterationManager
from .migrations import MigrationError, migrate_task
from .schemas import CURRENT_TASK_SCHEMA_VERSION, TaskDescription, TaskStatus
from .state import StateFileError, now_iso, parse_iso, read_json, write_json

logger = logging.getLogger(__name__)

DESCRIPTION_FILENAME = "description.json"
BACKUP_SUFFIX = ".backup"
ITERATIONS_DIRNAME = "iterations"

# Statuses a task can be restarted from
RESTARTABLE_STATUSES = (TaskStatus.NEW, TaskStatus.FAILED, TaskStatus.PAUSED_CREDITS)

# Statuses that mean an agent is (or is about to be) working on the task
ACTIVE_STATUSES = (TaskStatus.NEW, TaskStatus.IN_PROGRESS, TaskStatus.ITERATING)


def tasks_dir(project_root: Path) -> Path:
    """Directory holding one subdirectory per task."""
    return Path(project_root) / ".rover" / "tasks"


@dataclass
class CreateTaskData:
    """Fields supplied when a task is first created."""
    id: int
    title: str
    description: str
    workflow_name: str
    inputs: Dict[str, str] = field(default_factory=dict)
    agent: Optional[str] = None
    agent_model: Optional[str] = None
    source_branch: Optional[str] = None
    network_config: Optional[Dict[str, Any]] = None
    source: Optional[Dict[str, Any]] = None
    uuid: Optional[str] = None


class TaskDescriptionManager:
    """Reads, validates, mutates and persists one task document.

    Args:
        task_path: Task directory (``.rover/tasks/<id>``)
        data: The document as a camelCase dict
    """

    def __init__(self, task_path: Path, data: Dict[str, Any]):
        self.task_path = Path(task_path)
        self.data = data

    def __repr__(self) -> str:
        return f"TaskDescriptionManager(id={self.data.get('id')!r}, status={self.data.get('status')!r})"

    @property
    def file_path(self) -> Path:
        return self.task_path / DESCRIPTION_FILENAME

    # Creation and loading

    @classmethod
    def create(cls, task_path: Path, task: CreateTaskData) -> "TaskDescriptionManager":
        """Create and persist a new task in ``NEW`` status."""
        timestamp = now_iso()
        data: Dict[str, Any] = {
            "id": task.id,
            "uuid": task.uuid or str(uuid.uuid4()),
            "title": task.title,
            "description": task.description,
            "inputs": dict(task.inputs),
            "status": TaskStatus.NEW.value,
            "createdAt": timestamp,
            "startedAt": timestamp,
            "lastIterationAt": timestamp,
            "iterations": 1,
            "workflowName": task.workflow_name,
            "worktreePath": "",
            "branchName": "",
            "agent": task.agent,
            "agentModel": task.agent_model,
            "sourceBranch": task.source_branch,
            "networkConfig": task.network_config,
            "source": task.source,
            "restartCount": 0,
            "version": CURRENT_TASK_SCHEMA_VERSION,
        }
        manager = cls(task_path, data)
        manager.save()
        logger.info(f"Created task {task.id}", extra={"task_id": task.id, "path": str(task_path)})
        return manager

    @classmethod
    def exists(cls, task_path: Path) -> bool:
        return (Path(task_path) / DESCRIPTION_FILENAME).is_file()

    @classmethod
    def load(cls, task_path: Path, task_id: Optional[int] = None) -> "TaskDescriptionManager":
        """Load a task, migrating it to the current schema version if needed.

        Args:
            task_path: Task directory
            task_id: Expected task id, used in error messages and as the id of
                legacy documents that lack one. Defaults to the directory name
                when that is a number.

        Raises:
            TaskNotFoundError: If the document does not exist
            TaskSchemaError: If the document is not valid JSON or cannot be migrated
            TaskValidationError: If the migrated document fails validation
        """
        task_path = Path(task_path)
        file_path = task_path / DESCRIPTION_FILENAME
        if task_id is None and task_path.name.isdigit():
            task_id = int(task_path.name)
        label = task_id if task_id is not None else task_path.name

        try:
            raw = read_json(file_path)
        except FileNotFoundError as e:
            raise TaskNotFoundError(f"Task {label} not found: {file_path}") from e
        except StateFileError as e:
            raise TaskSchemaError(f"Task {label} has an unreadable description: {e}") from e

        try:
            data = migrate_task(raw, task_id)
        except MigrationError as e:
            raise TaskSchemaError(f"Task {label} cannot be migrated: {e}") from e

        manager = cls(task_path, data)
        if data.get("version") != raw.get("version"):
            logger.info(
                f"Migrated task {label} from schema {raw.get('version', 'unversioned')} "
                f"to {CURRENT_TASK_SCHEMA_VERSION}",
                extra={"task_id": label}
            )
            manager._validate()
            manager._write_backup()
            manager.save()
        return manager

    def _write_backup(self) -> None:
        backup = self.file_path.with_name(DESCRIPTION_FILENAME + BACKUP_SUFFIX)
        try:
            shutil.copyfile(self.file_path, backup)
        except OSError as e:
            logger.warning(f"Could not write backup {backup}: {e}")

    def reload(self) -> None:
        """Re-read the document from disk, discarding in-memory changes."""
        self.data = type(self).load(self.task_path, self.id).data

    def delete(self) -> None:
        """Remove the task directory and everything in it."""
        shutil.rmtree(self.task_path, ignore_errors=True)
        logger.info(f"Deleted task {self.id}", extra={"task_id": self.id})

    # Persistence

    def _validate(self) -> None:
        try:
            TaskDescription.model_validate(self.data)
        except ValidationError as e:
            raise TaskValidationError(f"Invalid task {self.data.get('id')}: {e}") from e

    def save(self) -> None:
        """Validate the document and write it atomically.

        Optional fields holding None are dropped rather than written as null.

        Raises:
            TaskValidationError: If the document fails validation (nothing is written)
        """
        for key in [k for k, v in self.data.items() if v is None]:
            del self.data[key]
        self._validate()
        write_json(self.file_path, self.data)

    # Properties

    @property
    def id(self) -> int:
        return self.data["id"]

    @property
    def uuid(self) -> str:
        return self.data["uuid"]

    @property
    def title(self) -> str:
        return self.data["title"]

    @property
    def description(self) -> str:
        return self.data["description"]

    @property
    def inputs(self) -> Dict[str, str]:
        return self.data.get("inputs", {})

    @property
    def status(self) -> TaskStatus:
        return TaskStatus(self.data["status"])

    @property
    def iterations(self) -> int:
        return self.data["iterations"]

    @property
    def workflow_name(self) -> str:
        return self.data["workflowName"]

    @property
    def worktree_path(self) -> str:
        return self.data.get("worktreePath", "")

    @property
    def branch_name(self) -> str:
        return self.data.get("branchName", "")

    @property
    def agent(self) -> Optional[str]:
        return self.data.get("agent")

    @property
    def agent_model(self) -> Optional[str]:
        return self.data.get("agentModel")

    @property
    def agent_image(self) -> Optional[str]:
        return self.data.get("agentImage")

    @property
    def version(self) -> str:
        return self.data["version"]

    @property
    def source_branch(self) -> Optional[str]:
        return self.data.get("sourceBranch")

    @property
    def container_id(self) -> Optional[str]:
        return self.data.get("containerId")

    @property
    def sandbox_metadata(self) -> Optional[Dict[str, Any]]:
        return self.data.get("sandboxMetadata")

    @property
    def error(self) -> Optional[str]:
        return self.data.get("error")

    @property
    def restart_count(self) -> int:
        return self.data.get("restartCount", 0)

    @property
    def last_restart_at(self) -> Optional[str]:
        return self.data.get("lastRestartAt")

    @property
    def created_at(self) -> str:
        return self.data["createdAt"]

    @property
    def started_at(self) -> Optional[str]:
        return self.data.get("startedAt")

    @property
    def completed_at(self) -> Optional[str]:
        return self.data.get("completedAt")

    @property
    def failed_at(self) -> Optional[str]:
        return self.data.get("failedAt")

    # Status transitions

    def set_status(
        self,
        status: TaskStatus,
        timestamp: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Move the task to a new status and record the matching timestamp.

        ``MERGED`` and ``PUSHED`` only set ``completedAt`` when it is not set
        yet, so the original completion time survives.
        """
        status = TaskStatus(status)
        timestamp = timestamp or now_iso()
        self.data["status"] = status.value

        if status == TaskStatus.IN_PROGRESS:
            self.data.setdefault("startedAt", timestamp)
        elif status == TaskStatus.ITERATING:
            self.data["lastIterationAt"] = timestamp
        elif status == TaskStatus.COMPLETED:
            self.data["completedAt"] = timestamp
        elif status in (TaskStatus.FAILED, TaskStatus.PAUSED_CREDITS):
            self.data["failedAt"] = timestamp
            if error:
                self.data["error"] = error
        elif status in (TaskStatus.MERGED, TaskStatus.PUSHED):
            self.data.setdefault("completedAt", timestamp)

        self.data["lastStatusCheck"] = now_iso()
        self.save()

    def mark_in_progress(self, timestamp: Optional[str] = None) -> None:
        self.set_status(TaskStatus.IN_PROGRESS, timestamp)

    def mark_iterating(self, timestamp: Optional[str] = None) -> None:
        self.set_status(TaskStatus.ITERATING, timestamp)

    def mark_completed(self, timestamp: Optional[str] = None) -> None:
        self.set_status(TaskStatus.COMPLETED, timestamp)

    def mark_failed(self, error: str, timestamp: Optional[str] = None) -> None:
        self.set_status(TaskStatus.FAILED, timestamp, error)

    def mark_paused_credits(self, error: str, timestamp: Optional[str] = None) -> None:
        self.set_status(TaskStatus.PAUSED_CREDITS, timestamp, error)

    def mark_merged(self, timestamp: Optional[str] = None) -> None:
        self.set_status(TaskStatus.MERGED, timestamp)

    def mark_pushed(self, timestamp: Optional[str] = None) -> None:
        self.set_status(TaskStatus.PUSHED, timestamp)

    def reset_to_new(self) -> None:
        """Return the task to ``NEW`` from any status (used when the sandbox fails to start)."""
        self.data["status"] = TaskStatus.NEW.value
        self.data["lastStatusCheck"] = now_iso()
        self.save()

    def restart(self, timestamp: Optional[str] = None) -> None:
        """Restart a new, failed or credit-paused task.

        Raises:
            TaskStateError: If the task is in any other status (nothing changes)
        """
        if self.status not in RESTARTABLE_STATUSES:
            raise TaskStateError(
                f"Task {self.id} cannot be restarted from status {self.status.value}"
            )
        timestamp = timestamp or now_iso()
        self.data["status"] = TaskStatus.IN_PROGRESS.value
        self.data["restartCount"] = self.restart_count + 1
        self.data["lastRestartAt"] = timestamp
        self.data["lastStatusCheck"] = timestamp
        self.save()

    # Other mutations

    def increment_iteration(self) -> int:
        self.data["iterations"] = self.iterations + 1
        self.data["lastIterationAt"] = now_iso()
        self.save()
        return self.iterations

    def update_iteration(self, iterations: int) -> None:
        self.data["iterations"] = iterations
        self.data["lastIterationAt"] = now_iso()
        self.save()

    def set_workspace(self, worktree_path: str, branch_name: str) -> None:
        self.data["worktreePath"] = str(worktree_path)
        self.data["branchName"] = branch_name
        self.save()

    def set_container_info(
        self,
        container_id: str,
        execution_status: str,
        sandbox_metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.data["containerId"] = container_id
        self.data["executionStatus"] = execution_status
        if execution_status == "running":
            self.data["runningAt"] = now_iso()
        if sandbox_metadata is not None:
            self.data["sandboxMetadata"] = sandbox_metadata
        self.save()

    def update_execution_status(
        self,
        execution_status: str,
        exit_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        timestamp = now_iso()
        self.data["executionStatus"] = execution_status
        if exit_code is not None:
            self.data["exitCode"] = exit_code
        if error:
            self.data["error"] = error
            self.data["errorAt"] = timestamp
        if execution_status == "completed":
            self.data["completedAt"] = timestamp
        elif execution_status == "failed":
            self.data["failedAt"] = timestamp
        self.save()

    def set_agent(self, agent: str, model: Optional[str] = None) -> None:
        self.data["agent"] = agent
        self.data["agentModel"] = model
        self.save()

    def set_agent_image(self, image: str) -> None:
        self.data["agentImage"] = image
        self.save()

    def set_base_commit(self, commit: str) -> None:
        self.data["baseCommit"] = commit
        self.save()

    def set_on_complete_hook_fired_at(self, timestamp: Optional[str] = None) -> None:
        self.data["onCompleteHookFiredAt"] = timestamp or now_iso()
        self.save()

    def update_title(self, title: str) -> None:
        self.data["title"] = title
        self.save()

    def update_description(self, description: str) -> None:
        self.data["description"] = description
        self.save()

    # Iterations

    @property
    def iterations_path(self) -> Path:
        return self.task_path / ITERATIONS_DIRNAME

    def get_iteration_path(self, iteration: Optional[int] = None) -> Path:
        return self.iterations_path / str(iteration if iteration is not None else self.iterations)

    def get_iterations(self) -> List[int]:
        """Iteration numbers present on disk, newest first."""
        if not self.iterations_path.is_dir():
            return []
        numbers = [
            int(entry.name) for entry in self.iterations_path.iterdir()
            if entry.is_dir() and entry.name.isdigit()
        ]
        return sorted(numbers, reverse=True)

    def get_last_iteration(self) -> Optional[IterationManager]:
        for number in self.get_iterations():
            path = self.iterations_path / str(number)
            if (path / "iteration.json").exists():
                return IterationManager.load(path)
        return None

    def get_previous_iteration_artifacts(self, before: Optional[int] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Summaries and plans written by iterations older than ``before``.

        Returns:
            ``{"summaries": [...], "plans": [...]}``, each a list of
            ``{"iteration": n, "content": text}`` in ascending order
        """
        before = before if before is not None else self.iterations
        summaries: List[Dict[str, Any]] = []
        plans: List[Dict[str, Any]] = []
        for number in sorted(n for n in self.get_iterations() if n < before):
            path = self.iterations_path / str(number)
            for filename, bucket in (("summary.md", summaries), ("plan.md", plans)):
                artifact = path / filename
                if not artifact.exists():
                    continue
                try:
                    bucket.append({"iteration": number, "content": artifact.read_text(encoding="utf-8")})
                except (OSError, UnicodeDecodeError) as e:
                    logger.warning(f"Could not read {artifact}: {e}")
        return {"summaries": summaries, "plans": plans}

    def update_status_from_iteration(self) -> None:
        """Derive the task status from the latest iteration's ``status.json``.

        A derived ``COMPLETED`` never replaces ``MERGED`` or ``PUSHED``.
        """
        iteration = self.get_last_iteration()
        if iteration is None:
            return
        status = iteration.status()
        if status is None:
            return

        state = status.status
        if state == "completed":
            if self.status in (TaskStatus.MERGED, TaskStatus.PUSHED):
                return
            self.set_status(TaskStatus.COMPLETED, status.data.get("completedAt"))
        elif state == "failed":
            self.set_status(TaskStatus.FAILED, status.data.get("completedAt"), status.error)
        elif state == "credit_exhausted":
            self.set_status(TaskStatus.PAUSED_CREDITS, status.data.get("completedAt"), status.error)
        elif state == "running":
            self.set_status(TaskStatus.ITERATING, status.data.get("updatedAt"))
        else:
            self.set_status(TaskStatus.IN_PROGRESS)

    # Predicates

    def is_new(self) -> bool:
        return self.status == TaskStatus.NEW

    def is_in_progress(self) -> bool:
        return self.status == TaskStatus.IN_PROGRESS

    def is_iterating(self) -> bool:
        return self.status == TaskStatus.ITERATING

    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    def is_failed(self) -> bool:
        return self.status == TaskStatus.FAILED

    def is_paused_credits(self) -> bool:
        return self.status == TaskStatus.PAUSED_CREDITS

    def is_merged(self) -> bool:
        return self.status == TaskStatus.MERGED

    def is_pushed(self) -> bool:
        return self.status == TaskStatus.PUSHED

    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def get_duration(self) -> Optional[float]:
        """Seconds between start and completion (or failure), None while unfinished."""
        end = self.completed_at or self.failed_at
        if not self.started_at or not end:
            return None
        return (parse_iso(end) - parse_iso(self.started_at)).total_seconds()
