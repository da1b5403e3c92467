"""Iteration documents.

Each task iteration lives in ``iterations/<n>/`` under the task directory and
holds:

    iteration.json   what this iteration was asked to do
    status.json      execution state written by the agent while it runs
    plan.md, changes.md, summary.md
                     artifacts the agent writes, read by later iterations
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .errors import TaskFileError, TaskValidationError
from .schemas import (
    CURRENT_ITERATION_SCHEMA_VERSION,
    ITERATION_STATES,
    IterationDescription,
    IterationStatus,
)
from .state import StateFileError, now_iso, read_json, write_json

logger = logging.getLogger(__name__)

ITERATION_FILENAME = "iteration.json"
STATUS_FILENAME = "status.json"
ARTIFACT_FILENAMES = ("plan.md", "changes.md", "summary.md")

# Iteration states after which the agent is done with the iteration
TERMINAL_STATES = ("completed", "failed", "credit_exhausted")


def _load_document(path: Path, kind: str) -> Dict[str, Any]:
    try:
        return read_json(path)
    except FileNotFoundError as e:
        raise TaskFileError(f"{kind} file not found: {path}") from e
    except StateFileError as e:
        raise TaskFileError(str(e)) from e


class IterationStatusManager:
    """Reads and updates an iteration's ``status.json``.

    Progress is clamped to 0-100 and never goes backwards within an iteration.
    """

    def __init__(self, path: Path, data: Dict[str, Any]):
        self.path = Path(path)
        self.data = data

    @classmethod
    def create_initial(
        cls,
        path: Path,
        task_id: str,
        current_step: str = "Initializing",
        status: str = "initializing",
    ) -> "IterationStatusManager":
        """Create a fresh status file, replacing any existing one."""
        timestamp = now_iso()
        manager = cls(path, {
            "taskId": str(task_id),
            "status": status,
            "currentStep": current_step,
            "progress": 0,
            "startedAt": timestamp,
            "updatedAt": timestamp,
        })
        manager.save()
        return manager

    @classmethod
    def load(cls, path: Path) -> "IterationStatusManager":
        manager = cls(path, _load_document(Path(path), "Iteration status"))
        manager._validate()
        return manager

    @property
    def status(self) -> str:
        return self.data["status"]

    @property
    def current_step(self) -> str:
        return self.data.get("currentStep", "")

    @property
    def progress(self) -> int:
        return self.data.get("progress", 0)

    @property
    def error(self) -> Optional[str]:
        return self.data.get("error")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def update(
        self,
        status: str,
        current_step: str,
        progress: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        """Record the current execution state.

        Args:
            status: One of the iteration states
            current_step: Human readable name of what is happening now
            progress: Percentage; lower values than the current one are ignored
            error: Error message to record
        """
        if status not in ITERATION_STATES:
            raise ValueError(f"Unknown iteration status '{status}'")

        self.data["status"] = status
        self.data["currentStep"] = current_step
        if progress is not None:
            clamped = max(0, min(100, int(progress)))
            self.data["progress"] = max(self.progress, clamped)
        if error is not None:
            self.data["error"] = error
        self.data["updatedAt"] = now_iso()
        if status in TERMINAL_STATES:
            self.data["completedAt"] = self.data["updatedAt"]
        self.save()

    def complete(self, message: str = "Workflow completed") -> None:
        self.update("completed", message, progress=100)

    def fail(self, step: str, error: str) -> None:
        self.update("failed", step, error=error)

    def fail_credit_exhausted(self, step: str, error: str) -> None:
        """Mark the iteration as stopped because the agent ran out of credits."""
        self.update("credit_exhausted", step, error=error)

    def _validate(self) -> None:
        try:
            IterationStatus.model_validate(self.data)
        except ValidationError as e:
            raise TaskValidationError(f"Invalid iteration status {self.path}: {e}") from e

    def save(self) -> None:
        self._validate()
        write_json(self.path, self.data)


class IterationManager:
    """Reads and updates an iteration's ``iteration.json`` and artifacts."""

    def __init__(self, iteration_path: Path, data: Dict[str, Any]):
        self.iteration_path = Path(iteration_path)
        self.data = data

    @property
    def file_path(self) -> Path:
        return self.iteration_path / ITERATION_FILENAME

    @property
    def status_path(self) -> Path:
        return self.iteration_path / STATUS_FILENAME

    @classmethod
    def create_initial(
        cls,
        iteration_path: Path,
        task_id: int,
        title: str,
        description: str,
        iteration: Optional[int] = None,
    ) -> "IterationManager":
        """Create ``iteration.json`` for a new iteration.

        The iteration number defaults to the directory name (``iterations/3`` -> 3).
        """
        iteration_path = Path(iteration_path)
        if iteration is None:
            iteration = int(iteration_path.name) if iteration_path.name.isdigit() else 1
        manager = cls(iteration_path, {
            "version": CURRENT_ITERATION_SCHEMA_VERSION,
            "id": task_id,
            "iteration": iteration,
            "title": title,
            "description": description,
            "createdAt": now_iso(),
            "previousContext": {},
        })
        manager.save()
        return manager

    @classmethod
    def load(cls, iteration_path: Path) -> "IterationManager":
        iteration_path = Path(iteration_path)
        manager = cls(iteration_path, _load_document(iteration_path / ITERATION_FILENAME, "Iteration"))
        manager._validate()
        return manager

    @property
    def iteration(self) -> int:
        return self.data["iteration"]

    @property
    def title(self) -> str:
        return self.data["title"]

    @property
    def description(self) -> str:
        return self.data["description"]

    @property
    def previous_context(self) -> Dict[str, Any]:
        return self.data.get("previousContext", {})

    def status(self) -> Optional[IterationStatusManager]:
        """The iteration's status document, or None if the agent hasn't written one."""
        if not self.status_path.exists():
            return None
        try:
            return IterationStatusManager.load(self.status_path)
        except (TaskFileError, TaskValidationError) as e:
            logger.warning(f"Ignoring unreadable status file {self.status_path}: {e}")
            return None

    def get_artifact(self, filename: str) -> Optional[str]:
        path = self.iteration_path / filename
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read {path}: {e}")
            return None

    def get_artifacts(self) -> Dict[str, str]:
        """Markdown artifacts present in the iteration directory, keyed by filename."""
        artifacts = {}
        for filename in ARTIFACT_FILENAMES:
            content = self.get_artifact(filename)
            if content is not None:
                artifacts[filename] = content
        return artifacts

    def set_previous_context(
        self,
        plan: Optional[str] = None,
        changes: Optional[str] = None,
        iteration_number: Optional[int] = None,
    ) -> None:
        """Record what the previous iteration produced, for the agent to read."""
        context = {}
        if plan is not None:
            context["plan"] = plan
        if changes is not None:
            context["changes"] = changes
        if iteration_number is not None:
            context["iterationNumber"] = iteration_number
        self.data["previousContext"] = context
        self.save()

    def update_title(self, title: str) -> None:
        self.data["title"] = title
        self.save()

    def update_description(self, description: str) -> None:
        self.data["description"] = description
        self.save()

    def _validate(self) -> None:
        try:
            IterationDescription.model_validate(self.data)
        except ValidationError as e:
            raise TaskValidationError(f"Invalid iteration {self.file_path}: {e}") from e

    def save(self) -> None:
        self._validate()
        write_json(self.file_path, self.data)
