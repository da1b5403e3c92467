"""Tests for iteration documents and status files."""

import json

import pytest

from rover.errors import TaskFileError, TaskValidationError
from rover.iteration import IterationManager, IterationStatusManager


@pytest.fixture
def status(tmp_path):
    return IterationStatusManager.create_initial(tmp_path / "status.json", "7")


class TestIterationStatus:
    """Tests for IterationStatusManager."""

    def test_initial_document(self, status, tmp_path):
        doc = json.loads((tmp_path / "status.json").read_text(encoding="utf-8"))
        assert doc["taskId"] == "7"
        assert doc["status"] == "initializing"
        assert doc["currentStep"] == "Initializing"
        assert doc["progress"] == 0
        assert "completedAt" not in doc

    def test_progress_never_decreases(self, status):
        status.update("running", "Step one", progress=60)
        status.update("running", "Step two", progress=30)
        assert status.progress == 60
        assert status.current_step == "Step two"

    def test_progress_clamped(self, status):
        status.update("running", "Step", progress=250)
        assert status.progress == 100

    def test_unknown_status(self, status):
        with pytest.raises(ValueError, match="Unknown iteration status"):
            status.update("sleeping", "Step")

    def test_complete(self, status):
        status.complete()
        assert status.status == "completed"
        assert status.progress == 100
        assert status.is_terminal
        assert "completedAt" in status.data

    def test_fail(self, status):
        status.update("running", "Build", progress=40)
        status.fail("Build", "compiler exploded")
        loaded = IterationStatusManager.load(status.path)
        assert loaded.status == "failed"
        assert loaded.error == "compiler exploded"
        assert loaded.progress == 40
        assert loaded.is_terminal

    def test_credit_exhausted(self, status):
        status.fail_credit_exhausted("Plan", "Credit balance is too low")
        assert status.status == "credit_exhausted"
        assert status.is_terminal

    def test_running_is_not_terminal(self, status):
        status.update("running", "Step")
        assert not status.is_terminal

    def test_load_missing(self, tmp_path):
        with pytest.raises(TaskFileError, match="not found"):
            IterationStatusManager.load(tmp_path / "status.json")

    def test_load_invalid(self, tmp_path):
        path = tmp_path / "status.json"
        path.write_text(json.dumps({"taskId": "1", "status": "bogus"}), encoding="utf-8")
        with pytest.raises(TaskValidationError):
            IterationStatusManager.load(path)


class TestIterationManager:
    """Tests for IterationManager."""

    def test_number_from_directory(self, tmp_path):
        iteration = IterationManager.create_initial(tmp_path / "iterations" / "3", 5, "Title", "Desc")
        assert iteration.iteration == 3
        assert (tmp_path / "iterations" / "3" / "iteration.json").exists()

    def test_explicit_number(self, tmp_path):
        iteration = IterationManager.create_initial(tmp_path / "work", 5, "Title", "Desc", iteration=2)
        assert iteration.iteration == 2

    def test_non_numeric_directory_defaults_to_one(self, tmp_path):
        iteration = IterationManager.create_initial(tmp_path / "work", 5, "Title", "Desc")
        assert iteration.iteration == 1

    def test_round_trip(self, tmp_path):
        path = tmp_path / "1"
        IterationManager.create_initial(path, 5, "Title", "Desc")
        loaded = IterationManager.load(path)
        assert loaded.title == "Title"
        assert loaded.description == "Desc"
        assert loaded.previous_context == {}

    def test_updates(self, tmp_path):
        iteration = IterationManager.create_initial(tmp_path / "1", 5, "Title", "Desc")
        iteration.update_title("New title")
        iteration.update_description("New desc")
        loaded = IterationManager.load(tmp_path / "1")
        assert loaded.title == "New title"
        assert loaded.description == "New desc"

    def test_previous_context(self, tmp_path):
        iteration = IterationManager.create_initial(tmp_path / "2", 5, "Title", "Desc")
        iteration.set_previous_context(plan="the plan", iteration_number=1)
        assert IterationManager.load(tmp_path / "2").previous_context == {
            "plan": "the plan",
            "iterationNumber": 1,
        }

    def test_artifacts(self, tmp_path):
        iteration = IterationManager.create_initial(tmp_path / "1", 5, "Title", "Desc")
        (tmp_path / "1" / "plan.md").write_text("# Plan", encoding="utf-8")
        (tmp_path / "1" / "summary.md").write_text("Done", encoding="utf-8")
        (tmp_path / "1" / "notes.md").write_text("ignored", encoding="utf-8")

        assert iteration.get_artifacts() == {"plan.md": "# Plan", "summary.md": "Done"}
        assert iteration.get_artifact("changes.md") is None

    def test_status_missing(self, tmp_path):
        iteration = IterationManager.create_initial(tmp_path / "1", 5, "Title", "Desc")
        assert iteration.status() is None

    def test_status_unreadable(self, tmp_path):
        iteration = IterationManager.create_initial(tmp_path / "1", 5, "Title", "Desc")
        iteration.status_path.write_text("not json", encoding="utf-8")
        assert iteration.status() is None

    def test_status_present(self, tmp_path):
        iteration = IterationManager.create_initial(tmp_path / "1", 5, "Title", "Desc")
        IterationStatusManager.create_initial(iteration.status_path, "5").update("running", "Go", 10)
        assert iteration.status().status == "running"
