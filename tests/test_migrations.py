"""Tests for the description.json migration chain."""

import pytest

from rover.migrations import MigrationError, migrate_status, migrate_task, needs_migration
from rover.schemas import CURRENT_TASK_SCHEMA_VERSION, TaskDescription


def legacy_document(**overrides):
    doc = {
        "id": "4",
        "title": "Old task",
        "description": "From an old release",
        "status": "running",
        "createdAt": "2024-05-01T10:00:00.000Z",
        "startedAt": "",
        "inputs": {"count": 3},
    }
    doc.update(overrides)
    return doc


class TestMigrateStatus:
    """Tests for migrate_status()."""

    @pytest.mark.parametrize("legacy,expected", [
        ("new", "NEW"),
        ("running", "IN_PROGRESS"),
        ("in_progress", "IN_PROGRESS"),
        ("COMPLETED", "COMPLETED"),
        ("merged", "MERGED"),
        ("pushed", "PUSHED"),
        ("paused_credits", "PAUSED_CREDITS"),
        ("something-else", "NEW"),
        (None, "NEW"),
    ])
    def test_spellings(self, legacy, expected):
        assert migrate_status(legacy) == expected


class TestMigrateTask:
    """Tests for migrate_task()."""

    def test_legacy_document_reaches_current_version(self):
        migrated = migrate_task(legacy_document(dockerHost="unix:///var/run/docker.sock"))

        assert migrated["version"] == CURRENT_TASK_SCHEMA_VERSION
        assert migrated["id"] == 4
        assert migrated["status"] == "IN_PROGRESS"
        assert migrated["inputs"] == {"count": "3"}
        assert migrated["restartCount"] == 0
        assert migrated["iterations"] == 1
        assert migrated["worktreePath"] == ""
        assert migrated["branchName"] == ""
        assert migrated["workflowName"] == "swe"
        assert migrated["sandboxMetadata"] == {"dockerHost": "unix:///var/run/docker.sock"}
        assert "dockerHost" not in migrated
        assert "startedAt" not in migrated
        TaskDescription.model_validate(migrated)

    def test_input_is_not_modified(self):
        doc = legacy_document()
        migrate_task(doc)
        assert doc == legacy_document()

    def test_current_version_is_copied(self):
        doc = migrate_task(legacy_document())
        again = migrate_task(doc)
        assert again == doc
        assert again is not doc
        assert not needs_migration(doc)

    def test_newer_version_rejected(self):
        with pytest.raises(MigrationError, match="newer than supported"):
            migrate_task(legacy_document(version="9.0"))

    def test_unknown_version_treated_as_legacy(self):
        migrated = migrate_task(legacy_document(version="banana"))
        assert migrated["version"] == CURRENT_TASK_SCHEMA_VERSION
        assert migrated["id"] == 4

    def test_non_numeric_id_rejected(self):
        with pytest.raises(MigrationError, match="not a number"):
            migrate_task(legacy_document(id="abc"))

    def test_missing_id_taken_from_task_id(self):
        doc = legacy_document()
        del doc["id"]
        assert migrate_task(doc, task_id=7)["id"] == 7

    def test_stored_id_wins_over_task_id(self):
        assert migrate_task(legacy_document(), task_id=7)["id"] == 4

    def test_missing_id_without_task_id_rejected(self):
        doc = legacy_document()
        del doc["id"]
        with pytest.raises(MigrationError, match="not a number"):
            migrate_task(doc)

    def test_missing_title_gets_placeholder(self):
        migrated = migrate_task(legacy_document(title=""))
        assert migrated["title"] == "Unknown Task"
        assert migrated["uuid"]

    def test_github_issue_becomes_source(self):
        doc = legacy_document(version="1.2", githubIssue={"number": 12, "repository": "acme/app"})
        doc.update(id=4, status="NEW", uuid="7d4c1bd2-8d0a-4f4e-9d3b-1c8f1b0f2a11", workflowName="swe")
        migrated = migrate_task(doc)
        assert migrated["source"] == {
            "type": "github",
            "id": "12",
            "url": "https://github.com/acme/app/issues/12",
            "ref": {"owner": "acme", "repo": "app", "number": 12},
        }
        assert "githubIssue" not in migrated

    def test_github_issue_without_owner_has_no_ref(self):
        doc = legacy_document(version="1.2", githubIssue={"number": 3, "repository": "app"})
        migrated = migrate_task(doc)
        assert migrated["source"]["url"] == "https://github.com/app/issues/3"
        assert "ref" not in migrated["source"]

    def test_restart_count_is_kept(self):
        doc = legacy_document(version="1.1", restartCount=2)
        assert migrate_task(doc)["restartCount"] == 2

    def test_existing_sandbox_metadata_wins(self):
        doc = legacy_document(version="1.4", dockerHost="tcp://a", sandboxMetadata={"dockerHost": "tcp://b", "x": 1})
        migrated = migrate_task(doc)
        assert migrated["sandboxMetadata"] == {"dockerHost": "tcp://b", "x": 1}

    def test_zero_iterations_fixed(self):
        doc = legacy_document(version="1.3", iterations=0)
        assert migrate_task(doc)["iterations"] == 1
