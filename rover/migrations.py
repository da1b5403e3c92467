"""Schema migrations for ``description.json``.

Each migration is a pure function taking a document at one version and
returning a new document at the next version. ``migrate_task`` runs the
chain from the document's version up to ``CURRENT_TASK_SCHEMA_VERSION``.

Version history:
    1.0  legacy documents (lowercase statuses, string ids, no version key)
    1.1  normalized core fields and status spellings
    1.2  restart tracking (``restartCount``)
    1.3  ``githubIssue`` replaced by a generic ``source``
    1.4  workspace fields always present, ``iterations`` >= 1
    1.5  ``dockerHost`` moved into ``sandboxMetadata``
"""

import copy
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from .schemas import CURRENT_TASK_SCHEMA_VERSION
from .state import now_iso

Document = Dict[str, Any]

LEGACY_VERSION = "1.0"

# Legacy status spellings -> current enum values
_LEGACY_STATUS = {
    "new": "NEW",
    "in_progress": "IN_PROGRESS",
    "running": "IN_PROGRESS",
    "iterating": "ITERATING",
    "completed": "COMPLETED",
    "failed": "FAILED",
    "paused_credits": "PAUSED_CREDITS",
    "merged": "MERGED",
    "pushed": "PUSHED",
}

# Optional timestamps that must be absent rather than empty
_OPTIONAL_TIMESTAMPS = (
    "startedAt", "completedAt", "failedAt", "lastIterationAt",
    "lastStatusCheck", "lastRestartAt", "runningAt", "errorAt",
)


class MigrationError(Exception):
    """Raised when a document cannot be brought to the current schema version."""
    pass


def migrate_status(status: Any) -> str:
    """Convert a legacy status spelling to the current enum value.

    Unknown or missing statuses become ``NEW``.
    """
    if not isinstance(status, str):
        return "NEW"
    return _LEGACY_STATUS.get(status.strip().lower(), "NEW")


def _v1_0_to_v1_1(doc: Document, task_id: Optional[int] = None) -> Document:
    """Fill required core fields and normalize the status spelling.

    Legacy documents may lack an ``id``; the id of the task directory is
    used then.
    """
    out = copy.deepcopy(doc)

    raw_id = out.get("id") or task_id
    try:
        out["id"] = int(raw_id)
    except (TypeError, ValueError):
        raise MigrationError(f"Task id '{raw_id}' is not a number")

    out["uuid"] = out.get("uuid") or str(uuid.uuid4())
    out["title"] = out.get("title") or "Unknown Task"
    out["description"] = out.get("description") or ""
    out["inputs"] = {str(k): str(v) for k, v in (out.get("inputs") or {}).items()}
    out["status"] = migrate_status(out.get("status"))
    out["createdAt"] = out.get("createdAt") or now_iso()
    out["workflowName"] = out.get("workflowName") or "swe"

    for key in _OPTIONAL_TIMESTAMPS:
        if not out.get(key):
            out.pop(key, None)

    out["version"] = "1.1"
    return out


def _v1_1_to_v1_2(doc: Document, task_id: Optional[int] = None) -> Document:
    """Start tracking restarts."""
    out = copy.deepcopy(doc)
    out.setdefault("restartCount", 0)
    out["version"] = "1.2"
    return out


def _v1_2_to_v1_3(doc: Document, task_id: Optional[int] = None) -> Document:
    """Replace ``githubIssue`` with a ``source`` record."""
    out = copy.deepcopy(doc)
    issue = out.pop("githubIssue", None)
    if isinstance(issue, dict) and "source" not in out:
        number = issue.get("number")
        repository = issue.get("repository")
        source = {"type": "github"}
        if number is not None:
            source["id"] = str(number)
        if repository and number is not None:
            source["url"] = f"https://github.com/{repository}/issues/{number}"
            owner, _, repo = str(repository).partition("/")
            if owner and repo and "/" not in repo:
                source["ref"] = {"owner": owner, "repo": repo, "number": number}
        out["source"] = source
    out["version"] = "1.3"
    return out


def _v1_3_to_v1_4(doc: Document, task_id: Optional[int] = None) -> Document:
    """Guarantee workspace fields and a valid iteration counter."""
    out = copy.deepcopy(doc)
    out["worktreePath"] = out.get("worktreePath") or ""
    out["branchName"] = out.get("branchName") or ""
    iterations = out.get("iterations")
    if not isinstance(iterations, int) or iterations < 1:
        out["iterations"] = 1
    out["version"] = "1.4"
    return out


def _v1_4_to_v1_5(doc: Document, task_id: Optional[int] = None) -> Document:
    """Move the single ``dockerHost`` field into the sandbox metadata bag."""
    out = copy.deepcopy(doc)
    docker_host = out.pop("dockerHost", None)
    if docker_host:
        metadata = dict(out.get("sandboxMetadata") or {})
        metadata.setdefault("dockerHost", docker_host)
        out["sandboxMetadata"] = metadata
    out["version"] = "1.5"
    return out


MIGRATIONS: List[Tuple[str, Callable[[Document, Optional[int]], Document]]] = [
    ("1.0", _v1_0_to_v1_1),
    ("1.1", _v1_1_to_v1_2),
    ("1.2", _v1_2_to_v1_3),
    ("1.3", _v1_3_to_v1_4),
    ("1.4", _v1_4_to_v1_5),
]

KNOWN_VERSIONS = [source for source, _ in MIGRATIONS] + [CURRENT_TASK_SCHEMA_VERSION]


def _version_key(version: str) -> Tuple[int, ...]:
    try:
        return tuple(int(part) for part in version.split("."))
    except ValueError:
        return ()


def needs_migration(doc: Document) -> bool:
    return doc.get("version") != CURRENT_TASK_SCHEMA_VERSION


def migrate_task(doc: Document, task_id: Optional[int] = None) -> Document:
    """Run the migration chain until the document reaches the current version.

    Documents without a version, or with a version string we never shipped,
    are treated as legacy 1.0 documents.

    Args:
        doc: The raw document as loaded from disk (not modified)
        task_id: Id of the task the document belongs to; fills in a
            missing ``id`` in legacy documents

    Returns:
        A new document at ``CURRENT_TASK_SCHEMA_VERSION``

    Raises:
        MigrationError: If the document claims a newer version than this
            release understands, or a field cannot be converted
    """
    version = doc.get("version")
    if version == CURRENT_TASK_SCHEMA_VERSION:
        return copy.deepcopy(doc)

    if isinstance(version, str):
        key = _version_key(version)
        if key and key > _version_key(CURRENT_TASK_SCHEMA_VERSION):
            raise MigrationError(
                f"Task document version {version} is newer than supported "
                f"version {CURRENT_TASK_SCHEMA_VERSION}"
            )

    if version not in KNOWN_VERSIONS:
        version = LEGACY_VERSION

    start = next(i for i, (source, _) in enumerate(MIGRATIONS) if source == version)
    migrated = doc
    for _, step in MIGRATIONS[start:]:
        migrated = step(migrated, task_id)
    return migrated
