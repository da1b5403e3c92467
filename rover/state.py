"""Atomic JSON document storage shared by the task and iteration managers."""

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict


class StateFileError(Exception):
    """Raised when a JSON state document is malformed or cannot be written."""
    pass


def now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with millisecond precision.

    Uses the trailing ``Z`` form so documents written by other tools that share
    the task directory compare equal.
    """
    stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return stamp.replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse a timestamp written by :func:`now_iso` (or any ISO-8601 string)."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def dump_json(data: Dict[str, Any]) -> str:
    """Serialize a document the way every state file is written: 2-space indent."""
    return json.dumps(data, indent=2, ensure_ascii=False)


def read_json(path: Path) -> Dict[str, Any]:
    """Read a JSON document.

    Args:
        path: Path to the JSON file

    Returns:
        The parsed JSON object

    Raises:
        FileNotFoundError: If the file does not exist
        StateFileError: If the file is not valid JSON or not a JSON object
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"State file not found: {path}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise StateFileError(f"Malformed state file {path}: {e}") from e

    if not isinstance(data, dict):
        raise StateFileError(
            f"Malformed state file {path}: expected a JSON object, "
            f"got {type(data).__name__}"
        )
    return data


def write_json(path: Path, data: Dict[str, Any]) -> None:
    """Write a JSON document atomically.

    Writes to a temp file in the destination directory, then renames it over
    the target so readers never see a partially written document.

    Args:
        path: Destination path
        data: JSON-serializable object
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(
        suffix='.tmp',
        prefix=f'{path.stem}_',
        dir=path.parent
    )
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(dump_json(data))
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
