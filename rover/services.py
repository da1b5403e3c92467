"""Interfaces of the services the commands depend on.

The sandbox and git services live outside this package; commands receive an
implementation of these protocols from their caller.
"""

from pathlib import Path
from typing import List, Optional, Protocol


class SandboxService(Protocol):
    """Container running an agent against a task's worktree."""

    async def create_and_start(self) -> str:
        """Create and start the container, returning its id."""
        ...

    async def stop_and_remove(self) -> None:
        ...

    async def run_interactive(self) -> int:
        """Attach an interactive shell, returning its exit code."""
        ...


class GitService(Protocol):
    """Git operations on the project repository."""

    def create_worktree(self, path: Path, branch: str, base_branch: Optional[str] = None) -> None:
        ...

    def remove_worktree(self, path: Path) -> None:
        ...

    def setup_sparse_checkout(self, path: Path, exclude_patterns: List[str]) -> None:
        ...

    def diff(self, worktree: Path, base_branch: Optional[str] = None) -> str:
        ...

    def diff_stats(self, worktree: Path, base_branch: Optional[str] = None) -> str:
        ...

    def commit(self, worktree: Path, message: str) -> None:
        ...

    def push(self, worktree: Path, branch: str) -> None:
        ...

    def merge_branch(self, branch: str, message: Optional[str] = None) -> bool:
        ...

    def list_conflicts(self) -> List[str]:
        ...

    def branch_exists(self, branch: str) -> bool:
        ...

    def current_branch(self) -> str:
        ...
