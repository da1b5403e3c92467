"""Console output reporter for workflow runs."""

import os
import shutil
import sys
from typing import Dict, List, Optional, Sequence

# Output keys that are bookkeeping rather than results
_HIDDEN_OUTPUT_PREFIXES = ("raw_", "input_")
_HIDDEN_OUTPUT_KEYS = {"error", "error_code", "error_retryable"}


class ConsoleReporter:
    """Handles formatted console output for workflow runs.

    Everything is printed as it happens (never buffered). A single reporter is
    created by the CLI and passed to the runners and commands; there is no
    global verbosity flag.

    Args:
        verbose: Echo full prompts and extra diagnostics
        quiet: Suppress informational lines; warnings, errors and the final
            summary are still shown
        width: Override terminal width. If None, auto-detect from environment.
    """

    RESET_COLOR = '\033[0m'
    ERROR_COLOR = '\033[31m'    # Red
    WARNING_COLOR = '\033[33m'  # Yellow
    SUCCESS_COLOR = '\033[32m'  # Green
    INFO_COLOR = '\033[90m'     # Gray
    TITLE_COLOR = '\033[1;36m'  # Bold cyan

    # Width constants for dynamic truncation
    MIN_CONTENT_WIDTH = 40
    MAX_CONTENT_WIDTH = 160
    DEFAULT_TERMINAL_WIDTH = 80

    # Output values longer than this are cut in the step results listing
    RESULT_PREVIEW_LENGTH = 100

    def __init__(self, verbose: bool = False, quiet: bool = False, width: Optional[int] = None):
        self.verbose = verbose
        self.quiet = quiet
        self._width_override = width

        self._supports_color = self._detect_color_support()
        self._supports_unicode = self._detect_unicode_support()

        if self._supports_unicode:
            self.TREE_BRANCH = "├──"
            self.TREE_END = "└──"
            self.CHECK = "✓"
            self.CROSS = "✗"
            self.WARN = "⚠"
            self.ARROW = "→"
        else:
            self.TREE_BRANCH = "|--"
            self.TREE_END = "`--"
            self.CHECK = "OK"
            self.CROSS = "X"
            self.WARN = "!"
            self.ARROW = "->"

    def _detect_color_support(self) -> bool:
        """Detect if terminal supports colors."""
        if not sys.stdout.isatty():
            return False
        if os.getenv('NO_COLOR'):
            return False
        term = os.getenv('TERM', '')
        if term and 'color' in term.lower():
            return True
        if os.getenv('WT_SESSION'):
            return True
        if getattr(sys.stdout, 'encoding', None) and 'utf' in sys.stdout.encoding.lower():
            return True
        return False

    def _detect_unicode_support(self) -> bool:
        """Detect if terminal supports Unicode symbols."""
        if not sys.stdout.isatty():
            return False
        if getattr(sys.stdout, 'encoding', None) and 'utf' in sys.stdout.encoding.lower():
            return True
        term = os.getenv('TERM', '')
        if term and ('xterm' in term.lower() or 'utf' in term.lower()):
            return True
        if os.getenv('WT_SESSION'):
            return True
        return False

    def _detect_terminal_width(self) -> int:
        """Detect terminal width: override, then COLUMNS, then the TTY, then 80."""
        if self._width_override is not None:
            return self._width_override

        columns_env = os.getenv('COLUMNS')
        if columns_env:
            try:
                width = int(columns_env)
                if width > 0:
                    return width
            except ValueError:
                pass

        try:
            return shutil.get_terminal_size().columns
        except (OSError, AttributeError):
            pass

        return self.DEFAULT_TERMINAL_WIDTH

    def _available_width(self, prefix_length: int) -> int:
        available = self._detect_terminal_width() - prefix_length - 2
        return max(self.MIN_CONTENT_WIDTH, min(available, self.MAX_CONTENT_WIDTH))

    def _truncate_message(self, message: str, max_width: int) -> str:
        if len(message) <= max_width:
            return message
        return message[:max_width - 3] + "..."

    def _color(self, text: str, color: str) -> str:
        if not self._supports_color:
            return text
        return f"{color}{text}{self.RESET_COLOR}"

    def _print(self, message: str) -> None:
        """Print message to stdout."""
        print(message, flush=True)

    def _tree(self, lines: Sequence[str], color: Optional[str] = None) -> None:
        for index, line in enumerate(lines):
            prefix = self.TREE_END if index == len(lines) - 1 else self.TREE_BRANCH
            text = f"{prefix} {line}"
            self._print(self._color(text, color) if color else text)

    # Workflow level

    def workflow_started(self, name: str, description: str, step_names: List[str]) -> None:
        """Display the workflow header and its step list."""
        self._print(self._color(f"Agent Workflow: {name}", self.TITLE_COLOR))
        if description and not self.quiet:
            self._print(self._color(description, self.INFO_COLOR))
        if not self.quiet and step_names:
            self._print("")
            self._print("Steps:")
            self._tree([f"{i + 1}. {step}" for i, step in enumerate(step_names)])

    def inputs_summary(self, inputs: Dict[str, str], defaults: Sequence[str] = ()) -> None:
        """Display user-provided inputs and which ones fell back to defaults."""
        if self.quiet or not inputs:
            return
        self._print("")
        self._print("Inputs:")
        lines = []
        for key, value in inputs.items():
            preview = self._truncate_message(value.splitlines()[0] if value else "", 60)
            suffix = " (default)" if key in defaults else ""
            lines.append(f"{key}={preview}{suffix}")
        self._tree(lines)

    def context_injected(self) -> None:
        if not self.quiet:
            self._print(self._color(f"{self.CHECK} Context sources injected into workflow steps", self.INFO_COLOR))

    def workflow_summary(self, results: Sequence, total_duration: float) -> None:
        """Display the run summary.

        Args:
            results: RunnerStepResult objects, in execution order
            total_duration: Wall-clock seconds for the whole run
        """
        succeeded = sum(1 for r in results if r.success)
        failed = len(results) - succeeded
        tokens = sum(r.tokens or 0 for r in results)
        cost = sum(r.cost or 0.0 for r in results)

        self._print("")
        self._print(self._color("Workflow Summary", self.TITLE_COLOR))
        lines = [
            f"Duration: {total_duration:.2f}s",
            f"Steps: {succeeded} succeeded, {failed} failed",
        ]
        if tokens:
            lines.append(f"Tokens: {tokens}")
        if cost:
            lines.append(f"Cost: ${cost:.4f}")
        self._tree(lines)

        if failed:
            self._print("")
            for result in results:
                if not result.success:
                    self._print(self._color(f"{self.CROSS} {result.id}: {result.error}", self.ERROR_COLOR))
        else:
            self._print(self._color(f"\n{self.CHECK} Workflow completed successfully", self.SUCCESS_COLOR))

    # Step level

    def step_started(self, step_name: str, tool: str, model: Optional[str] = None,
                     index: Optional[int] = None, total: Optional[int] = None) -> None:
        """Display the header for a step about to run."""
        position = f"[{index + 1}/{total}] " if index is not None and total else ""
        agent = f"{tool} ({model})" if model else tool
        self._print("")
        self._print(self._color(f"{position}{step_name} {self.ARROW} {agent}", self.TITLE_COLOR))

    def prompt(self, step_name: str, prompt: str) -> None:
        """Echo the fully resolved prompt (verbose mode only)."""
        if not self.verbose:
            return
        self._print(self._color(f"\nPrompt for '{step_name}':", self.INFO_COLOR))
        self._print(prompt)
        self._print(self._color("-" * min(self._detect_terminal_width(), 80), self.INFO_COLOR))

    def prompt_warnings(self, warnings: Sequence[str]) -> None:
        """Display unresolved placeholders as a tree."""
        if not warnings:
            return
        self._print(self._color("\nPrompt Template Warnings:", self.WARNING_COLOR))
        self._tree(list(warnings), self.WARNING_COLOR)

    def step_completed(self, step_name: str, duration: float) -> None:
        self._print(self._color(
            f"{self.CHECK} Step '{step_name}' completed successfully ({duration:.2f}s)",
            self.SUCCESS_COLOR
        ))

    def step_failed(self, step_name: str, message: str, hint: Optional[str] = None) -> None:
        """Display a step failure and an optional actionable hint."""
        self._print(self._color(f"{self.CROSS} Step '{step_name}' failed: {message}", self.ERROR_COLOR))
        if hint:
            self._print(self._color(f"  {hint}", self.WARNING_COLOR))

    def step_results(self, step_name: str, outputs: Dict[str, str]) -> None:
        """Display a step's user-facing outputs, one line each."""
        if self.quiet:
            return
        visible = {
            key: value for key, value in outputs.items()
            if not key.startswith(_HIDDEN_OUTPUT_PREFIXES) and key not in _HIDDEN_OUTPUT_KEYS
        }
        if not visible:
            return
        self._print(f"Results for '{step_name}':")
        width = min(self.RESULT_PREVIEW_LENGTH, self._available_width(len(self.TREE_BRANCH) + 1))
        lines = []
        for key, value in visible.items():
            first_line = value.splitlines()[0] if value else ""
            if len(first_line) < len(value):
                first_line += "..."
            lines.append(self._truncate_message(f"{key}: {first_line}", width))
        self._tree(lines)

    def usage(self, tokens: Optional[int], cost: Optional[float], model: Optional[str]) -> None:
        """Display usage statistics when the agent reported any."""
        parts = []
        if tokens:
            parts.append(f"{tokens} tokens")
        if cost:
            parts.append(f"${cost:.4f}")
        if model:
            parts.append(model)
        if parts:
            self._print(self._color("  " + ", ".join(parts), self.INFO_COLOR))

    # Generic messages

    def info(self, message: str) -> None:
        if not self.quiet:
            self._print(self._color(message, self.INFO_COLOR))

    def debug(self, message: str) -> None:
        if self.verbose:
            self._print(self._color(message, self.INFO_COLOR))

    def success(self, message: str) -> None:
        self._print(self._color(f"{self.CHECK} {message}", self.SUCCESS_COLOR))

    def warning(self, message: str) -> None:
        self._print(self._color(f"{self.WARN} {message}", self.WARNING_COLOR))

    def error(self, message: str) -> None:
        self._print(self._color(f"{self.CROSS} {message}", self.ERROR_COLOR))
