"""Exception hierarchy and agent failure classification.

Every Rover-specific exception inherits from RoverError. Agent failures are
reported as AgentError subclasses carrying a machine-readable ``code`` and an
``is_retryable`` flag; ``classify_failure`` turns the outcome of a failed
agent process into exactly one of them.
"""

import json
import re
from typing import Any, Dict, Iterator, Optional


class RoverError(Exception):
    """Base exception for Rover errors."""
    pass


class WorkflowError(RoverError):
    """Raised when a workflow definition cannot be loaded or is invalid."""
    pass


class RunnerError(RoverError):
    """Raised when a step runner cannot be set up (missing tool, bad step id...)."""
    pass


class UnknownAgentError(RunnerError):
    """Raised when a tool name is not one of the supported agents."""
    pass


class OutputParseError(RoverError):
    """Raised when the output extraction machinery itself fails.

    Missing or unreadable outputs never raise this; they become sentinel values.
    """
    pass


class TaskFileError(RoverError):
    """Raised when a task document cannot be read or written."""
    pass


class TaskNotFoundError(TaskFileError):
    """Raised when a task document does not exist."""
    pass


class TaskSchemaError(TaskFileError):
    """Raised when a task document is not valid JSON or cannot be migrated."""
    pass


class TaskValidationError(RoverError):
    """Raised when a task document fails schema validation before a write."""
    pass


class TaskStateError(RoverError):
    """Raised when a status transition is not allowed from the current state."""
    pass


# Error codes written into step outputs and consumed by the run command
AGENT_ERROR = "AGENT_ERROR"
AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
CREDIT_EXHAUSTED = "CREDIT_EXHAUSTED"
TIMEOUT = "TIMEOUT"


class AgentError(RoverError):
    """A classified agent failure.

    Attributes:
        message: Human readable description
        code: Machine readable error code
        is_retryable: Whether retrying the same step later may succeed
        exit_code: Exit code of the agent process, if it exited
        stdout: Raw standard output of the failed invocation
        stderr: Raw standard error of the failed invocation
    """

    code = AGENT_ERROR

    def __init__(
        self,
        message: str,
        is_retryable: bool = False,
        exit_code: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message)
        self.message = message
        self.is_retryable = is_retryable
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr

    def to_outputs(self) -> Dict[str, str]:
        """Output map entries recorded for a failed step."""
        return {
            "error": self.message,
            "error_code": self.code,
            "error_retryable": "true" if self.is_retryable else "false",
        }


class AuthenticationError(AgentError):
    """The agent is waiting for the user to log in."""

    code = AUTHENTICATION_REQUIRED

    def __init__(self, tool: str, message: Optional[str] = None):
        super().__init__(
            message or f"Authentication required for {tool}. Please authenticate with {tool} and try again.",
            is_retryable=False,
        )
        self.tool = tool


class CreditExhaustedError(AgentError):
    """The agent's provider refused the request because credits or quota ran out."""

    code = CREDIT_EXHAUSTED

    def __init__(self, tool: str, message: Optional[str] = None):
        super().__init__(
            message or (
                f'AI credits or quota exhausted for "{tool}". '
                "Use rover restart <task-id> when credits are available."
            ),
            is_retryable=True,
        )
        self.tool = tool


class AgentTimeoutError(AgentError):
    """The agent process ran longer than the step's timeout."""

    code = TIMEOUT

    def __init__(self, message: str, timeout_ms: int):
        super().__init__(message, is_retryable=False)
        self.timeout_ms = timeout_ms


# Credit / quota exhaustion phrases, matched case-insensitively
CREDIT_EXHAUSTED_PATTERN = re.compile(
    r"quota[_\s]exceeded|credits?[_\s]exhausted|insufficient[_\s]quota|"
    r"usage[_\s]limit|credit[_\s]limit|out[_\s]of[_\s]credits|\b429\b|rate[_\s]limit",
    re.IGNORECASE,
)

# Interactive login prompts printed by agent CLIs that would otherwise hang
_AUTH_PROMPT_PATTERNS = [
    re.compile(r"waiting for auth", re.IGNORECASE),
    re.compile(r"please (?:log ?in|sign in|authenticate)", re.IGNORECASE),
    re.compile(r"opening authentication page", re.IGNORECASE),
    re.compile(r"(?:visit|open) .{0,80}to (?:log ?in|sign in|authenticate)", re.IGNORECASE),
    re.compile(r"enter (?:the )?(?:authorization|verification) code", re.IGNORECASE),
    re.compile(r"how would you like to authenticate", re.IGNORECASE),
]

# Tool-specific hints that a generic failure is transient
_RETRYABLE_PATTERNS = {
    "claude": re.compile(r"overloaded_error|\b529\b", re.IGNORECASE),
    "gemini": re.compile(r"\b503\b|UNAVAILABLE|model is overloaded", re.IGNORECASE),
    "codex": re.compile(r"stream disconnected|\b502\b", re.IGNORECASE),
}


def is_waiting_for_authentication(text: str) -> bool:
    """Check whether agent output looks like an interactive authentication prompt."""
    return any(pattern.search(text) for pattern in _AUTH_PROMPT_PATTERNS)


def is_credit_exhausted(text: str) -> bool:
    """Check whether text mentions credit or quota exhaustion."""
    return bool(text) and CREDIT_EXHAUSTED_PATTERN.search(text) is not None


def _iter_json_objects(text: str) -> Iterator[Dict[str, Any]]:
    """Yield every JSON object embedded in text, outermost first."""
    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            obj, end = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        if isinstance(obj, dict):
            yield obj
        index = text.find("{", end)


def _find_error_payload(text: str) -> Optional[Dict[str, Any]]:
    """Find a structured error object (``{"error": {...}}`` or ``{"type": ..}``)."""
    for obj in _iter_json_objects(text):
        error = obj.get("error")
        if isinstance(error, dict):
            return error
        if isinstance(error, str):
            return {"message": error, "type": obj.get("type"), "code": obj.get("code")}
        if "type" in obj or "code" in obj:
            if obj.get("type") == "result" and not obj.get("is_error"):
                continue
            return obj
    return None


def _is_credit_payload(payload: Dict[str, Any]) -> bool:
    kind = f"{payload.get('type') or ''} {payload.get('code') or ''}".lower()
    return "quota" in kind or "credit" in kind


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


def parse_agent_error(
    stderr: str,
    stdout: str,
    exit_code: Optional[int],
    tool: Optional[str] = None,
    message: str = "",
) -> AgentError:
    """Classify a failed agent invocation from its output.

    Checks for credit exhaustion (structured JSON error payloads first, then
    the text pattern) and otherwise returns a generic AgentError.

    Args:
        stderr: Standard error of the agent process
        stdout: Standard output of the agent process
        exit_code: Exit code, or None if the process did not exit normally
        tool: Agent tool name, used in messages and retry heuristics
        message: Extra error text (e.g. an exception message) to inspect

    Returns:
        CreditExhaustedError or AgentError
    """
    stderr = stderr or ""
    stdout = stdout or ""
    tool_name = tool or "agent"
    combined = "\n".join(part for part in (stderr, stdout, message) if part)

    payload = _find_error_payload(combined)
    embedded = None
    if payload is not None and isinstance(payload.get("message"), str):
        embedded = payload["message"]

    if payload is not None and _is_credit_payload(payload):
        return CreditExhaustedError(tool_name, embedded)
    if is_credit_exhausted(combined):
        return CreditExhaustedError(tool_name, embedded)

    detail = embedded or _first_line(stderr) or _first_line(message) or _first_line(stdout)
    if exit_code is None:
        text = f"{tool_name} failed"
    else:
        text = f"{tool_name} exited with code {exit_code}"
    if detail:
        text = f"{text}: {detail}"

    retry_pattern = _RETRYABLE_PATTERNS.get(tool_name)
    retryable = bool(retry_pattern and retry_pattern.search(combined))

    return AgentError(
        text,
        is_retryable=retryable,
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
    )


def classify_failure(
    result: Any,
    tool: str,
    step_name: str,
    timeout_seconds: float,
    auth_detected: bool = False,
) -> AgentError:
    """Classify a failed launch in priority order.

    1. An authentication prompt was seen on stderr
    2. The process hit the step timeout
    3. The process was canceled for any other reason (treated as authentication)
    4. Credit / quota exhaustion in the output
    5. Generic failure

    Args:
        result: LaunchResult of the failed invocation
        tool: Agent tool name
        step_name: Human readable step name for the timeout message
        timeout_seconds: Configured step timeout
        auth_detected: Whether the stderr monitor matched an auth prompt

    Returns:
        The classified AgentError
    """
    if auth_detected:
        return AuthenticationError(tool)
    if result.timed_out:
        return AgentTimeoutError(
            f"Step '{step_name}' exceeded timeout of {timeout_seconds:g}s",
            timeout_ms=int(timeout_seconds * 1000),
        )
    if result.canceled:
        return AuthenticationError(tool)
    return parse_agent_error(result.stderr, result.stdout, result.exit_code, tool)


__all__ = [
    'RoverError',
    'WorkflowError',
    'RunnerError',
    'UnknownAgentError',
    'OutputParseError',
    'TaskFileError',
    'TaskNotFoundError',
    'TaskSchemaError',
    'TaskValidationError',
    'TaskStateError',
    'AgentError',
    'AuthenticationError',
    'CreditExhaustedError',
    'AgentTimeoutError',
    'AGENT_ERROR',
    'AUTHENTICATION_REQUIRED',
    'CREDIT_EXHAUSTED',
    'TIMEOUT',
    'is_waiting_for_authentication',
    'is_credit_exhausted',
    'parse_agent_error',
    'classify_failure',
]
