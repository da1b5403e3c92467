"""Tests for agent failure classification."""

import json

import pytest

from rover.errors import (
    AGENT_ERROR,
    AUTHENTICATION_REQUIRED,
    CREDIT_EXHAUSTED,
    TIMEOUT,
    AgentError,
    AgentTimeoutError,
    AuthenticationError,
    CreditExhaustedError,
    RoverError,
    classify_failure,
    is_credit_exhausted,
    is_waiting_for_authentication,
    parse_agent_error,
)
from rover.launch import LaunchResult


class TestAgentError:
    """Tests for the AgentError hierarchy."""

    def test_all_are_rover_errors(self):
        assert issubclass(AgentError, RoverError)
        assert issubclass(AgentTimeoutError, AgentError)

    def test_to_outputs(self):
        error = CreditExhaustedError("claude")
        outputs = error.to_outputs()
        assert outputs["error_code"] == CREDIT_EXHAUSTED
        assert outputs["error_retryable"] == "true"
        assert "claude" in outputs["error"]

    def test_authentication_defaults(self):
        error = AuthenticationError("gemini")
        assert error.code == AUTHENTICATION_REQUIRED
        assert error.is_retryable is False
        assert "gemini" in error.message

    def test_timeout_keeps_milliseconds(self):
        error = AgentTimeoutError("too slow", timeout_ms=5000)
        assert error.code == TIMEOUT
        assert error.timeout_ms == 5000


class TestDetectors:
    """Tests for the text detectors."""

    @pytest.mark.parametrize("text", [
        "Waiting for auth...",
        "Please log in to continue",
        "Opening authentication page in your browser",
        "Visit https://example.com/device to authenticate",
        "Enter the authorization code:",
        "How would you like to authenticate for this project?",
    ])
    def test_auth_prompts(self, text):
        assert is_waiting_for_authentication(text)

    def test_normal_output_is_not_auth(self):
        assert not is_waiting_for_authentication("Reading files in src/")

    @pytest.mark.parametrize("text", [
        "Error: quota exceeded",
        "credit_exhausted",
        "insufficient_quota",
        "You have reached your usage limit",
        "HTTP 429 Too Many Requests",
        "rate limit reached",
    ])
    def test_credit_phrases(self, text):
        assert is_credit_exhausted(text)

    def test_normal_output_is_not_credit(self):
        assert not is_credit_exhausted("")
        assert not is_credit_exhausted("exit status 1")


class TestParseAgentError:
    """Tests for parse_agent_error()."""

    def test_structured_quota_payload(self):
        stdout = json.dumps({"error": {"type": "insufficient_quota", "message": "No credits left"}})
        error = parse_agent_error("", stdout, 1, "codex")
        assert isinstance(error, CreditExhaustedError)
        assert error.message == "No credits left"
        assert error.is_retryable

    def test_text_quota(self):
        error = parse_agent_error("Error: quota exceeded for today", "", 1, "gemini")
        assert isinstance(error, CreditExhaustedError)
        assert "gemini" in error.message

    def test_generic_failure_uses_first_stderr_line(self):
        error = parse_agent_error("\nboom happened\nsecond line", "", 2, "claude")
        assert type(error) is AgentError
        assert error.code == AGENT_ERROR
        assert error.message == "claude exited with code 2: boom happened"
        assert error.exit_code == 2
        assert not error.is_retryable

    def test_generic_failure_without_exit_code(self):
        error = parse_agent_error("", "", None, "codex")
        assert error.message == "codex failed"

    def test_embedded_error_message(self):
        stdout = 'prefix {"type": "error", "error": {"type": "api_error", "message": "Internal failure"}}'
        error = parse_agent_error("", stdout, 1, "claude")
        assert error.message == "claude exited with code 1: Internal failure"

    def test_tool_specific_retryable(self):
        error = parse_agent_error('{"type": "overloaded_error"}', "", 1, "claude")
        assert error.is_retryable

    def test_successful_result_envelope_is_not_an_error_payload(self):
        stdout = json.dumps({"type": "result", "is_error": False, "result": "fine"})
        error = parse_agent_error("something broke", stdout, 1, "claude")
        assert error.message == "claude exited with code 1: something broke"


class TestClassifyFailure:
    """Tests for classify_failure() priority order."""

    def test_auth_wins_over_everything(self):
        result = LaunchResult(None, "", "quota exceeded", timed_out=True)
        error = classify_failure(result, "claude", "Plan", 60, auth_detected=True)
        assert isinstance(error, AuthenticationError)

    def test_timeout(self):
        result = LaunchResult(None, "", "quota exceeded", timed_out=True)
        error = classify_failure(result, "claude", "Plan", 90, auth_detected=False)
        assert isinstance(error, AgentTimeoutError)
        assert error.message == "Step 'Plan' exceeded timeout of 90s"
        assert error.timeout_ms == 90000

    def test_other_cancellation_counts_as_auth(self):
        result = LaunchResult(None, "", "", canceled=True)
        error = classify_failure(result, "qwen", "Plan", 60)
        assert isinstance(error, AuthenticationError)

    def test_credit_exhaustion(self):
        result = LaunchResult(1, "", "Error: usage limit reached")
        error = classify_failure(result, "codex", "Plan", 60)
        assert isinstance(error, CreditExhaustedError)

    def test_generic(self):
        result = LaunchResult(3, "", "segfault")
        error = classify_failure(result, "codex", "Plan", 60)
        assert error.code == AGENT_ERROR
        assert error.message == "codex exited with code 3: segfault"
