"""Tests for the subprocess step runner with the agent process mocked."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from rover.agents.base import Agent
from rover.agents.claude import ClaudeAgent
from rover.errors import (
    AUTHENTICATION_REQUIRED,
    CREDIT_EXHAUSTED,
    TIMEOUT,
    OutputParseError,
    RunnerError,
    WorkflowError,
)
from rover.iteration import IterationStatusManager
from rover.launch import LaunchResult
from rover.runner import AUTH_BUFFER_SIZE, AuthPromptDetector, Runner
from rover.workflow import WorkflowManager


def claude_envelope(result, **extra):
    return json.dumps({"type": "result", "is_error": False, "result": result, **extra})


@pytest.fixture
def all_tools_available():
    with patch.object(Agent, "is_available", return_value=True):
        yield


class TestAuthPromptDetector:
    """Tests for AuthPromptDetector."""

    def test_detects_prompt_and_sets_event(self):
        event = asyncio.Event()
        detector = AuthPromptDetector(event, "gemini")
        detector("Loading...\n")
        assert not detector.detected
        detector("Waiting for auth (press ESC to cancel)")
        assert detector.detected
        assert event.is_set()

    def test_prompt_split_across_chunks(self):
        event = asyncio.Event()
        detector = AuthPromptDetector(event, "qwen")
        detector("Please log")
        detector(" in to continue")
        assert detector.detected

    def test_buffer_is_bounded(self):
        detector = AuthPromptDetector(asyncio.Event(), "claude")
        detector("x" * (AUTH_BUFFER_SIZE * 2))
        assert len(detector._buffer) == AUTH_BUFFER_SIZE


class TestToolSelection:
    """Tests for Runner tool selection."""

    def test_uses_step_tool(self, workflow, all_tools_available):
        runner = Runner(workflow, "context", {}, {}, default_tool="codex")
        assert runner.tool == "codex"
        assert runner.agent.name == "codex"

    def test_falls_back_to_workflow_default(self, workflow):
        with patch.object(Agent, "is_available", autospec=True, side_effect=lambda self: self.name == "claude"):
            runner = Runner(workflow, "context", {}, {}, default_tool="gemini")
        assert runner.tool == "claude"

    def test_unavailable_without_fallback_raises(self, workflow):
        with patch.object(Agent, "is_available", return_value=False):
            with pytest.raises(RunnerError, match="not available"):
                Runner(workflow, "context", {}, {})

    def test_no_tool_configured(self, workflow_dict):
        del workflow_dict["defaults"]
        workflow = WorkflowManager.from_dict(workflow_dict)
        with pytest.raises(RunnerError, match="No tool configured"):
            Runner(workflow, "context", {}, {})

    def test_unknown_step(self, workflow, all_tools_available):
        with pytest.raises(WorkflowError, match="not found"):
            Runner(workflow, "missing", {}, {})


class TestRun:
    """Tests for Runner.run()."""

    @pytest.mark.asyncio
    async def test_success_parses_outputs_and_usage(self, workflow, tmp_path, all_tools_available):
        stdout = claude_envelope(
            '{"summary": "Added a flag"}',
            usage={"input_tokens": 3, "output_tokens": 4},
            total_cost_usd=0.01,
        )
        mock_launch = AsyncMock(return_value=LaunchResult(0, stdout, ""))
        steps_output = {"context": {"complexity": "simple", "context_file": "context.md"}}
        runner = Runner(workflow, "implement", {}, steps_output, cwd=tmp_path)

        with patch("rover.runner.launch", new=mock_launch):
            result = await runner.run()

        assert result.success
        assert result.outputs["summary"] == "Added a flag"
        assert result.tokens == 7
        assert result.cost == 0.01
        assert result.outputs["raw_output"] == stdout
        assert result.outputs["input_prompt"].startswith("Complexity is simple.")

        args, kwargs = mock_launch.call_args
        assert args[0] == "claude"
        assert kwargs["input"] == result.outputs["input_prompt"]
        assert kwargs["timeout"] == 1800
        assert kwargs["cwd"] == str(tmp_path)

    @pytest.mark.asyncio
    async def test_timeout_is_classified(self, workflow, tmp_path, all_tools_available):
        mock_launch = AsyncMock(return_value=LaunchResult(None, "", "", timed_out=True))
        runner = Runner(workflow, "implement", {}, {}, cwd=tmp_path, default_timeout=5)

        with patch("rover.runner.launch", new=mock_launch):
            result = await runner.run()

        assert not result.success
        assert result.error_code == TIMEOUT
        assert result.outputs["error_code"] == TIMEOUT
        assert result.outputs["error_retryable"] == "false"
        assert result.error == "Step 'Implementation' exceeded timeout of 5s"

    @pytest.mark.asyncio
    async def test_zero_timeout_launches_without_limit(self, workflow, tmp_path, all_tools_available):
        mock_launch = AsyncMock(return_value=LaunchResult(0, claude_envelope('{"summary": "x"}'), ""))
        runner = Runner(workflow, "implement", {}, {}, cwd=tmp_path, default_timeout=0)

        with patch("rover.runner.launch", new=mock_launch):
            result = await runner.run()

        assert result.success
        assert mock_launch.call_args.kwargs["timeout"] == 0

    @pytest.mark.asyncio
    async def test_auth_prompt_cancels(self, workflow, tmp_path, all_tools_available):
        async def fake_launch(binary, args, **kwargs):
            kwargs["on_stderr"]("Opening authentication page in your browser")
            assert kwargs["cancel_event"].is_set()
            return LaunchResult(None, "", "Opening authentication page", canceled=True)

        runner = Runner(workflow, "implement", {}, {}, cwd=tmp_path)
        with patch("rover.runner.launch", new=fake_launch):
            result = await runner.run()

        assert not result.success
        assert result.error_code == AUTHENTICATION_REQUIRED

    @pytest.mark.asyncio
    async def test_credit_exhaustion(self, workflow, tmp_path, all_tools_available):
        failed = LaunchResult(1, "", "Error: insufficient_quota")
        runner = Runner(workflow, "implement", {}, {}, cwd=tmp_path, default_tool="codex")
        with patch("rover.runner.launch", new=AsyncMock(return_value=failed)):
            result = await runner.run()

        assert result.error_code == CREDIT_EXHAUSTED
        assert result.outputs["error_retryable"] == "true"

    @pytest.mark.asyncio
    async def test_claude_nonzero_exit_recovered(self, workflow, tmp_path, all_tools_available):
        stdout = claude_envelope('{"summary": "done anyway"}')
        runner = Runner(workflow, "implement", {}, {}, cwd=tmp_path)
        with patch("rover.runner.launch", new=AsyncMock(return_value=LaunchResult(1, stdout, "hook error"))):
            result = await runner.run()

        assert result.success
        assert result.outputs["summary"] == "done anyway"

    @pytest.mark.asyncio
    async def test_failed_recovery_keeps_classified_error(self, workflow, tmp_path, all_tools_available):
        failed = LaunchResult(1, "", "Error: insufficient_quota")
        runner = Runner(workflow, "implement", {}, {}, cwd=tmp_path)
        with patch("rover.runner.launch", new=AsyncMock(return_value=failed)):
            with patch.object(ClaudeAgent, "recover_from_error", side_effect=RuntimeError("disk full")) as recover:
                result = await runner.run()

        recover.assert_called_once()
        assert not result.success
        assert result.error_code == CREDIT_EXHAUSTED
        assert result.outputs["error_code"] == CREDIT_EXHAUSTED
        assert "disk full" not in result.error

    @pytest.mark.asyncio
    async def test_parse_failure_becomes_error_outputs(self, workflow, tmp_path, all_tools_available):
        runner = Runner(workflow, "implement", {}, {}, cwd=tmp_path)
        with patch("rover.runner.launch", new=AsyncMock(return_value=LaunchResult(0, claude_envelope("{}"), ""))):
            with patch("rover.runner.ResponseParser.parse_subprocess_outputs",
                       side_effect=OutputParseError("boom")):
                result = await runner.run()

        assert not result.success
        assert result.outputs["error"] == "boom"
        assert result.outputs["error_code"] == "AGENT_ERROR"

    @pytest.mark.asyncio
    async def test_progress_reported(self, workflow, tmp_path, all_tools_available):
        status = IterationStatusManager.create_initial(tmp_path / "status.json", "7")
        runner = Runner(
            workflow, "implement", {}, {}, cwd=tmp_path,
            status_manager=status, total_steps=2, step_index=1,
        )
        stdout = claude_envelope('{"summary": "x"}')
        with patch("rover.runner.launch", new=AsyncMock(return_value=LaunchResult(0, stdout, ""))):
            await runner.run()

        reloaded = IterationStatusManager.load(tmp_path / "status.json")
        assert reloaded.status == "running"
        assert reloaded.progress == 100
        assert reloaded.current_step == "Implementation"

    @pytest.mark.asyncio
    async def test_reporter_notified(self, workflow, tmp_path, all_tools_available):
        reporter = MagicMock()
        runner = Runner(workflow, "implement", {}, {}, cwd=tmp_path, reporter=reporter)
        failed = LaunchResult(None, "", "", timed_out=True)
        with patch("rover.runner.launch", new=AsyncMock(return_value=failed)):
            await runner.run()

        reporter.step_started.assert_called_once()
        reporter.step_failed.assert_called_once()
        reporter.step_completed.assert_not_called()
