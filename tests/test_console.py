"""Tests for console output."""

from unittest.mock import patch

import pytest

from rover.console import ConsoleReporter
from rover.runner import RunnerStepResult


@pytest.fixture
def reporter():
    return ConsoleReporter(width=100)


class TestConsoleReporter:
    """Tests for ConsoleReporter class."""

    def test_plain_output_when_not_a_tty(self, reporter, capsys):
        """Test that captured output has no colors and uses ASCII symbols."""
        reporter.success("done")
        out = capsys.readouterr().out
        assert out == "OK done\n"
        assert "\033[" not in out

    def test_no_color_env(self, monkeypatch):
        reporter = ConsoleReporter()
        monkeypatch.setenv("NO_COLOR", "1")
        with patch("rover.console.sys") as mock_sys:
            mock_sys.stdout.isatty.return_value = True
            assert reporter._detect_color_support() is False

    def test_color_on_color_terminal(self, monkeypatch):
        reporter = ConsoleReporter()
        monkeypatch.delenv("NO_COLOR", raising=False)
        monkeypatch.setenv("TERM", "xterm-256color")
        with patch("rover.console.sys") as mock_sys:
            mock_sys.stdout.isatty.return_value = True
            assert reporter._detect_color_support() is True

    def test_workflow_started_lists_steps(self, reporter, capsys):
        reporter.workflow_started("swe", "Implement a change", ["Context", "Implementation"])
        out = capsys.readouterr().out
        assert "Agent Workflow: swe" in out
        assert "Implement a change" in out
        assert "|-- 1. Context" in out
        assert "`-- 2. Implementation" in out

    def test_workflow_started_quiet(self, capsys):
        ConsoleReporter(quiet=True).workflow_started("swe", "Implement a change", ["Context"])
        out = capsys.readouterr().out
        assert "Agent Workflow: swe" in out
        assert "Implement a change" not in out
        assert "Steps:" not in out

    def test_inputs_summary_marks_defaults(self, reporter, capsys):
        reporter.inputs_summary({"description": "first line\nsecond", "effort": "3"}, ["effort"])
        out = capsys.readouterr().out
        assert "description=first line" in out
        assert "second" not in out
        assert "effort=3 (default)" in out

    def test_info_suppressed_in_quiet_mode(self, capsys):
        quiet = ConsoleReporter(quiet=True)
        quiet.info("hidden")
        quiet.warning("shown")
        quiet.error("also shown")
        out = capsys.readouterr().out
        assert "hidden" not in out
        assert "! shown" in out
        assert "X also shown" in out

    def test_debug_only_when_verbose(self, capsys):
        ConsoleReporter().debug("quiet debug")
        ConsoleReporter(verbose=True).debug("loud debug")
        out = capsys.readouterr().out
        assert "quiet debug" not in out
        assert "loud debug" in out

    def test_prompt_only_when_verbose(self, capsys):
        ConsoleReporter(width=80).prompt("Plan", "secret prompt")
        assert capsys.readouterr().out == ""
        ConsoleReporter(verbose=True, width=80).prompt("Plan", "full prompt")
        assert "full prompt" in capsys.readouterr().out

    def test_step_started_shows_position_and_model(self, reporter, capsys):
        reporter.step_started("Plan", "claude", "sonnet", index=0, total=3)
        assert "[1/3] Plan -> claude (sonnet)" in capsys.readouterr().out

    def test_step_failed_with_hint(self, reporter, capsys):
        reporter.step_failed("Plan", "not logged in", hint="Run `claude` to log in")
        out = capsys.readouterr().out
        assert "X Step 'Plan' failed: not logged in" in out
        assert "Run `claude` to log in" in out

    def test_step_results_hide_bookkeeping(self, reporter, capsys):
        reporter.step_results("Plan", {
            "plan": "line one\nline two",
            "raw_output": "{}",
            "input_description": "x",
            "error": "",
        })
        out = capsys.readouterr().out
        assert "plan: line one..." in out
        assert "raw_output" not in out
        assert "input_description" not in out

    def test_step_results_truncated(self, capsys):
        ConsoleReporter(width=60).step_results("Plan", {"plan": "x" * 300})
        line = capsys.readouterr().out.splitlines()[-1]
        assert line.endswith("...")
        assert len(line) < 100

    def test_usage(self, reporter, capsys):
        reporter.usage(1200, 0.05, "sonnet")
        reporter.usage(None, None, None)
        assert capsys.readouterr().out == "  1200 tokens, $0.0500, sonnet\n"

    def test_summary_success(self, reporter, capsys):
        results = [
            RunnerStepResult(id="a", success=True, tokens=100, cost=0.01),
            RunnerStepResult(id="b", success=True, tokens=50),
        ]
        reporter.workflow_summary(results, 3.5)
        out = capsys.readouterr().out
        assert "Duration: 3.50s" in out
        assert "Steps: 2 succeeded, 0 failed" in out
        assert "Tokens: 150" in out
        assert "Cost: $0.0100" in out
        assert "Workflow completed successfully" in out

    def test_summary_lists_failures(self, reporter, capsys):
        results = [
            RunnerStepResult(id="a", success=True),
            RunnerStepResult(id="b", success=False, error="timed out"),
        ]
        reporter.workflow_summary(results, 1.0)
        out = capsys.readouterr().out
        assert "Steps: 1 succeeded, 1 failed" in out
        assert "X b: timed out" in out
        assert "completed successfully" not in out

    def test_width_from_columns(self, monkeypatch):
        monkeypatch.setenv("COLUMNS", "132")
        assert ConsoleReporter()._detect_terminal_width() == 132

    def test_width_override_wins(self, monkeypatch):
        monkeypatch.setenv("COLUMNS", "132")
        assert ConsoleReporter(width=70)._detect_terminal_width() == 70
