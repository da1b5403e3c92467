"""Tests for the workflow orchestrator (rover.commands.run)."""

import json
from unittest.mock import MagicMock, patch

import pytest
import yaml

from rover.commands.run import load_inputs_json, parse_input_options, run_command
from rover.console import ConsoleReporter
from rover.errors import CREDIT_EXHAUSTED
from rover.runner import RunnerStepResult


class FakeRunner:
    """Stands in for Runner; returns scripted results per step id."""

    instances = []
    results = {}

    def __init__(self, workflow, step_id, inputs, steps_output, **kwargs):
        self.step_id = step_id
        self.inputs = dict(inputs)
        self.steps_output = {k: dict(v) for k, v in steps_output.items()}
        self.kwargs = kwargs
        FakeRunner.instances.append(self)

    async def run(self, output_dir=None):
        return FakeRunner.results.get(
            self.step_id,
            RunnerStepResult(id=self.step_id, success=True, outputs={"done": self.step_id}),
        )


@pytest.fixture
def fake_runner():
    FakeRunner.instances = []
    FakeRunner.results = {}
    with patch("rover.commands.run.Runner", FakeRunner):
        yield FakeRunner


@pytest.fixture
def reporter():
    return MagicMock(spec=ConsoleReporter)


async def run(workflow_file, tmp_path, **kwargs):
    kwargs.setdefault("use_acp", False)
    kwargs.setdefault("cwd", tmp_path)
    return await run_command(workflow_file, **kwargs)


class TestInputOptions:
    """Tests for parse_input_options() and load_inputs_json()."""

    def test_splits_on_first_equals(self):
        assert parse_input_options(["a=1", "b=x=y", "c="]) == {"a": "1", "b": "x=y", "c": ""}

    def test_malformed_skipped(self, reporter):
        assert parse_input_options(["novalue", "=x", "ok=1"], reporter) == {"ok": "1"}
        assert reporter.warning.call_count == 2

    def test_json_file(self, tmp_path):
        path = tmp_path / "inputs.json"
        path.write_text(json.dumps({"count": 3, "flag": True, "name": "x"}), encoding="utf-8")
        assert load_inputs_json(path) == {"count": "3", "flag": "true", "name": "x"}

    def test_missing_json_file(self, tmp_path, reporter):
        assert load_inputs_json(tmp_path / "nope.json", reporter) == {}
        assert "does not exist" in reporter.warning.call_args.args[0]

    def test_invalid_json_file(self, tmp_path, reporter):
        path = tmp_path / "inputs.json"
        path.write_text("[1, 2]", encoding="utf-8")
        assert load_inputs_json(path, reporter) == {}
        assert "not a valid JSON" in reporter.warning.call_args.args[0]


class TestPreconditions:
    """Tests for argument checks done before any step runs."""

    @pytest.mark.asyncio
    async def test_status_file_requires_task_id(self, workflow_file, tmp_path, reporter, fake_runner):
        result = await run(workflow_file, tmp_path, status_file=tmp_path / "status.json", reporter=reporter)
        assert not result.success
        assert "--task-id is required" in result.error
        assert not (tmp_path / "status.json").exists()
        assert fake_runner.instances == []

    @pytest.mark.asyncio
    async def test_missing_output_dir(self, workflow_file, tmp_path, reporter, fake_runner):
        result = await run(workflow_file, tmp_path, output_dir=tmp_path / "missing", reporter=reporter)
        assert not result.success
        assert "does not exist" in result.error

    @pytest.mark.asyncio
    async def test_missing_required_input(self, workflow_file, tmp_path, reporter, fake_runner):
        status_file = tmp_path / "status.json"
        result = await run(workflow_file, tmp_path, status_file=status_file, task_id="3", reporter=reporter)

        assert not result.success
        assert result.error.startswith("Input validation failed")
        assert fake_runner.instances == []
        doc = json.loads(status_file.read_text(encoding="utf-8"))
        assert doc["status"] == "failed"
        assert doc["currentStep"] == "Workflow execution"

    @pytest.mark.asyncio
    async def test_invalid_workflow(self, tmp_path, reporter, fake_runner):
        path = tmp_path / "broken.yml"
        path.write_text("name: broken\nsteps: 3\n", encoding="utf-8")
        result = await run(path, tmp_path, inputs=["description=x"], reporter=reporter)
        assert not result.success
        assert result.error


class TestSubprocessRun:
    """Tests for runs that start one agent process per step."""

    @pytest.mark.asyncio
    async def test_success(self, workflow_file, tmp_path, reporter, fake_runner):
        status_file = tmp_path / "status.json"
        result = await run(
            workflow_file, tmp_path,
            inputs=["description=Add login"],
            status_file=status_file, task_id="3",
            agent_tool="gemini", timeout=60,
            reporter=reporter,
        )

        assert result.success
        assert [r.id for r in result.results] == ["context", "implement"]
        doc = json.loads(status_file.read_text(encoding="utf-8"))
        assert doc["status"] == "completed"
        assert doc["progress"] == 100

        first, second = fake_runner.instances
        assert first.inputs == {"description": "Add login", "effort": "3"}
        assert first.kwargs["default_tool"] == "gemini"
        assert first.kwargs["default_timeout"] == 60
        assert first.kwargs["step_index"] == 0 and first.kwargs["total_steps"] == 2
        assert second.steps_output == {"context": {"done": "context"}}
        reporter.inputs_summary.assert_called_once_with({"description": "Add login", "effort": "3"}, ["effort"])

    @pytest.mark.asyncio
    async def test_cli_inputs_override_json(self, workflow_file, tmp_path, reporter, fake_runner):
        inputs_json = tmp_path / "inputs.json"
        inputs_json.write_text(json.dumps({"description": "from json", "effort": 5}), encoding="utf-8")
        await run(
            workflow_file, tmp_path,
            inputs=["description=from cli"], inputs_json=inputs_json, reporter=reporter,
        )
        assert fake_runner.instances[0].inputs == {"description": "from cli", "effort": "5"}

    @pytest.mark.asyncio
    async def test_failure_stops_workflow(self, workflow_file, tmp_path, reporter, fake_runner):
        fake_runner.results["context"] = RunnerStepResult(
            id="context", success=False, error="agent crashed", outputs={"error": "agent crashed"},
        )
        status_file = tmp_path / "status.json"
        result = await run(
            workflow_file, tmp_path, inputs=["description=x"],
            status_file=status_file, task_id="3", reporter=reporter,
        )

        assert not result.success
        assert result.error == "Workflow stopped due to step failure: agent crashed"
        assert len(fake_runner.instances) == 1
        assert json.loads(status_file.read_text(encoding="utf-8"))["status"] == "failed"

    @pytest.mark.asyncio
    async def test_credit_exhaustion_pauses(self, workflow_file, tmp_path, reporter, fake_runner):
        fake_runner.results["context"] = RunnerStepResult(
            id="context", success=False, error="Credit balance is too low",
            error_code=CREDIT_EXHAUSTED,
        )
        status_file = tmp_path / "status.json"
        await run(
            workflow_file, tmp_path, inputs=["description=x"],
            status_file=status_file, task_id="3", reporter=reporter,
        )

        doc = json.loads(status_file.read_text(encoding="utf-8"))
        assert doc["status"] == "credit_exhausted"
        assert doc["currentStep"] == "Context analysis"
        assert "Credit balance is too low" in doc["error"]

    @pytest.mark.asyncio
    async def test_continue_on_error(self, workflow_dict, tmp_path, reporter, fake_runner):
        workflow_dict["config"] = {"continueOnError": True}
        path = tmp_path / "workflow.yml"
        path.write_text(yaml.safe_dump(workflow_dict), encoding="utf-8")
        fake_runner.results["context"] = RunnerStepResult(id="context", success=False, error="boom")

        result = await run(path, tmp_path, inputs=["description=x"], reporter=reporter)

        assert not result.success
        assert result.error == "1 step(s) failed"
        assert len(fake_runner.instances) == 2
        assert fake_runner.instances[1].steps_output == {"context": {}}


class FakeACPRunner:
    """Stands in for ACPRunner and records the calls made on it."""

    instances = []

    def __init__(self, workflow, inputs, steps_output, **kwargs):
        self.kwargs = kwargs
        self.calls = []
        FakeACPRunner.instances.append(self)

    async def initialize_connection(self):
        self.calls.append("initialize")

    async def create_session(self):
        self.calls.append("session")

    async def run_step(self, step_id, output_dir=None):
        self.calls.append(f"run:{step_id}")
        return RunnerStepResult(id=step_id, success=True, outputs={"summary": "ok"})

    def close_session(self):
        self.calls.append("close_session")

    async def close(self):
        self.calls.append("close")


class TestSessionRun:
    """Tests for runs that share one ACP agent process."""

    @pytest.fixture(autouse=True)
    def fake_acp(self):
        FakeACPRunner.instances = []
        with patch("rover.commands.run.ACPRunner", FakeACPRunner):
            yield

    @pytest.mark.asyncio
    async def test_one_session_per_step(self, workflow_file, tmp_path, reporter, fake_runner):
        result = await run(workflow_file, tmp_path, inputs=["description=x"], use_acp=True, reporter=reporter)

        assert result.success
        assert fake_runner.instances == []
        (acp,) = FakeACPRunner.instances
        assert acp.kwargs["tool"] == "claude"
        assert acp.calls == [
            "initialize",
            "session", "run:context", "close_session",
            "session", "run:implement", "close_session",
            "close",
        ]

    @pytest.mark.asyncio
    async def test_non_acp_tool_uses_subprocess(self, workflow_file, tmp_path, reporter, fake_runner):
        result = await run(
            workflow_file, tmp_path, inputs=["description=x"],
            agent_tool="gemini", use_acp=True, reporter=reporter,
        )
        assert result.success
        assert FakeACPRunner.instances == []
        assert len(fake_runner.instances) == 2
