# Test configuration for pytest
#
# Note: Tests require the package to be installed.
# Run `pip install -e .[test]` from the project root before running tests.

import copy
import sys

import pytest
import yaml

from rover.workflow import WorkflowManager


def pytest_configure(config):
    """Register custom markers for platform-specific tests."""
    config.addinivalue_line("markers", "unix: mark test to run only on Unix")
    config.addinivalue_line("markers", "windows: mark test to run only on Windows")


def pytest_collection_modifyitems(config, items):
    """Skip platform-specific tests on incompatible platforms."""
    is_windows = sys.platform.startswith('win')
    skip_unix = pytest.mark.skip(reason="Unix-only test")
    skip_windows = pytest.mark.skip(reason="Windows-only test")

    for item in items:
        if "unix" in item.keywords and is_windows:
            item.add_marker(skip_unix)
        if "windows" in item.keywords and not is_windows:
            item.add_marker(skip_windows)


SAMPLE_WORKFLOW = {
    "version": "1.0",
    "name": "swe",
    "description": "Implement a change",
    "inputs": [
        {"name": "description", "description": "What to build", "type": "string", "required": True},
        {"name": "effort", "type": "number", "default": 3},
    ],
    "defaults": {"tool": "claude"},
    "steps": [
        {
            "id": "context",
            "name": "Context analysis",
            "prompt": "Analyze {{inputs.description}}",
            "outputs": [
                {"name": "complexity", "description": "simple or complex", "type": "string"},
                {"name": "context_file", "description": "Findings", "type": "file", "filename": "context.md"},
            ],
        },
        {
            "id": "implement",
            "name": "Implementation",
            "prompt": "Complexity is {{steps.context.outputs.complexity}}.\n{{steps.context.outputs.context_file}}",
            "outputs": [
                {"name": "summary", "description": "What changed", "type": "string"},
            ],
        },
    ],
}


@pytest.fixture
def workflow_dict():
    """A fresh copy of a two-step workflow definition."""
    return copy.deepcopy(SAMPLE_WORKFLOW)


@pytest.fixture
def workflow(workflow_dict):
    return WorkflowManager.from_dict(workflow_dict)


@pytest.fixture
def workflow_file(tmp_path, workflow_dict):
    """The sample workflow written to a YAML file."""
    path = tmp_path / "workflow.yml"
    path.write_text(yaml.safe_dump(workflow_dict), encoding="utf-8")
    return path
