"""Tests for the one-shot process launcher using real processes."""

import asyncio
import sys

import pytest

from rover.launch import LaunchResult, check_binary, launch


pytestmark = pytest.mark.unix


class TestLaunchResult:
    """Tests for LaunchResult.ok."""

    def test_ok(self):
        assert LaunchResult(0, "", "").ok
        assert not LaunchResult(1, "", "").ok
        assert not LaunchResult(0, "", "", timed_out=True).ok
        assert not LaunchResult(0, "", "", canceled=True).ok


class TestLaunch:
    """Tests for launch()."""

    @pytest.mark.asyncio
    async def test_stdin_is_delivered(self):
        result = await launch("cat", [], input="hello prompt")
        assert result.ok
        assert result.stdout == "hello prompt"

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_reported(self):
        result = await launch("sh", ["-c", "echo oops >&2; exit 3"])
        assert result.exit_code == 3
        assert result.stderr == "oops\n"
        assert not result.ok
        assert not result.timed_out

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        result = await launch("sh", ["-c", "echo started; sleep 30"], timeout=0.5)
        assert result.timed_out
        assert result.exit_code is None
        assert "started" in result.stdout

    @pytest.mark.asyncio
    async def test_cancel_event_kills_process(self):
        cancel = asyncio.Event()

        def on_stderr(chunk):
            if "login" in chunk:
                cancel.set()

        result = await launch(
            "sh", ["-c", "echo 'please login' >&2; sleep 30"],
            cancel_event=cancel, on_stderr=on_stderr, timeout=20,
        )
        assert result.canceled
        assert not result.timed_out
        assert "please login" in result.stderr

    @pytest.mark.asyncio
    async def test_env_is_layered(self):
        result = await launch("sh", ["-c", "printf %s \"$ROVER_TEST_VALUE\""], env={"ROVER_TEST_VALUE": "42"})
        assert result.stdout == "42"

    @pytest.mark.asyncio
    async def test_cwd(self, tmp_path):
        result = await launch("pwd", [], cwd=str(tmp_path))
        assert result.stdout.strip() == str(tmp_path.resolve())

    @pytest.mark.asyncio
    async def test_missing_binary_raises(self):
        with pytest.raises(FileNotFoundError):
            await launch("definitely-not-a-real-binary-xyz", [])


class TestCheckBinary:
    """Tests for check_binary()."""

    def test_missing_binary(self):
        assert check_binary("definitely-not-a-real-binary-xyz") is False

    def test_python_is_available(self):
        assert check_binary(sys.executable) is True
