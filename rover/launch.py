"""One-shot agent process launcher.

Runs an agent CLI with the prompt on stdin and collects its output, while
watching for a timeout and an external cancel event. Child processes get
their own process group so the whole tree can be killed on timeout or
cancellation.
"""

import asyncio
import ctypes
import ctypes.util
import logging
import os
import shutil
import signal
import subprocess
import sys
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

# Size of each read from the agent's stdout/stderr
CHUNK_SIZE = 1024 * 1024  # 1MB

# Seconds allowed for `<binary> --version` when checking tool availability
VERSION_CHECK_TIMEOUT = 15

# Track whether we've set up subreaper for this process
_subreaper_initialized = False


@dataclass
class LaunchResult:
    """Outcome of a finished (or killed) agent process.

    Attributes:
        exit_code: Process exit code, None if it was killed
        stdout: Decoded standard output
        stderr: Decoded standard error
        timed_out: True if the process was killed because of the timeout
        canceled: True if the process was killed because the cancel event fired
    """
    exit_code: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool = False
    canceled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.canceled


def _is_unix() -> bool:
    """Check if running on Unix (Linux, macOS, etc.)."""
    return not sys.platform.startswith('win')


def _setup_subreaper() -> None:
    """Become a subreaper for orphaned descendants (Linux only).

    Orphaned grandchildren of killed agents are re-parented to this process
    instead of init, so _reap_process_group can collect them.
    """
    global _subreaper_initialized
    if _subreaper_initialized or not _is_unix():
        return

    PR_SET_CHILD_SUBREAPER = 36

    try:
        libc = ctypes.CDLL(ctypes.util.find_library('c'), use_errno=True)
        if libc.prctl(PR_SET_CHILD_SUBREAPER, 1, 0, 0, 0) == 0:
            _subreaper_initialized = True
    except (OSError, AttributeError):
        # prctl not available (non-Linux) or library not found
        pass


def _reap_process_group(pgid: int) -> int:
    """Reap zombies left in a process group after it was killed.

    Args:
        pgid: The process group ID to reap zombies from.

    Returns:
        Number of zombies reaped.
    """
    if not _is_unix():
        return 0

    reaped = 0
    while True:
        try:
            result = os.waitid(os.P_PGID, pgid, os.WEXITED | os.WNOHANG)
            if result is None:
                break
            reaped += 1
        except ChildProcessError:
            break
        except OSError:
            break
    return reaped


def kill_process_tree(process: asyncio.subprocess.Process) -> Optional[int]:
    """Kill a process and all its descendants on Unix, or just the process on Windows.

    Returns:
        The process group ID on Unix (for later reaping), None on Windows.
    """
    pgid = process.pid
    if _is_unix() and pgid is not None:
        try:
            os.killpg(pgid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
        return pgid
    try:
        process.kill()
    except ProcessLookupError:
        pass
    return None


async def terminate_process(process: asyncio.subprocess.Process) -> None:
    """Kill a running process tree and wait for it to exit."""
    if process.returncode is not None:
        return
    pgid = kill_process_tree(process)
    await process.wait()
    if pgid is not None:
        _reap_process_group(pgid)


def check_binary(binary: str) -> bool:
    """Check that an agent CLI is installed by running ``<binary> --version``.

    Args:
        binary: Executable name

    Returns:
        True if the binary exists and exits successfully
    """
    if shutil.which(binary) is None:
        return False
    try:
        completed = subprocess.run(
            [binary, "--version"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=VERSION_CHECK_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"Version check failed for {binary}: {e}")
        return False
    return completed.returncode == 0


async def _read_stream(
    stream: Optional[asyncio.StreamReader],
    chunks: List[bytes],
    on_chunk: Optional[Callable[[str], None]] = None,
) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(CHUNK_SIZE)
        if not chunk:
            break
        chunks.append(chunk)
        if on_chunk is not None:
            on_chunk(chunk.decode('utf-8', errors='replace'))


async def launch(
    binary: str,
    args: List[str],
    input: Optional[str] = None,
    timeout: Optional[float] = None,
    cancel_event: Optional[asyncio.Event] = None,
    on_stderr: Optional[Callable[[str], None]] = None,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> LaunchResult:
    """Run an agent CLI to completion.

    Never raises for a nonzero exit, a timeout, or a cancellation; those are
    reported through the returned LaunchResult so the caller can classify them.

    Args:
        binary: Executable to run
        args: Command-line arguments
        input: Text written to the process's stdin (stdin is closed afterwards)
        timeout: Total timeout in seconds, None or 0 for no timeout
        cancel_event: Event that, once set, kills the process
        on_stderr: Callback invoked with each decoded stderr chunk as it arrives
        cwd: Working directory for the process
        env: Extra environment variables layered over the current environment

    Returns:
        LaunchResult with the collected output

    Raises:
        FileNotFoundError: If the binary does not exist
    """
    _setup_subreaper()

    process_env = None
    if env:
        process_env = {**os.environ, **env}

    logger.debug(
        f"Launching {binary}",
        extra={"binary": binary, "args": args, "cwd": cwd, "timeout": timeout}
    )

    process = await asyncio.create_subprocess_exec(
        binary, *args,
        stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=process_env,
        start_new_session=_is_unix(),
    )

    stdout_chunks: List[bytes] = []
    stderr_chunks: List[bytes] = []

    async def feed_stdin() -> None:
        if input is None or process.stdin is None:
            return
        try:
            process.stdin.write(input.encode('utf-8'))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # Agent exited before reading the whole prompt
            logger.debug(f"{binary} closed stdin early")
        finally:
            try:
                process.stdin.close()
            except (BrokenPipeError, ConnectionResetError):
                pass

    async def run_to_exit() -> int:
        await asyncio.gather(
            feed_stdin(),
            _read_stream(process.stdout, stdout_chunks),
            _read_stream(process.stderr, stderr_chunks, on_stderr),
        )
        return await process.wait()

    effective_timeout = timeout if timeout else None
    runner = asyncio.ensure_future(run_to_exit())
    waiters = {runner}
    cancel_waiter = None
    if cancel_event is not None:
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        waiters.add(cancel_waiter)

    timed_out = False
    canceled = False
    exit_code: Optional[int] = None

    try:
        done, _ = await asyncio.wait(
            waiters, timeout=effective_timeout, return_when=asyncio.FIRST_COMPLETED
        )
        if runner in done:
            exit_code = runner.result()
        else:
            if cancel_waiter is not None and cancel_waiter in done:
                canceled = True
                logger.warning(f"{binary} canceled, killing process")
            else:
                timed_out = True
                logger.error(f"{binary} timed out after {effective_timeout}s, killing process")
            await terminate_process(process)
            # Let the readers drain whatever was buffered before the kill
            try:
                await asyncio.wait_for(runner, timeout=5)
            except Exception as e:
                logger.debug(f"Output readers did not finish after kill: {e}")
                runner.cancel()
    except BaseException:
        # CancelledError, KeyboardInterrupt: don't leak the process group
        runner.cancel()
        if process.returncode is None:
            await terminate_process(process)
        raise
    finally:
        if cancel_waiter is not None and not cancel_waiter.done():
            cancel_waiter.cancel()
        if process.returncode is None:
            try:
                pgid = process.pid
                if _is_unix() and pgid is not None:
                    os.killpg(pgid, signal.SIGKILL)
                else:
                    process.kill()
            except (ProcessLookupError, PermissionError, OSError):
                pass

    return LaunchResult(
        exit_code=exit_code,
        stdout=b"".join(stdout_chunks).decode('utf-8', errors='replace'),
        stderr=b"".join(stderr_chunks).decode('utf-8', errors='replace'),
        timed_out=timed_out,
        canceled=canceled,
    )
