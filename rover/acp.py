"""Agent Client Protocol (ACP) client side.

The wire protocol (JSON-RPC over the agent's stdio, request ids, dispatch)
is handled by the ``agent-client-protocol`` SDK. This module supplies the
``Client`` the SDK dispatches the agent's requests to: it streams message
updates into a capture buffer, approves tool permissions, reads and writes
files and runs terminal commands for the agent.
"""

import asyncio
import itertools
import logging
import os
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from acp import Client, RequestError
from acp.schema import (
    AllowedOutcome,
    CreateTerminalRequest,
    CreateTerminalResponse,
    DeniedOutcome,
    KillTerminalCommandRequest,
    KillTerminalCommandResponse,
    ReadTextFileRequest,
    ReadTextFileResponse,
    ReleaseTerminalRequest,
    ReleaseTerminalResponse,
    RequestPermissionRequest,
    RequestPermissionResponse,
    SessionNotification,
    TerminalExitStatus,
    TerminalOutputRequest,
    TerminalOutputResponse,
    WaitForTerminalExitRequest,
    WaitForTerminalExitResponse,
    WriteTextFileRequest,
    WriteTextFileResponse,
)

from .launch import CHUNK_SIZE, _is_unix, terminate_process

logger = logging.getLogger(__name__)

# Terminal output kept when the agent doesn't set a byte limit
DEFAULT_OUTPUT_BYTE_LIMIT = 1024 * 1024


def _field(obj: Any, name: str) -> Any:
    """Read a field from an SDK model or from the plain dict it may arrive as."""
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


@dataclass
class _Terminal:
    process: asyncio.subprocess.Process
    output_limit: int
    output: bytearray = field(default_factory=bytearray)
    truncated: bool = False
    reader: Optional[asyncio.Task] = None


def _exit_status(returncode: Optional[int]) -> Optional[TerminalExitStatus]:
    if returncode is None:
        return None
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return TerminalExitStatus(exitCode=None, signal=name)
    return TerminalExitStatus(exitCode=returncode, signal=None)


class MessageCapturingClient(Client):
    """Answers agent requests and captures the agent's reply text.

    Tool permissions are always granted: the agent runs inside the task's
    sandbox.

    Args:
        cwd: Directory relative paths and terminal commands are resolved against
        reporter: ConsoleReporter for verbose tool-call output
    """

    def __init__(self, cwd: Optional[Path] = None, reporter=None):
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()
        self.reporter = reporter
        self._capturing = False
        self._chunks: List[str] = []
        self._terminals: Dict[str, _Terminal] = {}
        self._terminal_ids = itertools.count(1)

    def start_capturing(self) -> None:
        self._chunks = []
        self._capturing = True

    def stop_capturing(self) -> str:
        """Stop capturing and return everything captured since start_capturing()."""
        text = "".join(self._chunks)
        self._chunks = []
        self._capturing = False
        return text

    @property
    def is_capturing(self) -> bool:
        return self._capturing

    async def sessionUpdate(self, params: SessionNotification) -> None:
        update = params.update
        kind = _field(update, "sessionUpdate")
        if kind == "agent_message_chunk":
            content = _field(update, "content")
            if _field(content, "type") == "text" and self._capturing:
                self._chunks.append(_field(content, "text") or "")
        elif kind == "tool_call" and self.reporter is not None:
            self.reporter.debug(f"  Tool: {_field(update, 'title') or _field(update, 'toolCallId') or ''}")

    async def requestPermission(self, params: RequestPermissionRequest) -> RequestPermissionResponse:
        options = params.options or []
        for kind in ("allow_always", "allow_once"):
            for option in options:
                if option.kind == kind:
                    return RequestPermissionResponse(outcome=AllowedOutcome(outcome="selected", optionId=option.optionId))
        if options:
            return RequestPermissionResponse(outcome=AllowedOutcome(outcome="selected", optionId=options[0].optionId))
        return RequestPermissionResponse(outcome=DeniedOutcome(outcome="cancelled"))

    def _resolve(self, path: str) -> Path:
        resolved = Path(path)
        return resolved if resolved.is_absolute() else self.cwd / resolved

    async def readTextFile(self, params: ReadTextFileRequest) -> ReadTextFileResponse:
        """Read a file, optionally starting at ``line`` (1-based) for ``limit`` lines."""
        text = self._resolve(params.path).read_text(encoding="utf-8")
        if params.line is not None or params.limit is not None:
            lines = text.splitlines(keepends=True)
            start = max((params.line or 1) - 1, 0)
            end = start + params.limit if params.limit is not None else None
            text = "".join(lines[start:end])
        return ReadTextFileResponse(content=text)

    async def writeTextFile(self, params: WriteTextFileRequest) -> WriteTextFileResponse:
        path = self._resolve(params.path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(params.content, encoding="utf-8")
        return WriteTextFileResponse()

    # Terminals

    async def createTerminal(self, params: CreateTerminalRequest) -> CreateTerminalResponse:
        env = None
        if params.env:
            env = {**os.environ, **{item.name: item.value for item in params.env}}
        cwd = self._resolve(params.cwd) if params.cwd else self.cwd
        process = await asyncio.create_subprocess_exec(
            params.command, *(params.args or []),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=str(cwd),
            env=env,
            start_new_session=_is_unix(),
        )
        terminal = _Terminal(
            process=process,
            output_limit=params.outputByteLimit or DEFAULT_OUTPUT_BYTE_LIMIT,
        )
        terminal.reader = asyncio.ensure_future(self._collect_output(terminal))
        terminal_id = f"term-{next(self._terminal_ids)}"
        self._terminals[terminal_id] = terminal
        logger.debug(f"Started terminal {terminal_id}: {params.command}")
        return CreateTerminalResponse(terminalId=terminal_id)

    async def _collect_output(self, terminal: _Terminal) -> None:
        stream = terminal.process.stdout
        if stream is None:
            return
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            if not chunk:
                break
            terminal.output.extend(chunk)
            overflow = len(terminal.output) - terminal.output_limit
            if overflow > 0:
                # Keep the most recent output
                del terminal.output[:overflow]
                terminal.truncated = True

    def _terminal(self, terminal_id: str) -> _Terminal:
        terminal = self._terminals.get(terminal_id)
        if terminal is None:
            raise RequestError.invalid_params({"terminalId": terminal_id, "reason": "unknown terminal"})
        return terminal

    async def terminalOutput(self, params: TerminalOutputRequest) -> TerminalOutputResponse:
        terminal = self._terminal(params.terminalId)
        return TerminalOutputResponse(
            output=terminal.output.decode("utf-8", errors="replace"),
            truncated=terminal.truncated,
            exitStatus=_exit_status(terminal.process.returncode),
        )

    async def waitForTerminalExit(self, params: WaitForTerminalExitRequest) -> WaitForTerminalExitResponse:
        terminal = self._terminal(params.terminalId)
        await terminal.process.wait()
        if terminal.reader is not None:
            await terminal.reader
        status = _exit_status(terminal.process.returncode)
        return WaitForTerminalExitResponse(exitCode=status.exitCode, signal=status.signal)

    async def killTerminal(self, params: KillTerminalCommandRequest) -> KillTerminalCommandResponse:
        await terminate_process(self._terminal(params.terminalId).process)
        return KillTerminalCommandResponse()

    async def releaseTerminal(self, params: ReleaseTerminalRequest) -> ReleaseTerminalResponse:
        await self._release(params.terminalId)
        return ReleaseTerminalResponse()

    async def _release(self, terminal_id: str) -> None:
        terminal = self._terminals.pop(terminal_id, None)
        if terminal is not None:
            await terminate_process(terminal.process)
            if terminal.reader is not None and not terminal.reader.done():
                terminal.reader.cancel()

    async def close(self) -> None:
        """Kill every terminal the agent left behind."""
        for terminal_id in list(self._terminals):
            await self._release(terminal_id)
