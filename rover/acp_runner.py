"""Session step runner.

Keeps one agent process alive across the steps of a workflow and talks to
it over ACP (see rover.acp). The connection is initialized once; every step
gets a fresh session on that connection, so the agent's startup cost is paid
once per workflow instead of once per step.

Lifecycle:

    initialize_connection()          spawn + handshake
    create_session() / run_step()    per step
    close_session()                  per step, connection stays up
    close()                          kill the agent, idempotent
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from acp import (
    PROTOCOL_VERSION,
    CancelNotification,
    ClientSideConnection,
    InitializeRequest,
    NewSessionRequest,
    PromptRequest,
)
from acp.schema import (
    BlobResourceContents,
    ClientCapabilities,
    EmbeddedResourceContentBlock,
    FileSystemCapability,
    ImageContentBlock,
    SetSessionModelRequest,
    TextContentBlock,
    TextResourceContents,
)

from .acp import MessageCapturingClient
from .errors import CREDIT_EXHAUSTED, RunnerError, parse_agent_error
from .launch import CHUNK_SIZE, _is_unix, terminate_process
from .parsing import ResponseParser
from .prompts import FILE_SOURCE_CAPTURED, PlaceholderResolver
from .runner import RunnerStepResult

logger = logging.getLogger(__name__)

# How to start each tool as an ACP agent
SPAWN_COMMANDS: Dict[str, Tuple[str, List[str]]] = {
    "claude": ("npx", ["-y", "@zed-industries/claude-code-acp"]),
    "copilot": ("copilot", ["--acp"]),
    "opencode": ("opencode", ["acp"]),
}

ACP_TOOLS = frozenset(SPAWN_COMMANDS)

CLIENT_CAPABILITIES = ClientCapabilities(
    fs=FileSystemCapability(readTextFile=True, writeTextFile=True),
    terminal=True,
)


def get_spawn_command(tool: str) -> Tuple[str, List[str]]:
    """Command and arguments that start a tool in ACP mode.

    Raises:
        RunnerError: If the tool has no ACP mode
    """
    try:
        command, args = SPAWN_COMMANDS[tool.lower()]
    except KeyError:
        raise RunnerError(f"No ACP available for tool {tool}")
    return command, list(args)


class PromptResult(NamedTuple):
    stop_reason: str
    response: str


class ACPRunner:
    """Runs workflow steps over a persistent ACP connection.

    Args:
        workflow: WorkflowManager with the steps to run
        inputs: Task inputs
        steps_output: Outputs of steps that already ran, keyed by step id;
            run_step adds each successful step's outputs
        tool: Agent tool; defaults to the workflow's default tool, then claude
        default_model: Model chosen on the command line
        status_manager: IterationStatusManager to report progress to
        reporter: ConsoleReporter for user-facing output
        cwd: Working directory for the agent and its sessions
        context_message: Context block prepended to every prompt
    """

    def __init__(
        self,
        workflow,
        inputs: Dict[str, str],
        steps_output: Optional[Dict[str, Dict[str, str]]] = None,
        tool: Optional[str] = None,
        default_model: Optional[str] = None,
        status_manager=None,
        reporter=None,
        cwd: Optional[Path] = None,
        context_message: Optional[str] = None,
    ):
        self.workflow = workflow
        self.inputs = inputs
        self.steps_output = steps_output if steps_output is not None else {}
        self.tool = tool or workflow.workflow.defaults.tool or "claude"
        self.default_model = default_model
        self.status_manager = status_manager
        self.reporter = reporter
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()
        self.context_message = context_message

        self.process: Optional[asyncio.subprocess.Process] = None
        self.connection: Optional[ClientSideConnection] = None
        self.client: Optional[MessageCapturingClient] = None
        self.session_id: Optional[str] = None
        self._stderr_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self.connection is not None

    @property
    def has_session(self) -> bool:
        return self.session_id is not None

    def _require_session(self) -> None:
        if self.connection is None:
            raise RunnerError("Connection not initialized. Call initialize_connection() first.")
        if self.session_id is None:
            raise RunnerError("No active session. Call create_session() first.")

    async def _forward_stderr(self) -> None:
        stream = self.process.stderr if self.process else None
        if stream is None:
            return
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            if not chunk:
                break
            if self.reporter is not None:
                self.reporter.debug(chunk.decode("utf-8", errors="replace").rstrip())

    async def _until_exit(self, request):
        """Await an agent request, failing early if the agent process exits first."""
        task = asyncio.ensure_future(request)
        if self.process is None:
            return await task
        exited = asyncio.ensure_future(self.process.wait())
        try:
            await asyncio.wait({task, exited}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            exited.cancel()
        if not task.done():
            task.cancel()
            raise RunnerError(f"ACP agent exited with code {self.process.returncode}")
        return task.result()

    async def initialize_connection(self) -> None:
        """Spawn the agent and perform the protocol handshake.

        Does nothing if the connection is already up.

        Raises:
            RunnerError: If the tool has no ACP mode, can't be started, or the
                handshake fails (the process is killed in that case)
        """
        if self.connection is not None:
            return

        command, args = get_spawn_command(self.tool)
        if self.reporter is not None:
            self.reporter.info(f"Starting ACP agent: {command} {' '.join(args)}")

        try:
            self.process = await asyncio.create_subprocess_exec(
                command, *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.cwd),
                start_new_session=_is_unix(),
            )
        except OSError as e:
            raise RunnerError(f"Failed to start ACP agent '{command}': {e}") from e

        self._stderr_task = asyncio.ensure_future(self._forward_stderr())
        self.client = MessageCapturingClient(self.cwd, self.reporter)
        client = self.client
        self.connection = ClientSideConnection(lambda _agent: client, self.process.stdin, self.process.stdout)

        try:
            result = await self._until_exit(self.connection.initialize(
                InitializeRequest(protocolVersion=PROTOCOL_VERSION, clientCapabilities=CLIENT_CAPABILITIES)
            ))
        except Exception as e:
            await self.close()
            raise RunnerError(f"Failed to initialize ACP connection: {e}") from e

        version = result.protocolVersion
        logger.info(f"Connected to {self.tool} ACP agent", extra={"tool": self.tool, "protocol_version": version})
        if self.reporter is not None:
            self.reporter.success(f"Connected to agent (protocol v{version})")

    async def create_session(self, cwd: Optional[Path] = None, mcp_servers: Optional[List[Any]] = None) -> str:
        """Open a new session on the connection.

        Raises:
            RunnerError: If the connection is not initialized, a session is
                already open, or the agent refuses
        """
        if self.connection is None:
            raise RunnerError("Connection not initialized. Call initialize_connection() first.")
        if self.session_id is not None:
            raise RunnerError("Session already created. Use the existing session or close it first.")

        try:
            result = await self._until_exit(self.connection.newSession(
                NewSessionRequest(cwd=str(cwd or self.cwd), mcpServers=list(mcp_servers or []))
            ))
        except Exception as e:
            raise RunnerError(f"Failed to create session: {e}") from e

        self.session_id = result.sessionId
        logger.debug(f"Created ACP session {self.session_id}")
        return self.session_id

    async def send_prompt(
        self,
        prompt: str,
        images: Optional[List[Dict[str, str]]] = None,
        resources: Optional[List[Dict[str, str]]] = None,
    ) -> PromptResult:
        """Send a prompt to the open session and wait for the agent's turn to end.

        Args:
            prompt: Prompt text
            images: Attachments with ``data``, ``mimeType`` and optional ``uri``
            resources: Embedded resources with ``uri``, optional ``mimeType``
                and either ``text`` or ``blob``

        Returns:
            PromptResult with the stop reason and the agent's message text

        Raises:
            RunnerError: If there is no session or the prompt fails
        """
        self._require_session()

        blocks: List[Any] = [TextContentBlock(type="text", text=prompt)]
        for image in images or []:
            blocks.append(ImageContentBlock(
                type="image", data=image["data"], mimeType=image["mimeType"], uri=image.get("uri"),
            ))
        for resource in resources or []:
            if resource.get("text") is not None:
                body = TextResourceContents(
                    uri=resource["uri"], mimeType=resource.get("mimeType"), text=resource["text"],
                )
            elif resource.get("blob") is not None:
                body = BlobResourceContents(
                    uri=resource["uri"], mimeType=resource.get("mimeType"), blob=resource["blob"],
                )
            else:
                continue
            blocks.append(EmbeddedResourceContentBlock(type="resource", resource=body))

        self.client.start_capturing()
        try:
            result = await self._until_exit(
                self.connection.prompt(PromptRequest(sessionId=self.session_id, prompt=blocks))
            )
        except Exception as e:
            raise RunnerError(f"Failed to send prompt: {e}") from e
        finally:
            response = self.client.stop_capturing()

        return PromptResult(result.stopReason, response)

    async def set_model(self, model_id: str) -> None:
        """Switch the model used for the rest of the session."""
        self._require_session()
        try:
            await self.connection.setSessionModel(SetSessionModelRequest(sessionId=self.session_id, modelId=model_id))
        except Exception as e:
            raise RunnerError(f"Failed to set model: {e}") from e
        logger.debug(f"Session model changed to {model_id}")

    async def cancel_prompt(self) -> None:
        """Ask the agent to abort the prompt in flight; the connection stays up."""
        self._require_session()
        try:
            await self.connection.cancel(CancelNotification(sessionId=self.session_id))
        except Exception as e:
            raise RunnerError(f"Failed to cancel prompt: {e}") from e
        if self.reporter is not None:
            self.reporter.warning(f"Prompt cancelled for session: {self.session_id}")

    def _update_progress(self, progress: int, step_name: str) -> None:
        if self.status_manager is None:
            return
        try:
            self.status_manager.update("running", step_name, progress=progress)
        except Exception as e:
            logger.warning(f"Failed to update iteration status: {e}")

    async def run_step(self, step_id: str, output_dir: Optional[Path] = None) -> RunnerStepResult:
        """Run one step in the open session.

        Failures are returned, not raised. Only credit exhaustion gets an
        error code, so the caller can pause the task instead of failing it.

        Raises:
            RunnerError: If there is no open session
        """
        self._require_session()

        start = time.monotonic()
        step = self.workflow.get_step(step_id)
        outputs: Dict[str, str] = {}
        steps = self.workflow.steps
        index = next(i for i, s in enumerate(steps) if s.id == step_id)
        total = len(steps)

        try:
            self._update_progress(int(index / total * 100), step.name)

            resolver = PlaceholderResolver(
                self.workflow,
                self.inputs,
                self.steps_output,
                file_source=FILE_SOURCE_CAPTURED,
                cwd=self.cwd,
                context_message=self.context_message,
            )
            resolved = resolver.resolve(step, self.tool)
            model = self.workflow.get_step_model(step_id, self.default_model)

            if self.reporter is not None:
                self.reporter.step_started(step.name, f"{self.tool} (ACP)", model, index, total)
                self.reporter.prompt_warnings(resolved.warnings)
                self.reporter.prompt(step.name, resolved.prompt)

            if model:
                try:
                    await self.set_model(model)
                except RunnerError as e:
                    logger.warning(f"{e}; continuing with the agent's current model")

            result = await self.send_prompt(resolved.prompt)
            if self.reporter is not None:
                self.reporter.debug(f"Agent completed with: {result.stop_reason}")

            outputs["raw_output"] = f"Stop reason: {result.stop_reason}"
            outputs["input_prompt"] = resolved.prompt
            ResponseParser(self.reporter, self.cwd).parse_session_outputs(
                step, result.response, outputs, output_dir=output_dir
            )

            duration = time.monotonic() - start
            self._update_progress(int((index + 1) / total * 100), step.name)
            self.steps_output[step_id] = outputs
            if self.reporter is not None:
                self.reporter.step_completed(step.name, duration)
                self.reporter.step_results(step.name, outputs)
            return RunnerStepResult(id=step.id, success=True, duration=duration, model=model, outputs=outputs)

        except Exception as e:
            message = str(e)
            outputs["error"] = message
            classified = parse_agent_error(message, message, None, self.tool)
            error_code = classified.code if classified.code == CREDIT_EXHAUSTED else None
            if error_code:
                outputs["error_code"] = error_code
                outputs["error_retryable"] = "true"

            logger.error(f"Step '{step.id}' failed: {message}", extra={"step_id": step.id, "tool": self.tool})
            if self.reporter is not None:
                self.reporter.step_failed(step.name, message)
            return RunnerStepResult(
                id=step.id,
                success=False,
                error=message,
                error_code=error_code,
                duration=time.monotonic() - start,
                outputs=outputs,
            )

    def get_step_outputs(self, step_id: str) -> Optional[Dict[str, str]]:
        return self.steps_output.get(step_id)

    def close_session(self) -> None:
        """Forget the current session; the connection stays open for the next one."""
        if self.session_id is not None:
            logger.debug(f"Closing ACP session {self.session_id}")
            self.session_id = None

    async def close(self) -> None:
        """Kill the agent and drop all connection state. Safe to call repeatedly."""
        connection, client, process = self.connection, self.client, self.process
        self.connection = None
        self.client = None
        self.process = None
        self.session_id = None

        if connection is not None:
            try:
                await connection.close()
            except Exception as e:
                logger.debug(f"Error closing ACP connection: {e}")
        if client is not None:
            await client.close()
        if process is not None:
            logger.debug(f"Closing ACP connection to {self.tool}")
            await terminate_process(process)
        if self._stderr_task is not None:
            if not self._stderr_task.done():
                self._stderr_task.cancel()
            self._stderr_task = None
