"""Supervisor for external agent processes.

Each chat completion runs one short-lived agent process. The supervisor
spawns it with the right arguments, writes the prompt to its stdin, decodes
its stdout into tagged records, enforces a hard wall-clock timeout, and
exposes everything as one ordered event queue that always ends with exactly
one ``ProcessClosed``.

Usage:
    >>> process = AgentProcess()
    >>> await process.start(prompt, AgentRunOptions(model="sonnet", conversation_id=cid))
    >>> while (event := await process.next_event(timeout=1.0)) is not None:
    ...     if event.kind == RecordKind.PROCESS_CLOSED:
    ...         break
"""

import asyncio
import contextlib
import os
import shlex
import signal
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass

import structlog

from config import settings
from events.parser import LineBuffer, StreamParser
from events.types import (
    ProcessClosed,
    ProcessError,
    RecordKind,
    SupervisorEvent,
)

logger = structlog.get_logger(__name__)

_READ_CHUNK_BYTES = 64 * 1024
_STDERR_PREVIEW_CHARS = 300
_STDERR_LINE_LIMIT_BYTES = 1024 * 1024
_VERSION_CHECK_TIMEOUT = 10.0

_active_processes: set["AgentProcess"] = set()


def get_active_process_count() -> int:
    """Number of agent processes currently running."""
    return len(_active_processes)


class AgentNotFoundError(Exception):
    """Raised when the agent executable does not exist."""


class AgentSpawnError(Exception):
    """Raised when the agent executable exists but could not be started."""


@dataclass
class AgentRunOptions:
    """Per-run arguments for the agent.

    Attributes:
        model: Model family passed to the agent.
        conversation_id: Agent conversation to create or resume (None runs
            without persistence).
        is_new_conversation: Create ``conversation_id`` instead of resuming it.
        system_prompt: Instructions passed separately from the prompt body.
        timeout_seconds: Hard wall-clock limit (None uses the configured default).
        cwd: Working directory for the process.
    """

    model: str
    conversation_id: str | None = None
    is_new_conversation: bool = True
    system_prompt: str | None = None
    timeout_seconds: float | None = None
    cwd: str | None = None


def build_args(
    options: AgentRunOptions,
    allowed_tools: str = settings.agent_allowed_tools,
    skip_permissions: bool = settings.agent_skip_permissions,
) -> list[str]:
    """Build the agent's command-line arguments (without the executable).

    The prompt itself is never an argument; it goes through stdin so long
    conversations do not hit the OS argument-length limit.
    """
    args = [
        "--print",
        "--output-format", "stream-json",
        "--verbose",
        "--include-partial-messages",
        "--model", options.model,
    ]
    if allowed_tools:
        args += ["--allowedTools", allowed_tools]
    if skip_permissions:
        args.append("--dangerously-skip-permissions")

    if options.conversation_id:
        if options.is_new_conversation:
            args += ["--session-id", options.conversation_id]
        else:
            args += ["--resume", options.conversation_id]
    else:
        args.append("--no-session-persistence")

    if options.system_prompt:
        args += ["--system-prompt", options.system_prompt]
    return args


def _split_command(command: str | Sequence[str]) -> list[str]:
    if isinstance(command, str):
        return shlex.split(command)
    return list(command)


class AgentProcess:
    """One supervised run of the external agent.

    Attributes:
        command: Executable (and leading arguments) used to launch the agent.
        pid: Process id once started.
    """

    def __init__(
        self,
        command: str | Sequence[str] | None = None,
        *,
        allowed_tools: str | None = None,
        skip_permissions: bool | None = None,
        default_timeout_seconds: float | None = None,
        kill_grace_seconds: float | None = None,
    ) -> None:
        self.command = _split_command(command or settings.agent_command)
        self._allowed_tools = (
            settings.agent_allowed_tools if allowed_tools is None else allowed_tools
        )
        self._skip_permissions = (
            settings.agent_skip_permissions if skip_permissions is None else skip_permissions
        )
        self._default_timeout = default_timeout_seconds or settings.agent_timeout_seconds
        self._kill_grace = (
            settings.agent_kill_grace_seconds if kill_grace_seconds is None else kill_grace_seconds
        )
        self._process: asyncio.subprocess.Process | None = None
        self._events: asyncio.Queue[SupervisorEvent] = asyncio.Queue()
        self._parser = StreamParser()
        self._task: asyncio.Task[None] | None = None
        self._escalation: asyncio.TimerHandle | None = None
        self._killed = False
        self.pid: int | None = None

    @property
    def running(self) -> bool:
        """True while the process is alive and has not been killed."""
        return (
            self._process is not None
            and not self._killed
            and self._process.returncode is None
        )

    @property
    def killed(self) -> bool:
        return self._killed

    async def start(self, prompt: str, options: AgentRunOptions) -> None:
        """Spawn the agent and begin relaying its output.

        Args:
            prompt: Full prompt text, written to stdin.
            options: Model, conversation and system prompt for this run.

        Raises:
            AgentNotFoundError: If the executable is missing.
            AgentSpawnError: If the process could not be started.
        """
        if self._process is not None:
            raise RuntimeError("AgentProcess.start() called twice")

        argv = [*self.command, *build_args(options, self._allowed_tools, self._skip_permissions)]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=options.cwd or settings.agent_cwd,
                env=dict(os.environ),
            )
        except FileNotFoundError as e:
            logger.error("agent_not_found", command=self.command[0])
            raise AgentNotFoundError(
                f"Agent executable '{self.command[0]}' not found. "
                "Install it or set AGENT_COMMAND to its path."
            ) from e
        except OSError as e:
            logger.error("agent_spawn_failed", command=self.command[0], error=str(e))
            raise AgentSpawnError(f"Failed to start agent: {e}") from e

        self._process = process
        self.pid = process.pid
        _active_processes.add(self)
        timeout = options.timeout_seconds or self._default_timeout
        logger.info(
            "agent_spawned",
            pid=self.pid,
            conversation_id=options.conversation_id or "none",
            new_conversation=options.is_new_conversation,
            model=options.model,
            prompt_chars=len(prompt),
        )
        self._task = asyncio.create_task(
            self._supervise(process, prompt, timeout),
            name=f"agent_process_{self.pid}",
        )

    async def next_event(self, timeout: float | None = None) -> SupervisorEvent | None:
        """Return the next event, or None if none arrived within ``timeout``."""
        try:
            return await asyncio.wait_for(self._events.get(), timeout)
        except TimeoutError:
            return None

    async def events(self) -> AsyncIterator[SupervisorEvent]:
        """Iterate over every event up to and including ``ProcessClosed``."""
        while True:
            event = await self._events.get()
            yield event
            if event.kind == RecordKind.PROCESS_CLOSED:
                return

    def kill(self, sig: signal.Signals = signal.SIGTERM) -> None:
        """Terminate the process if it is still running. Safe to call repeatedly.

        A process that outlives the signal by ``kill_grace_seconds`` is sent
        SIGKILL.
        """
        if self._killed or self._process is None:
            return
        self._killed = True
        if self._process.returncode is None:
            logger.info("agent_killed", pid=self.pid, signal=sig.name)
            self._signal(sig)
            if sig != signal.SIGKILL:
                self._escalation = asyncio.get_running_loop().call_later(
                    self._kill_grace, self._force_kill, "kill_grace_expired"
                )

    async def wait_closed(self) -> None:
        """Wait until the process has exited and its output is drained."""
        if self._task is not None:
            await asyncio.shield(self._task)

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _signal(self, sig: signal.Signals) -> None:
        if self._process is not None and self._process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._process.send_signal(sig)

    def _force_kill(self, reason: str) -> None:
        self._killed = True
        if self._process is not None and self._process.returncode is None:
            logger.warning("agent_force_killed", pid=self.pid, reason=reason)
            self._signal(signal.SIGKILL)

    async def _supervise(
        self,
        process: asyncio.subprocess.Process,
        prompt: str,
        timeout: float,
    ) -> None:
        watchdog = asyncio.create_task(self._watchdog(timeout))
        pumps = [
            asyncio.create_task(self._write_stdin(process, prompt)),
            asyncio.create_task(self._read_stdout(process)),
            asyncio.create_task(self._read_stderr(process)),
        ]
        exit_code: int | None = None
        try:
            try:
                await asyncio.gather(*pumps)
            except Exception as e:
                logger.error("agent_output_pump_failed", pid=self.pid, error=str(e))
                self._force_kill("output_pump_failed")
            exit_code = await process.wait()
        except asyncio.CancelledError:
            self._force_kill("supervisor_cancelled")
            raise
        finally:
            for pump in pumps:
                pump.cancel()
            watchdog.cancel()
            if self._escalation is not None:
                self._escalation.cancel()
            _active_processes.discard(self)

            # Exactly one ProcessClosed, whatever ended the run
            for record in self._parser.flush():
                self._events.put_nowait(record)
            logger.info("agent_exited", pid=self.pid, exit_code=exit_code)
            self._events.put_nowait(ProcessClosed(exit_code=exit_code))

    async def _watchdog(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if self._process is not None and self._process.returncode is None and not self._killed:
            logger.warning("agent_hard_timeout", pid=self.pid, timeout_seconds=timeout)
            self._events.put_nowait(
                ProcessError(
                    reason="timeout",
                    message=f"Agent timed out after {timeout:g}s",
                )
            )
            self.kill()

    async def _write_stdin(self, process: asyncio.subprocess.Process, prompt: str) -> None:
        stdin = process.stdin
        if stdin is None:
            return
        try:
            stdin.write(prompt.encode("utf-8"))
            await stdin.drain()
            stdin.close()
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning("agent_stdin_closed_early", pid=self.pid, error=str(e))

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        stdout = process.stdout
        if stdout is None:
            return
        while True:
            chunk = await stdout.read(_READ_CHUNK_BYTES)
            if not chunk:
                return
            for record in self._parser.feed(chunk):
                if record.kind == RecordKind.RAW:
                    logger.debug("agent_raw_output", pid=self.pid, line=record.line[:_STDERR_PREVIEW_CHARS])
                self._events.put_nowait(record)

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        stderr = process.stderr
        if stderr is None:
            return
        # Read in chunks: one oversized line must not stop the pipe draining
        lines = LineBuffer(max_pending=_STDERR_LINE_LIMIT_BYTES)
        while True:
            chunk = await stderr.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            for line in lines.feed(chunk):
                self._log_stderr(line)
        for line in lines.flush():
            self._log_stderr(line)

    def _log_stderr(self, line: str) -> None:
        text = line.strip()
        if text:
            logger.debug("agent_stderr", pid=self.pid, line=text[:_STDERR_PREVIEW_CHARS])


@dataclass
class AgentVersion:
    """Result of checking the agent executable."""

    ok: bool
    version: str | None = None
    error: str | None = None


async def verify_agent(command: str | Sequence[str] | None = None) -> AgentVersion:
    """Run ``<agent> --version`` to check that the executable is usable."""
    argv = [*_split_command(command or settings.agent_command), "--version"]
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return AgentVersion(ok=False, error="Agent executable not found")
    except OSError as e:
        return AgentVersion(ok=False, error=str(e))

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), _VERSION_CHECK_TIMEOUT)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        return AgentVersion(ok=False, error="Agent version check timed out")

    if proc.returncode != 0:
        return AgentVersion(ok=False, error=f"Agent exited with code {proc.returncode}")
    return AgentVersion(ok=True, version=stdout.decode("utf-8", errors="replace").strip())
