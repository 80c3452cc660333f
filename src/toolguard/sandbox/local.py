"""
Local subprocess runner for allowlisted commands.

Commands are spawned without a shell, as the leader of their own process
group, in a fixed working directory. Output is captured into byte-bounded
collectors, and the whole group is killed on timeout or cancellation.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from enum import Enum, auto

from toolguard._types import ErrorCode, ExecOutcome
from toolguard.config import EXEC_MAX_OUTPUT_BYTES, ExecSettings
from toolguard.errors import ExecutionError
from toolguard.inputs import ExecCommand
from toolguard.security.policy import CommandPolicy

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
STREAM_LIMIT = 2**16
# Minimum time given to drain output after the leader exits
DRAIN_GRACE = 0.25


class ProcessState(Enum):
    """Lifecycle of a spawned process group."""

    RUNNING = auto()
    EXITED = auto()
    TIMED_OUT = auto()
    ABORTED = auto()
    KILLING = auto()
    KILLED = auto()


class OutputCollector:
    """
    Byte-bounded sink for one output stream.

    Bytes past the cap are dropped and the stream is flagged truncated. A chunk
    that crosses the cap is cut exactly at the boundary.
    """

    def __init__(self, max_bytes: int) -> None:
        self.max_bytes = max_bytes
        self.bytes = 0
        self.truncated = False
        self._chunks: list[bytes] = []

    def feed(self, chunk: bytes) -> None:
        remaining = self.max_bytes - self.bytes
        if remaining <= 0:
            if chunk:
                self.truncated = True
            return
        if len(chunk) > remaining:
            self._chunks.append(chunk[:remaining])
            self.bytes = self.max_bytes
            self.truncated = True
            return
        self._chunks.append(chunk)
        self.bytes += len(chunk)

    def text(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")


class _ExitWatcher(asyncio.subprocess.SubprocessStreamProtocol):
    """Stream protocol that also reports when the child is reaped."""

    def __init__(self, limit: int, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(limit=limit, loop=loop)
        self.exited: asyncio.Future[None] = loop.create_future()

    def process_exited(self) -> None:
        super().process_exited()
        if not self.exited.done():
            self.exited.set_result(None)


class ProcessGroup:
    """
    A detached child and every descendant sharing its process group.

    RUNNING -> EXITED, or RUNNING -> TIMED_OUT/ABORTED -> KILLING -> KILLED.
    ``cause`` remembers why the group was killed. The group is signalled at
    most once, so a reaped leader's pgid is never signalled again later.
    """

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        transport: asyncio.SubprocessTransport,
        exited: asyncio.Future[None],
    ) -> None:
        self.proc = proc
        self.transport = transport
        self.exited = exited
        self.state = ProcessState.RUNNING
        self.cause: ProcessState | None = None
        self.signalled = False

    @property
    def pid(self) -> int:
        return self.proc.pid

    def time_out(self) -> None:
        self._terminate(ProcessState.TIMED_OUT)

    def abort(self) -> None:
        self._terminate(ProcessState.ABORTED)

    def mark_exited(self) -> None:
        if self.state is ProcessState.RUNNING:
            self.state = ProcessState.EXITED
        elif self.state is ProcessState.KILLING:
            self.state = ProcessState.KILLED

    def _terminate(self, cause: ProcessState) -> None:
        if self.state is not ProcessState.RUNNING:
            return
        self.cause = cause
        self.state = ProcessState.KILLING
        logger.debug(f"Killing process group {self.pid} ({cause.name.lower()})")
        self.kill()

    def kill(self) -> None:
        """SIGKILL the whole group once, falling back to the single child."""
        if self.signalled:
            return
        self.signalled = True
        killpg = getattr(os, "killpg", None)
        if killpg is not None:
            try:
                killpg(self.pid, signal.SIGKILL)
                return
            except ProcessLookupError:
                # Nothing left in the group
                return
            except OSError as exc:
                logger.debug(f"Group kill of {self.pid} failed ({exc}), killing child only")
        if not self.exited.done():
            try:
                self.proc.kill()
            except ProcessLookupError:
                pass

    async def close(self) -> None:
        """Make sure no member of the group outlives the call."""
        if not self.exited.done():
            self.cause = self.cause or ProcessState.ABORTED
            self.state = ProcessState.KILLING
            self.kill()
            await asyncio.shield(self.exited)
        self.mark_exited()
        self.transport.close()


class ProcessRunner:
    """
    Runs validated ExecCommands in a fixed working directory.

    Every command is checked against the runner's CommandPolicy before it is
    spawned, so a hand-built ExecCommand cannot bypass the allowlist.

    Example:
        >>> runner = ProcessRunner(ExecSettings(cwd="./workspace"))
        >>> outcome = await runner.run(parse_exec_request({"command": "node", "args": ["-v"]}))
        >>> print(outcome.stdout)
    """

    def __init__(self, settings: ExecSettings | None = None, *, policy: CommandPolicy | None = None) -> None:
        self._settings = settings or ExecSettings.from_env()
        self._policy = policy or CommandPolicy.default()

    @property
    def cwd(self) -> str:
        return self._settings.cwd

    @property
    def policy(self) -> CommandPolicy:
        return self._policy

    async def run(self, command: ExecCommand, *, cancel: asyncio.Event | None = None) -> ExecOutcome:
        """
        Execute a command and return its outcome.

        Args:
            command: A validated command.
            cancel: Optional event; setting it kills the process group.

        Returns:
            ExecOutcome for a zero exit status.

        Raises:
            SecurityViolation: The command or an argument is not allowed.
            ExecutionError: SPAWN_FAILED, EXEC_FAILED, TIMEOUT, NON_ZERO_EXIT
                or ABORTED. All but SPAWN_FAILED carry the outcome as details.
        """
        self._policy.check(command.command, command.args)
        if cancel is not None and cancel.is_set():
            raise ExecutionError(ErrorCode.ABORTED, "Request aborted")

        max_bytes = EXEC_MAX_OUTPUT_BYTES.clamp(command.max_output_bytes)
        stdout = OutputCollector(max_bytes)
        stderr = OutputCollector(max_bytes)
        started = time.monotonic()

        group = await self._spawn(command)
        logger.debug(f"Spawned {command.command} as process group {group.pid}")
        try:
            await self._supervise(group, command, stdout, stderr, cancel)
        except OSError as exc:
            raise ExecutionError(
                ErrorCode.EXEC_FAILED,
                "Process execution failed",
                {"message": str(exc)},
            ) from exc
        finally:
            await group.close()

        outcome = self._outcome(command, group, stdout, stderr, started)
        if group.cause is ProcessState.ABORTED:
            raise ExecutionError(ErrorCode.ABORTED, "Request aborted", outcome)
        if outcome.timed_out:
            raise ExecutionError(
                ErrorCode.TIMEOUT,
                f"Process timed out after {command.timeout_ms}ms",
                outcome,
            )
        if outcome.exit_code != 0:
            raise ExecutionError(ErrorCode.NON_ZERO_EXIT, "Process exited with non-zero status", outcome)
        return outcome

    async def _spawn(self, command: ExecCommand) -> ProcessGroup:
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.subprocess_exec(
                lambda: _ExitWatcher(limit=STREAM_LIMIT, loop=loop),
                command.command,
                *command.args,
                cwd=self._settings.cwd,
                env=self._settings.env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise ExecutionError(
                ErrorCode.SPAWN_FAILED,
                "Failed to spawn process",
                {"message": str(exc)},
            ) from exc
        proc = asyncio.subprocess.Process(transport, protocol, loop)
        return ProcessGroup(proc, transport, protocol.exited)

    async def _supervise(
        self,
        group: ProcessGroup,
        command: ExecCommand,
        stdout: OutputCollector,
        stderr: OutputCollector,
        cancel: asyncio.Event | None,
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + command.timeout_seconds
        proc = group.proc
        io_tasks = [
            asyncio.create_task(_pump(proc.stdout, stdout)),
            asyncio.create_task(_pump(proc.stderr, stderr)),
            asyncio.create_task(_feed(proc.stdin, command.stdin)),
        ]
        cancelled = asyncio.create_task(cancel.wait()) if cancel is not None else None
        watched = {group.exited} if cancelled is None else {group.exited, cancelled}

        try:
            # Leader exit, not pipe EOF: descendants may hold the pipes open
            done, _ = await asyncio.wait(
                watched,
                timeout=command.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if group.exited not in done:
                if cancelled is not None and cancelled in done:
                    group.abort()
                else:
                    group.time_out()
                await asyncio.shield(group.exited)
            group.mark_exited()
            group.kill()

            drain = max(deadline - loop.time(), DRAIN_GRACE)
            done, pending = await asyncio.wait(io_tasks, timeout=drain)
            if pending:
                # Pipes held by a process outside the group
                logger.debug(f"Output of process group {group.pid} still open after exit, closing")
            for task in done:
                task.result()
        finally:
            for task in (*io_tasks, cancelled):
                if task is not None and not task.done():
                    task.cancel()

    def _outcome(
        self,
        command: ExecCommand,
        group: ProcessGroup,
        stdout: OutputCollector,
        stderr: OutputCollector,
        started: float,
    ) -> ExecOutcome:
        returncode = group.proc.returncode
        exit_code: int | None = returncode
        signal_name: str | None = None
        if returncode is not None and returncode < 0:
            exit_code = None
            signal_name = _signal_name(-returncode)

        return ExecOutcome(
            cwd=self._settings.cwd,
            command=command.command,
            args=command.args,
            exit_code=exit_code,
            signal=signal_name,
            timed_out=group.cause is ProcessState.TIMED_OUT,
            duration_ms=int((time.monotonic() - started) * 1000),
            stdout=stdout.text(),
            stderr=stderr.text(),
            stdout_truncated=stdout.truncated,
            stderr_truncated=stderr.truncated,
        )


async def _pump(stream: asyncio.StreamReader | None, collector: OutputCollector) -> None:
    if stream is None:
        return
    while chunk := await stream.read(CHUNK_SIZE):
        collector.feed(chunk)


async def _feed(stream: asyncio.StreamWriter | None, text: str | None) -> None:
    if stream is None:
        return
    try:
        if text:
            stream.write(text.encode("utf-8"))
            await stream.drain()
    except (BrokenPipeError, ConnectionResetError):
        # The child exited or closed stdin without reading all input
        logger.debug("stdin closed by child before all input was written")
    finally:
        stream.close()


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"SIG{signum}"
