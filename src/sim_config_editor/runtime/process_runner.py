"""Process runner with subprocess isolation and reliable termination.

sim-config-editor runtime module

This module provides:
- Cross-platform subprocess isolation (new session/process group)
- A single merged, ordered stream of stdout/stderr chunks
- Exactly one terminal outcome per process (normal/signaled/spawn_failed/timed_out)
- Run timeout enforced by the runner itself
- Idempotent kill plus graceful-then-forced termination for cleanup

Key design points:
- POSIX: start_new_session=True to create new process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Termination signals the process group, not just the main process
- The child never inherits stdin (DEVNULL)
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import subprocess
import sys
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Literal

import anyio

from ..errors import SpawnError

__all__ = [
    "DEFAULT_RUN_TIMEOUT",
    "OutcomeKind",
    "OutputChunk",
    "ProcessHandle",
    "ProcessOutcome",
    "ProcessRunner",
    "ProcessSpec",
    "RunResult",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Default timeouts
DEFAULT_RUN_TIMEOUT = 5 * 60.0  # hard ceiling for one run
DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL

READ_SIZE = 4096

# How often a chunk wait re-checks its cancel scope
CANCEL_POLL_INTERVAL = 0.05

_CANCELLED = object()


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to run.

    Attributes:
        argv: Command line arguments (first element is the executable)
        cwd: Working directory for the process
        env: Environment variables (None = inherit parent)
        artifact: Optional file that must exist before spawning (e.g. a built
            CLI bundle); missing means the tool was never built
    """

    argv: list[str]
    cwd: Path
    env: Mapping[str, str] | None = None
    artifact: Path | None = None


@dataclass(frozen=True)
class OutputChunk:
    """One piece of text read from the child, tagged with its pipe."""

    stream: Literal["stdout", "stderr"]
    text: str


class OutcomeKind(str, Enum):
    NORMAL = "normal"
    SIGNALED = "signaled"
    SPAWN_FAILED = "spawn_failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class ProcessOutcome:
    """Terminal outcome of one process.

    Attributes:
        kind: Outcome classification
        code: Exit code (NORMAL only; None when the process exited with neither
            a code nor a signal)
        signal: Signal name such as "SIGTERM" (SIGNALED only)
        message: Human readable reason (SPAWN_FAILED only)
    """

    kind: OutcomeKind
    code: int | None = None
    signal: str | None = None
    message: str | None = None

    @classmethod
    def normal(cls, code: int | None) -> "ProcessOutcome":
        return cls(OutcomeKind.NORMAL, code=code)

    @classmethod
    def signaled(cls, signal_name: str) -> "ProcessOutcome":
        return cls(OutcomeKind.SIGNALED, signal=signal_name)

    @classmethod
    def spawn_failed(cls, message: str) -> "ProcessOutcome":
        return cls(OutcomeKind.SPAWN_FAILED, message=message)

    @classmethod
    def timed_out(cls) -> "ProcessOutcome":
        return cls(OutcomeKind.TIMED_OUT)

    @classmethod
    def from_returncode(cls, returncode: int | None) -> "ProcessOutcome":
        """Classify an asyncio returncode (negative = killed by signal on POSIX)."""
        if returncode is None:
            return cls.normal(None)
        if returncode < 0 and not IS_WINDOWS:
            return cls.signaled(_signal_name(-returncode))
        return cls.normal(returncode)

    @property
    def succeeded(self) -> bool:
        return self.kind is OutcomeKind.NORMAL and self.code == 0


@dataclass(frozen=True)
class RunResult:
    """Collected result of ProcessRunner.run()."""

    outcome: ProcessOutcome
    output: str
    stderr: str


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"SIG{signum}"


class ProcessHandle:
    """A running child process and its merged output stream.

    Created by ProcessRunner.start(). Both pipes are read by background
    tasks as soon as the process starts; chunks are queued in read order and
    consumed through chunks(). Every chunk is appended to ``output_text``;
    stderr chunks are additionally kept in ``stderr_text`` for server-side
    diagnostics.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        spec: ProcessSpec,
        *,
        term_timeout: float = DEFAULT_TERM_TIMEOUT,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
    ) -> None:
        self._process = process
        self.spec = spec
        self.term_timeout = term_timeout
        self.kill_timeout = kill_timeout

        self._queue: asyncio.Queue[OutputChunk | None] = asyncio.Queue()
        self._output_parts: list[str] = []
        self._stderr_parts: list[str] = []
        self._kill_requested = False
        self._timed_out = False
        self._outcome: ProcessOutcome | None = None
        self._timeout_handle: asyncio.TimerHandle | None = None
        self.expired = asyncio.Event()

        self._readers = [
            asyncio.create_task(self._read_pipe(process.stdout, "stdout")),
            asyncio.create_task(self._read_pipe(process.stderr, "stderr")),
        ]

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def alive(self) -> bool:
        return self._process.returncode is None

    @property
    def kill_requested(self) -> bool:
        return self._kill_requested

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    @property
    def output_text(self) -> str:
        """Everything read so far from both pipes, in read order."""
        return "".join(self._output_parts)

    @property
    def stderr_text(self) -> str:
        return "".join(self._stderr_parts)

    async def _read_pipe(
        self,
        pipe: asyncio.StreamReader | None,
        stream: Literal["stdout", "stderr"],
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            if pipe is None:
                return
            while True:
                data = await pipe.read(READ_SIZE)
                text = decoder.decode(data, final=not data)
                if text:
                    self._accept(stream, text)
                if not data:
                    break
        finally:
            self._queue.put_nowait(None)

    def _accept(self, stream: Literal["stdout", "stderr"], text: str) -> None:
        self._output_parts.append(text)
        if stream == "stderr":
            self._stderr_parts.append(text)
            logger.debug(f"Runner stderr pid={self.pid}: {text.rstrip()}")
        self._queue.put_nowait(OutputChunk(stream, text))

    async def chunks(
        self,
        *,
        cancel_scope: anyio.CancelScope | None = None,
    ) -> AsyncIterator[OutputChunk]:
        """Yield output chunks from both pipes until both reach EOF.

        Args:
            cancel_scope: Optional anyio.CancelScope; iteration stops as soon
                as it has been cancelled, even while waiting on a silent child

        Yields:
            OutputChunk in the order the chunks were read
        """
        open_pipes = len(self._readers)
        while open_pipes:
            if cancel_scope is not None and cancel_scope.cancel_called:
                return
            chunk = await self._next_chunk(cancel_scope)
            if chunk is _CANCELLED:
                logger.debug(f"Chunk iteration cancelled pid={self.pid}")
                return
            if chunk is None:
                open_pipes -= 1
                continue
            yield chunk

    async def _next_chunk(self, cancel_scope: anyio.CancelScope | None) -> Any:
        """Next queue item, or _CANCELLED once cancel_scope is cancelled."""
        if cancel_scope is None:
            return await self._queue.get()
        getter = asyncio.ensure_future(self._queue.get())
        try:
            while not getter.done():
                if cancel_scope.cancel_called:
                    return _CANCELLED
                await asyncio.wait({getter}, timeout=CANCEL_POLL_INTERVAL)
            return getter.result()
        finally:
            if not getter.done():
                getter.cancel()

    async def wait(self) -> ProcessOutcome:
        """Wait for the process to exit and return its single outcome."""
        if self._outcome is None:
            returncode = await self._process.wait()
            await asyncio.gather(*self._readers, return_exceptions=True)
            self.cancel_timeout()
            if self._outcome is None:
                if self._timed_out:
                    self._outcome = ProcessOutcome.timed_out()
                else:
                    self._outcome = ProcessOutcome.from_returncode(returncode)
                logger.debug(
                    f"Subprocess completed pid={self.pid} "
                    f"returncode={returncode} outcome={self._outcome.kind.value}"
                )
        return self._outcome

    def arm_timeout(self, seconds: float | None) -> None:
        """Start the run timeout; on expiry the process is killed."""
        self.cancel_timeout()
        if seconds is None:
            return
        loop = asyncio.get_running_loop()
        self._timeout_handle = loop.call_later(seconds, self._expire, seconds)

    def cancel_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    def _expire(self, seconds: float) -> None:
        self._timeout_handle = None
        if not self.alive:
            return
        logger.warning(f"Subprocess timed out after {seconds:g}s pid={self.pid}")
        self._timed_out = True
        self.kill()
        self.expired.set()

    def kill(self) -> bool:
        """Request graceful termination (SIGTERM to the process group).

        Idempotent: safe to call repeatedly or after the process exited.

        Returns:
            True if a termination request was actually sent
        """
        if self._kill_requested or not self.alive:
            return False
        self._kill_requested = True
        logger.debug(f"Terminating subprocess pid={self.pid}")
        try:
            if IS_WINDOWS:
                _windows_terminate(self._process)
            else:
                _posix_signal(self._process, signal.SIGTERM)
        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={self.pid}")
        return True

    async def aclose(self) -> None:
        """Release the process: kill if alive, escalate, stop pipe readers.

        Shielded from cancellation so a cancelled caller cannot leave an
        orphan process behind.
        """
        try:
            await asyncio.shield(self._do_close())
        except asyncio.CancelledError:
            await self._do_close()
            raise

    async def _do_close(self) -> None:
        self.cancel_timeout()
        if self.alive:
            await self._terminate()
        for reader in self._readers:
            if not reader.done():
                reader.cancel()
        await asyncio.gather(*self._readers, return_exceptions=True)

    async def _terminate(self) -> None:
        """Terminate subprocess gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM (or CTRL_BREAK_EVENT on Windows), unless already sent
        2. Wait up to term_timeout for graceful exit
        3. If still running, send SIGKILL (or kill() on Windows)
        4. Wait up to kill_timeout for forced exit
        """
        pid = self.pid
        try:
            self.kill()

            try:
                await asyncio.wait_for(self._process.wait(), timeout=self.term_timeout)
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={self._process.returncode}"
                )
                return
            except asyncio.TimeoutError:
                pass

            logger.debug(f"Force killing subprocess pid={pid}")
            if IS_WINDOWS:
                self._process.kill()
            else:
                _posix_signal(self._process, signal.SIGKILL)

            try:
                await asyncio.wait_for(self._process.wait(), timeout=self.kill_timeout)
                logger.debug(
                    f"Subprocess killed pid={pid} "
                    f"returncode={self._process.returncode}"
                )
            except asyncio.TimeoutError:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")

        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")
        except Exception as e:
            logger.warning(f"Error terminating subprocess pid={pid}: {e}")


def _posix_signal(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    """Send a signal to the process group, falling back to the process."""
    try:
        pgid = os.getpgid(process.pid)
        os.killpg(pgid, sig)
        logger.debug(f"Sent {sig.name} to process group pgid={pgid}")
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.debug(f"killpg failed, falling back to send_signal: {e}")
        process.send_signal(sig)


def _windows_terminate(process: asyncio.subprocess.Process) -> None:
    try:
        # Works because the child was created with CREATE_NEW_PROCESS_GROUP
        os.kill(process.pid, signal.CTRL_BREAK_EVENT)
        logger.debug(f"Sent CTRL_BREAK_EVENT to pid={process.pid}")
    except (ProcessLookupError, OSError) as e:
        logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
        process.terminate()


@dataclass
class ProcessRunner:
    """Cross-platform process runner with isolation and reliable termination.

    Example:
        runner = ProcessRunner(run_timeout=60)
        spec = ProcessSpec(argv=["node", "cli.js", "demo.json"], cwd=Path("."))

        handle = await runner.start(spec)
        try:
            async for chunk in handle.chunks():
                forward(chunk.text)
            outcome = await handle.wait()
        finally:
            await handle.aclose()
    """

    run_timeout: float | None = DEFAULT_RUN_TIMEOUT
    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT

    async def start(self, spec: ProcessSpec) -> ProcessHandle:
        """Spawn the process and start capturing both pipes.

        Raises:
            SpawnError: If the executable (or required artifact) is missing
                or cannot be launched
        """
        if spec.artifact is not None and not spec.artifact.exists():
            raise SpawnError(
                spec.argv,
                f"Runner not built: {spec.artifact} not found. Build it first.",
            )

        kwargs = self._build_subprocess_kwargs(spec)
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=spec.cwd,
                **kwargs,
            )
        except OSError as e:
            # FileNotFoundError / PermissionError / NotADirectoryError ...
            message = e.strerror or str(e)
            if e.filename:
                message = f"{message}: {e.filename}"
            raise SpawnError(spec.argv, message) from e

        logger.info(
            f"Process spawned with PID: {process.pid} "
            f"argv={spec.argv} cwd={spec.cwd}"
        )

        handle = ProcessHandle(
            process,
            spec,
            term_timeout=self.term_timeout,
            kill_timeout=self.kill_timeout,
        )
        handle.arm_timeout(self.run_timeout)
        return handle

    async def run(
        self,
        spec: ProcessSpec,
        *,
        on_chunk: Callable[[OutputChunk], None] | None = None,
    ) -> RunResult:
        """Run the process to completion and collect its output.

        Never raises for process-level failures: a spawn failure becomes a
        SPAWN_FAILED outcome and a timeout becomes TIMED_OUT.
        """
        try:
            handle = await self.start(spec)
        except SpawnError as e:
            return RunResult(ProcessOutcome.spawn_failed(e.message), "", "")

        try:
            async for chunk in handle.chunks():
                if on_chunk:
                    on_chunk(chunk)
            outcome = await handle.wait()
        finally:
            await handle.aclose()

        return RunResult(outcome, handle.output_text, handle.stderr_text)

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs."""
        kwargs: dict[str, Any] = {}

        if spec.env is not None:
            kwargs["env"] = dict(spec.env)

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # POSIX: start_new_session (equivalent to setsid)
            kwargs["start_new_session"] = True

        return kwargs
