"""Run session: one run request, one child process, one event channel.

States: IDLE -> STARTING -> STREAMING -> TERMINATING -> CLOSED

The session races three independent sources once the child is running:
- the output stream reaching EOF followed by the process exit
- the runner's timeout expiring
- the client connection going away (or the handler task being cancelled)

Whichever arrives first wins. The terminal path is guarded by a single
``_terminated`` flag that is checked and set before anything is written, so
exactly one terminal event (``done`` or ``error``) can ever be emitted and
every trigger converges on the same teardown: stop timers, kill the process
if it is still alive, close the channel.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from enum import Enum

import anyio

from ..errors import SpawnError
from ..events import (
    DoneEvent,
    ErrorEvent,
    OutputEvent,
    RunRequest,
    StartedEvent,
    StreamEvent,
)
from .event_stream import Channel
from .process_runner import (
    OutcomeKind,
    ProcessHandle,
    ProcessOutcome,
    ProcessRunner,
    ProcessSpec,
)

__all__ = ["RunSession", "SessionState", "format_timeout"]

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    TERMINATING = "terminating"
    CLOSED = "closed"


def format_timeout(seconds: float) -> str:
    """Render a timeout for the user: "5 minutes", "1 minute", "2.5 seconds"."""
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"
    return f"{seconds:g} second" if seconds == 1 else f"{seconds:g} seconds"


def _js(value: object) -> str:
    return "null" if value is None else str(value)


class RunSession:
    """Binds one ProcessRunner run to one Channel.

    Attributes:
        session_id: Unique id of this session
        request: The validated run request
        state: Current SessionState
        started_at: Monotonic timestamp of construction
    """

    def __init__(
        self,
        request: RunRequest,
        channel: Channel,
        runner: ProcessRunner,
        spec: ProcessSpec,
    ) -> None:
        self.session_id = str(uuid.uuid4())
        self.request = request
        self.channel = channel
        self.runner = runner
        self.spec = spec
        self.state = SessionState.IDLE
        self.started_at = time.monotonic()
        self.handle: ProcessHandle | None = None
        self.saw_output = False
        self.terminal_event: StreamEvent | None = None
        self._terminated = False

    def __repr__(self) -> str:
        return (
            f"RunSession(id={self.session_id[:8]}..., "
            f"config={self.request.config_identifier}, "
            f"state={self.state.value})"
        )

    @property
    def closed(self) -> bool:
        return self._terminated

    @property
    def accumulated_output(self) -> str:
        return self.handle.output_text if self.handle else ""

    @property
    def accumulated_stderr(self) -> str:
        return self.handle.stderr_text if self.handle else ""

    async def run(self) -> None:
        """Drive the session to CLOSED. Never raises except on cancellation."""
        try:
            await self._run()
        except (anyio.get_cancelled_exc_class(), asyncio.CancelledError):
            logger.info(f"Run cancelled: {self}")
            await asyncio.shield(self._terminate(None))
            raise
        finally:
            await self._release()

    async def _run(self) -> None:
        self.state = SessionState.STARTING
        await self.channel.open()
        if not self.channel.is_open:
            logger.info(f"Client gone before run started, not spawning: {self}")
            await self._terminate(None)
            return
        await self.channel.send(StartedEvent())

        try:
            self.handle = await self.runner.start(self.spec)
        except SpawnError as e:
            logger.error(f"Error spawning process for {self.request.config_identifier}: {e}")
            await self._terminate(ErrorEvent(error=f"Failed to start process: {e.message}"))
            return

        self.state = SessionState.STREAMING
        await self._arbitrate(self.handle)

    async def _arbitrate(self, handle: ProcessHandle) -> None:
        streaming = asyncio.create_task(self._stream(handle), name=f"run-stream-{self.session_id[:8]}")
        expired = asyncio.create_task(handle.expired.wait())
        disconnected = asyncio.create_task(self.channel.wait_disconnected())
        waiters = {streaming, expired, disconnected}
        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

            if streaming in done:
                try:
                    outcome = streaming.result()
                except Exception as e:
                    logger.exception(f"Error streaming process output: {self}")
                    await self._terminate(ErrorEvent(error=f"Error reading process output: {e}"))
                else:
                    await self._terminate(self._outcome_event(outcome))
            elif expired in done:
                await self._terminate(self._timeout_event())
            else:
                logger.info(f"Request aborted by client, killing process: {self}")
                await self._terminate(None)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

    async def _stream(self, handle: ProcessHandle) -> ProcessOutcome:
        async for chunk in handle.chunks():
            self.saw_output = True
            await self.channel.send(OutputEvent(data=chunk.text))
        return await handle.wait()

    def _outcome_event(self, outcome: ProcessOutcome) -> StreamEvent:
        """Apply the terminal-event policy to a process outcome."""
        if outcome.kind is OutcomeKind.TIMED_OUT:
            return self._timeout_event()

        if self.accumulated_stderr:
            logger.warning(f"Stderr content: {self.accumulated_stderr}")

        output = self.accumulated_output
        if not self.saw_output and not output and not self.accumulated_stderr:
            return ErrorEvent(
                error=(
                    "Process exited without producing output. "
                    f"Exit code: {_js(outcome.code)}, Signal: {_js(outcome.signal)}. "
                    "Make sure the runner is built and dependencies are available."
                )
            )
        if outcome.code is not None:
            return DoneEvent(code=outcome.code, output=output)
        if outcome.signal:
            return DoneEvent(code=None, signal=outcome.signal, output=output)
        return DoneEvent(code=None, output=output)

    def _timeout_event(self) -> ErrorEvent:
        if self.handle is not None:
            self.handle.kill()
        timeout = self.runner.run_timeout or 0
        return ErrorEvent(error=f"Process timed out after {format_timeout(timeout)}")

    async def _terminate(self, event: StreamEvent | None) -> bool:
        """Emit at most one terminal event and close everything.

        Returns:
            True if this call performed the termination
        """
        if self._terminated:
            return False
        self._terminated = True
        self.state = SessionState.TERMINATING

        if self.handle is not None:
            self.handle.cancel_timeout()
            self.handle.kill()

        if event is not None:
            self.terminal_event = event
            await self.channel.send(event)
        await self.channel.close()

        self.state = SessionState.CLOSED
        elapsed = time.monotonic() - self.started_at
        logger.info(
            f"Run finished: {self} "
            f"terminal={event.type if event else 'none'} elapsed={elapsed:.1f}s"
        )
        return True

    async def _release(self) -> None:
        """Reap the child after the channel is closed."""
        if self.handle is not None:
            await self.handle.aclose()
