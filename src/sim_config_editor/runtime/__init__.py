"""Runtime module for subprocess management and event streaming.

This module provides isolated process execution with reliable termination,
server-sent event channels, run sessions binding the two, and config change
fan-out.
"""

from __future__ import annotations

from .event_stream import Channel, EventStreamChannel
from .notifier import ChangeNotifier, ConfigWatcher, SubscriberRegistry
from .process_runner import (
    OutcomeKind,
    OutputChunk,
    ProcessHandle,
    ProcessOutcome,
    ProcessRunner,
    ProcessSpec,
    RunResult,
)
from .session import RunSession, SessionState

__all__ = [
    "Channel",
    "ChangeNotifier",
    "ConfigWatcher",
    "EventStreamChannel",
    "OutcomeKind",
    "OutputChunk",
    "ProcessHandle",
    "ProcessOutcome",
    "ProcessRunner",
    "ProcessSpec",
    "RunResult",
    "RunSession",
    "SessionState",
    "SubscriberRegistry",
]
