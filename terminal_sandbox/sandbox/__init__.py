"""PTY session management and output streaming."""

from terminal_sandbox.sandbox.buffer import TRUNCATION_MESSAGE, BoundedBuffer, TailBuffer
from terminal_sandbox.sandbox.events import (
    SessionCreatedEvent,
    SessionEndedEvent,
    SessionLineEvent,
    SessionOutputEvent,
    SessionSubscription,
)
from terminal_sandbox.sandbox.session import (
    SessionStatus,
    TerminalSession,
    TerminalSessionManager,
    graceful_kill,
)
from terminal_sandbox.sandbox.stream import (
    CollectedOutput,
    StreamingOutputHandler,
    collect_output,
    create_output_handler,
)

__all__ = [
    "TRUNCATION_MESSAGE",
    "BoundedBuffer",
    "CollectedOutput",
    "SessionCreatedEvent",
    "SessionEndedEvent",
    "SessionLineEvent",
    "SessionOutputEvent",
    "SessionStatus",
    "SessionSubscription",
    "StreamingOutputHandler",
    "TailBuffer",
    "TerminalSession",
    "TerminalSessionManager",
    "collect_output",
    "create_output_handler",
    "graceful_kill",
]
