"""Streaming output handling for terminal sessions.

``StreamingOutputHandler`` keeps a keep-newest ``TailBuffer`` per session and
republishes what it is fed as output, line and end events. ``collect_output``
blocks until a session finishes and returns everything it printed.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable

from pydantic import BaseModel

from terminal_sandbox.core.config import OUTPUT_BUFFER_MAX_SIZE
from terminal_sandbox.core.errors import SessionError
from terminal_sandbox.sandbox.buffer import TailBuffer
from terminal_sandbox.sandbox.events import (
    ChannelRegistry,
    EventCallback,
    SessionEndedEvent,
    SessionEvent,
    SessionLineEvent,
    SessionOutputEvent,
    SessionSubscription,
)
from terminal_sandbox.sandbox.session import SessionStatus, TerminalSessionManager

logger = logging.getLogger(__name__)


class StreamingOutputHandler:
    """Buffers and republishes output for any number of sessions.

    Buffers keep the most recent ``max_buffer_size`` characters. A consumer
    either passes a ``listener`` that sees every session's events, or
    subscribes to a single session with ``subscribe``.
    """

    def __init__(
        self,
        max_buffer_size: int = OUTPUT_BUFFER_MAX_SIZE,
        emit_lines: bool = True,
        listener: EventCallback | None = None,
    ):
        self.max_buffer_size = max_buffer_size
        self.emit_lines = emit_lines
        self._listener = listener
        self._buffers: dict[str, TailBuffer] = {}
        self._channels = ChannelRegistry()

    def _emit(self, session_id: str, event: SessionEvent) -> None:
        if self._listener is not None:
            try:
                self._listener(event)
            except Exception:
                logger.exception(f"Output listener failed for session '{session_id}'")
        self._channels.publish(session_id, event)

    def on_data(self, session_id: str, data: str) -> None:
        buffer = self._buffers.get(session_id)
        if buffer is None:
            buffer = TailBuffer(self.max_buffer_size)
            self._buffers[session_id] = buffer
        buffer.append(data)

        self._emit(session_id, SessionOutputEvent(type="data", session_id=session_id, data=data))

        if self.emit_lines:
            for line in data.split("\n"):
                stripped = line.strip()
                if stripped:
                    self._emit(session_id, SessionLineEvent(session_id=session_id, line=stripped))

    def on_exit(self, session_id: str, exit_code: int) -> None:
        self._emit(
            session_id, SessionOutputEvent(type="exit", session_id=session_id, exit_code=exit_code)
        )
        self._emit(
            session_id,
            SessionEndedEvent(
                session_id=session_id,
                status="completed" if exit_code == 0 else "failed",
                exit_code=exit_code,
            ),
        )

    def on_error(self, session_id: str, error: Exception | str) -> None:
        self._emit(
            session_id, SessionOutputEvent(type="error", session_id=session_id, message=str(error))
        )

    def on_timeout(self, session_id: str, timeout_ms: int) -> None:
        self._emit(
            session_id,
            SessionOutputEvent(
                type="timeout",
                session_id=session_id,
                message=f"Command timed out after {timeout_ms}ms",
                timeout_ms=timeout_ms,
            ),
        )

    def get_buffer(self, session_id: str) -> str:
        buffer = self._buffers.get(session_id)
        return buffer.getvalue() if buffer is not None else ""

    def get_buffer_size(self, session_id: str) -> int:
        buffer = self._buffers.get(session_id)
        return len(buffer) if buffer is not None else 0

    def has_buffer(self, session_id: str) -> bool:
        return session_id in self._buffers

    def get_active_sessions(self) -> list[str]:
        """Ids of sessions that currently have a buffer."""
        return list(self._buffers)

    def clear_buffer(self, session_id: str) -> None:
        """Drop a session's buffer. Its subscribers stay attached."""
        self._buffers.pop(session_id, None)

    def clear_all_buffers(self) -> None:
        self._buffers.clear()

    def cleanup(self, session_id: str) -> None:
        """Drop a session's buffer and end its subscriptions."""
        self.clear_buffer(session_id)
        self._channels.discard(session_id)

    def cleanup_all(self) -> None:
        """Drop every buffer and end every subscription."""
        self.clear_all_buffers()
        self._channels.clear()

    def subscribe(self, session_id: str, callback: EventCallback | None = None) -> SessionSubscription:
        return self._channels.subscribe(session_id, callback)

    def attach(self, manager: TerminalSessionManager, session_id: str) -> SessionSubscription | None:
        """Feed a managed session's events into this handler.

        Returns the manager subscription (close it to detach), or None if the
        manager does not know the session.
        """

        # Set once the session was cancelled or timed out; its later exit
        # is the kill, not a result
        ended = False

        def forward(event: SessionEvent) -> None:
            nonlocal ended
            if not isinstance(event, SessionOutputEvent):
                return
            if event.type == "data" and event.data is not None:
                self.on_data(session_id, event.data)
            elif event.type == "exit":
                if not ended:
                    self.on_exit(session_id, event.exit_code if event.exit_code is not None else 0)
            elif event.type == "error":
                ended = True
                self.on_error(session_id, event.message or "Unknown error")
            elif event.type == "timeout":
                ended = True
                self.on_timeout(session_id, event.timeout_ms or 0)

        return manager.subscribe(session_id, forward)


def create_output_handler(
    on_output: Callable[[str, str], None],
    on_exit: Callable[[str, int], None] | None = None,
    on_error: Callable[[str, SessionError], None] | None = None,
) -> StreamingOutputHandler:
    """Build a handler that routes events to plain callbacks.

    ``on_output(session_id, data)``, ``on_exit(session_id, exit_code)`` and
    ``on_error(session_id, error)``. Timeout events have no callback.
    """

    def route(event: SessionEvent) -> None:
        if not isinstance(event, SessionOutputEvent):
            return
        if event.type == "data":
            if event.data:
                on_output(event.session_id, event.data)
        elif event.type == "exit":
            if on_exit is not None:
                on_exit(event.session_id, event.exit_code if event.exit_code is not None else 0)
        elif event.type == "error":
            if on_error is not None and event.message:
                on_error(event.session_id, SessionError(event.message))

    return StreamingOutputHandler(listener=route)


class CollectedOutput(BaseModel):
    """Everything a session printed, as gathered by ``collect_output``."""

    output: str
    exit_code: int | None = None
    timed_out: bool = False
    truncated: bool = False


def collect_output(
    manager: TerminalSessionManager,
    session_id: str,
    timeout_ms: int | None = None,
    max_size: int | None = None,
) -> CollectedOutput:
    """Block until a session ends and return its output.

    ``timeout_ms`` bounds the wait (the session keeps running if it expires)
    and yields ``timed_out=True``, as does a session timeout. With
    ``max_size`` the oldest chunks are dropped once the total exceeds it, but
    the newest chunk is always kept whole.

    Raises:
        SessionError: unknown session, or the session reported an error
            (for example it was cancelled)
    """
    subscription = manager.subscribe(session_id)
    if subscription is None:
        raise SessionError(f"Unknown session '{session_id}'")

    chunks: deque[str] = deque()
    current_size = 0
    truncated = False
    deadline = time.monotonic() + timeout_ms / 1000 if timeout_ms else None

    with subscription:
        while True:
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return CollectedOutput(output="".join(chunks), timed_out=True, truncated=truncated)

            event = subscription.get(timeout=remaining)
            if event is None:
                if not subscription.closed:
                    continue  # wait expired; the deadline check returns
                # Channel was already closed when we subscribed
                session = manager.get_session(session_id)
                if session is None:
                    raise SessionError(f"Session '{session_id}' was cleaned up while collecting output")
                return CollectedOutput(
                    output=session.output_buffer,
                    exit_code=session.exit_code,
                    timed_out=session.status is SessionStatus.TIMED_OUT,
                    truncated=truncated or session.truncated,
                )

            if not isinstance(event, SessionOutputEvent):
                continue

            if event.type == "data" and event.data:
                chunks.append(event.data)
                current_size += len(event.data)
                if max_size and current_size > max_size:
                    truncated = True
                    while len(chunks) > 1 and current_size > max_size:
                        current_size -= len(chunks.popleft())
            elif event.type == "exit":
                return CollectedOutput(
                    output="".join(chunks), exit_code=event.exit_code, truncated=truncated
                )
            elif event.type == "error":
                raise SessionError(event.message or "Unknown error")
            elif event.type == "timeout":
                return CollectedOutput(output="".join(chunks), timed_out=True, truncated=truncated)
