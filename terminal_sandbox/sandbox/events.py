"""Session events and per-session delivery channels.

Each session gets its own channel. A consumer subscribes to exactly the
session it cares about and receives a ``SessionSubscription``: either a
callback invoked on the publishing thread, or a thread-safe queue that can be
iterated until the channel closes. Closing a subscription removes it from its
channel, so abandoned listeners do not pile up on a shared bus.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Iterator
from typing import Literal, Union

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class SessionOutputEvent(BaseModel):
    """Output or termination notice for one session."""

    type: Literal["data", "exit", "error", "timeout"]
    session_id: str
    data: str | None = None
    exit_code: int | None = None
    message: str | None = None
    timeout_ms: int | None = None


class SessionLineEvent(BaseModel):
    """A single non-blank, stripped line of output."""

    session_id: str
    line: str


class SessionCreatedEvent(BaseModel):
    session_id: str
    command: str
    cwd: str


class SessionEndedEvent(BaseModel):
    """Summary emitted when a session reaches a terminal state."""

    session_id: str
    status: str
    exit_code: int | None = None
    signal: int | None = None
    reason: str | None = None
    timeout_ms: int | None = None


SessionEvent = Union[SessionOutputEvent, SessionLineEvent, SessionCreatedEvent, SessionEndedEvent]
EventCallback = Callable[[SessionEvent], None]

_CLOSED = object()


class SessionSubscription:
    """One consumer's view of one session's events.

    USAGE (queue mode):
        with manager.subscribe(session_id) as sub:
            for event in sub:
                ...

    USAGE (callback mode):
        sub = manager.subscribe(session_id, callback=handle)
        ...
        sub.close()
    """

    def __init__(self, channel: SessionChannel, callback: EventCallback | None = None):
        self.session_id = channel.session_id
        self._channel = channel
        self._callback = callback
        self._queue: queue.Queue[object] = queue.Queue()
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _deliver(self, event: SessionEvent) -> None:
        if self._closed.is_set():
            return
        if self._callback is None:
            self._queue.put(event)
            return
        try:
            self._callback(event)
        except Exception:
            # A broken listener must not stop output for other listeners
            logger.exception(f"Event listener for session '{self.session_id}' failed")

    def _end(self) -> None:
        if not self._closed.is_set():
            self._closed.set()
            self._queue.put(_CLOSED)

    def get(self, timeout: float | None = None) -> SessionEvent | None:
        """Next queued event, or None when the channel closed or ``timeout`` expired."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            # Keep the sentinel for later callers
            self._queue.put(_CLOSED)
            return None
        return item  # type: ignore[return-value]

    def __iter__(self) -> Iterator[SessionEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def close(self) -> None:
        """Stop receiving events and detach from the channel."""
        self._channel.unsubscribe(self)
        self._end()

    def __enter__(self) -> SessionSubscription:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class SessionChannel:
    """Fan-out of one session's events to its subscribers."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._subscriptions: list[SessionSubscription] = []
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def subscribe(self, callback: EventCallback | None = None) -> SessionSubscription:
        subscription = SessionSubscription(self, callback)
        with self._lock:
            if self._closed:
                subscription._end()
                return subscription
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: SessionSubscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, event: SessionEvent) -> None:
        with self._lock:
            if self._closed:
                return
            targets = list(self._subscriptions)
        for subscription in targets:
            subscription._deliver(event)

    def close(self) -> None:
        """End every subscription. Later subscribers get an already-closed one."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            targets = list(self._subscriptions)
            self._subscriptions.clear()
        for subscription in targets:
            subscription._end()


class ChannelRegistry:
    """Channels keyed by session id.

    A channel is created by its first subscriber. Publishing to a session
    nobody subscribed to is a no-op and registers nothing.
    """

    def __init__(self) -> None:
        self._channels: dict[str, SessionChannel] = {}
        self._lock = threading.Lock()

    def channel(self, session_id: str) -> SessionChannel:
        with self._lock:
            channel = self._channels.get(session_id)
            if channel is None:
                channel = SessionChannel(session_id)
                self._channels[session_id] = channel
            return channel

    def subscribe(self, session_id: str, callback: EventCallback | None = None) -> SessionSubscription:
        return self.channel(session_id).subscribe(callback)

    def publish(self, session_id: str, event: SessionEvent) -> None:
        with self._lock:
            channel = self._channels.get(session_id)
        if channel is not None:
            channel.publish(event)

    def close(self, session_id: str) -> None:
        with self._lock:
            channel = self._channels.get(session_id)
        if channel is not None:
            channel.close()

    def discard(self, session_id: str) -> None:
        """Close and forget a channel. A later subscribe starts a fresh one."""
        with self._lock:
            channel = self._channels.pop(session_id, None)
        if channel is not None:
            channel.close()

    def clear(self) -> None:
        with self._lock:
            channels = list(self._channels.values())
            self._channels.clear()
        for channel in channels:
            channel.close()

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._channels

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)
