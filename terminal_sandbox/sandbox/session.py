"""PTY-backed terminal sessions with concurrency, timeout and kill management.

Each session runs ``$SHELL -c <command>`` in its own pseudo-terminal and
process group. A reader thread per session pulls output from the PTY into a
keep-oldest ``BoundedBuffer`` and publishes it on the session's channel.

State machine (every transition checks ``status == running`` first, so when
exit and timeout race only one of them is recorded):

    running -> completed | failed   (process exit, by exit code)
    running -> cancelled            (cancel_session)
    running -> timed_out            (timeout timer)

THREADING: PTY callbacks run on reader threads and timers on timer threads.
The session table and every status transition are guarded by one RLock.
Events are published after the lock is released.

Cancellation is two-phase: SIGTERM now, SIGKILL after a grace period. A
"cancelled" status means termination has started, not that the process is
gone. Use ``TerminalSession.wait`` to wait for the exit to be processed.

POSIX only. The process-group signalling used to reach children has no
Windows equivalent here.
"""

from __future__ import annotations

import codecs
import contextlib
import logging
import os
import select
import signal
import struct
import subprocess
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

try:
    import fcntl
    import pty
    import termios
except ImportError:  # Windows
    fcntl = None  # type: ignore[assignment]
    pty = None  # type: ignore[assignment]
    termios = None  # type: ignore[assignment]

from terminal_sandbox.core.config import (
    KILL_GRACE_PERIOD_MS,
    MIN_TIMEOUT_MS,
    TERMINAL_COLS,
    TERMINAL_ROWS,
    SessionManagerConfig,
)
from terminal_sandbox.core.errors import (
    ConcurrencyLimitError,
    InvalidTimeoutError,
    SessionExistsError,
    SpawnError,
)
from terminal_sandbox.sandbox.buffer import BoundedBuffer
from terminal_sandbox.sandbox.events import (
    EventCallback,
    SessionChannel,
    SessionCreatedEvent,
    SessionEndedEvent,
    SessionEvent,
    SessionOutputEvent,
    SessionSubscription,
)

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "/bin/bash"
READ_CHUNK_SIZE = 4096
READ_POLL_INTERVAL = 0.1  # seconds


class SessionStatus(str, Enum):
    """Lifecycle state of a terminal session. Only RUNNING is non-terminal."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.RUNNING


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


class PtyProcess:
    """A child process attached to the slave side of a PTY we hold the master of."""

    def __init__(self, process: subprocess.Popen, master_fd: int):
        self._process = process
        self._master_fd = master_fd
        self._closed = False

    @property
    def pid(self) -> int:
        return self._process.pid

    def read(self, timeout: float) -> bytes | None:
        """Read available output.

        Returns None if nothing arrived within ``timeout`` and ``b""`` at end
        of file. Raises OSError (EIO on Linux) once the slave side is gone.
        """
        ready, _, _ = select.select([self._master_fd], [], [], timeout)
        if not ready:
            return None
        return os.read(self._master_fd, READ_CHUNK_SIZE)

    def write(self, data: str) -> None:
        os.write(self._master_fd, data.encode("utf-8"))

    def resize(self, cols: int, rows: int) -> None:
        _set_winsize(self._master_fd, cols, rows)

    def poll(self) -> int | None:
        return self._process.poll()

    def wait(self) -> int:
        return self._process.wait()

    def send_signal(self, sig: int) -> None:
        self._process.send_signal(sig)

    def signal_group(self, sig: int) -> None:
        # The child is a session leader, so its pid is its process group id
        os.killpg(self._process.pid, sig)

    def group_alive(self) -> bool:
        try:
            os.killpg(self._process.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            pass
        return True

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            with contextlib.suppress(OSError):
                os.close(self._master_fd)


def spawn_pty(argv: list[str], cwd: str, env: dict[str, str], cols: int, rows: int) -> PtyProcess:
    """Start ``argv`` in a new PTY and process group.

    Raises OSError if the executable or working directory is unusable.
    """
    if pty is None:
        raise OSError("pseudo-terminals are not supported on this platform")

    master_fd, slave_fd = pty.openpty()
    try:
        _set_winsize(slave_fd, cols, rows)
        process = subprocess.Popen(
            argv,
            cwd=cwd,
            env=env,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            start_new_session=True,
            close_fds=True,
        )
    except BaseException:
        os.close(master_fd)
        raise
    finally:
        os.close(slave_fd)

    return PtyProcess(process, master_fd)


Spawner = Callable[[list[str], str, dict[str, str], int, int], PtyProcess]


def _force_kill(process: PtyProcess) -> None:
    with contextlib.suppress(OSError):
        process.send_signal(signal.SIGKILL)
    with contextlib.suppress(OSError):
        process.signal_group(signal.SIGKILL)


def graceful_kill(
    process: PtyProcess, grace_period_ms: int = KILL_GRACE_PERIOD_MS
) -> threading.Timer | None:
    """SIGTERM the process and its group, then SIGKILL both after the grace period.

    Signal failures (process already gone) are swallowed. Returns the pending
    SIGKILL timer, or None if the process was already dead.
    """
    try:
        process.send_signal(signal.SIGTERM)
    except OSError:
        logger.debug(f"SIGTERM to pid {process.pid} failed; process already gone")
        return None

    # Best-effort: reach children the shell spawned
    with contextlib.suppress(OSError):
        process.signal_group(signal.SIGTERM)

    timer = threading.Timer(grace_period_ms / 1000, _force_kill, args=(process,))
    timer.daemon = True
    timer.start()
    return timer


@dataclass(eq=False)
class TerminalSession:
    """A command running (or that ran) in a PTY.

    Mutated only by the owning manager.
    """

    id: str
    command: str
    cwd: str
    timeout_ms: int
    env: dict[str, str]
    process: PtyProcess = field(repr=False)
    buffer: BoundedBuffer = field(default_factory=BoundedBuffer, repr=False)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: SessionStatus = SessionStatus.RUNNING
    exit_code: int | None = None
    exit_signal: int | None = None
    ended_at: datetime | None = None
    end_reason: str | None = None

    _timeout_timer: threading.Timer | None = field(default=None, repr=False)
    _kill_timer: threading.Timer | None = field(default=None, repr=False)
    _reader: threading.Thread | None = field(default=None, repr=False)
    _exited: threading.Event = field(default_factory=threading.Event, repr=False)
    _buffer_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    # Never shared with a later session that reuses the id
    _channel: SessionChannel = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._channel = SessionChannel(self.id)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.status is SessionStatus.RUNNING

    @property
    def output_buffer(self) -> str:
        with self._buffer_lock:
            return self.buffer.getvalue()

    @property
    def truncated(self) -> bool:
        return self.buffer.truncated

    @property
    def exited(self) -> bool:
        """True once the process exit has been fully processed."""
        return self._exited.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the process exit has been processed. False on timeout."""
        return self._exited.wait(timeout)

    def _append_output(self, data: str) -> None:
        with self._buffer_lock:
            self.buffer.append(data)

    def _flush_output(self) -> None:
        with self._buffer_lock:
            self.buffer.flush()

    def _release_output(self) -> None:
        with self._buffer_lock:
            self.buffer.release()

    def _publish(self, event: SessionEvent) -> None:
        self._channel.publish(event)


class TerminalSessionManager:
    """Owns the lifecycle of PTY sessions.

    USAGE:
        with TerminalSessionManager(SessionManagerConfig(max_concurrency=2)) as manager:
            session = manager.create_session("s1", "npm test", "/workspace")
            with manager.subscribe("s1") as events:
                for event in events:
                    ...

    Leaving the ``with`` block cancels every running session.
    """

    def __init__(
        self,
        config: SessionManagerConfig | None = None,
        spawner: Spawner = spawn_pty,
        kill_grace_period_ms: int = KILL_GRACE_PERIOD_MS,
    ):
        self.config = config or SessionManagerConfig()
        self._spawner = spawner
        self._kill_grace_period_ms = kill_grace_period_ms
        self._sessions: dict[str, TerminalSession] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _active_count_locked(self) -> int:
        return sum(1 for s in self._sessions.values() if s.status is SessionStatus.RUNNING)

    @property
    def active_count(self) -> int:
        with self._lock:
            return self._active_count_locked()

    def can_create_session(self) -> bool:
        with self._lock:
            return self._active_count_locked() < self.config.max_concurrency

    def _effective_timeout(self, timeout_ms: int | None) -> int:
        timeout = self.config.default_timeout_ms if timeout_ms is None else timeout_ms
        if timeout > self.config.max_timeout_ms:
            timeout = self.config.max_timeout_ms
        if timeout < MIN_TIMEOUT_MS:
            raise InvalidTimeoutError(f"Timeout must be at least {MIN_TIMEOUT_MS}ms (got {timeout}ms)")
        return timeout

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_session(
        self,
        session_id: str,
        command: str,
        cwd: str,
        *,
        timeout_ms: int | None = None,
        env: dict[str, str] | None = None,
        listener: EventCallback | None = None,
    ) -> TerminalSession:
        """Spawn ``command`` in a PTY and start tracking it.

        ``listener`` is subscribed before the process starts, so it sees every
        event of the session.

        Raises:
            ConcurrencyLimitError: max_concurrency sessions are running
            InvalidTimeoutError: timeout below MIN_TIMEOUT_MS
            SessionExistsError: the id is still registered (clean it up first)
            SpawnError: the shell could not be started
        """
        with self._lock:
            active = self._active_count_locked()
            if active >= self.config.max_concurrency:
                raise ConcurrencyLimitError(self.config.max_concurrency, active)

            timeout = self._effective_timeout(timeout_ms)

            if session_id in self._sessions:
                raise SessionExistsError(f"Session '{session_id}' already exists")

            overrides = dict(env or {})
            full_env = {**os.environ, **overrides, "TERM": "xterm-color"}
            shell = os.environ.get("SHELL") or DEFAULT_SHELL

            try:
                process = self._spawner(
                    [shell, "-c", command], cwd, full_env, TERMINAL_COLS, TERMINAL_ROWS
                )
            except OSError as e:
                logger.error(f"Failed to spawn '{command}' with shell {shell}: {e}")
                raise SpawnError(shell, e) from e

            session = TerminalSession(
                id=session_id,
                command=command,
                cwd=cwd,
                timeout_ms=timeout,
                env=overrides,
                process=process,
            )

            if listener is not None:
                session._channel.subscribe(listener)

            self._sessions[session_id] = session

            timer = threading.Timer(timeout / 1000, self._handle_timeout, args=(session,))
            timer.daemon = True
            session._timeout_timer = timer

            reader = threading.Thread(
                target=self._read_loop,
                args=(session,),
                name=f"pty-reader-{session_id}",
                daemon=True,
            )
            session._reader = reader

            timer.start()
            reader.start()

        logger.info(f"Session '{session_id}' started (pid {process.pid}, timeout {timeout}ms): {command}")
        session._publish(SessionCreatedEvent(session_id=session_id, command=command, cwd=cwd))
        return session

    # ------------------------------------------------------------------
    # PTY callbacks
    # ------------------------------------------------------------------

    def _read_loop(self, session: TerminalSession) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        process = session.process
        exited = False

        while True:
            try:
                chunk = process.read(0 if exited else READ_POLL_INTERVAL)
            except OSError:
                break
            if chunk is None:
                if exited:
                    break
                # Children may keep the PTY open after the shell exits;
                # drain what is readable and stop.
                exited = process.poll() is not None
                continue
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                self._handle_data(session, text)

        tail = decoder.decode(b"", final=True)
        if tail:
            self._handle_data(session, tail)

        returncode = process.wait()
        process.close()
        self._handle_exit(session, returncode)

    def _handle_data(self, session: TerminalSession, data: str) -> None:
        # Data keeps streaming after the buffer stops retaining it
        session._append_output(data)
        session._publish(SessionOutputEvent(type="data", session_id=session.id, data=data))

    def _handle_exit(self, session: TerminalSession, returncode: int) -> None:
        exit_signal = -returncode if returncode < 0 else None
        exit_code = 128 + exit_signal if exit_signal else returncode

        with self._lock:
            self._cancel_timeout(session)
            session._flush_output()
            self._disarm_kill(session)
            if session.status is SessionStatus.RUNNING:
                session.status = SessionStatus.COMPLETED if exit_code == 0 else SessionStatus.FAILED
                session.exit_code = exit_code
                session.exit_signal = exit_signal
                session.ended_at = datetime.now(timezone.utc)
            status = session.status

        logger.info(f"Session '{session.id}' exited with code {exit_code} ({status.value})")

        session._publish(
            SessionOutputEvent(
                type="exit",
                session_id=session.id,
                exit_code=exit_code,
                message=f"Process exited with signal {exit_signal}" if exit_signal else None,
            ),
        )
        session._publish(
            SessionEndedEvent(
                session_id=session.id,
                status=status.value,
                exit_code=exit_code,
                signal=exit_signal,
            ),
        )
        session._exited.set()
        session._channel.close()

    def _handle_timeout(self, session: TerminalSession) -> None:
        with self._lock:
            if session.status is not SessionStatus.RUNNING:
                return
            session._kill_timer = graceful_kill(session.process, self._kill_grace_period_ms)
            session.status = SessionStatus.TIMED_OUT
            session.ended_at = datetime.now(timezone.utc)
            session.end_reason = f"Command timed out after {session.timeout_ms}ms"

        logger.warning(f"Session '{session.id}' timed out after {session.timeout_ms}ms")
        session._publish(
            SessionOutputEvent(
                type="timeout",
                session_id=session.id,
                message=session.end_reason,
                timeout_ms=session.timeout_ms,
            ),
        )
        session._publish(
            SessionEndedEvent(
                session_id=session.id,
                status=SessionStatus.TIMED_OUT.value,
                timeout_ms=session.timeout_ms,
            ),
        )

    @staticmethod
    def _disarm_kill(session: TerminalSession) -> None:
        # A pgid is only recycled once every member is gone
        if session._kill_timer is not None and not session.process.group_alive():
            session._kill_timer.cancel()
            session._kill_timer = None

    @staticmethod
    def _cancel_timeout(session: TerminalSession) -> None:
        if session._timeout_timer is not None:
            session._timeout_timer.cancel()
            session._timeout_timer = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> TerminalSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def get_all_sessions(self) -> list[TerminalSession]:
        with self._lock:
            return list(self._sessions.values())

    def get_active_sessions(self) -> list[TerminalSession]:
        with self._lock:
            return [s for s in self._sessions.values() if s.status is SessionStatus.RUNNING]

    def get_output(self, session_id: str) -> str | None:
        session = self.get_session(session_id)
        return session.output_buffer if session is not None else None

    def subscribe(
        self, session_id: str, callback: EventCallback | None = None
    ) -> SessionSubscription | None:
        """Subscribe to one session's future events.

        Returns None for an unknown session, and an already-closed
        subscription if the session's process has already exited.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            return session._channel.subscribe(callback)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def cancel_session(self, session_id: str, reason: str) -> bool:
        """Start terminating a running session.

        Returns False for unknown or already finished sessions.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status is not SessionStatus.RUNNING:
                return False

            self._cancel_timeout(session)
            session._kill_timer = graceful_kill(session.process, self._kill_grace_period_ms)
            session.status = SessionStatus.CANCELLED
            session.ended_at = datetime.now(timezone.utc)
            session.end_reason = reason

        logger.info(f"Session '{session_id}' cancelled: {reason}")
        session._publish(
            SessionOutputEvent(
                type="error", session_id=session_id, message=f"Session cancelled: {reason}"
            ),
        )
        session._publish(
            SessionEndedEvent(
                session_id=session_id, status=SessionStatus.CANCELLED.value, reason=reason
            ),
        )
        return True

    def write_to_session(self, session_id: str, data: str) -> bool:
        """Send input to a running session's PTY."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status is not SessionStatus.RUNNING:
                return False
            try:
                session.process.write(data)
            except OSError as e:
                logger.debug(f"Write to session '{session_id}' failed: {e}")
                return False
        return True

    def resize_session(self, session_id: str, cols: int, rows: int) -> bool:
        """Resize a running session's terminal."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status is not SessionStatus.RUNNING:
                return False
            try:
                session.process.resize(cols, rows)
            except OSError as e:
                logger.debug(f"Resize of session '{session_id}' failed: {e}")
                return False
        return True

    def cleanup_session(self, session_id: str) -> bool:
        """Forget a finished session and release its output buffer."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status is SessionStatus.RUNNING:
                return False
            self._cancel_timeout(session)
            session._release_output()
            del self._sessions[session_id]
        session._channel.close()
        return True

    def cleanup_completed_sessions(self) -> int:
        """Clean up every finished session. Returns how many were removed."""
        with self._lock:
            finished = [sid for sid, s in self._sessions.items() if s.status.is_terminal]
        return sum(1 for sid in finished if self.cleanup_session(sid))

    def kill_all_sessions(self, reason: str = "Manager shutting down") -> int:
        """Cancel every running session in parallel. Returns how many were cancelled."""
        running = [s.id for s in self.get_active_sessions()]
        if not running:
            return 0
        with ThreadPoolExecutor(max_workers=len(running)) as pool:
            results = list(pool.map(lambda sid: self.cancel_session(sid, reason), running))
        return sum(results)

    def __enter__(self) -> TerminalSessionManager:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.kill_all_sessions()
        return False
