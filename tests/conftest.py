# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the terminal sandbox test suite.

This module provides:
- Temporary workspaces (with a sibling directory outside the boundary)
- A scripted fake PTY process and spawner, so session manager tests do not
  need real pseudo-terminals
- Session managers wired to the fake or to real PTYs
- Sample settings files

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

import os
import queue
import signal
import threading
from collections.abc import Generator
from pathlib import Path

import pytest
import yaml

from terminal_sandbox.core.config import SessionManagerConfig
from terminal_sandbox.sandbox.session import TerminalSessionManager

# =============================================================================
# Workspace Fixtures
# =============================================================================


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Create a workspace root with a small project inside.

    Creates:
        - workspace/src/main.py
        - workspace/README.md
        - outside/secret.txt (sibling of the workspace, outside the boundary)

    Returns:
        Symlink-resolved path to the workspace root.
    """
    root = tmp_path / "workspace"
    (root / "src").mkdir(parents=True)
    (root / "src" / "main.py").write_text('print("hello")\n')
    (root / "README.md").write_text("# Test Project\n")

    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.txt").write_text("secret\n")

    return Path(os.path.realpath(root))


@pytest.fixture
def outside_dir(workspace: Path) -> Path:
    """Directory next to the workspace, outside its boundary."""
    return workspace.parent / "outside"


# =============================================================================
# Fake PTY Fixtures
# =============================================================================


class FakePtyProcess:
    """Scripted stand-in for ``PtyProcess``.

    Tests push output with ``emit`` and end the process with ``finish``.
    SIGTERM/SIGKILL end the process unless ``ignore_sigterm`` is set.
    """

    def __init__(self, pid: int = 4242, ignore_sigterm: bool = False):
        self.pid = pid
        self.ignore_sigterm = ignore_sigterm
        self.returncode: int | None = None
        self.signals: list[int] = []
        self.group_signals: list[int] = []
        self.written: list[str] = []
        self.size: tuple[int, int] | None = None
        self.closed = False
        # Children that outlive the shell keep the process group around
        self.group_survives = False
        self._chunks: queue.Queue[bytes] = queue.Queue()
        self._done = threading.Event()

    def emit(self, data: str | bytes) -> None:
        self._chunks.put(data.encode("utf-8") if isinstance(data, str) else data)

    def finish(self, returncode: int = 0) -> None:
        if self.returncode is None:
            self.returncode = returncode
            self._done.set()
            self._chunks.put(b"")

    def read(self, timeout: float) -> bytes | None:
        try:
            return self._chunks.get(timeout=timeout)
        except queue.Empty:
            return None

    def write(self, data: str) -> None:
        if self.returncode is not None:
            raise OSError(5, "Input/output error")
        self.written.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.size = (cols, rows)

    def poll(self) -> int | None:
        return self.returncode

    def wait(self) -> int:
        self._done.wait()
        return self.returncode

    def send_signal(self, sig: int) -> None:
        if self.returncode is not None:
            return
        self.signals.append(sig)
        if sig == signal.SIGKILL or (sig == signal.SIGTERM and not self.ignore_sigterm):
            self.finish(-sig)

    def signal_group(self, sig: int) -> None:
        self.group_signals.append(sig)

    def group_alive(self) -> bool:
        return self.returncode is None or self.group_survives

    def close(self) -> None:
        self.closed = True


class FakeSpawner:
    """Records spawn calls and hands out ``FakePtyProcess`` instances."""

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.processes: list[FakePtyProcess] = []
        self.error: OSError | None = None
        self.ignore_sigterm = False

    def __call__(self, argv, cwd, env, cols, rows) -> FakePtyProcess:
        self.calls.append({"argv": argv, "cwd": cwd, "env": env, "cols": cols, "rows": rows})
        if self.error is not None:
            raise self.error
        process = FakePtyProcess(pid=4242 + len(self.processes), ignore_sigterm=self.ignore_sigterm)
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakePtyProcess:
        return self.processes[-1]


@pytest.fixture
def fake_spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def fake_manager(fake_spawner: FakeSpawner) -> Generator[TerminalSessionManager, None, None]:
    """Session manager backed by fake PTYs (max_concurrency=2)."""
    manager = TerminalSessionManager(
        SessionManagerConfig(max_concurrency=2),
        spawner=fake_spawner,
        kill_grace_period_ms=50,
    )
    yield manager
    manager.kill_all_sessions()
    for process in fake_spawner.processes:
        process.finish(-signal.SIGKILL)


# =============================================================================
# Real PTY Fixtures
# =============================================================================


def _pty_available() -> bool:
    if os.name != "posix":
        return False
    try:
        import pty

        master, slave = pty.openpty()
    except (ImportError, OSError):
        return False
    os.close(master)
    os.close(slave)
    return os.path.exists("/bin/sh")


@pytest.fixture
def require_pty(monkeypatch) -> None:
    """Skip unless real PTYs work; run commands with /bin/sh."""
    if not _pty_available():
        pytest.skip("Pseudo-terminals not available")
    monkeypatch.setenv("SHELL", "/bin/sh")


@pytest.fixture
def pty_manager(require_pty) -> Generator[TerminalSessionManager, None, None]:
    """Session manager spawning real PTYs with /bin/sh."""
    manager = TerminalSessionManager(SessionManagerConfig(max_concurrency=3), kill_grace_period_ms=500)
    yield manager
    manager.kill_all_sessions()
    for session in manager.get_all_sessions():
        session.wait(timeout=5)


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def settings_file(tmp_path: Path) -> Path:
    """Write a sample settings file.

    Returns:
        Path to the YAML file.
    """
    config = {
        "session": {"max_concurrency": 2, "default_timeout_ms": 5000, "max_timeout_ms": 10000},
        "audit_output_limit": 500,
        "preview_output_limit": 100,
        "allow_pipes": True,
        "allowlist": {
            "extend": True,
            "patterns": [
                {"pattern": "make", "description": "Run make targets", "allowed_args": ["test", "lint"]},
                {"pattern": r"^just\s+\w+$", "description": "Run just recipes", "regex": True},
            ],
        },
    }
    path = tmp_path / "sandbox.yaml"
    path.write_text(yaml.safe_dump(config))
    return path


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "pty: marks tests spawning real pseudo-terminals")
