"""Exception taxonomy for the terminal sandbox.

Security denials (path outside workspace, command not allowlisted, shell
feature not enabled) are returned as result objects, never raised. The
exceptions below are reserved for misconfiguration and programming errors.
"""


class TerminalSandboxError(Exception):
    """Base class for all terminal sandbox errors."""

    pass


class ConfigError(TerminalSandboxError):
    """Invalid sandbox configuration file or value."""

    pass


class AllowlistConfigError(ConfigError):
    """Allowlist configuration could not be loaded."""

    pass


class PathValidationError(TerminalSandboxError):
    """Raised when a caller asks for a validated path that failed validation."""

    def __init__(self, attempted_path: str, workspace_root: str, reason: str):
        self.attempted_path = attempted_path
        self.workspace_root = workspace_root
        self.reason = reason
        super().__init__(f"Path validation failed: {reason}")


class SessionError(TerminalSandboxError):
    """Error in terminal session management."""

    pass


class ConcurrencyLimitError(SessionError):
    """Maximum number of running sessions reached."""

    def __init__(self, max_concurrency: int, active: int):
        self.max_concurrency = max_concurrency
        self.active = active
        super().__init__(
            f"Maximum concurrency limit ({max_concurrency}) reached. "
            f"Active sessions: {active}"
        )


class InvalidTimeoutError(SessionError):
    """Requested timeout is below the allowed floor."""

    pass


class SpawnError(SessionError):
    """The shell could not be started inside a PTY."""

    def __init__(self, shell: str, cause: BaseException):
        self.shell = shell
        self.cause = cause
        super().__init__(
            f'Failed to spawn PTY with shell "{shell}": {cause}. '
            "Ensure the shell is installed and available in the system PATH."
        )


class SessionExistsError(SessionError):
    """A live session with the same id is already registered."""

    pass
