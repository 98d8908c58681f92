"""Terminal Sandbox - allowlisted, workspace-confined command execution for AI agents.

Commands run in PTYs under a default-deny allowlist, with a hard workspace
boundary, concurrency and timeout limits, and bounded output capture.
"""

__version__ = "0.1.0"
