"""Path and command validation for the terminal sandbox."""

from terminal_sandbox.core.allowlist import (
    DEFAULT_ALLOWLIST,
    AllowlistEntry,
    CommandAllowlist,
    CommandValidationResult,
    LiteralPattern,
    RegexPattern,
    ShellFeatureOptions,
    create_default_allowlist,
    validate_command,
    validate_cwd,
)
from terminal_sandbox.core.commands import ParsedCommand, detect_shell_injection, parse_command
from terminal_sandbox.core.paths import (
    PathValidationResult,
    create_path_validator,
    validate_path,
    validate_path_lexical,
)

__all__ = [
    "DEFAULT_ALLOWLIST",
    "AllowlistEntry",
    "CommandAllowlist",
    "CommandValidationResult",
    "LiteralPattern",
    "ParsedCommand",
    "PathValidationResult",
    "RegexPattern",
    "ShellFeatureOptions",
    "create_default_allowlist",
    "create_path_validator",
    "detect_shell_injection",
    "parse_command",
    "validate_command",
    "validate_cwd",
    "validate_path",
    "validate_path_lexical",
]
