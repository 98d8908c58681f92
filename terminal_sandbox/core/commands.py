"""Shallow structural analysis of shell command strings.

This is NOT a shell parser. ``parse_command`` only looks for the presence of
shell metacharacters so that pipes, redirections, substitutions and
background jobs can be gated individually. ``detect_shell_injection`` matches
a fixed table of known-dangerous signatures.

SECURITY: Signature matching can be evaded and is defense-in-depth only.
The allowlist (see ``terminal_sandbox.core.allowlist``) is the boundary.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, Field

# First shell metacharacter that ends the "command part" of a string
_SPECIAL_CHARS = re.compile(r"[|;<>&$`]")


class ParsedCommand(BaseModel):
    """Structural features of a command string."""

    base_command: str
    args: list[str] = Field(default_factory=list)
    has_pipes: bool = False
    has_redirections: bool = False
    has_command_substitution: bool = False
    has_background: bool = False


def parse_command(command: str) -> ParsedCommand:
    """Split ``command`` into a base command and flag shell features.

    Quoting is not understood: ``echo "a | b"`` reports a pipe.
    """
    trimmed = command.strip()

    match = _SPECIAL_CHARS.search(trimmed)
    command_part = trimmed if match is None else trimmed[: match.start()]
    parts = command_part.split()

    return ParsedCommand(
        base_command=parts[0] if parts else "",
        args=parts[1:],
        has_pipes="|" in trimmed,
        has_redirections=">" in trimmed or "<" in trimmed,
        has_command_substitution="$(" in trimmed or "`" in trimmed,
        has_background=trimmed.endswith("&") or " & " in trimmed,
    )


_RM_ROOT = "Dangerous rm -rf / pattern detected"
_FORK_BOMB = "Fork bomb detected"

DANGEROUS_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # rm -rf / chained onto another command
    (re.compile(r";\s*rm\s+-rf\s+/"), _RM_ROOT),
    (re.compile(r"&&\s*rm\s+-rf\s+/"), _RM_ROOT),
    (re.compile(r"\|\s*rm\s+-rf\s+/"), _RM_ROOT),
    # Remote script piped into a shell
    (re.compile(r"curl\s+[^|]*\|\s*sh"), "Piping curl to shell is dangerous"),
    (re.compile(r"curl\s+[^|]*\|\s*bash"), "Piping curl to bash is dangerous"),
    (re.compile(r"wget\s+[^|]*\|\s*sh"), "Piping wget to shell is dangerous"),
    (re.compile(r"wget\s+[^|]*\|\s*bash"), "Piping wget to bash is dangerous"),
    # Substitutions wrapping destructive or download-and-run commands
    (re.compile(r"\$\(\s*rm\s+-rf"), "Command substitution with rm detected"),
    (re.compile(r"`rm\s+-rf"), "Backtick substitution with rm detected"),
    (re.compile(r"\$\(\s*curl\s+.*\|\s*sh"), "Command substitution with curl|sh detected"),
    (re.compile(r"`curl\s+.*\|\s*sh"), "Backtick substitution with curl|sh detected"),
    # Fork bombs
    (re.compile(r":\s*\(\s*\)\s*\{[^}]*\|[^}]*&[^}]*\}[^;]*;"), _FORK_BOMB),
    (re.compile(r":\(\):\{:\|:\}&"), _FORK_BOMB),
    # eval of substituted output
    (re.compile(r"eval\s*\$\("), "Eval with command substitution detected"),
    (re.compile(r"eval\s*`"), "Eval with backtick substitution detected"),
]


def detect_shell_injection(command: str) -> str | None:
    """Return the reason for the first dangerous signature found, else None."""
    for pattern, reason in DANGEROUS_PATTERNS:
        if pattern.search(command):
            return reason
    return None
