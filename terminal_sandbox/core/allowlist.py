"""Default-deny command allowlist.

A command may only run if it matches a registered entry. Entries are checked
in order and the first match wins. Each entry pattern is either a literal
prefix (``npm`` matches ``npm`` and ``npm install`` but not ``npmx``) or a
regular expression searched against the whole command.

``validate_command`` composes the full check: injection signatures, then the
per-feature shell gates, then the allowlist.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from terminal_sandbox.core.commands import ParsedCommand, detect_shell_injection, parse_command
from terminal_sandbox.core.errors import AllowlistConfigError
from terminal_sandbox.core.paths import PathValidationResult, validate_path

logger = logging.getLogger(__name__)


class CommandPattern(Protocol):
    def matches(self, text: str) -> bool: ...


@dataclass(frozen=True)
class LiteralPattern:
    """Exact command, or the command followed by a space and more text."""

    value: str

    def matches(self, text: str) -> bool:
        return text == self.value or text.startswith(self.value + " ")

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class RegexPattern:
    """Regular expression searched anywhere in the text (anchor it yourself)."""

    regex: re.Pattern[str]

    @classmethod
    def compile(cls, pattern: str) -> RegexPattern:
        return cls(re.compile(pattern))

    def matches(self, text: str) -> bool:
        return self.regex.search(text) is not None

    def __str__(self) -> str:
        return f"/{self.regex.pattern}/"


Pattern = LiteralPattern | RegexPattern


@dataclass
class AllowlistEntry:
    """A permitted command pattern.

    ``allowed_args`` of None means any arguments; an empty list means the
    command may not take arguments at all.
    """

    pattern: Pattern
    description: str
    allowed_args: list[Pattern] | None = None


@dataclass
class CommandValidationResult:
    """Outcome of a command check. Denials carry a human-readable reason."""

    allowed: bool
    reason: str | None = None
    matched_entry: AllowlistEntry | None = None
    parsed: ParsedCommand | None = None
    injection_warning: str | None = None


@dataclass
class ShellFeatureOptions:
    """Shell features a caller explicitly opts into. All default to denied."""

    allow_pipes: bool = False
    allow_redirections: bool = False
    allow_command_substitution: bool = False
    allow_background: bool = False


def _to_pattern(value: str | re.Pattern[str] | Pattern, regex: bool = False) -> Pattern:
    if isinstance(value, (LiteralPattern, RegexPattern)):
        return value
    if isinstance(value, re.Pattern):
        return RegexPattern(value)
    return RegexPattern.compile(value) if regex else LiteralPattern(value)


class CommandAllowlist:
    """Ordered registry of allowed command patterns."""

    def __init__(self, entries: list[AllowlistEntry] | None = None):
        self._entries: list[AllowlistEntry] = list(entries or [])

    def add_entry(self, entry: AllowlistEntry) -> None:
        self._entries.append(entry)

    def add(
        self,
        pattern: str | re.Pattern[str] | Pattern,
        description: str,
        allowed_args: list[str | re.Pattern[str] | Pattern] | None = None,
    ) -> AllowlistEntry:
        """Convenience wrapper: plain strings are literals, compiled regexes are regexes."""
        entry = AllowlistEntry(
            pattern=_to_pattern(pattern),
            description=description,
            allowed_args=None if allowed_args is None else [_to_pattern(a) for a in allowed_args],
        )
        self.add_entry(entry)
        return entry

    def clear(self) -> None:
        self._entries = []

    @property
    def entries(self) -> list[AllowlistEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def validate(self, command: str) -> CommandValidationResult:
        if not command or not command.strip():
            return CommandValidationResult(allowed=False, reason="Command cannot be empty")

        normalized = command.strip()

        for entry in self._entries:
            if not entry.pattern.matches(normalized):
                continue

            if entry.allowed_args is not None:
                args_error = self._validate_args(normalized, entry.allowed_args)
                if args_error:
                    return CommandValidationResult(allowed=False, reason=args_error)

            return CommandValidationResult(allowed=True, matched_entry=entry)

        return CommandValidationResult(
            allowed=False,
            reason=(
                f'Command "{command}" not in allowlist. '
                "Add a matching pattern to allow this command."
            ),
        )

    @staticmethod
    def _validate_args(command: str, allowed_args: list[Pattern]) -> str | None:
        """Return a denial reason, or None if the arguments are acceptable."""
        space = command.find(" ")
        if space == -1:
            return None

        args = command[space + 1 :].strip()

        if not allowed_args:
            return f'Arguments "{args}" not allowed for this command (no arguments permitted)'

        if any(pattern.matches(args) for pattern in allowed_args):
            return None

        return f'Arguments "{args}" not allowed for this command'

    def load_from_config(self, config: dict[str, Any]) -> None:
        """Replace all entries from a ``{"patterns": [...]}`` mapping.

        Each item has ``pattern`` and ``description`` and optionally ``regex``
        (bool) and ``allowed_args`` (list of strings, or of mappings with
        ``pattern``/``regex``). Nothing is replaced if any item is invalid.
        """
        patterns = config.get("patterns")
        if not isinstance(patterns, list):
            raise AllowlistConfigError("Allowlist config must contain a 'patterns' list")

        entries: list[AllowlistEntry] = []
        for index, item in enumerate(patterns):
            if not isinstance(item, dict) or not isinstance(item.get("pattern"), str):
                raise AllowlistConfigError(f"Allowlist item {index} needs a string 'pattern'")
            try:
                entries.append(
                    AllowlistEntry(
                        pattern=_to_pattern(item["pattern"], regex=bool(item.get("regex", False))),
                        description=str(item.get("description", "")),
                        allowed_args=_load_args(item.get("allowed_args")),
                    )
                )
            except re.error as e:
                raise AllowlistConfigError(
                    f"Invalid regex in allowlist item {index} ({item['pattern']!r}): {e}"
                ) from e

        self._entries = entries
        logger.info(f"Loaded {len(entries)} allowlist entries from config")


def _load_args(raw: Any) -> list[Pattern] | None:
    if raw is None:
        return None
    if not isinstance(raw, list):
        raise AllowlistConfigError("'allowed_args' must be a list")
    args: list[Pattern] = []
    for arg in raw:
        if isinstance(arg, dict):
            args.append(_to_pattern(str(arg.get("pattern", "")), regex=bool(arg.get("regex", False))))
        else:
            args.append(LiteralPattern(str(arg)))
    return args


def _regex(pattern: str, description: str) -> AllowlistEntry:
    return AllowlistEntry(pattern=RegexPattern.compile(pattern), description=description)


# Conservative defaults for common development tools. Workspaces may add or
# replace entries through configuration.
DEFAULT_ALLOWLIST: list[AllowlistEntry] = [
    _regex(r"^npm\s+(install|ci|run\s+\w+|test|build|lint|format|audit)(\s+--\S+)*", "npm package management commands"),
    _regex(r"^pnpm\s+(install|run\s+\w+|test|build|lint|format|audit)(\s+--\S+)*", "pnpm package management commands"),
    _regex(r"^yarn\s+(install|run\s+\w+|test|build|lint|format|audit)(\s+--\S+)*", "yarn package management commands"),
    _regex(r"^git\s+(status|log|diff|show|branch|remote|config\s+--list)(\s+-?\S+)*", "git read-only commands"),
    _regex(
        r"^git\s+(add|commit|checkout|switch|merge|rebase|stash|tag|fetch|pull)(\s+-?\S+)*",
        "git write commands (use with caution)",
    ),
    _regex(r"^ls(\s+|$)", "list directory contents"),
    _regex(r"^cat\s+", "display file contents"),
    _regex(r"^echo(\s+|$)", "print text"),
    _regex(r"^pwd$", "print working directory"),
    _regex(r"^which\s+", "locate a command"),
    _regex(r"^grep\s+", "search text patterns"),
    _regex(r"^find\s+", "find files and directories"),
    _regex(r"^wc\s+", "word count"),
    _regex(r"^head\s+", "output first part of files"),
    _regex(r"^tail\s+", "output last part of files"),
    _regex(r"^mkdir\s+", "make directories"),
    _regex(r"^touch\s+", "create empty files or update timestamps"),
    _regex(r"^rm\s+", "remove files/directories (high risk)"),
    _regex(r"^cp\s+", "copy files/directories"),
    _regex(r"^mv\s+", "move/rename files/directories"),
    _regex(r"^node\s+", "execute node.js scripts"),
    _regex(r"^npx\s+", "execute npm packages"),
    _regex(r"^tsx?\s+", "execute TypeScript files"),
    _regex(r"^vitest(\s+|$)", "run vitest tests"),
    _regex(r"^jest(\s+|$)", "run jest tests"),
    _regex(r"^tsc(\s+|$)", "TypeScript compiler"),
    _regex(r"^eslint\s+", "ESLint linter"),
    _regex(r"^prettier\s+", "Prettier formatter"),
    _regex(r"^pytest(\s+|$)", "run pytest tests"),
    _regex(r"^python3?\s+-m\s+pytest(\s+|$)", "run pytest through the interpreter"),
    _regex(r"^ruff\s+(check|format)(\s+|$)", "Ruff linter and formatter"),
    _regex(r"^mypy(\s+|$)", "mypy type checker"),
    _regex(r"^pip3?\s+(list|show|freeze)(\s+|$)", "pip read-only commands"),
    _regex(r"^docker\s+(ps|images|info|version|inspect|logs)(\s+\S+)*", "docker read-only commands"),
    _regex(r"^curl\s+", "transfer data from URLs (network access)"),
    _regex(r"^wget\s+", "download files (network access)"),
]


def create_default_allowlist() -> CommandAllowlist:
    """Create an allowlist pre-populated with ``DEFAULT_ALLOWLIST``."""
    return CommandAllowlist(DEFAULT_ALLOWLIST)


def validate_cwd(cwd: str, workspace_root: str | os.PathLike[str]) -> PathValidationResult:
    """Validate a working directory against the workspace root.

    Existence is not checked; spawning in a missing directory fails later.
    """
    return validate_path(cwd, workspace_root)


def validate_command(
    command: str,
    allowlist: CommandAllowlist,
    options: ShellFeatureOptions | None = None,
) -> CommandValidationResult:
    """Run the full command check in a fixed order.

    1. Injection signatures (hard fail, cannot be opted out of)
    2. Pipes, redirections, command substitution, background jobs
    3. Allowlist
    """
    options = options or ShellFeatureOptions()

    injection = detect_shell_injection(command)
    if injection:
        logger.warning(f"SECURITY: rejected command with injection signature: {injection}")
        return CommandValidationResult(
            allowed=False,
            reason=f"Security violation: {injection}",
            injection_warning=injection,
        )

    parsed = parse_command(command)

    gates = (
        (parsed.has_pipes, options.allow_pipes, "Pipes are not allowed. Use allow_pipes option to enable."),
        (
            parsed.has_redirections,
            options.allow_redirections,
            "Redirections are not allowed. Use allow_redirections option to enable.",
        ),
        (
            parsed.has_command_substitution,
            options.allow_command_substitution,
            "Command substitution is not allowed. Use allow_command_substitution option to enable.",
        ),
        (
            parsed.has_background,
            options.allow_background,
            "Background processes are not allowed. Use allow_background option to enable.",
        ),
    )
    for present, permitted, reason in gates:
        if present and not permitted:
            return CommandValidationResult(allowed=False, reason=reason, parsed=parsed)

    result = allowlist.validate(command)
    result.parsed = parsed
    return result
