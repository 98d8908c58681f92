"""Tests for the command allowlist and the composed command check.

Tests cover:
- Literal vs regex pattern semantics
- First-match-wins ordering and argument restrictions
- Config loading (atomic replacement, bad regex)
- The default allowlist
- validate_command gate order and per-feature options
"""

from __future__ import annotations

import re
from pathlib import Path

import pytest

from terminal_sandbox.core.allowlist import (
    DEFAULT_ALLOWLIST,
    AllowlistEntry,
    CommandAllowlist,
    LiteralPattern,
    RegexPattern,
    ShellFeatureOptions,
    create_default_allowlist,
    validate_command,
    validate_cwd,
)
from terminal_sandbox.core.errors import AllowlistConfigError

# =============================================================================
# Pattern Tests
# =============================================================================


class TestPatterns:
    def test_literal_matches_exact_and_prefix_with_space(self):
        pattern = LiteralPattern("npm")

        assert pattern.matches("npm")
        assert pattern.matches("npm install")
        assert not pattern.matches("npmx")
        assert not pattern.matches("pnpm install")

    def test_regex_is_searched_not_anchored(self):
        pattern = RegexPattern.compile(r"test")

        assert pattern.matches("npm test")
        assert pattern.matches("pytest -q")

    def test_anchored_regex(self):
        pattern = RegexPattern.compile(r"^git\s+status$")

        assert pattern.matches("git status")
        assert not pattern.matches("git status --short")

    def test_str_forms(self):
        assert str(LiteralPattern("ls")) == "ls"
        assert str(RegexPattern.compile(r"^ls$")) == "/^ls$/"


# =============================================================================
# Allowlist Tests
# =============================================================================


class TestCommandAllowlist:
    def test_empty_allowlist_denies_everything(self):
        result = CommandAllowlist().validate("ls")

        assert not result.allowed
        assert result.reason == 'Command "ls" not in allowlist. Add a matching pattern to allow this command.'

    @pytest.mark.parametrize("command", ["", "   "])
    def test_empty_command_denied(self, command: str):
        result = create_default_allowlist().validate(command)

        assert not result.allowed
        assert result.reason == "Command cannot be empty"

    def test_command_is_trimmed_before_matching(self):
        allowlist = CommandAllowlist()
        allowlist.add("make", "make")

        assert allowlist.validate("  make build  ").allowed

    def test_add_accepts_literals_and_compiled_regexes(self):
        allowlist = CommandAllowlist()
        literal = allowlist.add("make", "make")
        regex = allowlist.add(re.compile(r"^just\s+\w+$"), "just")

        assert isinstance(literal.pattern, LiteralPattern)
        assert isinstance(regex.pattern, RegexPattern)
        assert allowlist.validate("just build").allowed

    def test_matched_entry_returned(self):
        allowlist = CommandAllowlist()
        entry = allowlist.add("make", "Run make")

        result = allowlist.validate("make test")

        assert result.allowed
        assert result.matched_entry is entry

    def test_first_match_wins(self):
        allowlist = CommandAllowlist()
        allowlist.add("git", "git, no arguments", allowed_args=[])
        allowlist.add("git", "git, anything")

        result = allowlist.validate("git status")

        # The first matching entry decides even though a later one would allow it
        assert not result.allowed
        assert "no arguments permitted" in result.reason

    def test_empty_allowed_args_permits_bare_command(self):
        allowlist = CommandAllowlist()
        allowlist.add("pwd", "print working directory", allowed_args=[])

        assert allowlist.validate("pwd").allowed
        result = allowlist.validate("pwd -P")
        assert not result.allowed
        assert result.reason == 'Arguments "-P" not allowed for this command (no arguments permitted)'

    def test_allowed_args_literal_and_regex(self):
        allowlist = CommandAllowlist()
        allowlist.add("make", "make targets", allowed_args=["test", re.compile(r"^build(-\w+)?$")])

        assert allowlist.validate("make test").allowed
        assert allowlist.validate("make test -j4").allowed
        assert allowlist.validate("make build-docs").allowed
        result = allowlist.validate("make deploy")
        assert not result.allowed
        assert result.reason == 'Arguments "deploy" not allowed for this command'

    def test_entries_is_a_copy(self):
        allowlist = CommandAllowlist()
        allowlist.add("ls", "list")

        allowlist.entries.clear()

        assert len(allowlist) == 1

    def test_clear(self):
        allowlist = create_default_allowlist()

        allowlist.clear()

        assert len(allowlist) == 0
        assert not allowlist.validate("ls").allowed

    def test_add_entry(self):
        allowlist = CommandAllowlist()
        allowlist.add_entry(AllowlistEntry(pattern=LiteralPattern("make"), description="make"))

        assert allowlist.validate("make").allowed


class TestLoadFromConfig:
    def test_replaces_entries(self):
        allowlist = create_default_allowlist()

        allowlist.load_from_config(
            {
                "patterns": [
                    {"pattern": "make", "description": "make", "allowed_args": ["test"]},
                    {"pattern": r"^just\s+\w+$", "description": "just", "regex": True},
                    {
                        "pattern": "cargo",
                        "description": "cargo",
                        "allowed_args": [{"pattern": r"^(build|test)\b", "regex": True}],
                    },
                ]
            }
        )

        assert len(allowlist) == 3
        assert not allowlist.validate("ls").allowed
        assert allowlist.validate("make test").allowed
        assert not allowlist.validate("make deploy").allowed
        assert allowlist.validate("just lint").allowed
        assert allowlist.validate("cargo build --release").allowed
        assert not allowlist.validate("cargo publish").allowed

    def test_bad_regex_keeps_previous_entries(self):
        allowlist = CommandAllowlist()
        allowlist.add("ls", "list")

        with pytest.raises(AllowlistConfigError, match="Invalid regex"):
            allowlist.load_from_config(
                {
                    "patterns": [
                        {"pattern": "make", "description": "make"},
                        {"pattern": "([unclosed", "description": "bad", "regex": True},
                    ]
                }
            )

        assert len(allowlist) == 1
        assert allowlist.validate("ls").allowed

    def test_missing_patterns_list(self):
        with pytest.raises(AllowlistConfigError, match="'patterns' list"):
            CommandAllowlist().load_from_config({})

    def test_item_without_pattern(self):
        with pytest.raises(AllowlistConfigError, match="item 0"):
            CommandAllowlist().load_from_config({"patterns": [{"description": "no pattern"}]})

    def test_allowed_args_must_be_list(self):
        with pytest.raises(AllowlistConfigError, match="'allowed_args' must be a list"):
            CommandAllowlist().load_from_config(
                {"patterns": [{"pattern": "make", "allowed_args": "test"}]}
            )


# =============================================================================
# Default Allowlist Tests
# =============================================================================


class TestDefaultAllowlist:
    @pytest.fixture
    def allowlist(self) -> CommandAllowlist:
        return create_default_allowlist()

    @pytest.mark.parametrize(
        "command",
        [
            "npm install",
            "npm run build",
            "npm test --coverage",
            "pnpm install",
            "yarn test",
            "git status",
            "git diff --stat",
            "git commit -m msg",
            "ls",
            "ls -la src",
            "cat README.md",
            "echo hello",
            "pwd",
            "grep -r TODO src",
            "node script.js",
            "npx vitest",
            "tsc",
            "vitest run",
            "pytest -q",
            "python -m pytest tests",
            "ruff check .",
            "mypy",
            "pip list",
            "docker ps",
            "curl https://example.com",
        ],
    )
    def test_allowed(self, allowlist: CommandAllowlist, command: str):
        assert allowlist.validate(command).allowed, command

    @pytest.mark.parametrize(
        "command",
        [
            "sudo ls",
            "npm publish",
            "git push origin main",
            "pwd -P",
            "python script.py",
            "pip install requests",
            "docker run ubuntu",
            "bash -c ls",
            "chmod 777 file",
        ],
    )
    def test_denied(self, allowlist: CommandAllowlist, command: str):
        assert not allowlist.validate(command).allowed, command

    def test_default_allowlist_instances_are_independent(self):
        first = create_default_allowlist()
        second = create_default_allowlist()

        first.clear()

        assert len(second) == len(DEFAULT_ALLOWLIST)


# =============================================================================
# Composed Check Tests
# =============================================================================


class TestValidateCommand:
    @pytest.fixture
    def allowlist(self) -> CommandAllowlist:
        return create_default_allowlist()

    def test_allowed_command_carries_parse(self, allowlist: CommandAllowlist):
        result = validate_command("npm test", allowlist)

        assert result.allowed
        assert result.parsed.base_command == "npm"
        assert result.matched_entry is not None

    def test_injection_checked_first(self, allowlist: CommandAllowlist):
        result = validate_command(
            "ls; rm -rf /",
            allowlist,
            ShellFeatureOptions(allow_pipes=True, allow_redirections=True),
        )

        assert not result.allowed
        assert result.reason == "Security violation: Dangerous rm -rf / pattern detected"
        assert result.injection_warning == "Dangerous rm -rf / pattern detected"

    def test_pipes_denied_by_default(self, allowlist: CommandAllowlist):
        result = validate_command("cat README.md | grep x", allowlist)

        assert not result.allowed
        assert result.reason == "Pipes are not allowed. Use allow_pipes option to enable."

    def test_pipes_allowed_with_option(self, allowlist: CommandAllowlist):
        result = validate_command("cat README.md | grep x", allowlist, ShellFeatureOptions(allow_pipes=True))

        assert result.allowed

    def test_redirections_gate(self, allowlist: CommandAllowlist):
        denied = validate_command("echo hi > out.txt", allowlist)
        allowed = validate_command("echo hi > out.txt", allowlist, ShellFeatureOptions(allow_redirections=True))

        assert "allow_redirections" in denied.reason
        assert allowed.allowed

    def test_command_substitution_gate(self, allowlist: CommandAllowlist):
        result = validate_command("echo $(whoami)", allowlist, ShellFeatureOptions(allow_pipes=True))

        assert not result.allowed
        assert "allow_command_substitution" in result.reason

    def test_background_gate(self, allowlist: CommandAllowlist):
        result = validate_command("npm run dev &", allowlist)

        assert not result.allowed
        assert "allow_background" in result.reason

    def test_pipes_reported_before_redirections(self, allowlist: CommandAllowlist):
        result = validate_command("cat a | sort > b", allowlist)

        assert "allow_pipes" in result.reason

    def test_allowlist_checked_last(self, allowlist: CommandAllowlist):
        result = validate_command("sudo ls", allowlist)

        assert not result.allowed
        assert "not in allowlist" in result.reason
        assert result.parsed.base_command == "sudo"


class TestValidateCwd:
    def test_inside(self, workspace: Path):
        result = validate_cwd("src", workspace)

        assert result.valid
        assert result.resolved_path == str(workspace / "src")

    def test_outside(self, workspace: Path):
        assert not validate_cwd("..", workspace).valid
