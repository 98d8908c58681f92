"""Tests for workspace boundary enforcement.

Tests cover:
- Relative, absolute and traversal paths
- Input hygiene (empty, NUL bytes, tilde)
- Sibling-prefix directories
- Symlink escapes (existing targets and not-yet-created files)
- The lexical variant and the bound validator
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from terminal_sandbox.core.errors import PathValidationError
from terminal_sandbox.core.paths import (
    PathValidationResult,
    create_path_validator,
    is_within_workspace,
    validate_path,
    validate_path_lexical,
)

# =============================================================================
# Boundary Tests
# =============================================================================


class TestValidatePath:
    """Tests for the symlink-aware validator."""

    def test_relative_path_inside_workspace(self, workspace: Path):
        result = validate_path("src/main.py", workspace)

        assert result.valid
        assert result.resolved_path == str(workspace / "src" / "main.py")
        assert result.reason is None

    def test_dot_resolves_to_root(self, workspace: Path):
        result = validate_path(".", workspace)

        assert result.valid
        assert result.resolved_path == str(workspace)

    def test_nonexistent_file_inside_workspace_is_allowed(self, workspace: Path):
        result = validate_path("src/new_module.py", workspace)

        assert result.valid
        assert result.resolved_path == str(workspace / "src" / "new_module.py")

    def test_nonexistent_parent_inside_workspace_is_allowed(self, workspace: Path):
        result = validate_path("a/b/c.txt", workspace)

        assert result.valid
        assert result.resolved_path == str(workspace / "a" / "b" / "c.txt")

    def test_parent_traversal_rejected(self, workspace: Path):
        result = validate_path("../outside/secret.txt", workspace)

        assert not result.valid
        assert result.resolved_path is None
        assert result.reason == 'Path "../outside/secret.txt" is outside workspace boundary'

    def test_traversal_that_returns_inside_is_allowed(self, workspace: Path):
        result = validate_path("src/../README.md", workspace)

        assert result.valid
        assert result.resolved_path == str(workspace / "README.md")

    def test_absolute_path_outside_rejected(self, workspace: Path):
        result = validate_path("/etc/passwd", workspace)

        assert not result.valid
        assert "outside workspace boundary" in result.reason

    def test_absolute_path_inside_allowed(self, workspace: Path):
        result = validate_path(str(workspace / "src"), workspace)

        assert result.valid
        assert result.resolved_path == str(workspace / "src")

    def test_sibling_with_common_prefix_rejected(self, workspace: Path):
        sibling = workspace.parent / (workspace.name + "-evil")
        sibling.mkdir()

        result = validate_path(str(sibling), workspace)

        assert not result.valid

    def test_workspace_root_given_with_trailing_separator(self, workspace: Path):
        result = validate_path("src", str(workspace) + os.sep)

        assert result.valid


class TestInputHygiene:
    """Tests for the checks that run before any resolution."""

    @pytest.mark.parametrize("path", ["", "   ", "\t"])
    def test_empty_path_rejected(self, workspace: Path, path: str):
        result = validate_path(path, workspace)

        assert not result.valid
        assert result.reason == "Path cannot be empty"

    def test_null_byte_rejected(self, workspace: Path):
        result = validate_path("src/main.py\0.txt", workspace)

        assert not result.valid
        assert result.reason == "Path contains null bytes"

    @pytest.mark.parametrize("path", ["~", "~/.ssh/id_rsa", "~root"])
    def test_tilde_rejected(self, workspace: Path, path: str):
        result = validate_path(path, workspace)

        assert not result.valid
        assert result.reason == "Path contains tilde expansion"

    def test_tilde_inside_name_is_fine(self, workspace: Path):
        assert validate_path("backup~", workspace).valid


# =============================================================================
# Symlink Tests
# =============================================================================


class TestSymlinks:
    """Tests for symlink escapes the lexical check cannot see."""

    def test_symlink_to_outside_file_rejected(self, workspace: Path, outside_dir: Path):
        (workspace / "link.txt").symlink_to(outside_dir / "secret.txt")

        result = validate_path("link.txt", workspace)

        assert not result.valid
        assert "outside workspace boundary" in result.reason

    def test_symlinked_directory_escape_rejected(self, workspace: Path, outside_dir: Path):
        (workspace / "escape").symlink_to(outside_dir, target_is_directory=True)

        result = validate_path("escape/secret.txt", workspace)

        assert not result.valid

    def test_new_file_under_symlinked_directory_rejected(self, workspace: Path, outside_dir: Path):
        """A file that does not exist yet is checked through its resolved parent."""
        (workspace / "escape").symlink_to(outside_dir, target_is_directory=True)

        result = validate_path("escape/new_file.txt", workspace)

        assert not result.valid

    def test_symlink_within_workspace_allowed(self, workspace: Path):
        (workspace / "alias").symlink_to(workspace / "src", target_is_directory=True)

        result = validate_path("alias/main.py", workspace)

        assert result.valid
        assert result.resolved_path == str(workspace / "src" / "main.py")

    def test_symlinked_workspace_root_is_resolved(self, workspace: Path, tmp_path: Path):
        link_root = tmp_path / "root-link"
        link_root.symlink_to(workspace, target_is_directory=True)

        result = validate_path("src/main.py", link_root)

        assert result.valid
        assert result.resolved_path == str(workspace / "src" / "main.py")

    def test_lexical_variant_misses_symlink_escape(self, workspace: Path, outside_dir: Path):
        (workspace / "link.txt").symlink_to(outside_dir / "secret.txt")

        assert validate_path_lexical("link.txt", workspace).valid
        assert not validate_path("link.txt", workspace).valid


# =============================================================================
# Lexical Variant and Helpers
# =============================================================================


class TestValidatePathLexical:
    def test_traversal_rejected_without_filesystem(self, tmp_path: Path):
        root = tmp_path / "does-not-exist"

        result = validate_path_lexical("../x", root)

        assert not result.valid

    def test_normalises_path(self, tmp_path: Path):
        root = tmp_path / "does-not-exist"

        result = validate_path_lexical("a/./b/../c", root)

        assert result.valid
        assert result.resolved_path == str(root / "a" / "c")

    def test_hygiene_checks_apply(self, tmp_path: Path):
        assert validate_path_lexical("", tmp_path).reason == "Path cannot be empty"
        assert validate_path_lexical("~/x", tmp_path).reason == "Path contains tilde expansion"


class TestIsWithinWorkspace:
    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("/workspace/project", True),
            ("/workspace/project/src", True),
            ("/workspace/projectile", False),
            ("/workspace", False),
            ("/other", False),
        ],
    )
    def test_boundary(self, path: str, expected: bool):
        assert is_within_workspace(path, "/workspace/project") is expected


class TestBoundValidator:
    def test_validator_binds_root(self, workspace: Path):
        validator = create_path_validator(workspace)

        assert validator.workspace_root == str(workspace)
        assert validator.validate("src").valid
        assert not validator.validate("../outside").valid
        assert validator.validate_lexical("src/x.py").valid


class TestPathValidationResult:
    def test_unwrap_returns_resolved_path(self):
        assert PathValidationResult.ok("/w/a").unwrap() == "/w/a"

    def test_unwrap_raises_on_failure(self):
        result = PathValidationResult.fail("nope")

        with pytest.raises(PathValidationError, match="Path validation failed: nope") as exc_info:
            result.unwrap("../x", "/w")

        assert exc_info.value.attempted_path == "../x"
        assert exc_info.value.workspace_root == "/w"
