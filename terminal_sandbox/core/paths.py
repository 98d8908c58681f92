"""Workspace boundary enforcement for requested paths.

Every file or working-directory path handed to the sandbox is resolved
against a workspace root and rejected if it escapes that root, whether by
``..`` traversal, an absolute path, or a symlink pointing outside.

Two variants exist:

* ``validate_path`` resolves symlinks (including the parent directory of a
  path that does not exist yet) and is the one to use for anything that will
  touch the filesystem.
* ``validate_path_lexical`` never touches the filesystem. It only normalises
  the path, so a symlink inside the workspace can still point outside. Use it
  only for paths that were already validated or for low-risk checks.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from pydantic import BaseModel

from terminal_sandbox.core.errors import PathValidationError

logger = logging.getLogger(__name__)


class PathValidationResult(BaseModel):
    """Outcome of a path validation.

    ``resolved_path`` is set only when ``valid`` is True, ``reason`` only when
    it is False.
    """

    valid: bool
    resolved_path: str | None = None
    reason: str | None = None

    @classmethod
    def ok(cls, resolved_path: str) -> PathValidationResult:
        return cls(valid=True, resolved_path=resolved_path)

    @classmethod
    def fail(cls, reason: str) -> PathValidationResult:
        return cls(valid=False, reason=reason)

    def unwrap(self, attempted_path: str = "", workspace_root: str = "") -> str:
        """Return the resolved path or raise PathValidationError."""
        if not self.valid or self.resolved_path is None:
            raise PathValidationError(attempted_path, workspace_root, self.reason or "invalid path")
        return self.resolved_path


def _resolve_real_path(path: str) -> str:
    """Resolve symlinks in ``path``.

    For a path that does not exist, the parent directory is resolved instead
    and the basename re-appended, so a symlinked parent cannot be used to
    escape once a file is created there. If the parent is missing too, the
    normalised path is returned unchanged.
    """
    try:
        return os.path.realpath(path, strict=True)
    except OSError:
        pass

    parent = os.path.dirname(path)
    base = os.path.basename(path)
    try:
        return os.path.join(os.path.realpath(parent, strict=True), base)
    except OSError:
        return os.path.normpath(path)


def _basic_validation(requested_path: str) -> PathValidationResult | None:
    if not requested_path or not requested_path.strip():
        return PathValidationResult.fail("Path cannot be empty")

    if "\0" in requested_path:
        return PathValidationResult.fail("Path contains null bytes")

    # SECURITY: No shell is involved here, but a "~" path handed to a shell
    # later would expand to the home directory.
    if requested_path.startswith("~"):
        return PathValidationResult.fail("Path contains tilde expansion")

    return None


def is_within_workspace(resolved_path: str, workspace_root: str) -> bool:
    """Return True if ``resolved_path`` is the root itself or lies under it.

    The separator is appended before the prefix test so that
    ``/workspace/projectile`` does not match root ``/workspace/project``.
    """
    if resolved_path == workspace_root:
        return True

    root_with_sep = workspace_root if workspace_root.endswith(os.sep) else workspace_root + os.sep
    path_with_sep = resolved_path if resolved_path.endswith(os.sep) else resolved_path + os.sep
    return path_with_sep.startswith(root_with_sep)


def _outside(requested_path: str) -> PathValidationResult:
    return PathValidationResult.fail(f'Path "{requested_path}" is outside workspace boundary')


def _join(root: str, requested_path: str) -> str:
    return os.path.normpath(os.path.join(root, requested_path))


def validate_path(requested_path: str, workspace_root: str | os.PathLike[str]) -> PathValidationResult:
    """Validate that ``requested_path`` stays inside ``workspace_root``.

    Relative paths are joined to the root; absolute paths are taken as given
    and must still land inside it. Symlinks are followed on both the root and
    the candidate.
    """
    root = _resolve_real_path(os.path.abspath(os.fspath(workspace_root)))

    failure = _basic_validation(requested_path)
    if failure is not None:
        return failure

    normalized = _join(root, requested_path)
    resolved = _resolve_real_path(normalized)

    if not is_within_workspace(resolved, root):
        logger.warning(f"SECURITY: path '{requested_path}' resolves outside workspace '{root}'")
        return _outside(requested_path)

    return PathValidationResult.ok(resolved)


def validate_path_lexical(
    requested_path: str, workspace_root: str | os.PathLike[str]
) -> PathValidationResult:
    """Validate ``requested_path`` without touching the filesystem.

    WARNING: Symlinks are not resolved. A link inside the workspace that
    points elsewhere passes this check. Prefer ``validate_path``.
    """
    root = os.path.abspath(os.fspath(workspace_root))

    failure = _basic_validation(requested_path)
    if failure is not None:
        return failure

    normalized = _join(root, requested_path)
    if not is_within_workspace(normalized, root):
        return _outside(requested_path)

    return PathValidationResult.ok(normalized)


@dataclass(frozen=True)
class BoundPathValidator:
    """Path validator bound to one workspace root."""

    workspace_root: str

    def validate(self, requested_path: str) -> PathValidationResult:
        return validate_path(requested_path, self.workspace_root)

    def validate_lexical(self, requested_path: str) -> PathValidationResult:
        return validate_path_lexical(requested_path, self.workspace_root)


def create_path_validator(workspace_root: str | os.PathLike[str]) -> BoundPathValidator:
    """Create a validator for repeated checks against the same root."""
    return BoundPathValidator(workspace_root=os.path.abspath(os.fspath(workspace_root)))
