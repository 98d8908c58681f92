"""Sandbox configuration models and YAML loading."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, Field, model_validator

from terminal_sandbox.core.allowlist import CommandAllowlist, create_default_allowlist
from terminal_sandbox.core.errors import ConfigError

logger = logging.getLogger(__name__)

# Fixed limits (not configurable)
MIN_TIMEOUT_MS = 1000
OUTPUT_BUFFER_MAX_SIZE = 1024 * 1024  # 1MB of text
KILL_GRACE_PERIOD_MS = 5000  # between SIGTERM and SIGKILL
TERMINAL_COLS = 80
TERMINAL_ROWS = 30

CONFIG_ENV_VAR = "TERMINAL_SANDBOX_CONFIG"
PROJECT_CONFIG_NAME = ".terminal_sandbox.yaml"
USER_CONFIG_PATH = Path.home() / ".terminal_sandbox" / "config.yaml"


class SessionManagerConfig(BaseModel):
    """Limits applied by the session manager."""

    max_concurrency: int = Field(default=5, ge=1)
    default_timeout_ms: int = Field(default=60_000, ge=MIN_TIMEOUT_MS)
    max_timeout_ms: int = Field(default=300_000, ge=MIN_TIMEOUT_MS)

    @model_validator(mode="after")
    def _default_within_max(self) -> SessionManagerConfig:
        if self.default_timeout_ms > self.max_timeout_ms:
            raise ValueError(
                f"default_timeout_ms ({self.default_timeout_ms}) exceeds "
                f"max_timeout_ms ({self.max_timeout_ms})"
            )
        return self


class AllowlistArgConfig(BaseModel):
    pattern: str = Field(..., min_length=1)
    regex: bool = False


class AllowlistPatternConfig(BaseModel):
    pattern: str = Field(..., min_length=1)
    description: str = ""
    regex: bool = False
    # Plain strings are literal argument patterns
    allowed_args: list[str | AllowlistArgConfig] | None = None


class AllowlistConfig(BaseModel):
    """Allowlist section. ``extend`` keeps the default table and appends."""

    extend: bool = False
    patterns: list[AllowlistPatternConfig] = Field(default_factory=list)


class SandboxSettings(BaseModel):
    """Top-level settings for the terminal tools."""

    session: SessionManagerConfig = Field(default_factory=SessionManagerConfig)
    # Output stored with audit records
    audit_output_limit: int = Field(default=10_000, ge=0)
    # Output returned by terminal_status
    preview_output_limit: int = Field(default=2_000, ge=0)
    allow_pipes: bool = False
    allow_redirections: bool = False
    # Accept policy "require_approval" decisions without asking. Off by default.
    auto_approve: bool = False
    allowlist: AllowlistConfig | None = None

    def build_allowlist(self) -> CommandAllowlist:
        """Create the allowlist these settings describe."""
        if self.allowlist is None:
            return create_default_allowlist()

        configured = CommandAllowlist()
        configured.load_from_config(
            {"patterns": [p.model_dump() for p in self.allowlist.patterns]}
        )
        if not self.allowlist.extend:
            return configured

        allowlist = create_default_allowlist()
        for entry in configured.entries:
            allowlist.add_entry(entry)
        return allowlist


def _candidate_paths(workspace_root: Path | None) -> list[Path]:
    paths = []
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        paths.append(Path(env_path))
    if workspace_root is not None:
        paths.append(Path(workspace_root) / PROJECT_CONFIG_NAME)
    paths.append(USER_CONFIG_PATH)
    return paths


def parse_settings(data: dict[str, Any] | None, source: str = "<config>") -> SandboxSettings:
    if data is None:
        return SandboxSettings()
    if not isinstance(data, dict):
        raise ConfigError(f"Config {source} must be a mapping, got {type(data).__name__}")
    try:
        return SandboxSettings.model_validate(data)
    except pydantic.ValidationError as e:
        raise ConfigError(f"Invalid config in {source}: {e}") from e


def load_settings(path: Path | None = None, workspace_root: Path | None = None) -> SandboxSettings:
    """Load settings from YAML.

    An explicit ``path`` must exist. Otherwise the first existing file of
    ``$TERMINAL_SANDBOX_CONFIG``, ``<workspace>/.terminal_sandbox.yaml`` and
    ``~/.terminal_sandbox/config.yaml`` is used, falling back to defaults.
    """
    if path is not None:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        candidates = [path]
    else:
        candidates = [p for p in _candidate_paths(workspace_root) if p.is_file()]

    if not candidates:
        return SandboxSettings()

    source = candidates[0]
    try:
        with open(source, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {source}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config {source}: {e}") from e

    logger.info(f"Loaded sandbox settings from {source}")
    return parse_settings(data, str(source))
