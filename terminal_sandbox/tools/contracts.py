"""Interfaces of the collaborators the terminal tools consult.

Both collaborators are optional. Without a policy engine every command that
passes validation is allowed; without a repository nothing is audited.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

RiskLevel = Literal["low", "medium", "high", "critical"]
PolicyDecision = Literal["allow", "deny", "require_approval"]


class PolicyEvaluation(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    decision: PolicyDecision
    risk_level: RiskLevel = "low"
    reason: str | None = None


@runtime_checkable
class PolicyEngine(Protocol):
    """Decides whether an action may run.

    ``action_type`` is e.g. ``"terminal_execute"``; ``details`` carries the
    action's parameters (command, cwd, parsed command).
    """

    def evaluate(self, action_type: str, details: dict[str, Any]) -> PolicyEvaluation: ...


class ToolExecutionStatus(str, Enum):
    PENDING = "pending"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ToolExecutionRecord(BaseModel):
    """Audit record of one tool invocation."""

    id: str
    tool_name: str
    input: dict[str, Any]
    status: ToolExecutionStatus = ToolExecutionStatus.PENDING
    output: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    execution_time_ms: int | None = None


@runtime_checkable
class ToolExecutionRepository(Protocol):
    def create(self, record: ToolExecutionRecord) -> ToolExecutionRecord: ...

    def update_status(
        self,
        execution_id: str,
        status: ToolExecutionStatus,
        **changes: Any,
    ) -> ToolExecutionRecord | None: ...


class InMemoryToolExecutionRepository:
    """Thread-safe dict-backed repository, for the CLI and tests."""

    def __init__(self) -> None:
        self._records: dict[str, ToolExecutionRecord] = {}
        self._lock = threading.Lock()

    def create(self, record: ToolExecutionRecord) -> ToolExecutionRecord:
        with self._lock:
            self._records[record.id] = record
        return record

    def update_status(
        self,
        execution_id: str,
        status: ToolExecutionStatus,
        **changes: Any,
    ) -> ToolExecutionRecord | None:
        with self._lock:
            record = self._records.get(execution_id)
            if record is None:
                logger.warning(f"No tool execution record '{execution_id}' to update")
                return None
            updated = record.model_copy(update={"status": status, **changes})
            self._records[execution_id] = updated
            return updated

    def get(self, execution_id: str) -> ToolExecutionRecord | None:
        with self._lock:
            return self._records.get(execution_id)

    def all(self) -> list[ToolExecutionRecord]:
        with self._lock:
            return list(self._records.values())
