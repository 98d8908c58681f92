"""Agent-facing terminal tools and their collaborator interfaces."""

from terminal_sandbox.tools.contracts import (
    InMemoryToolExecutionRepository,
    PolicyEngine,
    PolicyEvaluation,
    ToolExecutionRecord,
    ToolExecutionRepository,
    ToolExecutionStatus,
)
from terminal_sandbox.tools.terminal import TerminalTools

__all__ = [
    "InMemoryToolExecutionRepository",
    "PolicyEngine",
    "PolicyEvaluation",
    "TerminalTools",
    "ToolExecutionRecord",
    "ToolExecutionRepository",
    "ToolExecutionStatus",
]
