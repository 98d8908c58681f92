"""Terminal tools: the JSON-in/JSON-out surface an agent calls.

``terminal_execute`` runs the full gate before anything is spawned:

    input validation -> cwd inside workspace -> command safety + allowlist
    -> policy engine (if any) -> concurrency admission -> spawn

Denials come back as ``status="denied"`` results, runtime failures as
``status="error"``. Policy and audit collaborators are optional and never
change whether a command passes the sandbox checks.
"""

from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Literal

import pydantic
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from terminal_sandbox.core.allowlist import (
    CommandAllowlist,
    ShellFeatureOptions,
    validate_command,
    validate_cwd,
)
from terminal_sandbox.core.config import SandboxSettings
from terminal_sandbox.core.errors import SessionError
from terminal_sandbox.sandbox.events import EventCallback, SessionEvent, SessionOutputEvent
from terminal_sandbox.sandbox.session import SessionStatus, TerminalSession, TerminalSessionManager
from terminal_sandbox.tools.contracts import (
    PolicyEngine,
    PolicyEvaluation,
    ToolExecutionRecord,
    ToolExecutionRepository,
    ToolExecutionStatus,
)

logger = logging.getLogger(__name__)

_AUDIT_STATUS = {
    SessionStatus.COMPLETED: ToolExecutionStatus.COMPLETED,
    SessionStatus.FAILED: ToolExecutionStatus.FAILED,
    SessionStatus.TIMED_OUT: ToolExecutionStatus.FAILED,
    SessionStatus.CANCELLED: ToolExecutionStatus.CANCELLED,
}


class _ToolModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TerminalExecuteInput(_ToolModel):
    command: str = Field(..., min_length=1)
    cwd: str | None = None
    # Milliseconds
    timeout: int | None = None
    env: dict[str, str] | None = None
    allow_pipes: bool = False
    allow_redirections: bool = False


class TerminalExecuteOutput(_ToolModel):
    session_id: str
    command: str
    cwd: str
    status: Literal["running", "denied", "error"]
    message: str | None = None
    policy_result: PolicyEvaluation | None = None


class TerminalStatusInput(_ToolModel):
    session_id: str
    include_output: bool = True


class TerminalStatusOutput(_ToolModel):
    session_id: str
    exists: bool
    command: str | None = None
    cwd: str | None = None
    status: SessionStatus | None = None
    exit_code: int | None = None
    running: bool = False
    output_preview: str | None = None
    started_at: datetime | None = None
    timeout_ms: int | None = None


class TerminalKillInput(_ToolModel):
    session_id: str
    reason: str | None = None


class TerminalKillOutput(_ToolModel):
    session_id: str
    killed: bool
    was_running: bool
    message: str | None = None


class TerminalListInput(_ToolModel):
    active_only: bool = False


class TerminalSessionSummary(_ToolModel):
    session_id: str
    command: str
    cwd: str
    status: SessionStatus
    exit_code: int | None = None
    running: bool
    started_at: datetime


class TerminalListOutput(_ToolModel):
    sessions: list[TerminalSessionSummary]
    active_count: int
    max_concurrency: int


def _truncate_head(output: str, limit: int) -> str:
    """Keep the first ``limit`` characters, noting how many were dropped."""
    if len(output) <= limit:
        return output
    return output[:limit] + f"\n[...{len(output) - limit} characters truncated...]"


def _truncate_tail(output: str, limit: int) -> str:
    """Keep the last ``limit`` characters, noting how many were dropped."""
    if len(output) <= limit:
        return output
    return f"[...{len(output) - limit} characters truncated...]\n" + output[len(output) - limit:]


class TerminalTools:
    """Terminal tools bound to one workspace.

    USAGE:
        with TerminalTools("/path/to/workspace") as tools:
            result = tools.execute_tool("terminal_execute", {"command": "npm test"})
            status = tools.execute_tool("terminal_status", {"sessionId": result["output"]["sessionId"]})

    Leaving the ``with`` block cancels sessions only if the tools created
    their own manager.
    """

    def __init__(
        self,
        workspace_root: str | os.PathLike[str],
        manager: TerminalSessionManager | None = None,
        allowlist: CommandAllowlist | None = None,
        policy: PolicyEngine | None = None,
        repository: ToolExecutionRepository | None = None,
        settings: SandboxSettings | None = None,
    ):
        self.workspace_root = os.path.realpath(os.fspath(workspace_root))
        self.settings = settings or SandboxSettings()
        self._owns_manager = manager is None
        self.manager = manager or TerminalSessionManager(self.settings.session)
        self.allowlist = allowlist or self.settings.build_allowlist()
        self.policy = policy
        self.repository = repository

    # ------------------------------------------------------------------
    # terminal_execute
    # ------------------------------------------------------------------

    def terminal_execute(
        self,
        payload: dict[str, Any] | TerminalExecuteInput,
        listener: EventCallback | None = None,
    ) -> TerminalExecuteOutput:
        """Validate and start a command. Returns immediately; poll with terminal_status.

        ``listener`` receives every event of the new session (in-process
        callers only, e.g. the CLI streaming output live).
        """
        request = (
            payload
            if isinstance(payload, TerminalExecuteInput)
            else TerminalExecuteInput.model_validate(payload)
        )
        session_id = f"term-{uuid.uuid4().hex[:12]}"
        requested_cwd = request.cwd or "."

        def result(status: str, message: str | None = None, **extra: Any) -> TerminalExecuteOutput:
            return TerminalExecuteOutput(
                session_id=session_id,
                command=request.command,
                cwd=extra.pop("cwd", requested_cwd),
                status=status,
                message=message,
                **extra,
            )

        cwd_check = validate_cwd(requested_cwd, self.workspace_root)
        if not cwd_check.valid:
            logger.warning(f"SECURITY: denied cwd '{requested_cwd}': {cwd_check.reason}")
            return result("denied", f"Invalid working directory: {cwd_check.reason}")
        cwd = cwd_check.resolved_path

        options = ShellFeatureOptions(
            allow_pipes=request.allow_pipes or self.settings.allow_pipes,
            allow_redirections=request.allow_redirections or self.settings.allow_redirections,
        )
        command_check = validate_command(request.command, self.allowlist, options)
        if not command_check.allowed:
            logger.warning(f"SECURITY: denied command '{request.command}': {command_check.reason}")
            return result("denied", command_check.reason, cwd=cwd)

        policy_result = None
        if self.policy is not None:
            policy_result = self._evaluate_policy(request, cwd, command_check.parsed)
            if policy_result.decision == "deny":
                return result(
                    "denied",
                    f"Denied by policy: {policy_result.reason or 'no reason given'}",
                    cwd=cwd,
                    policy_result=policy_result,
                )
            if policy_result.decision == "require_approval" and not self.settings.auto_approve:
                return result(
                    "denied",
                    f"Command requires approval ({policy_result.risk_level} risk): "
                    f"{policy_result.reason or request.command}",
                    cwd=cwd,
                    policy_result=policy_result,
                )

        if not self.manager.can_create_session():
            return result(
                "error",
                f"Maximum concurrency limit ({self.manager.config.max_concurrency}) reached. "
                f"Active sessions: {self.manager.active_count}",
                cwd=cwd,
                policy_result=policy_result,
            )

        self._audit_create(session_id, request)
        try:
            self.manager.create_session(
                session_id,
                request.command,
                cwd,
                timeout_ms=request.timeout,
                env=request.env,
                listener=self._session_listener(session_id, listener),
            )
        except SessionError as e:
            self._audit_update(session_id, ToolExecutionStatus.FAILED, error=str(e))
            return result("error", str(e), cwd=cwd, policy_result=policy_result)

        return result("running", cwd=cwd, policy_result=policy_result)

    def _evaluate_policy(self, request: TerminalExecuteInput, cwd: str, parsed) -> PolicyEvaluation:
        details = {
            "command": request.command,
            "cwd": cwd,
            "base_command": parsed.base_command if parsed else None,
            "args": parsed.args if parsed else [],
        }
        try:
            return self.policy.evaluate("terminal_execute", details)
        except Exception as e:
            # Fail closed
            logger.exception("Policy evaluation failed; denying command")
            return PolicyEvaluation(decision="deny", risk_level="high", reason=f"Policy evaluation failed: {e}")

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _audit_create(self, session_id: str, request: TerminalExecuteInput) -> None:
        if self.repository is None:
            return
        record = ToolExecutionRecord(
            id=session_id,
            tool_name="terminal_execute",
            input=request.model_dump(by_alias=True, exclude_none=True),
            status=ToolExecutionStatus.RUNNING,
        )
        try:
            self.repository.create(record)
        except Exception as e:
            logger.warning(f"Failed to record tool execution '{session_id}': {e}")

    def _session_listener(self, session_id: str, forward: EventCallback | None):
        def on_event(event: SessionEvent) -> None:
            # The exit event arrives once the process is gone, whatever ended it
            if isinstance(event, SessionOutputEvent) and event.type == "exit":
                session = self.manager.get_session(session_id)
                if session is not None:
                    self._audit_finish(session)
            if forward is not None:
                forward(event)

        return on_event

    def _audit_finish(self, session: TerminalSession) -> None:
        if self.repository is None:
            return
        ended_at = session.ended_at or datetime.now(timezone.utc)
        output = {
            "exitCode": session.exit_code,
            "status": session.status.value,
            "output": _truncate_head(session.output_buffer, self.settings.audit_output_limit),
            "truncated": session.truncated,
        }
        self._audit_update(
            session.id,
            _AUDIT_STATUS.get(session.status, ToolExecutionStatus.FAILED),
            output=output,
            error=session.end_reason,
            completed_at=ended_at,
            execution_time_ms=int((ended_at - session.started_at).total_seconds() * 1000),
        )

    def _audit_update(self, session_id: str, status: ToolExecutionStatus, **changes: Any) -> None:
        if self.repository is None:
            return
        try:
            self.repository.update_status(session_id, status, **changes)
        except Exception as e:
            logger.warning(f"Failed to update tool execution '{session_id}': {e}")

    # ------------------------------------------------------------------
    # terminal_status / terminal_kill / terminal_list
    # ------------------------------------------------------------------

    def terminal_status(self, payload: dict[str, Any] | TerminalStatusInput) -> TerminalStatusOutput:
        request = (
            payload
            if isinstance(payload, TerminalStatusInput)
            else TerminalStatusInput.model_validate(payload)
        )
        session = self.manager.get_session(request.session_id)
        if session is None:
            return TerminalStatusOutput(session_id=request.session_id, exists=False)

        preview = None
        if request.include_output:
            preview = _truncate_tail(session.output_buffer, self.settings.preview_output_limit)

        return TerminalStatusOutput(
            session_id=session.id,
            exists=True,
            command=session.command,
            cwd=session.cwd,
            status=session.status,
            exit_code=session.exit_code,
            running=session.running,
            output_preview=preview,
            started_at=session.started_at,
            timeout_ms=session.timeout_ms,
        )

    def terminal_kill(self, payload: dict[str, Any] | TerminalKillInput) -> TerminalKillOutput:
        request = (
            payload
            if isinstance(payload, TerminalKillInput)
            else TerminalKillInput.model_validate(payload)
        )
        session = self.manager.get_session(request.session_id)
        if session is None:
            return TerminalKillOutput(
                session_id=request.session_id,
                killed=False,
                was_running=False,
                message=f"Session '{request.session_id}' not found",
            )

        was_running = session.running
        killed = self.manager.cancel_session(request.session_id, request.reason or "Killed by user")
        message = None
        if not killed:
            message = f"Session already finished with status {session.status.value}"
        return TerminalKillOutput(
            session_id=request.session_id, killed=killed, was_running=was_running, message=message
        )

    def terminal_list(self, payload: dict[str, Any] | TerminalListInput | None = None) -> TerminalListOutput:
        if isinstance(payload, TerminalListInput):
            request = payload
        else:
            request = TerminalListInput.model_validate(payload or {})

        sessions = (
            self.manager.get_active_sessions() if request.active_only else self.manager.get_all_sessions()
        )
        return TerminalListOutput(
            sessions=[
                TerminalSessionSummary(
                    session_id=s.id,
                    command=s.command,
                    cwd=s.cwd,
                    status=s.status,
                    exit_code=s.exit_code,
                    running=s.running,
                    started_at=s.started_at,
                )
                for s in sessions
            ],
            active_count=self.manager.active_count,
            max_concurrency=self.manager.config.max_concurrency,
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def execute_tool(self, name: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run a tool by name. Returns ``{"success": True, "output": {...}}`` or
        ``{"success": False, "error": "..."}`` with camelCase JSON output."""
        handlers = {
            "terminal_execute": self.terminal_execute,
            "terminal_status": self.terminal_status,
            "terminal_kill": self.terminal_kill,
            "terminal_list": self.terminal_list,
        }
        handler = handlers.get(name)
        if handler is None:
            return {"success": False, "error": f"Unknown tool: {name}"}

        try:
            output = handler(payload or {})
        except pydantic.ValidationError as e:
            return {"success": False, "error": f"Invalid input for {name}: {e}"}

        return {
            "success": True,
            "output": output.model_dump(by_alias=True, exclude_none=True, mode="json"),
        }

    def close(self) -> None:
        if self._owns_manager:
            self.manager.kill_all_sessions()

    def __enter__(self) -> TerminalTools:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
