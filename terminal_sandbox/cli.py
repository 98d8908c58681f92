"""CLI entry point for the terminal sandbox.

Commands:
- terminal-sandbox check-path: Validate a path against the workspace boundary
- terminal-sandbox check-command: Run the command safety checks and allowlist
- terminal-sandbox allowlist: Show the active allowlist
- terminal-sandbox run: Run an allowlisted command in a PTY and stream its output
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from terminal_sandbox import __version__
from terminal_sandbox.core.allowlist import LiteralPattern, ShellFeatureOptions, validate_command
from terminal_sandbox.core.config import SandboxSettings, load_settings
from terminal_sandbox.core.errors import ConfigError
from terminal_sandbox.core.paths import validate_path
from terminal_sandbox.sandbox.events import SessionEvent, SessionOutputEvent
from terminal_sandbox.sandbox.session import SessionStatus
from terminal_sandbox.tools.terminal import TerminalTools

console = Console()

# Exit codes for sessions that never reported one
EXIT_TIMED_OUT = 124
EXIT_CANCELLED = 130


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def _settings(ctx: click.Context) -> SandboxSettings:
    return ctx.obj["settings"]


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    help="Settings file (YAML)",
)
@click.option(
    "--workspace",
    "-w",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=".",
    help="Workspace root (default: current directory)",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: Path | None, workspace: Path) -> None:
    """Terminal Sandbox - run agent commands inside a workspace boundary."""
    _configure_logging(verbose)
    ctx.ensure_object(dict)
    try:
        settings = load_settings(config_path, workspace_root=workspace)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)
    ctx.obj["settings"] = settings
    ctx.obj["workspace"] = workspace.resolve()


@main.command("check-path")
@click.argument("path")
@click.option(
    "--root",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    help="Workspace root (overrides --workspace)",
)
@click.pass_context
def check_path(ctx: click.Context, path: str, root: Path | None) -> None:
    """Check whether PATH resolves inside the workspace."""
    workspace = root.resolve() if root else ctx.obj["workspace"]
    result = validate_path(path, workspace)
    if result.valid:
        console.print(f"[green]OK[/green] {result.resolved_path}")
        return
    console.print(f"[red]DENIED[/red] {result.reason}")
    sys.exit(1)


@main.command("check-command")
@click.argument("command")
@click.option("--allow-pipes", is_flag=True, help="Permit |")
@click.option("--allow-redirections", is_flag=True, help="Permit < and >")
@click.option("--allow-substitution", is_flag=True, help="Permit $(...) and backticks")
@click.option("--allow-background", is_flag=True, help="Permit trailing &")
@click.pass_context
def check_command(
    ctx: click.Context,
    command: str,
    allow_pipes: bool,
    allow_redirections: bool,
    allow_substitution: bool,
    allow_background: bool,
) -> None:
    """Run COMMAND through the safety checks and allowlist without executing it."""
    settings = _settings(ctx)
    options = ShellFeatureOptions(
        allow_pipes=allow_pipes or settings.allow_pipes,
        allow_redirections=allow_redirections or settings.allow_redirections,
        allow_command_substitution=allow_substitution,
        allow_background=allow_background,
    )
    result = validate_command(command, settings.build_allowlist(), options)

    if not result.allowed:
        console.print(f"[red]DENIED[/red] {result.reason}")
        sys.exit(1)

    lines = [f"[green]ALLOWED[/green] {command}"]
    if result.matched_entry is not None:
        lines.append(f"Matched: {result.matched_entry.pattern} ({result.matched_entry.description})")
    if result.parsed is not None:
        lines.append(f"Base command: {result.parsed.base_command}")
    console.print(Panel("\n".join(lines), title="Command check"))


@main.command()
@click.pass_context
def allowlist(ctx: click.Context) -> None:
    """Show the active command allowlist."""
    entries = _settings(ctx).build_allowlist().entries

    table = Table(title=f"Command Allowlist ({len(entries)} entries)")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Pattern", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("Description", style="white")
    table.add_column("Arguments", style="green")

    for i, entry in enumerate(entries, 1):
        kind = "literal" if isinstance(entry.pattern, LiteralPattern) else "regex"
        if entry.allowed_args is None:
            args = "any"
        elif not entry.allowed_args:
            args = "none"
        else:
            args = ", ".join(str(a) for a in entry.allowed_args)
        table.add_row(str(i), str(entry.pattern), kind, entry.description, args)

    console.print(table)


@main.command()
@click.argument("command")
@click.option("--cwd", default=".", help="Working directory, relative to the workspace")
@click.option("--timeout", "timeout_ms", type=int, help="Timeout in milliseconds")
@click.option("--allow-pipes", is_flag=True, help="Permit |")
@click.option("--allow-redirections", is_flag=True, help="Permit < and >")
@click.pass_context
def run(
    ctx: click.Context,
    command: str,
    cwd: str,
    timeout_ms: int | None,
    allow_pipes: bool,
    allow_redirections: bool,
) -> None:
    """Run COMMAND in a sandboxed PTY, streaming its output.

    Exits with the command's exit code.
    """

    def echo(event: SessionEvent) -> None:
        if isinstance(event, SessionOutputEvent) and event.type == "data" and event.data:
            sys.stdout.write(event.data)
            sys.stdout.flush()

    with TerminalTools(ctx.obj["workspace"], settings=_settings(ctx)) as tools:
        result = tools.terminal_execute(
            {
                "command": command,
                "cwd": cwd,
                "timeout": timeout_ms,
                "allowPipes": allow_pipes,
                "allowRedirections": allow_redirections,
            },
            listener=echo,
        )
        if result.status != "running":
            label = "DENIED" if result.status == "denied" else "ERROR"
            console.print(f"[red]{label}[/red] {result.message}")
            sys.exit(1)

        session = tools.manager.get_session(result.session_id)
        try:
            session.wait()
        except KeyboardInterrupt:
            tools.manager.cancel_session(session.id, "Interrupted")
            session.wait()

    if session.status is SessionStatus.TIMED_OUT:
        console.print(f"[yellow]{session.end_reason}[/yellow]")
        sys.exit(EXIT_TIMED_OUT)
    if session.status is SessionStatus.CANCELLED:
        console.print(f"[yellow]Cancelled: {session.end_reason}[/yellow]")
        sys.exit(EXIT_CANCELLED)
    if session.truncated:
        console.print("[yellow]Output exceeded the capture limit and was truncated[/yellow]")
    sys.exit(session.exit_code or 0)


if __name__ == "__main__":
    main()
