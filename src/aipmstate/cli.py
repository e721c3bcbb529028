# src/aipmstate/cli.py: Command-Line Interface (CLI) entry point.
# Implemented using Typer, this module provides the 'aipm-state' command that
# wrapper scripts call to read state, push reports and manage sessions. Values
# read with 'get' are printed plainly for shell consumption; failures print a
# red error and exit with the error's code.

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .gitwrap import GitRepository
from .session import end_session, start_session
from .store import StateStore
from .util.errors import AipmStateError, ExitCode, ValidationError

app = typer.Typer(
    help="Inspect and update the AIPM workspace state document."
)
console = Console()
err_console = Console(stderr=True)


def build_store(workspace: Path, config_path: Optional[Path]) -> StateStore:
    """Creates the store for a workspace backed by the git CLI."""
    return StateStore(workspace, GitRepository(workspace), config_path=config_path)


def _store(ctx: typer.Context) -> StateStore:
    try:
        return build_store(ctx.obj["workspace"], ctx.obj["config"])
    except AipmStateError as e:
        _fail(e)


def _fail(error: AipmStateError):
    err_console.print(f"[bold red]Error:[/bold red] {escape(str(error))}")
    raise typer.Exit(int(error.exit_code))


def _format(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2)
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _print_summary(document: Dict[str, Any]) -> None:
    runtime = document["runtime"]
    git = runtime.get("git") or {}
    decisions = document["decisions"]
    session = runtime.get("session") or {}
    table = Table("Key", "Value", title=f"Workspace {document['rawConfig']['workspace']['name']}")
    table.add_row("Current branch", _format(runtime.get("currentBranch")))
    table.add_row("Branch type", _format(decisions.get("currentBranchType")))
    table.add_row("Working tree", "clean" if git.get("isClean") else f"{git.get('uncommittedCount', 0)} change(s)")
    table.add_row("Ahead / behind", f"{git.get('ahead', 0)} / {git.get('behind', 0)}")
    table.add_row("Stashes", _format(git.get("stashCount", 0)))
    table.add_row("Session", session.get("id", "") if session.get("active") else "none")
    table.add_row("Can create branch", _format(decisions.get("canCreateBranch")))
    table.add_row("Merge target", _format(decisions.get("mergeTarget")))
    table.add_row("Cleanup candidates", ", ".join(decisions.get("cleanupCandidates") or []) or "none")
    table.add_row("Last refresh", _format(document["metadata"].get("lastRefresh")))
    console.print(table)


@app.callback()
def main(
    ctx: typer.Context,
    workspace: Optional[Path] = typer.Option(
        None, "--workspace", "-w", envvar="AIPM_WORKSPACE", help="Workspace root (defaults to the current directory)."
    ),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to opinions.yaml."),
):
    """Inspect and update the AIPM workspace state document."""
    ctx.obj = {"workspace": workspace or Path.cwd(), "config": config}


@app.command()
def init(ctx: typer.Context):
    """Build the state document from the configuration and the repository."""
    store = _store(ctx)
    try:
        with console.status("Initializing workspace state...", spinner="dots"):
            document = store.initialize()
    except AipmStateError as e:
        _fail(e)
    console.print(f"[bold green]Initialized state:[/bold green] {store.paths.state_file}")
    _print_summary(document)


@app.command()
def get(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Dotted path, e.g. runtime.currentBranch."),
    as_json: bool = typer.Option(False, "--json", help="Print the value as JSON."),
):
    """Print one value from the state document."""
    store = _store(ctx)
    try:
        store.ensure_loaded()
        value = store.get(path)
    except AipmStateError as e:
        _fail(e)
    typer.echo(json.dumps(value) if as_json else _format(value))


@app.command()
def dump(ctx: typer.Context):
    """Print the whole state document."""
    store = _store(ctx)
    try:
        document = store.ensure_loaded()
    except AipmStateError as e:
        _fail(e)
    typer.echo(json.dumps(document, indent=2))


@app.command()
def refresh(
    ctx: typer.Context,
    scope: str = typer.Argument("all", help="all, runtime, branches, status, remote, computed or decisions."),
):
    """Re-derive part of the state from its source of truth."""
    store = _store(ctx)
    try:
        with console.status(f"Refreshing [bold cyan]{scope}[/bold cyan]...", spinner="dots"):
            store.refresh(scope)
    except AipmStateError as e:
        _fail(e)
    console.print(f"[bold green]Refreshed {scope}[/bold green]")


@app.command()
def validate(
    ctx: typer.Context,
    observe: bool = typer.Option(True, "--observe/--no-observe", help="Compare against the live repository."),
):
    """Check the state document for corruption and drift."""
    store = _store(ctx)
    try:
        report = store.validate(observe=observe)
    except AipmStateError as e:
        _fail(e)
    if report.clean:
        console.print("[bold green]State is consistent.[/bold green]")
        return
    table = Table("Kind", "Section", "Problem")
    for issue in report.errors:
        table.add_row("[red]error[/red]", issue.section, escape(issue.message))
    for issue in report.drift:
        table.add_row("[yellow]drift[/yellow]", issue.section, escape(issue.message))
    console.print(table)
    if not report.ok:
        raise typer.Exit(int(ExitCode.VALIDATION_FAILED))


@app.command()
def repair(ctx: typer.Context):
    """Refresh whatever section has drifted from the repository."""
    store = _store(ctx)
    try:
        report = store.repair()
    except AipmStateError as e:
        _fail(e)
    if report.drift:
        console.print(f"[bold green]Repaired drift in:[/bold green] {', '.join(report.drift_sections())}")
    else:
        console.print("No drift found.")


@app.command()
def summary(ctx: typer.Context):
    """Show the key facts and decisions."""
    store = _store(ctx)
    try:
        document = store.ensure_loaded()
    except AipmStateError as e:
        _fail(e)
    _print_summary(document)


@app.command()
def report(
    ctx: typer.Context,
    event: str = typer.Argument(..., help="Event name, e.g. branch-created."),
    fields: Optional[List[str]] = typer.Argument(None, help="Payload as KEY=VALUE pairs."),
):
    """Record a git operation that was just performed."""
    store = _store(ctx)
    payload = {}
    try:
        for item in fields or []:
            key, sep, value = item.partition("=")
            if not sep or not key:
                raise ValidationError(f"Payload field '{item}' must look like KEY=VALUE", section="runtime")
            payload[key] = value
        store.ensure_loaded()
        store.sync.report(event, payload)
    except AipmStateError as e:
        _fail(e)
    console.print(f"Recorded [bold cyan]{event}[/bold cyan]")


@app.command()
def start(
    ctx: typer.Context,
    framework: bool = typer.Option(False, "--framework", help="Work on the framework itself."),
    project: Optional[str] = typer.Option(None, "--project", help="Work on the named project."),
    force: bool = typer.Option(False, "--force", help="Supersede an active session."),
):
    """Start a session."""
    if framework and project:
        err_console.print("[bold red]Error:[/bold red] Use either --framework or --project, not both.")
        raise typer.Exit(1)
    store = _store(ctx)
    try:
        store.ensure_loaded()
        session = start_session(store, "project" if project else "framework", project, force=force)
    except AipmStateError as e:
        _fail(e)
    console.print(f"[bold green]Session started:[/bold green] {session['id']}")


@app.command()
def stop(ctx: typer.Context):
    """End the active session."""
    store = _store(ctx)
    try:
        store.ensure_loaded()
        session = end_session(store)
    except AipmStateError as e:
        _fail(e)
    console.print(f"[bold green]Session ended:[/bold green] {session['id']}")


if __name__ == "__main__":
    app()
