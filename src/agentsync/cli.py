"""agentsync command-line interface."""

from __future__ import annotations

import logging
import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import CANONICAL_CONFIG_FILE, ConfigLoader, dump_canonical
from .exceptions import AgentSyncError, ConfigError
from .integrity import check_integrity, status
from .ledger import read_ledger
from .models import (
    CanonicalConfig,
    CanonicalContentPaths,
    CanonicalMeta,
    Ledger,
    MarkersConfig,
    SourceKind,
    SourceSpec,
    SyncOutcome,
)
from .pipeline import SyncPipeline
from .targets import parse_target_names

app = typer.Typer(
    name="agentsync",
    help="agentsync: Sync AI agent instructions, skills, rules and agents across repositories",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)


def _get_version_string() -> str:
    """Get version string from package metadata."""
    try:
        return get_version("agentsync")
    except PackageNotFoundError:
        return f"{__version__} (development)"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, rich_tracebacks=verbose)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Callback for --version flag."""
    if value:
        console.print(f"agentsync version {_get_version_string()}")
        raise typer.Exit


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """agentsync: Sync AI agent instructions, skills, rules and agents across repositories."""


def _select_source(
    repo_root: Path,
    source: Path | None,
    repository: str | None,
    ref: str | None,
    loader: ConfigLoader,
    ledger: Ledger | None,
) -> SourceSpec:
    """Pick the source: flags, then downstream config, then the last sync, then discovery."""
    if source is not None and repository is not None:
        msg = "Use either --source or --repo, not both"
        raise ConfigError(msg)
    if source is not None:
        return SourceSpec.local(source)
    if repository is not None:
        return SourceSpec.remote(repository, ref)

    downstream = loader.load_downstream(repo_root)
    if downstream is not None and downstream.source is not None:
        if downstream.source.repository:
            return SourceSpec.remote(downstream.source.repository, ref or downstream.source.ref)
        if downstream.source.path:
            return SourceSpec.local(repo_root / downstream.source.path)

    if ledger is not None:
        previous = ledger.source
        if previous.kind is SourceKind.REMOTE and previous.repository:
            return SourceSpec.remote(previous.repository, ref or previous.ref)
        if previous.kind is SourceKind.LOCAL and previous.path and Path(previous.path).is_dir():
            return SourceSpec.local(Path(previous.path))

    return SourceSpec.local()


def _print_outcome(outcome: SyncOutcome, repo_root: Path) -> None:
    origin = outcome.source.repository or outcome.source.path or "local"
    console.print(f"[green]✓[/green] Synced {repo_root} from {origin}")
    if outcome.pinned_version:
        console.print(f"  Pinned version: {outcome.pinned_version}")

    document = outcome.document
    state = "updated" if document.changed else "unchanged"
    console.print(f"  • {document.path} ({state})")
    for consolidated in document.consolidated_files:
        console.print(f"  • {consolidated} (consolidated into {document.path})")

    table = Table(title="Synced Content")
    table.add_column("Target", style="cyan")
    table.add_column("Class", style="cyan")
    table.add_column("Created", style="green", justify="right")
    table.add_column("Updated", style="yellow", justify="right")
    table.add_column("Deleted", style="red", justify="right")
    table.add_column("Unchanged", justify="right")
    for tally in outcome.tallies:
        table.add_row(
            tally.target,
            tally.content_class.value,
            str(len(tally.created)),
            str(len(tally.updated)),
            str(len(tally.deleted)),
            str(len(tally.unchanged)),
        )
    console.print(table)

    if document.rules_block:
        rule_count = len(outcome.rules.files) if outcome.rules else 0
        console.print(f"  • {rule_count} rule(s) concatenated into {document.path}")

    kept = [(tally.target, key) for tally in outcome.tallies for key in tally.kept_unmanaged]
    if kept:
        console.print("\n[bold]Kept (not managed):[/bold]")
        for target, key in kept:
            console.print(f"  • {target}: {key}")

    retained = [(tally.target, key) for tally in outcome.tallies for key in tally.retained]
    if retained:
        console.print("\n[bold]Kept at previous version (skipped upstream):[/bold]")
        for target, key in retained:
            console.print(f"  • {target}: {key}")

    if outcome.ledger_warning:
        console.print(f"\n[yellow]Warning:[/yellow] {outcome.ledger_warning}")
    if outcome.warnings:
        console.print(f"\n[yellow]Warnings ({len(outcome.warnings)}):[/yellow]")
        for warning in outcome.warnings:
            console.print(f"  [yellow]{warning.kind}[/yellow] {warning.path}: {warning.message}")


@app.command()
def sync(
    directory: Path | None = typer.Option(
        None,
        "--dir",
        "-d",
        help="Consuming repository (defaults to the current directory)",
        file_okay=False,
        dir_okay=True,
    ),
    source: Path | None = typer.Option(
        None,
        "--source",
        help="Local canonical source directory",
    ),
    repository: str | None = typer.Option(
        None,
        "--repo",
        help="Remote canonical source (owner/repo or git URL)",
    ),
    ref: str | None = typer.Option(
        None,
        "--ref",
        help="Tag or branch of the remote source (defaults to the latest release)",
    ),
    target: list[str] | None = typer.Option(
        None,
        "--target",
        "-t",
        help="Target tool (can be repeated or comma-separated)",
    ),
    override: bool = typer.Option(
        False,
        "--override",
        help="Discard repository-specific content in AGENTS.md",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug logging",
    ),
) -> None:
    """Sync canonical instructions and content into a repository.

    Replaces the global block of AGENTS.md, keeps the repository block,
    writes managed skills, rules and agents for each target and deletes
    managed items that were removed upstream. Unmanaged files are never
    deleted.
    """
    _configure_logging(verbose)
    repo_root = (directory or Path.cwd()).resolve()

    try:
        if not repo_root.is_dir():
            msg = f"Repository directory not found: {repo_root}"
            raise ConfigError(msg)

        loader = ConfigLoader()
        ledger, _ = read_ledger(repo_root, loader)
        spec = _select_source(repo_root, source, repository, ref, loader, ledger)

        targets = target or None
        if targets is None:
            downstream = loader.load_downstream(repo_root)
            if downstream is not None and downstream.targets:
                targets = downstream.targets
        if targets is not None:
            targets = parse_target_names(targets)

        pipeline = SyncPipeline(repo_root, spec, targets=targets, override=override, loader=loader)
        outcome = pipeline.run()
        _print_outcome(outcome, repo_root)

    except AgentSyncError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e


@app.command()
def check(
    directory: Path | None = typer.Option(
        None,
        "--dir",
        "-d",
        help="Consuming repository (defaults to the current directory)",
        file_okay=False,
        dir_okay=True,
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Print nothing; report through the exit code only",
    ),
) -> None:
    """Check that managed files have not been modified since the last sync."""
    _configure_logging(False)
    repo_root = (directory or Path.cwd()).resolve()

    try:
        report = check_integrity(repo_root)
    except AgentSyncError as e:
        if not quiet:
            console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    if not report.synced:
        if not quiet:
            console.print("Not synced yet. Run 'agentsync sync' first.")
        return

    if report.ok:
        if not quiet:
            console.print(f"[green]✓[/green] {len(report.checked)} managed file(s) match the last sync")
        return

    if not quiet:
        table = Table(title="Modified Managed Files")
        table.add_column("Path", style="cyan")
        table.add_column("Issue", style="red")
        table.add_column("Expected")
        table.add_column("Actual")
        for violation in report.violations:
            table.add_row(violation.path, violation.kind, violation.expected, violation.actual)
        console.print(table)
        console.print(
            f"[red]✗[/red] {len(report.violations)} managed file(s) differ from the last sync. "
            "Run 'agentsync sync' to restore them.",
        )
    raise typer.Exit(1)


@app.command("status")
def status_command(
    directory: Path | None = typer.Option(
        None,
        "--dir",
        "-d",
        help="Consuming repository (defaults to the current directory)",
        file_okay=False,
        dir_okay=True,
    ),
) -> None:
    """Show what the last sync recorded."""
    _configure_logging(False)
    repo_root = (directory or Path.cwd()).resolve()

    try:
        report = status(repo_root)
    except AgentSyncError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    if not report.synced:
        console.print("Not synced yet. Run 'agentsync sync' first.")
        return

    source = report.source
    table = Table(title="agentsync Status")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    if source is not None:
        table.add_row("Source", f"{source.kind.value}: {source.repository or source.path or '-'}")
        if source.ref:
            table.add_row("Ref", source.ref)
        if source.commit:
            table.add_row("Commit", source.commit[:12])
    table.add_row("Pinned Version", report.pinned_version or "-")
    table.add_row("Synced At", report.synced_at.isoformat() if report.synced_at else "-")
    table.add_row("Targets", ", ".join(report.targets))
    table.add_row("Marker Prefix", report.marker_prefix or "-")
    table.add_row("Skills", str(report.skill_count))
    table.add_row("Rules", str(report.rule_count))
    table.add_row("Agents", str(report.agent_count))
    table.add_row("Written By", report.tool_version or "-")
    console.print(table)

    if report.ledger_warning:
        console.print(f"[yellow]Warning:[/yellow] {report.ledger_warning}")


EXAMPLE_INSTRUCTIONS = """\
# Engineering Standards

These instructions are maintained centrally and synced into every repository.
Edit them in the canonical source, not in consuming repositories.

## Code Quality

- Keep functions small and focused.
- Write tests for new behaviour.
"""

EXAMPLE_SKILL = """\
---
name: example-skill
description: Example skill showing the expected layout
---

# Example Skill

Describe when an agent should use this skill and the steps it should follow.
Put supporting files next to this document; the whole directory is synced.
"""


@app.command("init-canonical")
def init_canonical(
    path: Path | None = typer.Option(
        None,
        "--path",
        "-p",
        help="Directory to create the canonical source in (defaults to the current directory)",
    ),
    name: str = typer.Option(
        "agent-standards",
        "--name",
        help="Name of the canonical source",
    ),
    prefix: str = typer.Option(
        "agentsync",
        "--prefix",
        help="Marker prefix for managed blocks and metadata",
    ),
) -> None:
    """Create a starter canonical source repository."""
    root = (path or Path.cwd()).resolve()
    config_path = root / CANONICAL_CONFIG_FILE

    try:
        config = CanonicalConfig(
            meta=CanonicalMeta(name=name),
            content=CanonicalContentPaths(rules_dir="rules", agents_dir="agents"),
            markers=MarkersConfig(prefix=prefix),
        )
    except ValidationError as e:
        console.print(f"[red]Error:[/red] Invalid settings: {e.errors()[0]['msg']}")
        raise typer.Exit(1) from e

    if config_path.exists():
        console.print(
            f"[yellow]Warning:[/yellow] Canonical source exists at {root}",
        )
        if not typer.confirm("Overwrite existing files?"):
            console.print("Initialization cancelled")
            return

    try:
        instructions = root / config.content.instructions
        skill = root / config.content.skills_dir / "example-skill" / "SKILL.md"
        for directory in (instructions.parent, skill.parent, root / "rules", root / "agents"):
            directory.mkdir(parents=True, exist_ok=True)

        config_path.write_text(dump_canonical(config), encoding="utf-8")
        instructions.write_text(EXAMPLE_INSTRUCTIONS, encoding="utf-8")
        skill.write_text(EXAMPLE_SKILL, encoding="utf-8")
        for keep in (root / "rules" / ".gitkeep", root / "agents" / ".gitkeep"):
            keep.touch()

        console.print(f"[green]✓[/green] Canonical source initialized at {root}")
        console.print("Created files:")
        console.print(f"  • {CANONICAL_CONFIG_FILE}")
        console.print(f"  • {config.content.instructions}")
        console.print(f"  • {config.content.skills_dir}/example-skill/SKILL.md")
        console.print("  • rules/ and agents/")
        console.print("\nNext steps:")
        console.print(f"  1. Edit {config.content.instructions}")
        console.print("  2. Add skills, rules and agents")
        console.print(f"  3. Run 'agentsync sync --source {root}' in a consuming repository")

    except OSError as e:
        console.print(f"[red]Error:[/red] Failed to create canonical source: {e}")
        raise typer.Exit(1) from e


@app.command()
def version() -> None:
    """Show agentsync version information."""
    console.print(f"agentsync version {_get_version_string()}")


def main() -> None:
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
