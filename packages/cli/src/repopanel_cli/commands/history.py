"""history command: display past panel reports from the store."""

from __future__ import annotations

from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from repopanel_core.models import MODES

console = Console()


def require_store(ctx):
    from repopanel_store.noop import NoOpStore

    store = ctx.obj.get("store") if ctx.obj else None
    if store is None or isinstance(store, NoOpStore):
        raise click.UsageError("No store configured. Add 'store: sqlite' to .repopanel.yml to keep report history.")
    return store


@click.command("history")
@click.option("--repo", default=".", show_default=True, help="Repository root the reports were run against.")
@click.option("--mode", type=click.Choice(MODES), default=None, help="Filter by mode.")
@click.option("--limit", default=20, show_default=True, help="Maximum number of records to show.")
@click.pass_context
def history_cmd(ctx, repo: str, mode: str | None, limit: int):
    """Show past panel reports for a repository."""
    store = require_store(ctx)
    repo_key = str(Path(repo).resolve())

    records = store.list_reports(repo_key, mode=mode)
    if not records:
        console.print("[yellow]No report records found.[/yellow]")
        return

    # Show most recent first, capped at --limit.
    records = list(reversed(records))[:limit]

    table = Table(title=f"Report History: {repo_key}", show_header=True, header_style="bold cyan")
    table.add_column("Created", width=20)
    table.add_column("Mode", width=22)
    table.add_column("Question", max_width=40)
    table.add_column("Risk", justify="right", width=5)
    table.add_column("Conf", justify="right", width=5)
    table.add_column("Findings", justify="right", width=9)
    table.add_column("Check", width=6)

    for r in records:
        risk_style = "red" if r.overall_risk_score >= 70 else "yellow" if r.overall_risk_score >= 40 else "green"
        table.add_row(
            r.created_at[:19].replace("T", " "),
            r.mode,
            r.question[:40],
            f"[{risk_style}]{r.overall_risk_score}[/{risk_style}]",
            str(r.confidence),
            str(len(r.findings)),
            "[green]ok[/green]" if r.self_check_passed else "[red]fail[/red]",
        )

    console.print(table)
