"""stats command: aggregate findings across report history."""

from __future__ import annotations

from collections import Counter
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from repopanel_cli.commands.history import require_store
from repopanel_core.models import IMPACT_AREAS

console = Console()


@click.command("stats")
@click.option("--repo", default=".", show_default=True, help="Repository root the reports were run against.")
@click.option("--top", default=10, show_default=True, help="Number of top entries to show per category.")
@click.pass_context
def stats_cmd(ctx, repo: str, top: int):
    """Show aggregated report statistics for a repository.

    Reports the impact areas findings fall into, the files cited most often
    as evidence and how often the panel's self-check passed, useful for
    spotting systemic weak points across many questions.
    """
    store = require_store(ctx)
    repo_key = str(Path(repo).resolve())

    records = store.list_reports(repo_key)
    if not records:
        console.print("[yellow]No report records found for this repository.[/yellow]")
        return

    total_reports = len(records)
    total_findings = sum(len(r.findings) for r in records)
    passed = sum(1 for r in records if r.self_check_passed)
    area_counter: Counter[str] = Counter()
    file_counter: Counter[str] = Counter()
    mode_counter: Counter[str] = Counter(r.mode for r in records)

    for record in records:
        for finding in record.findings:
            area_counter[finding.impact_area] += 1
            for path in set(finding.files):
                file_counter[path] += 1

    # --- Summary ---
    console.print(f"\n[bold]Panel stats for [cyan]{repo_key}[/cyan][/bold]")
    console.print(f"  Total reports:  {total_reports}")
    console.print(f"  Total findings: {total_findings}")
    console.print(f"  Avg per report: {total_findings / total_reports:.1f}")
    console.print(f"  Avg risk score: {sum(r.overall_risk_score for r in records) / total_reports:.1f}")
    console.print(f"  Self-check:     {passed}/{total_reports} passed")
    for mode, count in mode_counter.most_common():
        console.print(f"  {mode}: {count}")

    # --- Impact areas ---
    if area_counter:
        area_table = Table(title="Impact Areas", show_header=True)
        area_table.add_column("Area", style="bold")
        area_table.add_column("Findings", justify="right")
        area_table.add_column("% of total", justify="right")
        for area in IMPACT_AREAS:
            count = area_counter.get(area, 0)
            if not count:
                continue
            area_table.add_row(area, str(count), f"{count / total_findings * 100:.1f}%")
        console.print(area_table)

    # --- Most cited files ---
    if file_counter:
        file_table = Table(title=f"Top {top} Most Cited Files", show_header=True)
        file_table.add_column("File")
        file_table.add_column("Findings", justify="right")
        for file_path, count in file_counter.most_common(top):
            file_table.add_row(file_path, str(count))
        console.print(file_table)
