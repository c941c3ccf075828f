"""run command: ask the model panel a question about a repository."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from repopanel_core.errors import NoModelAvailable
from repopanel_core.evidence import CompositeEvidenceStore, LocalEvidenceStore, build_snapshot
from repopanel_core.models import MODES, PARALLEL, SEQUENTIAL, PanelRequest, Report, SpecialistFailure
from repopanel_core.pipeline import run_panel_sync
from repopanel_core.providers.registry import ProviderInvoker
from repopanel_core.router import ModelRouter
from repopanel_core.verifier import clean_path
from repopanel_store.models import FindingRecord, ReportRecord

logger = logging.getLogger(__name__)

console = Console()

_SEVERITY_STYLE = [(8, "red"), (5, "yellow"), (1, "blue")]


def _report_to_record(report: Report, repo: str) -> ReportRecord:
    """Map a Report returned by run_panel_sync() to a ReportRecord for the store.

    The CLI layer owns this mapping. repopanel_core has no store knowledge and
    repopanel_store has no core knowledge. The CLI bridges the two.
    """
    meta = report.metadata
    return ReportRecord(
        repo=repo,
        mode=report.mode,
        question=report.question,
        summary=report.summary,
        created_at=meta.timestamp,
        overall_risk_score=report.overall_risk_score,
        confidence=report.confidence,
        disagreement_score=meta.disagreement_score,
        self_check_passed=meta.self_check_passed,
        hallucination_count=meta.hallucination_count,
        models_used=list(meta.models_used),
        findings=[
            FindingRecord(
                id=f.id,
                title=f.title,
                severity=f.severity,
                impact_area=f.impact_area,
                files=[clean_path(e.file_path) for e in f.evidence if e.file_path],
            )
            for f in report.findings
        ],
        recommendation_count=len(report.recommendations),
    )


def _read(path: str | None) -> str | None:
    return Path(path).read_text() if path else None


def _severity_style(severity: int) -> str:
    for floor, style in _SEVERITY_STYLE:
        if severity >= floor:
            return style
    return "white"


def _render(report: Report) -> None:
    meta = report.metadata
    console.print(Panel(report.summary or "(no summary)", title=f"[bold]{report.mode}[/bold]", expand=False))

    if report.adaptive_text:
        console.print(report.adaptive_text)

    if report.findings:
        table = Table(title="Findings", show_header=True, header_style="bold cyan")
        table.add_column("Sev", justify="right", width=4)
        table.add_column("Area", width=13)
        table.add_column("Title", max_width=50)
        table.add_column("Evidence", max_width=50)
        for f in sorted(report.findings, key=lambda f: -f.severity):
            style = _severity_style(f.severity)
            table.add_row(
                f"[{style}]{f.severity}[/{style}]",
                f.impact_area,
                f.title,
                "\n".join(e.file_path or "(no path)" for e in f.evidence),
            )
        console.print(table)

    if report.recommendations:
        table = Table(title="Recommendations", show_header=True, header_style="bold cyan")
        table.add_column("Title", max_width=50)
        table.add_column("Difficulty", width=10)
        table.add_column("Impact", max_width=40)
        for r in report.recommendations:
            table.add_row(r.title, r.difficulty, r.expected_impact)
        console.print(table)

    extended = meta.extended_agent_outputs
    if extended is not None:
        for name, outcome in (
            ("Risk forecast", extended.risk_forecast),
            ("Feasibility", extended.feasibility),
            ("Economics", extended.economic),
        ):
            if isinstance(outcome, SpecialistFailure):
                console.print(f"[dim]{name}: unavailable ({outcome.error})[/dim]")
            elif outcome is not None:
                console.print(f"[bold]{name}:[/bold] {outcome.summary or '(no summary)'}")

    if report.notes:
        console.print(f"\n[yellow]{report.notes}[/yellow]")

    check = "[green]passed[/green]" if meta.self_check_passed else "[red]failed[/red]"
    disagreement = "n/a" if meta.disagreement_score is None else str(meta.disagreement_score)
    console.print(
        f"\nRisk [bold]{report.overall_risk_score}[/bold]  Confidence [bold]{report.confidence}[/bold]  "
        f"Disagreement {disagreement}  Self-check {check}  "
        f"Unverified citations {meta.hallucination_count}"
    )
    console.print(
        f"[dim]{', '.join(meta.models_used)} | {meta.repo_files_scanned} files ({meta.evidence_mode}) | "
        f"{meta.execution_time_ms}ms[/dim]"
    )


@click.command("run")
@click.argument("question", required=False)
@click.option(
    "--question-file",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="Read the question from a file.",
)
@click.option("--mode", type=click.Choice(MODES), default=MODES[0], show_default=True, help="Analysis mode.")
@click.option(
    "--repo",
    default=".",
    show_default=True,
    type=click.Path(file_okay=False),
    help="Repository root to scan.",
)
@click.option(
    "--github",
    "github_repos",
    multiple=True,
    help="Mount a GitHub repository (owner/name) as external evidence. Repeatable.",
)
@click.option("--ref", default=None, help="Branch or commit SHA for --github repositories.")
@click.option("--related", multiple=True, help="Glob or substring of files sent in full to the panel. Repeatable.")
@click.option("--logs", default=None, type=click.Path(exists=True, dir_okay=False), help="File with logs.")
@click.option("--stack-traces", default=None, type=click.Path(exists=True, dir_okay=False), help="File with traces.")
@click.option(
    "--agent-output",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="File with the agent output to critique.",
)
@click.option(
    "--current-prompt",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="File with the prompt to improve.",
)
@click.option("--parallel", is_flag=True, help="Run the specialists alongside the Lead Thinker.")
@click.option("--adaptive", is_flag=True, help="Ask the Synthesizer for prose instead of a structured report.")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON.")
@click.pass_context
def run_cmd(
    ctx,
    question: str | None,
    question_file: str | None,
    mode: str,
    repo: str,
    github_repos: tuple[str, ...],
    ref: str | None,
    related: tuple[str, ...],
    logs: str | None,
    stack_traces: str | None,
    agent_output: str | None,
    current_prompt: str | None,
    parallel: bool,
    adaptive: bool,
    as_json: bool,
):
    """Run the Lead → Review → Synthesize panel on a question.

    Scans the repository, routes each panel role to a configured model and
    prints a report whose file citations are checked against the scan.

    \b
    Model credentials are read from the environment variables named in the
    model registry (DEEPSEEK_API_KEY, ANTHROPIC_API_KEY, OPENAI_API_KEY,
    GEMINI_API_KEY by default). At least one model must be available.
    """
    config = dict(ctx.obj["config"])

    if question_file:
        question = Path(question_file).read_text()
    if not question or not question.strip():
        raise click.UsageError("Provide a QUESTION argument or --question-file.")

    scheduling = PARALLEL if parallel else config.get("scheduling", SEQUENTIAL)
    structured = False if adaptive else bool(config.get("structured_output", True))

    try:
        request = PanelRequest(
            mode=mode,
            question=question.strip(),
            related_files=tuple(related),
            logs=_read(logs),
            stack_traces=_read(stack_traces),
            agent_output=_read(agent_output),
            current_prompt=_read(current_prompt),
            structured=structured,
            scheduling=scheduling,
        )
    except ValueError as e:
        raise click.UsageError(str(e))

    local = LocalEvidenceStore(repo, exclude=config.get("exclude"), max_depth=config.get("max_depth", 10))
    evidence_store = local
    if github_repos:
        from repopanel_cli.auth import resolve_github_token
        from repopanel_core.gh.repository import GitHubEvidenceStore, get_repo

        token = resolve_github_token()
        externals = {
            name.split("/")[-1]: GitHubEvidenceStore(get_repo(name, token), ref=ref, exclude=config.get("exclude"))
            for name in github_repos
        }
        evidence_store = CompositeEvidenceStore(local, externals)

    snapshot = build_snapshot(evidence_store)

    try:
        report = run_panel_sync(
            request,
            snapshot,
            ProviderInvoker.from_config(config),
            ModelRouter.from_config(config),
            config=config,
            store=evidence_store,
        )
    except NoModelAvailable as e:
        raise click.UsageError(f"{e}. Set an API key for at least one model in the registry.")
    except FileNotFoundError as e:
        raise click.UsageError(str(e))

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _render(report)

    store = ctx.obj.get("store") if ctx.obj else None
    if store is not None:
        try:
            store.save(_report_to_record(report, local.root))
        except Exception as e:
            logger.error("Could not save report to history: %s", e)
