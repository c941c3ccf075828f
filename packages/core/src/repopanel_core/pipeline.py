"""Panel Pipeline.

Runs the three-stage panel as a small state machine:

    LEAD ──► REVIEW ──► SYNTHESIZE ──► DONE
      │
      └──► ERROR

Each stage is an async method ``(RunContext, PanelState) -> PanelState``.
State is immutable; a stage returns a new ``PanelState`` and never touches
the one it was given. Only the Lead stage can end a run early. Review and
Synthesis failures degrade to the best draft available and leave a note.
``run`` always returns a Report once routing has succeeded.

The Specialist Panel runs beside the stages: after LEAD in sequential
scheduling (so it can see the lead draft), or together with LEAD in
parallel scheduling.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from repopanel_core.config import DEFAULT_CONFIG, load_prompts
from repopanel_core.errors import AuthenticationFailure, InvocationFailure
from repopanel_core.evidence import EvidenceStore, load_related_files
from repopanel_core.invocation import Deadline, ModelInvoker, invoke_bounded
from repopanel_core.models import (
    LEAD,
    PARALLEL,
    REVIEWER,
    SPECIALIST,
    SYNTHESIZER,
    ExtendedAgentOutputs,
    Finding,
    Metadata,
    PanelRequest,
    Recommendation,
    Report,
    RepoSnapshot,
    ReviewDraft,
    append_note,
)
from repopanel_core.normalizer import FALLBACK_STRATEGY, declared_disagreement, normalize_review, parse_report
from repopanel_core.prompting import build_lead_prompt, build_review_prompt, build_synthesis_prompt
from repopanel_core.router import ModelHandle, ModelRouter
from repopanel_core.specialists import SpecialistContext, SpecialistPanel, default_specialists
from repopanel_core.verifier import evidence_mode, verify

logger = logging.getLogger(__name__)

LEAD_STAGE = "LEAD"
REVIEW_STAGE = "REVIEW"
SYNTHESIZE_STAGE = "SYNTHESIZE"
DONE = "DONE"
ERROR = "ERROR"


# ---------------------------------------------------------------------- #
# Scoring                                                                 #
# ---------------------------------------------------------------------- #


def compute_disagreement(lead_findings: int, issues: int, has_patch: bool) -> int:
    """Heuristic Lead/Reviewer disagreement on a 0-100 scale.

    No issues and no patch is full agreement (0). Otherwise the share of
    issues relative to the lead's findings picks the band: under 20% is low
    (10-30), 20-50% moderate (31-70), half or more, or any patch, high
    (71-100).
    """
    if issues <= 0 and not has_patch:
        return 0
    ratio = issues / max(lead_findings, 1)
    if has_patch or ratio >= 0.5:
        return min(100, 71 + round(min(ratio, 1.0) * 29))
    if ratio < 0.2:
        return 10 + round(ratio / 0.2 * 20)
    return min(70, 31 + round((ratio - 0.2) / 0.3 * 39))


def self_check_passed(report: Report, hallucination_count: int) -> bool:
    return (
        bool(report.summary.strip())
        and isinstance(report.findings, tuple)
        and isinstance(report.recommendations, tuple)
        and 0 <= report.overall_risk_score <= 100
        and 0 <= report.confidence <= 100
        and all(1 <= f.severity <= 10 for f in report.findings)
        and hallucination_count == 0
    )


def alignment_score(report: Report) -> int | None:
    """Mean recommendation alignment (0-10) scaled to 0-100, or None if no recommendation carries one."""
    scores = [r.alignment_score for r in report.recommendations if r.alignment_score is not None]
    if not scores:
        return None
    return int(min(100, max(0, round(sum(scores) / len(scores) * 10))))


def lead_failure_report(request: PanelRequest, handle: ModelHandle, error: InvocationFailure) -> Report:
    """Fixed diagnostic report for a run that ended in ERROR."""
    if isinstance(error, AuthenticationFailure):
        env_name = handle.spec.api_key_env or "the provider credential"
        return Report(
            mode=request.mode,
            question=request.question,
            summary=(
                f"Authentication failed for the Lead Thinker model {handle.spec.label}. "
                "The panel did not run; fix the credential and try again."
            ),
            findings=(
                Finding(
                    id="lead-thinker-auth-failure",
                    title="Model credential rejected",
                    description=f"{handle.spec.provider} rejected the API key for {handle.model_id}: {error}",
                    severity=10,
                    impact_area="reliability",
                ),
            ),
            recommendations=(
                Recommendation(
                    id="fix-api-key",
                    title=f"Set a valid {env_name}",
                    description=(
                        f"Export a valid key in {env_name}, or disable {handle.model_id} in "
                        ".repopanel.yml so another model takes the Lead role."
                    ),
                    expected_impact="Restores the panel",
                    difficulty="low",
                ),
            ),
            overall_risk_score=100,
            confidence=0,
            notes="This is a configuration issue, not a finding about the repository.",
        )
    return Report(
        mode=request.mode,
        question=request.question,
        summary=f"Lead Thinker {handle.spec.label} failed. The panel could not continue.",
        findings=(
            Finding(
                id="lead-thinker-failure",
                title="Lead Thinker invocation failed",
                description=str(error),
                severity=10,
                impact_area="architecture",
            ),
        ),
        overall_risk_score=100,
        confidence=20,
        notes=f"Lead stage error: {error.__class__.__name__}: {error}",
    )


def _first_paragraph(text: str) -> str:
    for block in text.strip().split("\n\n"):
        cleaned = block.strip().lstrip("#").strip()
        if cleaned:
            return cleaned
    return text.strip()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------- #
# State                                                                   #
# ---------------------------------------------------------------------- #


@dataclass(frozen=True)
class PanelState:
    stage: str = LEAD_STAGE
    lead_draft: Report | None = None
    review: ReviewDraft | None = None
    final: Report | None = None
    models_invoked: tuple[str, ...] = ()
    notes: tuple[str, ...] = ()
    declared_disagreement: int | None = None

    def invoking(self, model_id: str) -> PanelState:
        if model_id in self.models_invoked:
            return self
        return replace(self, models_invoked=self.models_invoked + (model_id,))

    def noting(self, note: str) -> PanelState:
        return replace(self, notes=self.notes + (note,))


@dataclass(frozen=True)
class RunContext:
    request: PanelRequest
    snapshot: RepoSnapshot
    panel: dict[str, ModelHandle]
    system_prompt: str
    mode_prompt: str
    deadline: Deadline
    related: dict[str, str] = field(default_factory=dict)
    started: float = 0.0


# ---------------------------------------------------------------------- #
# Pipeline                                                                #
# ---------------------------------------------------------------------- #


class PanelPipeline:
    def __init__(
        self,
        invoker: ModelInvoker,
        router: ModelRouter,
        config: dict | None = None,
        specialists: list | None = None,
    ):
        self.invoker = invoker
        self.router = router
        self.config = {**DEFAULT_CONFIG, **(config or {})}
        self.timeout = self.config.get("invocation_timeout_seconds")
        self.specialists = specialists if specialists is not None else default_specialists(self.config)

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    async def run(
        self,
        request: PanelRequest,
        snapshot: RepoSnapshot,
        store: EvidenceStore | None = None,
        deadline: Deadline | None = None,
    ) -> Report:
        """Run the panel for one request.

        Raises NoModelAvailable when no model can take the Lead role and
        FileNotFoundError for a missing prompt override. Every model-side
        failure ends in a Report instead.
        """
        panel = self.router.resolve_panel(request.mode)
        system_prompt, mode_prompt = load_prompts(self.config, request.mode)
        related = load_related_files(snapshot, store, request.related_files) if store and request.related_files else {}
        ctx = RunContext(
            request=request,
            snapshot=snapshot,
            panel=panel,
            system_prompt=system_prompt,
            mode_prompt=mode_prompt,
            deadline=deadline or Deadline(self.config.get("run_timeout_seconds")),
            related=related,
            started=time.monotonic(),
        )
        logger.info(
            "Panel run: mode=%s scheduling=%s lead=%s reviewer=%s synthesizer=%s",
            request.mode,
            request.scheduling,
            panel[LEAD].model_id,
            panel[REVIEWER].model_id,
            panel[SYNTHESIZER].model_id,
        )

        if request.scheduling == PARALLEL:
            state, extended = await self._run_parallel(ctx)
        else:
            state, extended = await self._run_sequential(ctx)

        if state.stage == ERROR:
            return replace(state.final, metadata=self._metadata(ctx, state, state.final, 0, None, None))
        return self._finish(ctx, state, extended)

    # ------------------------------------------------------------------ #
    # Scheduling                                                           #
    # ------------------------------------------------------------------ #

    async def _run_sequential(self, ctx: RunContext) -> tuple[PanelState, ExtendedAgentOutputs | None]:
        state = await self._lead(ctx, PanelState())
        if state.stage == ERROR:
            return state, None

        specialist_task = None
        if self.config.get("specialists", True):
            context = SpecialistContext(
                request=ctx.request,
                snapshot=ctx.snapshot,
                findings=state.lead_draft.findings,
                recommendations=state.lead_draft.recommendations,
            )
            specialist_task = asyncio.ensure_future(self._specialists(ctx, context))
        try:
            state = await self._review(ctx, state)
            state = await self._synthesize(ctx, state)
        except BaseException:
            if specialist_task is not None:
                specialist_task.cancel()
            raise
        extended = await specialist_task if specialist_task is not None else None
        return state, extended

    async def _run_parallel(self, ctx: RunContext) -> tuple[PanelState, ExtendedAgentOutputs | None]:
        if not self.config.get("specialists", True):
            state = await self._lead(ctx, PanelState())
            extended = None
        else:
            context = SpecialistContext(request=ctx.request, snapshot=ctx.snapshot)
            state, extended = await asyncio.gather(
                self._lead(ctx, PanelState()), self._specialists(ctx, context), return_exceptions=True
            )
            if isinstance(state, BaseException):
                raise state
            if isinstance(extended, BaseException):
                logger.warning("Specialist panel failed: %s", extended)
                extended = None

        if state.stage == ERROR:
            return state, None
        state = await self._review(ctx, state)
        state = await self._synthesize(ctx, state)
        return state, extended

    async def _specialists(self, ctx: RunContext, context: SpecialistContext) -> ExtendedAgentOutputs:
        panel = SpecialistPanel(
            self.invoker,
            ctx.panel[SPECIALIST],
            specialists=self.specialists,
            system_prompt=ctx.system_prompt,
            timeout=self.timeout,
        )
        return await panel.run(context, deadline=ctx.deadline)

    # ------------------------------------------------------------------ #
    # Stages                                                               #
    # ------------------------------------------------------------------ #

    async def _lead(self, ctx: RunContext, state: PanelState) -> PanelState:
        handle = ctx.panel[LEAD]
        state = state.invoking(handle.model_id)
        prompt = build_lead_prompt(ctx.mode_prompt, ctx.request, ctx.snapshot, ctx.related)
        try:
            result = await invoke_bounded(
                self.invoker, handle, prompt, ctx.system_prompt, timeout=self.timeout, deadline=ctx.deadline
            )
        except InvocationFailure as e:
            logger.error("Lead Thinker %s failed: %s", handle.model_id, e)
            return replace(state, stage=ERROR, final=lead_failure_report(ctx.request, handle, e))

        draft, strategy = parse_report(result.text, ctx.request)
        draft, hallucinations = verify(draft, ctx.snapshot)
        logger.info(
            "Lead draft: %d findings, %d recommendations (parsed via %s, %d unverified citations)",
            len(draft.findings),
            len(draft.recommendations),
            strategy,
            hallucinations,
        )
        return replace(state, stage=REVIEW_STAGE, lead_draft=draft)

    async def _review(self, ctx: RunContext, state: PanelState) -> PanelState:
        handle = ctx.panel[REVIEWER]
        state = state.invoking(handle.model_id)
        prompt = build_review_prompt(ctx.mode_prompt, ctx.request, ctx.snapshot, state.lead_draft)
        try:
            result = await invoke_bounded(
                self.invoker, handle, prompt, ctx.system_prompt, timeout=self.timeout, deadline=ctx.deadline
            )
        except InvocationFailure as e:
            logger.warning("Reviewer %s failed, continuing with the lead draft: %s", handle.model_id, e)
            review = ReviewDraft(review_summary=f"Reviewer failed: {e}", degraded=True)
            state = state.noting(f"Review stage failed ({handle.model_id}: {e}); the lead draft was not reviewed.")
            return replace(state, stage=SYNTHESIZE_STAGE, review=review)

        review = normalize_review(result.text, ctx.request)
        if review is None:
            logger.warning("Reviewer %s output could not be parsed", handle.model_id)
            review = ReviewDraft(review_summary="Reviewer output could not be parsed.", degraded=True)
            state = state.noting(f"Review output from {handle.model_id} could not be parsed; review ignored.")
        elif review.patch is not None:
            patch, _ = verify(review.patch, ctx.snapshot)
            review = replace(review, patch=patch)
        logger.info("Review: %d issues, patch=%s", len(review.issues), review.patch is not None)
        return replace(state, stage=SYNTHESIZE_STAGE, review=review)

    async def _synthesize(self, ctx: RunContext, state: PanelState) -> PanelState:
        handle = ctx.panel[SYNTHESIZER]
        state = state.invoking(handle.model_id)
        prompt = build_synthesis_prompt(ctx.mode_prompt, ctx.request, ctx.snapshot, state.lead_draft, state.review)
        try:
            result = await invoke_bounded(
                self.invoker, handle, prompt, ctx.system_prompt, timeout=self.timeout, deadline=ctx.deadline
            )
        except InvocationFailure as e:
            logger.warning("Synthesizer %s failed: %s", handle.model_id, e)
            return self._fallback(state, f"Synthesis failed ({handle.model_id}: {e})")

        if not ctx.request.structured:
            text = result.text.strip()
            final = replace(state.lead_draft, summary=_first_paragraph(text), adaptive_text=text)
            return replace(state, stage=DONE, final=final)

        report, strategy = parse_report(result.text, ctx.request)
        if strategy == FALLBACK_STRATEGY:
            logger.warning("Synthesizer %s output could not be parsed", handle.model_id)
            return self._fallback(state, f"Synthesis output from {handle.model_id} could not be parsed")
        return replace(state, stage=DONE, final=report, declared_disagreement=declared_disagreement(result.text))

    @staticmethod
    def _fallback(state: PanelState, reason: str) -> PanelState:
        if state.review is not None and state.review.patch is not None:
            final, source = state.review.patch, "the reviewer's patch"
        else:
            final, source = state.lead_draft, "the lead draft"
        return replace(state.noting(f"{reason}; the final report is {source}."), stage=DONE, final=final)

    # ------------------------------------------------------------------ #
    # Assembly                                                             #
    # ------------------------------------------------------------------ #

    def _finish(self, ctx: RunContext, state: PanelState, extended: ExtendedAgentOutputs | None) -> Report:
        final = state.final
        for note in state.notes:
            final = replace(final, notes=append_note(final.notes, note))
        final, hallucinations = verify(final, ctx.snapshot)

        if state.declared_disagreement is not None:
            disagreement = state.declared_disagreement
        else:
            review = state.review
            disagreement = compute_disagreement(
                len(state.lead_draft.findings),
                len(review.issues) if review else 0,
                bool(review and review.patch),
            )

        if extended is not None and extended.answered():
            state = state.invoking(ctx.panel[SPECIALIST].model_id)

        final = replace(final, mode=ctx.request.mode, question=ctx.request.question)
        metadata = self._metadata(ctx, state, final, hallucinations, disagreement, extended)
        logger.info(
            "Panel done in %dms: risk=%d confidence=%d disagreement=%d self_check=%s",
            metadata.execution_time_ms,
            final.overall_risk_score,
            final.confidence,
            disagreement,
            metadata.self_check_passed,
        )
        return replace(final, metadata=metadata)

    def _metadata(
        self,
        ctx: RunContext,
        state: PanelState,
        final: Report,
        hallucinations: int,
        disagreement: int | None,
        extended: ExtendedAgentOutputs | None,
    ) -> Metadata:
        return Metadata(
            execution_time_ms=int((time.monotonic() - ctx.started) * 1000),
            models_used=state.models_invoked,
            repo_files_scanned=ctx.snapshot.file_count,
            timestamp=_now(),
            disagreement_score=disagreement,
            self_check_passed=state.stage != ERROR and self_check_passed(final, hallucinations),
            hallucination_count=hallucinations,
            evidence_mode=evidence_mode(ctx.snapshot),
            scheduling=ctx.request.scheduling,
            report_format="structured" if ctx.request.structured else "adaptive",
            alignment_score=alignment_score(final),
            extended_agent_outputs=extended,
        )


async def run_panel(
    request: PanelRequest,
    snapshot: RepoSnapshot,
    invoker: ModelInvoker,
    router: ModelRouter,
    config: dict | None = None,
    store: EvidenceStore | None = None,
    deadline: Deadline | None = None,
) -> Report:
    pipeline = PanelPipeline(invoker, router, config)
    return await pipeline.run(request, snapshot, store=store, deadline=deadline)


def run_panel_sync(
    request: PanelRequest,
    snapshot: RepoSnapshot,
    invoker: ModelInvoker,
    router: ModelRouter,
    config: dict | None = None,
    store: EvidenceStore | None = None,
) -> Report:
    """Blocking wrapper for callers without an event loop (the CLI)."""
    return asyncio.run(run_panel(request, snapshot, invoker, router, config=config, store=store))
