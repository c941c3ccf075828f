"""Tests for the panel pipeline state machine."""

import asyncio
import json

import pytest

from repopanel_core.errors import NoModelAvailable
from repopanel_core.invocation import Deadline, Invocation, ModelInvoker
from repopanel_core.models import (
    NO_REPO_MODE,
    FeasibilityAnalysis,
    FileEntry,
    Finding,
    PanelRequest,
    Recommendation,
    Report,
    RepoSnapshot,
    RiskForecast,
    SpecialistFailure,
)
from repopanel_core.pipeline import (
    PanelPipeline,
    alignment_score,
    compute_disagreement,
    run_panel_sync,
    self_check_passed,
)
from repopanel_core.router import ModelRouter, ModelSpec

SNAPSHOT = RepoSnapshot(
    root="/repo",
    files=(
        FileEntry(path="src", is_directory=True),
        FileEntry(path="src/app.py", size=100),
        FileEntry(path="src/queue.py", size=100),
    ),
)
REQUEST = PanelRequest(mode="pipeline_diagnosis", question="Why do jobs stall?")

REGISTRY = [
    ModelSpec(id="lead-m", role="lead", provider="openai", model="a"),
    ModelSpec(id="rev-m", role="reviewer", provider="openai", model="b"),
    ModelSpec(id="syn-m", role="synthesizer", provider="openai", model="c"),
]
ALL_KEYS = {"lead-m": "k", "rev-m": "k", "syn-m": "k"}
SPECIALIST_REGISTRY = REGISTRY + [ModelSpec(id="spec-m", role="specialist", provider="openai", model="d")]
SPECIALIST_KEYS = {**ALL_KEYS, "spec-m": "k"}


def _report_json(summary, findings=4, path="src/app.py", **extra):
    payload = {
        "mode": "pipeline_diagnosis",
        "summary": summary,
        "findings": [
            {
                "id": f"f{i}",
                "title": f"Finding {i}",
                "severity": 6,
                "impactArea": "reliability",
                "evidence": [{"filePath": f"{path}:{i}", "snippet": "x", "reasoning": "r"}],
            }
            for i in range(1, findings + 1)
        ],
        "recommendations": [{"id": "r1", "title": "Fix it", "alignmentScore": 7}],
        "overallRiskScore": 65,
        "confidence": 80,
    }
    payload.update(extra)
    return json.dumps(payload)


LEAD = _report_json("Lead: the queue lock is held across I/O.")
REVIEW = json.dumps({"reviewSummary": "One gap.", "issues": [{"severity": 6, "description": "Missed retries"}]})
SYNTH = _report_json("Final: release the lock before awaiting I/O.")
RISK = json.dumps({"windows": [{"period": "next 7 days", "risks": []}], "summary": "Stalls will continue."})
FEASIBILITY = json.dumps({"items": [{"recommendationId": "r1", "feasibility": 8}], "summary": "Easy."})

ROLES = ("Lead Thinker", "Reviewer", "Synthesizer", "Risk Forecaster", "Feasibility Analyst", "Economic Optimizer")


class _ScriptedInvoker(ModelInvoker):
    """Answers by the role named in the prompt and records every call."""

    def __init__(self, **overrides):
        self.responses = {
            "Lead Thinker": LEAD,
            "Reviewer": REVIEW,
            "Synthesizer": SYNTH,
            "Risk Forecaster": RISK,
            "Feasibility Analyst": FEASIBILITY,
            "Economic Optimizer": json.dumps({"perQueryCost": 0.01, "summary": "Cheap."}),
        }
        self.responses.update({k.replace("_", " "): v for k, v in overrides.items()})
        self.calls = []

    async def invoke(self, handle, prompt, system_prompt=None):
        role = next(r for r in ROLES if f"## Your Role: {r}" in prompt)
        self.calls.append((role, handle.model_id, prompt))
        response = self.responses[role]
        if isinstance(response, Exception):
            raise response
        return Invocation(text=response, model_id=handle.model_id)

    def roles_called(self):
        return [role for role, _, _ in self.calls]


def _run(invoker, request=REQUEST, snapshot=SNAPSHOT, credentials=None, config=None, deadline=None, registry=None):
    router = ModelRouter(registry or REGISTRY, ALL_KEYS if credentials is None else credentials)
    pipeline = PanelPipeline(invoker, router, config)
    return asyncio.run(pipeline.run(request, snapshot, deadline=deadline))


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------


class TestDisagreement:
    def test_full_agreement(self):
        assert compute_disagreement(5, 0, False) == 0

    def test_low_band(self):
        assert 10 <= compute_disagreement(10, 1, False) <= 30

    def test_moderate_band(self):
        assert 31 <= compute_disagreement(10, 3, False) <= 70

    def test_high_band_by_ratio(self):
        assert 71 <= compute_disagreement(10, 5, False) <= 100

    def test_patch_is_always_high(self):
        assert 71 <= compute_disagreement(10, 0, True) <= 100
        assert 71 <= compute_disagreement(10, 1, True) <= 100

    def test_issues_without_lead_findings(self):
        assert compute_disagreement(0, 3, False) == 100


class TestSelfCheck:
    def test_passes_for_complete_report(self):
        report = Report(mode="m", question="q", summary="s", findings=(Finding("f", "t", severity=3),))
        assert self_check_passed(report, 0) is True

    def test_fails_on_blank_summary(self):
        assert self_check_passed(Report(mode="m", question="q", summary="  "), 0) is False

    def test_fails_on_hallucinations(self):
        assert self_check_passed(Report(mode="m", question="q", summary="s"), 1) is False

    def test_alignment_score(self):
        report = Report(
            mode="m",
            question="q",
            recommendations=(Recommendation("a", "t", alignment_score=6), Recommendation("b", "t")),
        )
        assert alignment_score(report) == 60
        assert alignment_score(Report(mode="m", question="q")) is None


# ---------------------------------------------------------------------------
# Sequential scheduling
# ---------------------------------------------------------------------------


class TestHappyPath:
    def test_all_stages_run_in_order(self):
        invoker = _ScriptedInvoker()
        report = _run(invoker)

        stages = [r for r in invoker.roles_called() if r in ("Lead Thinker", "Reviewer", "Synthesizer")]
        assert stages == ["Lead Thinker", "Reviewer", "Synthesizer"]
        assert report.summary == "Final: release the lock before awaiting I/O."
        assert report.mode == REQUEST.mode
        assert report.question == REQUEST.question

    def test_metadata(self):
        report = _run(_ScriptedInvoker())
        meta = report.metadata
        assert meta.models_used == ("lead-m", "rev-m", "syn-m")
        assert meta.repo_files_scanned == 2
        assert meta.self_check_passed is True
        assert meta.hallucination_count == 0
        assert 31 <= meta.disagreement_score <= 70
        assert meta.evidence_mode == "ON"
        assert meta.scheduling == "sequential"
        assert meta.report_format == "structured"
        assert meta.alignment_score == 70
        assert meta.timestamp
        assert report.to_dict()["metadata"]["panelPipeline"] is True

    def test_stage_prompts_carry_previous_drafts(self):
        invoker = _ScriptedInvoker()
        _run(invoker)
        prompts = {role: prompt for role, _, prompt in invoker.calls}
        assert "Lead: the queue lock is held across I/O." in prompts["Reviewer"]
        assert "Missed retries" in prompts["Synthesizer"]

    def test_specialists_see_lead_findings(self):
        invoker = _ScriptedInvoker()
        report = _run(invoker)
        prompts = {role: prompt for role, _, prompt in invoker.calls}
        assert "Finding 1" in prompts["Risk Forecaster"]
        extended = report.metadata.extended_agent_outputs
        assert isinstance(extended.risk_forecast, RiskForecast)
        assert isinstance(extended.feasibility, FeasibilityAnalysis)
        assert extended.economic is None

    def test_specialists_use_reviewer_tier_model(self):
        invoker = _ScriptedInvoker()
        _run(invoker)
        models = {role: model for role, model, _ in invoker.calls}
        assert models["Risk Forecaster"] == "rev-m"

    def test_economic_optimizer_for_long_questions(self):
        request = PanelRequest(mode=REQUEST.mode, question="Why do jobs stall? " * 40)
        report = _run(_ScriptedInvoker(), request=request)
        assert report.metadata.extended_agent_outputs.economic.per_query_cost == 0.01

    def test_declared_disagreement_wins(self):
        invoker = _ScriptedInvoker(Synthesizer=_report_json("Final.", metadata={"disagreementScore": 12}))
        assert _run(invoker).metadata.disagreement_score == 12

    def test_specialists_disabled(self):
        invoker = _ScriptedInvoker()
        report = _run(invoker, config={"specialists": False})
        assert report.metadata.extended_agent_outputs is None
        assert invoker.roles_called() == ["Lead Thinker", "Reviewer", "Synthesizer"]

    def test_run_panel_sync(self):
        report = run_panel_sync(REQUEST, SNAPSHOT, _ScriptedInvoker(), ModelRouter(REGISTRY, ALL_KEYS))
        assert report.summary.startswith("Final:")


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class TestLeadFailure:
    def test_auth_failure_ends_the_run(self):
        invoker = _ScriptedInvoker(Lead_Thinker=RuntimeError("Error code: 401 - Unauthorized"))
        report = _run(invoker)

        assert invoker.roles_called() == ["Lead Thinker"]
        assert report.findings[0].id == "lead-thinker-auth-failure"
        assert report.recommendations[0].id == "fix-api-key"
        assert report.overall_risk_score == 100
        assert report.confidence == 0
        assert "configuration issue" in report.notes
        assert report.metadata.self_check_passed is False
        assert report.metadata.disagreement_score is None
        assert report.metadata.models_used == ("lead-m",)

    def test_other_failure_ends_the_run(self):
        invoker = _ScriptedInvoker(Lead_Thinker=RuntimeError("upstream exploded"))
        report = _run(invoker)
        assert invoker.roles_called() == ["Lead Thinker"]
        assert report.findings[0].id == "lead-thinker-failure"
        assert report.findings[0].severity == 10
        assert "upstream exploded" in report.findings[0].description

    def test_empty_lead_output_is_a_failure(self):
        report = _run(_ScriptedInvoker(Lead_Thinker="   "))
        assert report.findings[0].id == "lead-thinker-failure"

    def test_cancelled_deadline(self):
        deadline = Deadline()
        deadline.cancel()
        invoker = _ScriptedInvoker()
        report = _run(invoker, deadline=deadline)
        assert invoker.calls == []
        assert report.findings[0].id == "lead-thinker-failure"

    def test_unparseable_lead_output_continues(self):
        report = _run(_ScriptedInvoker(Lead_Thinker="I have thoughts but no structure."))
        assert report.summary.startswith("Final:")


class TestDegradation:
    def test_reviewer_failure_keeps_going(self):
        invoker = _ScriptedInvoker(Reviewer=RuntimeError("503 Service Unavailable"))
        report = _run(invoker)
        assert report.summary.startswith("Final:")
        assert "Review stage failed" in report.notes
        assert report.metadata.disagreement_score == 0
        assert "Synthesizer" in invoker.roles_called()

    def test_reviewer_auth_failure_is_not_fatal(self):
        report = _run(_ScriptedInvoker(Reviewer=RuntimeError("401 Unauthorized")))
        assert report.summary.startswith("Final:")

    def test_unparseable_review_is_noted(self):
        report = _run(_ScriptedInvoker(Reviewer="Looks fine to me."))
        assert "could not be parsed" in report.notes

    def test_synthesis_failure_falls_back_to_patch(self):
        patch = json.loads(_report_json("Patched."))
        review = json.dumps({"reviewSummary": "Rewrote it.", "issues": [], "patch": patch})
        report = _run(_ScriptedInvoker(Reviewer=review, Synthesizer=RuntimeError("timeout talking to upstream")))
        assert report.summary == "Patched."
        assert "reviewer's patch" in report.notes
        assert report.metadata.disagreement_score >= 71

    def test_synthesis_failure_falls_back_to_lead_draft(self):
        report = _run(_ScriptedInvoker(Synthesizer=RuntimeError("boom")))
        assert report.summary.startswith("Lead:")
        assert "the lead draft" in report.notes
        assert report.metadata.self_check_passed is True

    def test_unparseable_synthesis_falls_back(self):
        report = _run(_ScriptedInvoker(Synthesizer="Sorry, I got confused."))
        assert report.summary.startswith("Lead:")
        assert "could not be parsed" in report.notes

    def test_specialist_failure_is_isolated(self):
        report = _run(_ScriptedInvoker(Risk_Forecaster=RuntimeError("specialist down")))
        extended = report.metadata.extended_agent_outputs
        assert isinstance(extended.risk_forecast, SpecialistFailure)
        assert isinstance(extended.feasibility, FeasibilityAnalysis)
        assert report.summary.startswith("Final:")
        assert report.metadata.self_check_passed is True

    def test_specialist_model_credited_when_one_answers(self):
        invoker = _ScriptedInvoker(Risk_Forecaster=RuntimeError("specialist down"))
        report = _run(invoker, credentials=SPECIALIST_KEYS, registry=SPECIALIST_REGISTRY)
        assert report.metadata.models_used == ("lead-m", "rev-m", "syn-m", "spec-m")

    def test_specialist_model_not_credited_when_all_fail(self):
        invoker = _ScriptedInvoker(
            Risk_Forecaster=RuntimeError("specialist down"),
            Feasibility_Analyst=RuntimeError("specialist down"),
        )
        report = _run(invoker, credentials=SPECIALIST_KEYS, registry=SPECIALIST_REGISTRY)
        extended = report.metadata.extended_agent_outputs
        assert isinstance(extended.risk_forecast, SpecialistFailure)
        assert isinstance(extended.feasibility, SpecialistFailure)
        assert report.metadata.models_used == ("lead-m", "rev-m", "syn-m")

    def test_unverified_citations_fail_self_check(self):
        report = _run(_ScriptedInvoker(Synthesizer=_report_json("Final.", findings=2, path="src/ghost.py")))
        assert report.metadata.hallucination_count == 2
        assert report.metadata.self_check_passed is False
        assert "[WARNING: 2 file path(s) not verified in repository]" in report.notes
        assert len(report.findings) == 2

    def test_no_repo_mode(self):
        report = _run(_ScriptedInvoker(), snapshot=RepoSnapshot(root="/empty"))
        assert report.metadata.evidence_mode == NO_REPO_MODE
        assert report.metadata.hallucination_count == 0
        assert report.metadata.repo_files_scanned == 0

    def test_no_model_available(self):
        with pytest.raises(NoModelAvailable):
            _run(_ScriptedInvoker(), credentials={})


class TestSingleModel:
    def test_one_model_serves_every_role(self):
        invoker = _ScriptedInvoker()
        report = _run(invoker, credentials={"syn-m": "k"})
        assert {model for _, model, _ in invoker.calls} == {"syn-m"}
        assert report.metadata.models_used == ("syn-m",)


# ---------------------------------------------------------------------------
# Alternate modes
# ---------------------------------------------------------------------------


class TestParallel:
    def test_specialists_run_without_lead_findings(self):
        request = PanelRequest(mode=REQUEST.mode, question=REQUEST.question, scheduling="parallel")
        invoker = _ScriptedInvoker()
        report = _run(invoker, request=request)
        prompts = {role: prompt for role, _, prompt in invoker.calls}
        assert "None yet." in prompts["Risk Forecaster"]
        assert report.metadata.scheduling == "parallel"
        assert isinstance(report.metadata.extended_agent_outputs.risk_forecast, RiskForecast)
        assert report.summary.startswith("Final:")

    def test_lead_failure_still_ends_the_run(self):
        request = PanelRequest(mode=REQUEST.mode, question=REQUEST.question, scheduling="parallel")
        invoker = _ScriptedInvoker(Lead_Thinker=RuntimeError("401"))
        report = _run(invoker, request=request)
        assert report.findings[0].id == "lead-thinker-auth-failure"
        assert "Reviewer" not in invoker.roles_called()


class TestAdaptive:
    def test_prose_synthesis_over_lead_structure(self):
        request = PanelRequest(mode=REQUEST.mode, question=REQUEST.question, structured=False)
        prose = "## Verdict\n\nThe lock is the bottleneck.\n\nRelease it before awaiting I/O in src/app.py."
        report = _run(_ScriptedInvoker(Synthesizer=prose), request=request)
        assert report.summary == "Verdict"
        assert report.adaptive_text == prose
        assert len(report.findings) == 4
        assert report.metadata.report_format == "adaptive"
