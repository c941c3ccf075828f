"""Panel data model.

Every value that crosses a component boundary is a frozen dataclass, with
tuples for sequences. Stages never mutate a Report; they derive new ones
with ``dataclasses.replace``. ``to_dict()`` renders the camelCase wire shape
consumed by JSON callers and the history store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

MODES = ("pipeline_diagnosis", "agent_output_critique", "meta_prompt_architect")

IMPACT_AREAS = (
    "architecture",
    "performance",
    "scalability",
    "reliability",
    "security",
    "ux",
    "devx",
    "unknown",
)

DIFFICULTIES = ("low", "medium", "high")

# Model roles. SPECIALIST is served at the Reviewer tier.
LEAD = "lead"
REVIEWER = "reviewer"
SYNTHESIZER = "synthesizer"
SPECIALIST = "specialist"
ROLES = (LEAD, REVIEWER, SYNTHESIZER, SPECIALIST)

SEQUENTIAL = "sequential"
PARALLEL = "parallel"
SCHEDULINGS = (SEQUENTIAL, PARALLEL)

EVIDENCE_ON = "ON"
NO_REPO_MODE = "NO_REPO_MODE"


def _drop_none(data: dict) -> dict:
    return {k: v for k, v in data.items() if v is not None}


# ---------------------------------------------------------------------- #
# Repository snapshot                                                     #
# ---------------------------------------------------------------------- #


@dataclass
class FileEntry:
    """One path in a repository snapshot.

    ``content`` starts empty and is filled in lazily by the evidence store
    that produced the entry; every other field is fixed at scan time.
    """

    path: str
    size: int = 0
    is_directory: bool = False
    content: str | None = None
    last_modified_at: str | None = None


@dataclass(frozen=True)
class RepoSnapshot:
    root: str
    files: tuple[FileEntry, ...] = ()
    scanned_at: str = ""

    @property
    def file_count(self) -> int:
        return sum(1 for f in self.files if not f.is_directory)

    def paths(self) -> list[str]:
        return [f.path for f in self.files if not f.is_directory]


# ---------------------------------------------------------------------- #
# Report                                                                  #
# ---------------------------------------------------------------------- #


@dataclass(frozen=True)
class Evidence:
    file_path: str
    snippet: str = ""
    reasoning: str = ""

    def to_dict(self) -> dict:
        return {"filePath": self.file_path, "snippet": self.snippet, "reasoning": self.reasoning}


@dataclass(frozen=True)
class Finding:
    id: str
    title: str
    description: str = ""
    evidence: tuple[Evidence, ...] = ()
    severity: int = 5
    impact_area: str = "unknown"
    confidence: int | None = None

    def to_dict(self) -> dict:
        return _drop_none(
            {
                "id": self.id,
                "title": self.title,
                "description": self.description,
                "evidence": [e.to_dict() for e in self.evidence],
                "severity": self.severity,
                "impactArea": self.impact_area,
                "confidence": self.confidence,
            }
        )


@dataclass(frozen=True)
class Recommendation:
    id: str
    title: str
    description: str = ""
    expected_impact: str = "TBD"
    difficulty: str = "medium"
    related_findings: tuple[str, ...] | None = None
    priority: int | None = None
    roi_estimate: float | None = None
    feasibility: int | None = None
    focus_minutes: int | None = None
    alignment_score: float | None = None

    def to_dict(self) -> dict:
        return _drop_none(
            {
                "id": self.id,
                "title": self.title,
                "description": self.description,
                "expectedImpact": self.expected_impact,
                "difficulty": self.difficulty,
                "relatedFindings": list(self.related_findings) if self.related_findings is not None else None,
                "priority": self.priority,
                "roiEstimate": self.roi_estimate,
                "feasibility": self.feasibility,
                "focusMinutes": self.focus_minutes,
                "alignmentScore": self.alignment_score,
            }
        )


# ---------------------------------------------------------------------- #
# Specialist outputs                                                      #
# ---------------------------------------------------------------------- #


@dataclass(frozen=True)
class ForecastRisk:
    id: str
    title: str
    category: str = "unknown"
    probability: float = 0.5
    severity: int = 5
    impact: str = ""
    mitigation: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "category": self.category,
            "probability": self.probability,
            "severity": self.severity,
            "impact": self.impact,
            "mitigation": self.mitigation,
        }


@dataclass(frozen=True)
class RiskWindow:
    period: str
    risks: tuple[ForecastRisk, ...] = ()
    composite_risk_score: int = 0

    def to_dict(self) -> dict:
        return {
            "period": self.period,
            "risks": [r.to_dict() for r in self.risks],
            "compositeRiskScore": self.composite_risk_score,
        }


@dataclass(frozen=True)
class RiskForecast:
    windows: tuple[RiskWindow, ...] = ()
    critical_windows: tuple[str, ...] = ()
    summary: str = ""
    confidence: int = 50

    def to_dict(self) -> dict:
        return {
            "windows": [w.to_dict() for w in self.windows],
            "criticalWindows": list(self.critical_windows),
            "summary": self.summary,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class FeasibilityScore:
    recommendation_id: str
    feasibility: int = 5
    time_availability: int = 5
    complexity: int = 5
    blockers: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "recommendationId": self.recommendation_id,
            "feasibility": self.feasibility,
            "timeAvailability": self.time_availability,
            "complexity": self.complexity,
            "blockers": list(self.blockers),
        }


@dataclass(frozen=True)
class FeasibilityAnalysis:
    items: tuple[FeasibilityScore, ...] = ()
    overall_feasibility: int = 50
    recommended_sequence: tuple[str, ...] = ()
    summary: str = ""
    confidence: int = 50

    def to_dict(self) -> dict:
        return {
            "items": [i.to_dict() for i in self.items],
            "overallFeasibility": self.overall_feasibility,
            "recommendedSequence": list(self.recommended_sequence),
            "summary": self.summary,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class CostProjection:
    per_query_cost: float = 0.0
    monthly_estimate: float = 0.0
    currency: str = "USD"
    recommended_models: tuple[str, ...] = ()
    savings_opportunities: tuple[str, ...] = ()
    summary: str = ""
    confidence: int = 50

    def to_dict(self) -> dict:
        return {
            "perQueryCost": self.per_query_cost,
            "monthlyEstimate": self.monthly_estimate,
            "currency": self.currency,
            "recommendedModels": list(self.recommended_models),
            "savingsOpportunities": list(self.savings_opportunities),
            "summary": self.summary,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class SpecialistFailure:
    """Placeholder for a specialist slot whose invocation or parse failed."""

    error: str
    partial: bool = True

    def to_dict(self) -> dict:
        return {"error": self.error, "partial": self.partial}


SpecialistOutcome = Union[RiskForecast, FeasibilityAnalysis, CostProjection, SpecialistFailure]


@dataclass(frozen=True)
class ExtendedAgentOutputs:
    risk_forecast: SpecialistOutcome | None = None
    feasibility: SpecialistOutcome | None = None
    economic: SpecialistOutcome | None = None

    def answered(self) -> bool:
        """True when at least one slot holds a real specialist output."""
        return any(
            outcome is not None and not isinstance(outcome, SpecialistFailure)
            for outcome in (self.risk_forecast, self.feasibility, self.economic)
        )

    def to_dict(self) -> dict:
        return _drop_none(
            {
                "riskHeatmap": self.risk_forecast.to_dict() if self.risk_forecast else None,
                "feasibilityCurve": self.feasibility.to_dict() if self.feasibility else None,
                "economicModel": self.economic.to_dict() if self.economic else None,
            }
        )


# ---------------------------------------------------------------------- #
# Report and metadata                                                     #
# ---------------------------------------------------------------------- #


@dataclass(frozen=True)
class Metadata:
    execution_time_ms: int = 0
    models_used: tuple[str, ...] = ()
    repo_files_scanned: int = 0
    timestamp: str = ""
    disagreement_score: int | None = None
    self_check_passed: bool = False
    hallucination_count: int = 0
    evidence_mode: str = EVIDENCE_ON
    scheduling: str = SEQUENTIAL
    report_format: str = "structured"
    alignment_score: int | None = None
    extended_agent_outputs: ExtendedAgentOutputs | None = None

    def to_dict(self) -> dict:
        return _drop_none(
            {
                "executionTimeMs": self.execution_time_ms,
                "modelsUsed": list(self.models_used),
                "repoFilesScanned": self.repo_files_scanned,
                "timestamp": self.timestamp,
                "disagreementScore": self.disagreement_score,
                "selfCheckPassed": self.self_check_passed,
                "hallucinationCount": self.hallucination_count,
                "evidenceMode": self.evidence_mode,
                "panelPipeline": True,
                "scheduling": self.scheduling,
                "reportFormat": self.report_format,
                "alignmentScore": self.alignment_score,
                "extendedAgentOutputs": (
                    self.extended_agent_outputs.to_dict() if self.extended_agent_outputs else None
                ),
            }
        )


@dataclass(frozen=True)
class Report:
    mode: str
    question: str
    summary: str = ""
    assumptions: tuple[str, ...] = ()
    findings: tuple[Finding, ...] = ()
    recommendations: tuple[Recommendation, ...] = ()
    overall_risk_score: int = 50
    confidence: int = 70
    notes: str | None = None
    adaptive_text: str | None = None
    metadata: Metadata = field(default_factory=Metadata)

    def to_dict(self) -> dict:
        return _drop_none(
            {
                "mode": self.mode,
                "question": self.question,
                "summary": self.summary,
                "assumptions": list(self.assumptions),
                "findings": [f.to_dict() for f in self.findings],
                "recommendations": [r.to_dict() for r in self.recommendations],
                "overallRiskScore": self.overall_risk_score,
                "confidence": self.confidence,
                "notes": self.notes,
                "adaptiveText": self.adaptive_text,
                "metadata": self.metadata.to_dict(),
            }
        )


@dataclass(frozen=True)
class ReviewIssue:
    id: str
    severity: int
    description: str

    def to_dict(self) -> dict:
        return {"id": self.id, "severity": self.severity, "description": self.description}


@dataclass(frozen=True)
class ReviewDraft:
    review_summary: str
    issues: tuple[ReviewIssue, ...] = ()
    patch: Report | None = None
    degraded: bool = False

    def to_dict(self) -> dict:
        return {
            "reviewSummary": self.review_summary,
            "issues": [i.to_dict() for i in self.issues],
            "patch": self.patch.to_dict() if self.patch else None,
        }


def append_note(notes: str | None, note: str) -> str:
    return f"{notes}\n{note}" if notes else note


# ---------------------------------------------------------------------- #
# Request                                                                 #
# ---------------------------------------------------------------------- #


@dataclass(frozen=True)
class PanelRequest:
    """Caller input for one panel run.

    ``structured=False`` asks the synthesizer for free text, stored as the
    report's ``adaptive_text`` over the lead draft's verified structure.
    """

    mode: str
    question: str
    related_files: tuple[str, ...] = ()
    logs: str | None = None
    stack_traces: str | None = None
    agent_output: str | None = None
    current_prompt: str | None = None
    structured: bool = True
    scheduling: str = SEQUENTIAL

    def __post_init__(self):
        if self.mode not in MODES:
            raise ValueError(f"Unknown mode {self.mode!r}. Expected one of: {', '.join(MODES)}")
        if not isinstance(self.question, str) or not self.question.strip():
            raise ValueError("question must be a non-empty string")
        if self.scheduling not in SCHEDULINGS:
            raise ValueError(f"Unknown scheduling {self.scheduling!r}. Expected one of: {', '.join(SCHEDULINGS)}")
