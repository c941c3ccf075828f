"""Report history data models.

Decoupled from repopanel_core so the store layer can be used independently
and repopanel_core has no knowledge of persistence concerns.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class FindingRecord:
    """One finding of a stored report, flattened for aggregation."""

    id: str
    title: str
    severity: int
    impact_area: str
    files: list[str] = field(default_factory=list)


@dataclass
class ReportRecord:
    """A completed panel run persisted to the store.

    The CLI maps the core Report onto this record before calling store.save().
    """

    repo: str
    mode: str
    question: str
    summary: str
    created_at: str  # ISO-8601 UTC timestamp
    overall_risk_score: int
    confidence: int
    disagreement_score: int | None = None
    self_check_passed: bool = False
    hallucination_count: int = 0
    models_used: list[str] = field(default_factory=list)
    findings: list[FindingRecord] = field(default_factory=list)
    recommendation_count: int = 0
