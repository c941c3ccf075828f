"""Specialist Panel.

Three auxiliary analysts that enrich the report's metadata: a Risk
Forecaster, a Feasibility Analyst and an Economic Optimizer. Each is one
prompt → invoke → parse round trip against the specialist handle. They run
concurrently and fail independently: a specialist that errors or returns
unparseable output leaves ``SpecialistFailure`` in its own slot and nothing
else changes.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from repopanel_core.errors import ParseFailure
from repopanel_core.invocation import DEFAULT_INVOCATION_TIMEOUT, Deadline, ModelInvoker, invoke_bounded
from repopanel_core.models import (
    CostProjection,
    ExtendedAgentOutputs,
    FeasibilityAnalysis,
    FeasibilityScore,
    Finding,
    ForecastRisk,
    PanelRequest,
    Recommendation,
    RepoSnapshot,
    RiskForecast,
    RiskWindow,
    SpecialistFailure,
    SpecialistOutcome,
)
from repopanel_core.normalizer import (
    as_list,
    as_text,
    clamp_float,
    clamp_int,
    extract_json_object,
)
from repopanel_core.router import ModelHandle

logger = logging.getLogger(__name__)

ECONOMIC_MIN_QUESTION_CHARS = 500


@dataclass(frozen=True)
class SpecialistContext:
    """What the specialists get to see.

    ``findings`` and ``recommendations`` come from the lead draft when the
    panel runs sequentially and are empty when specialists run alongside it.
    """

    request: PanelRequest
    snapshot: RepoSnapshot
    findings: tuple[Finding, ...] = ()
    recommendations: tuple[Recommendation, ...] = ()


def _header(role: str, context: SpecialistContext) -> str:
    return (
        f"## Your Role: {role}\n\n"
        f"## Context\nQuestion: {context.request.question}\n"
        f"Mode: {context.request.mode}\n"
        f"Repository: {context.snapshot.root}\n"
        f"Files scanned: {context.snapshot.file_count}"
    )


def _strings(value) -> tuple[str, ...]:
    return tuple(s for s in (as_text(v) for v in as_list(value)) if s)


class Specialist(ABC):
    name: str = ""
    slot: str = ""

    def applies(self, context: SpecialistContext) -> bool:
        return True

    @abstractmethod
    def build_prompt(self, context: SpecialistContext) -> str:
        """Return the user prompt for this specialist."""

    @abstractmethod
    def parse(self, data: dict) -> SpecialistOutcome:
        """Build the typed output from the decoded JSON. Raise ParseFailure if unusable."""


class RiskForecaster(Specialist):
    name = "Risk Forecaster"
    slot = "risk_forecast"

    def build_prompt(self, context: SpecialistContext) -> str:
        findings = json.dumps([f.to_dict() for f in context.findings], indent=2) if context.findings else "None yet."
        return f"""{_header(self.name, context)}

## Lead Findings
{findings}

## Task
Forecast when failures are likely to occur. Group risks into time windows
(for example "next 7 days", "next 30 days", "next quarter"), give each risk a
probability between 0 and 1 and a severity from 1 to 10, and mark the windows
that need attention first.

## Output
Respond with only a JSON object:
{{
  "windows": [
    {{
      "period": "string",
      "compositeRiskScore": 0,
      "risks": [
        {{"id": "string", "title": "string", "category": "string", "probability": 0.0,
          "severity": 1, "impact": "string", "mitigation": "string"}}
      ]
    }}
  ],
  "criticalWindows": ["period"],
  "summary": "string",
  "confidence": 0
}}"""

    def parse(self, data: dict) -> RiskForecast:
        payload = data.get("riskHeatmap") if isinstance(data.get("riskHeatmap"), dict) else data
        windows = []
        for w_index, window in enumerate(as_list(payload.get("windows")), start=1):
            if not isinstance(window, dict):
                continue
            risks = []
            for r_index, risk in enumerate(as_list(window.get("risks")), start=1):
                if not isinstance(risk, dict):
                    continue
                risks.append(
                    ForecastRisk(
                        id=as_text(risk.get("id")) or f"risk-{w_index}-{r_index}",
                        title=as_text(risk.get("title")) or "Risk",
                        category=as_text(risk.get("category")) or "unknown",
                        probability=clamp_float(risk.get("probability"), 0.0, 1.0, 0.5),
                        severity=clamp_int(risk.get("severity"), 1, 10, 5),
                        impact=as_text(risk.get("impact")),
                        mitigation=as_text(risk.get("mitigation")),
                    )
                )
            windows.append(
                RiskWindow(
                    period=as_text(window.get("period")) or f"window-{w_index}",
                    risks=tuple(risks),
                    composite_risk_score=clamp_int(window.get("compositeRiskScore"), 0, 100, 0),
                )
            )
        summary = as_text(payload.get("summary") or data.get("riskSummary") or data.get("summary"))
        if not windows and not summary:
            raise ParseFailure("risk forecast has neither windows nor summary")
        return RiskForecast(
            windows=tuple(windows),
            critical_windows=_strings(payload.get("criticalWindows")),
            summary=summary,
            confidence=clamp_int(payload.get("confidence", data.get("confidence")), 0, 100, 50),
        )


class FeasibilityAnalyst(Specialist):
    name = "Feasibility Analyst"
    slot = "feasibility"

    def build_prompt(self, context: SpecialistContext) -> str:
        if context.recommendations:
            recs = json.dumps([r.to_dict() for r in context.recommendations], indent=2)
        else:
            recs = "None yet. Assess the remediation work the question most likely implies."
        return f"""{_header(self.name, context)}

## Recommendations To Evaluate
{recs}

## Task
Judge whether each recommendation is realistically achievable. Score
feasibility, available time and complexity from 1 to 10, list blockers, and
propose the order in which to do the work.

## Output
Respond with only a JSON object:
{{
  "items": [
    {{"recommendationId": "string", "feasibility": 1, "timeAvailability": 1,
      "complexity": 1, "blockers": ["string"]}}
  ],
  "overallFeasibility": 0,
  "recommendedSequence": ["recommendation id"],
  "summary": "string",
  "confidence": 0
}}"""

    def parse(self, data: dict) -> FeasibilityAnalysis:
        payload = data.get("feasibilityAnalysis") if isinstance(data.get("feasibilityAnalysis"), dict) else data
        items = []
        for index, item in enumerate(as_list(payload.get("items") or payload.get("recommendations")), start=1):
            if not isinstance(item, dict):
                continue
            items.append(
                FeasibilityScore(
                    recommendation_id=as_text(item.get("recommendationId")) or f"rec-{index}",
                    feasibility=clamp_int(item.get("feasibility", item.get("feasibilityScore")), 1, 10, 5),
                    time_availability=clamp_int(
                        item.get("timeAvailability", item.get("timeAvailabilityScore")), 1, 10, 5
                    ),
                    complexity=clamp_int(item.get("complexity", item.get("complexityScore")), 1, 10, 5),
                    blockers=_strings(item.get("blockers")),
                )
            )
        summary = as_text(payload.get("summary") or data.get("summary"))
        if not items and not summary:
            raise ParseFailure("feasibility analysis has neither items nor summary")
        return FeasibilityAnalysis(
            items=tuple(items),
            overall_feasibility=clamp_int(payload.get("overallFeasibility"), 0, 100, 50),
            recommended_sequence=_strings(payload.get("recommendedSequence")),
            summary=summary,
            confidence=clamp_int(payload.get("confidence", data.get("confidence")), 0, 100, 50),
        )


class EconomicOptimizer(Specialist):
    name = "Economic Optimizer"
    slot = "economic"

    def __init__(self, min_question_chars: int = ECONOMIC_MIN_QUESTION_CHARS):
        self.min_question_chars = min_question_chars

    def applies(self, context: SpecialistContext) -> bool:
        return len(context.request.question) > self.min_question_chars

    def build_prompt(self, context: SpecialistContext) -> str:
        return f"""{_header(self.name, context)}

## Task
Project the model API cost of running this kind of analysis and of the
system the question describes. Recommend cheaper model routing where quality
allows and list concrete savings opportunities.

## Output
Respond with only a JSON object:
{{
  "perQueryCost": 0.0,
  "monthlyEstimate": 0.0,
  "currency": "USD",
  "recommendedModels": ["string"],
  "savingsOpportunities": ["string"],
  "summary": "string",
  "confidence": 0
}}"""

    def parse(self, data: dict) -> CostProjection:
        payload = data.get("economicAnalysis") if isinstance(data.get("economicAnalysis"), dict) else data
        projections = payload.get("costProjections") if isinstance(payload.get("costProjections"), dict) else payload
        summary = as_text(payload.get("summary") or data.get("summary"))
        if not summary and "perQueryCost" not in projections and "costPerQuery" not in projections:
            raise ParseFailure("cost projection has neither costs nor summary")
        return CostProjection(
            per_query_cost=clamp_float(
                projections.get("perQueryCost", projections.get("costPerQuery")), 0.0, 1e9, 0.0
            ),
            monthly_estimate=clamp_float(projections.get("monthlyEstimate"), 0.0, 1e12, 0.0),
            currency=as_text(projections.get("currency")) or "USD",
            recommended_models=_strings(projections.get("recommendedModels")),
            savings_opportunities=_strings(payload.get("savingsOpportunities")),
            summary=summary,
            confidence=clamp_int(payload.get("confidence", data.get("confidence")), 0, 100, 50),
        )


def default_specialists(config: dict | None = None) -> list[Specialist]:
    min_chars = (config or {}).get("economic_min_question_chars", ECONOMIC_MIN_QUESTION_CHARS)
    return [RiskForecaster(), FeasibilityAnalyst(), EconomicOptimizer(min_question_chars=min_chars)]


class SpecialistPanel:
    def __init__(
        self,
        invoker: ModelInvoker,
        handle: ModelHandle,
        specialists: list[Specialist] | None = None,
        system_prompt: str | None = None,
        timeout: float | None = DEFAULT_INVOCATION_TIMEOUT,
    ):
        self.invoker = invoker
        self.handle = handle
        self.specialists = specialists if specialists is not None else default_specialists()
        self.system_prompt = system_prompt
        self.timeout = timeout

    async def run(self, context: SpecialistContext, deadline: Deadline | None = None) -> ExtendedAgentOutputs:
        """Run every applicable specialist concurrently. Never raises for a specialist failure."""
        active = [s for s in self.specialists if s.applies(context)]
        skipped = [s.name for s in self.specialists if s not in active]
        if skipped:
            logger.info("Skipping specialists: %s", ", ".join(skipped))

        results = await asyncio.gather(*(self._run_one(s, context, deadline) for s in active), return_exceptions=True)

        outcomes: dict[str, SpecialistOutcome] = {}
        for specialist, result in zip(active, results):
            if isinstance(result, Exception):
                logger.warning("%s failed: %s", specialist.name, result)
                outcomes[specialist.slot] = SpecialistFailure(error=str(result) or result.__class__.__name__)
            elif isinstance(result, BaseException):
                raise result
            else:
                outcomes[specialist.slot] = result
        return ExtendedAgentOutputs(**outcomes)

    async def _run_one(
        self, specialist: Specialist, context: SpecialistContext, deadline: Deadline | None
    ) -> SpecialistOutcome:
        result = await invoke_bounded(
            self.invoker,
            self.handle,
            specialist.build_prompt(context),
            self.system_prompt,
            timeout=self.timeout,
            deadline=deadline,
        )
        data = extract_json_object(result.text)
        if data is None:
            raise ParseFailure(f"{specialist.name} returned no JSON object")
        outcome = specialist.parse(data)
        logger.info("%s completed", specialist.name)
        return outcome
