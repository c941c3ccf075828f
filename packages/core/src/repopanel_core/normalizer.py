"""Output Normalizer.

Turns arbitrary model text into a well-formed Report. Parsing is an ordered
tuple of pure strategies, each ``(text, request) -> Report | None``, tried by
``first_success``:

    1. strict_json       whole text is a JSON report
    2. fenced_block      first fenced code block holding JSON
    3. brace_candidates  every balanced ``{...}`` span, longest first
    4. sections          Summary / Findings / Recommendations headers

When all four decline, ``fallback_report`` builds a minimal report that
carries the raw output for inspection. ``normalize`` never raises, and every
numeric field it emits is clamped into its declared range whichever path
produced it.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Callable, Optional

from repopanel_core.errors import ParseFailure
from repopanel_core.models import (
    DIFFICULTIES,
    IMPACT_AREAS,
    Evidence,
    Finding,
    PanelRequest,
    Recommendation,
    Report,
    RepoSnapshot,
    ReviewDraft,
    ReviewIssue,
)
from repopanel_core.verifier import verify

logger = logging.getLogger(__name__)

MAX_SECTION_FINDINGS = 20
MAX_SECTION_RECOMMENDATIONS = 15
RAW_PREVIEW_CHARS = 500

FALLBACK_STRATEGY = "fallback"

Strategy = Callable[[str, PanelRequest], Optional[Report]]


# ---------------------------------------------------------------------- #
# Numeric coercion                                                        #
# ---------------------------------------------------------------------- #

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


def to_number(value) -> float | None:
    """Best-effort numeric read. Strings like ``"70%"`` yield 70.0."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            number = 1e300 if value > 0 else -1e300
    elif isinstance(value, str):
        match = _NUMBER_RE.search(value)
        if not match:
            return None
        number = float(match.group())
    else:
        return None
    if math.isnan(number):
        return None
    if math.isinf(number):
        return math.copysign(1e300, number)
    return number


def clamp_int(value, low: int, high: int, default: int) -> int:
    number = to_number(value)
    if number is None:
        return default
    return int(min(high, max(low, round(number))))


def clamp_optional_int(value, low: int, high: int) -> int | None:
    number = to_number(value)
    if number is None:
        return None
    return int(min(high, max(low, round(number))))


def clamp_float(value, low: float, high: float, default: float) -> float:
    number = to_number(value)
    if number is None:
        return default
    return min(high, max(low, number))


def clamp_optional_float(value, low: float, high: float) -> float | None:
    number = to_number(value)
    if number is None:
        return None
    return min(high, max(low, number))


def as_text(value, default: str = "") -> str:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float, bool)):
        return str(value)
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)


def _first(data: dict, *keys):
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


# ---------------------------------------------------------------------- #
# JSON extraction                                                         #
# ---------------------------------------------------------------------- #

_FENCE_RE = re.compile(r"```[ \t]*[A-Za-z0-9_+-]*[ \t]*\r?\n?(.*?)```", re.DOTALL)


def _loads(candidate: str):
    try:
        return json.loads(candidate)
    except (ValueError, RecursionError):
        return None


def fenced_blocks(text: str) -> list[str]:
    """Bodies of fenced code blocks that start like a JSON object."""
    return [m.group(1).strip() for m in _FENCE_RE.finditer(text) if m.group(1).strip().startswith("{")]


def brace_candidates(text: str) -> list[str]:
    """All balanced ``{...}`` spans plus the outermost span, longest first.

    Quotes are only tracked inside an open brace so that apostrophes and
    quotes in surrounding prose do not hide the object.
    """
    spans: set[str] = set()
    first, last = text.find("{"), text.rfind("}")
    if first != -1 and last > first:
        spans.add(text[first : last + 1])

    stack: list[int] = []
    in_string = escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"' and stack:
            in_string = True
        elif ch == "{":
            stack.append(i)
        elif ch == "}" and stack:
            start = stack.pop()
            spans.add(text[start : i + 1])

    return sorted(spans, key=len, reverse=True)


def extract_json_object(text: str, predicate: Callable[[dict], bool] = lambda d: True) -> dict | None:
    """Return the first JSON object in ``text`` accepted by ``predicate``.

    Tries the whole text, then the first JSON-looking fenced block, then the
    brace candidates longest first.
    """
    if not isinstance(text, str) or not text.strip():
        return None

    data = _loads(text.strip())
    if isinstance(data, dict) and predicate(data):
        return data

    blocks = fenced_blocks(text)
    if blocks:
        data = _loads(blocks[0])
        if isinstance(data, dict) and predicate(data):
            return data

    for candidate in brace_candidates(text):
        data = _loads(candidate)
        if isinstance(data, dict) and predicate(data):
            return data
    return None


def has_report_shape(data) -> bool:
    return (
        isinstance(data, dict)
        and bool(data.get("mode"))
        and ("findings" in data or "recommendations" in data)
    )


# ---------------------------------------------------------------------- #
# Payload coercion                                                        #
# ---------------------------------------------------------------------- #


def coerce_evidence(item) -> Evidence | None:
    if isinstance(item, str):
        return Evidence(file_path=item.strip()) if item.strip() else None
    if not isinstance(item, dict):
        return None
    # A claim without a path is kept; the verifier counts it as unverifiable.
    evidence = Evidence(
        file_path=as_text(_first(item, "filePath", "file_path", "file", "path")),
        snippet=as_text(_first(item, "snippet", "code", "quote")),
        reasoning=as_text(_first(item, "reasoning", "reason", "explanation")),
    )
    if not (evidence.file_path or evidence.snippet or evidence.reasoning):
        return None
    return evidence


def coerce_finding(item, index: int) -> Finding | None:
    if isinstance(item, str):
        return Finding(id=f"finding-{index}", title=item.strip()[:120] or "Finding", description=item.strip())
    if not isinstance(item, dict):
        return None
    impact = as_text(_first(item, "impactArea", "impact_area", "area")).lower()
    evidence = tuple(e for e in (coerce_evidence(x) for x in as_list(item.get("evidence"))) if e is not None)
    return Finding(
        id=as_text(item.get("id")) or f"finding-{index}",
        title=as_text(item.get("title")) or "Finding",
        description=as_text(item.get("description")),
        evidence=evidence,
        severity=clamp_int(item.get("severity"), 1, 10, 5),
        impact_area=impact if impact in IMPACT_AREAS else "unknown",
        confidence=clamp_optional_int(item.get("confidence"), 0, 100),
    )


def coerce_recommendation(item, index: int) -> Recommendation | None:
    if isinstance(item, str):
        return Recommendation(id=f"rec-{index}", title=item.strip()[:120] or "Recommendation", description=item.strip())
    if not isinstance(item, dict):
        return None
    difficulty = as_text(item.get("difficulty")).lower()
    related = item.get("relatedFindings", item.get("related_findings"))
    return Recommendation(
        id=as_text(item.get("id")) or f"rec-{index}",
        title=as_text(item.get("title")) or "Recommendation",
        description=as_text(item.get("description")),
        expected_impact=as_text(_first(item, "expectedImpact", "expected_impact")) or "TBD",
        difficulty=difficulty if difficulty in DIFFICULTIES else "medium",
        related_findings=tuple(as_text(r) for r in as_list(related)) if related is not None else None,
        priority=clamp_optional_int(item.get("priority"), 1, 10),
        roi_estimate=clamp_optional_float(_first(item, "roiEstimate", "roi_estimate"), 0, 10),
        feasibility=clamp_optional_int(_first(item, "feasibility", "founderFeasibilityScore"), 1, 10),
        focus_minutes=clamp_optional_int(_first(item, "focusMinutes", "requiredFocusMinutes"), 0, 1440),
        alignment_score=clamp_optional_float(
            _first(item, "alignmentScore", "technicalAlignmentScore", "visionAlignmentScore"), 0, 10
        ),
    )


def coerce_assumption(item) -> str:
    if isinstance(item, dict):
        return as_text(_first(item, "assumption", "text", "reasoning")) or as_text(item)
    return as_text(item)


def coerce_report(data: dict, request: PanelRequest) -> Report:
    """Build a Report from a decoded JSON payload, clamping every score."""
    if not isinstance(data, dict):
        raise ParseFailure(f"expected a JSON object, got {type(data).__name__}")

    findings = [coerce_finding(f, i) for i, f in enumerate(as_list(data.get("findings")), start=1)]
    recommendations = [
        coerce_recommendation(r, i) for i, r in enumerate(as_list(data.get("recommendations")), start=1)
    ]
    assumptions = [coerce_assumption(a) for a in as_list(data.get("assumptions"))]
    notes = as_text(data.get("notes")) or None

    return Report(
        mode=request.mode,
        question=request.question,
        summary=as_text(data.get("summary")),
        assumptions=tuple(a for a in assumptions if a),
        findings=tuple(f for f in findings if f is not None),
        recommendations=tuple(r for r in recommendations if r is not None),
        overall_risk_score=clamp_int(_first(data, "overallRiskScore", "overall_risk_score"), 0, 100, 50),
        confidence=clamp_int(data.get("confidence"), 0, 100, 70),
        notes=notes,
    )


def declared_disagreement(raw_text: str) -> int | None:
    """Disagreement score a model reported in its own ``metadata``, clamped."""
    data = extract_json_object(raw_text, has_report_shape)
    if data is None or not isinstance(data.get("metadata"), dict):
        return None
    return clamp_optional_int(data["metadata"].get("disagreementScore"), 0, 100)


# ---------------------------------------------------------------------- #
# Strategies                                                              #
# ---------------------------------------------------------------------- #


def parse_strict_json(text: str, request: PanelRequest) -> Report | None:
    data = _loads(text.strip())
    return coerce_report(data, request) if has_report_shape(data) else None


def parse_fenced_block(text: str, request: PanelRequest) -> Report | None:
    blocks = fenced_blocks(text)
    if not blocks:
        return None
    data = _loads(blocks[0])
    return coerce_report(data, request) if has_report_shape(data) else None


def parse_brace_candidates(text: str, request: PanelRequest) -> Report | None:
    for candidate in brace_candidates(text):
        data = _loads(candidate)
        if has_report_shape(data):
            return coerce_report(data, request)
    return None


_SECTION_NAME = (
    r"(?P<name>summary|assumptions?|findings?|recommendations?"
    r"|overall\s+risk(?:\s+score)?|risk(?:\s+score)?|confidence)"
)
# "## Key Findings", "**Top Recommendations:**": up to two qualifier words before the name.
_QUALIFIER = r"(?:[a-z][\w-]*\s+){1,2}"
_HEADER_RES = (
    re.compile(r"^\s*#{1,6}\s*(?:\*\*|__)?" + _SECTION_NAME + r"(?:\*\*|__)?\s*:?\s*(?P<rest>.*)$", re.IGNORECASE),
    re.compile(
        r"^\s*#{1,6}\s*(?:\*\*|__)?" + _QUALIFIER + _SECTION_NAME + r"(?:\*\*|__)?\s*(?::\s*(?P<rest>.*))?$",
        re.IGNORECASE,
    ),
    re.compile(
        r"^\s*(?:\*\*|__)" + _QUALIFIER + _SECTION_NAME + r"\s*:?\s*(?:\*\*|__)\s*(?::\s*(?P<rest>.*))?$",
        re.IGNORECASE,
    ),
    re.compile(r"^\s*(?:\*\*|__)" + _SECTION_NAME + r"\s*:?\s*(?:\*\*|__)\s*:?\s*(?P<rest>.*)$", re.IGNORECASE),
    re.compile(r"^\s*" + _SECTION_NAME + r"\s*:\s*(?P<rest>.*)$", re.IGNORECASE),
    re.compile(r"^\s*" + _SECTION_NAME + r"\s*$", re.IGNORECASE),
)
_ITEM_RE = re.compile(r"^\s*(?:[-*+•]|\d+[.)])\s+(?P<body>.*)$")
_RISK_RE = re.compile(r"risk(?:\s+score\s*[:=]?|\s*[:=])\s*(\d{1,3})", re.IGNORECASE)
_CONFIDENCE_RE = re.compile(r"confidence\s*[:=]?\s*(\d{1,3})", re.IGNORECASE)
_SEVERITY_RE = re.compile(r"severity\s*[:=]?\s*(\d{1,2})", re.IGNORECASE)


def _section_key(name: str) -> str:
    name = name.lower()
    if name.startswith("summary"):
        return "summary"
    if name.startswith("assumption"):
        return "assumptions"
    if name.startswith("finding"):
        return "findings"
    if name.startswith("recommendation"):
        return "recommendations"
    if "risk" in name:
        return "risk"
    return "confidence"


def split_sections(text: str) -> dict[str, list[str]]:
    sections: dict[str, list[str]] = {}
    current: str | None = None
    for line in text.splitlines():
        for pattern in _HEADER_RES:
            match = pattern.match(line)
            if match:
                current = _section_key(match.group("name"))
                sections.setdefault(current, [])
                rest = (match.groupdict().get("rest") or "").strip().strip("*_").strip()
                if rest:
                    sections[current].append(rest)
                break
        else:
            if current is not None:
                sections[current].append(line)
    return sections


def split_items(lines: list[str]) -> list[str]:
    """Group bullet or numbered items, folding continuation lines into the item above."""
    items: list[str] = []
    saw_bullet = False
    for line in lines:
        stripped = line.strip()
        if not stripped:
            continue
        match = _ITEM_RE.match(line)
        if match:
            saw_bullet = True
            items.append(match.group("body").strip())
        elif saw_bullet and items:
            items[-1] = f"{items[-1]}\n{stripped}"
        else:
            items.append(stripped)
    return items


def _title_and_description(item: str) -> tuple[str, str]:
    first_line, _, continuation = item.partition("\n")
    first_line = first_line.strip()
    for separator in (": ", " - "):
        head, found, tail = first_line.partition(separator)
        if found and head.strip():
            title = head.strip().strip("*_").strip()
            description = "\n".join(p for p in (tail.strip(), continuation.strip()) if p)
            return title[:120], description or title
    title = first_line.strip("*_").strip()
    return title[:120], "\n".join(p for p in (first_line, continuation.strip()) if p)


def parse_sections(text: str, request: PanelRequest) -> Report | None:
    sections = split_sections(text)
    if not sections:
        return None

    summary = " ".join(line.strip() for line in sections.get("summary", []) if line.strip())
    assumptions = tuple(split_items(sections.get("assumptions", [])))

    findings = []
    for index, item in enumerate(split_items(sections.get("findings", []))[:MAX_SECTION_FINDINGS], start=1):
        title, description = _title_and_description(item)
        severity = _SEVERITY_RE.search(item)
        findings.append(
            Finding(
                id=f"finding-{index}",
                title=title or "Finding",
                description=description,
                severity=clamp_int(severity.group(1) if severity else None, 1, 10, 5),
                impact_area="unknown",
            )
        )

    recommendations = []
    for index, item in enumerate(
        split_items(sections.get("recommendations", []))[:MAX_SECTION_RECOMMENDATIONS], start=1
    ):
        title, description = _title_and_description(item)
        recommendations.append(
            Recommendation(id=f"rec-{index}", title=title or "Recommendation", description=description)
        )

    if not summary and not findings and not recommendations:
        return None

    risk_text = " ".join(sections.get("risk", []))
    confidence_text = " ".join(sections.get("confidence", []))
    risk_match = _RISK_RE.search(text)
    confidence_match = _CONFIDENCE_RE.search(text)
    risk = to_number(risk_text) if risk_text else None
    confidence = to_number(confidence_text) if confidence_text else None
    if risk is None and risk_match:
        risk = float(risk_match.group(1))
    if confidence is None and confidence_match:
        confidence = float(confidence_match.group(1))

    return Report(
        mode=request.mode,
        question=request.question,
        summary=summary,
        assumptions=assumptions,
        findings=tuple(findings),
        recommendations=tuple(recommendations),
        overall_risk_score=clamp_int(risk, 0, 100, 50),
        confidence=clamp_int(confidence, 0, 100, 70),
    )


def fallback_report(text: str, request: PanelRequest) -> Report:
    preview = (text or "")[:RAW_PREVIEW_CHARS]
    return Report(
        mode=request.mode,
        question=request.question,
        summary="Report parsing incomplete: the panel output could not be structured.",
        findings=(
            Finding(
                id="parsing-incomplete",
                title="Model output could not be parsed",
                description=(
                    "None of the parsing strategies recovered a structured report from the model output. "
                    "The raw output is attached in notes for inspection."
                ),
                severity=8,
                impact_area="unknown",
                confidence=30,
            ),
        ),
        overall_risk_score=50,
        confidence=30,
        notes=f"Parsing failed. Raw output (first {RAW_PREVIEW_CHARS} chars): {preview}",
    )


STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("strict_json", parse_strict_json),
    ("fenced_block", parse_fenced_block),
    ("brace_candidates", parse_brace_candidates),
    ("sections", parse_sections),
)


def first_success(
    strategies: tuple[tuple[str, Strategy], ...], text: str, request: PanelRequest
) -> tuple[Report, str] | None:
    for name, strategy in strategies:
        try:
            report = strategy(text, request)
        except ParseFailure as e:
            logger.debug("Strategy %s declined: %s", name, e)
            continue
        if report is not None:
            return report, name
    return None


# ---------------------------------------------------------------------- #
# Public interface                                                        #
# ---------------------------------------------------------------------- #


def parse_report(raw_text, request: PanelRequest) -> tuple[Report, str]:
    """Return the normalized report and the name of the strategy that produced it."""
    text = raw_text if isinstance(raw_text, str) else ""
    result = first_success(STRATEGIES, text, request) if text.strip() else None
    if result is None:
        logger.warning("Could not parse model output into a report (%d chars)", len(text))
        return fallback_report(text, request), FALLBACK_STRATEGY
    report, name = result
    logger.debug("Parsed model output with strategy %s", name)
    return report, name


def normalize(raw_text, request: PanelRequest, snapshot: RepoSnapshot | None = None) -> Report:
    """Normalize model output into a Report. Never raises.

    With a ``snapshot`` the result is also passed through the evidence
    verifier so unverifiable citations come back annotated.
    """
    report, _ = parse_report(raw_text, request)
    if snapshot is not None:
        report, _ = verify(report, snapshot)
    return report


def _looks_like_review(data: dict) -> bool:
    return any(key in data for key in ("reviewSummary", "review_summary", "issues", "patch"))


def normalize_review(raw_text, request: PanelRequest) -> ReviewDraft | None:
    """Parse Reviewer output. Returns None when no review object can be found."""
    text = raw_text if isinstance(raw_text, str) else ""
    data = extract_json_object(text, _looks_like_review)
    if data is None:
        return None

    issues = []
    for index, item in enumerate(as_list(data.get("issues")), start=1):
        if isinstance(item, dict):
            issues.append(
                ReviewIssue(
                    id=as_text(item.get("id")) or f"issue-{index}",
                    severity=clamp_int(item.get("severity"), 1, 10, 5),
                    description=as_text(_first(item, "description", "title")),
                )
            )
        elif as_text(item):
            issues.append(ReviewIssue(id=f"issue-{index}", severity=5, description=as_text(item)))

    patch = None
    raw_patch = data.get("patch")
    if isinstance(raw_patch, dict) and ("findings" in raw_patch or "recommendations" in raw_patch):
        patch = coerce_report(raw_patch, request)

    return ReviewDraft(
        review_summary=as_text(_first(data, "reviewSummary", "review_summary")),
        issues=tuple(issues),
        patch=patch,
    )
