"""Prompt construction for the three panel stages.

The system prompt (shared by every stage) is sent as the system message;
everything here builds the per-stage user prompt. Each stage sees the mode
template, the repository context and, from the Review stage on, the JSON of
the drafts produced before it.
"""

from __future__ import annotations

import json
import logging

from repopanel_core.models import PanelRequest, Report, RepoSnapshot, ReviewDraft

logger = logging.getLogger(__name__)

MAX_LISTED_FILES = 50

# Hard ceiling on the related-file section. Files are dropped from the end
# of the list once the budget is reached.
MAX_RELATED_CHARS = 40_000

REPORT_SCHEMA = """{
  "mode": "<mode>",
  "question": "<question>",
  "summary": "2-4 sentences with a clear thesis",
  "assumptions": ["string"],
  "findings": [
    {
      "id": "string",
      "title": "short title",
      "description": "clear explanation",
      "severity": 1,
      "impactArea": "architecture|performance|scalability|reliability|security|ux|devx|unknown",
      "evidence": [
        {"filePath": "path/to/file.py:20-50", "snippet": "quoted code", "reasoning": "why this supports the finding"}
      ],
      "confidence": 0
    }
  ],
  "recommendations": [
    {
      "id": "string",
      "title": "clear and actionable",
      "description": "exact steps",
      "expectedImpact": "string",
      "difficulty": "low|medium|high",
      "relatedFindings": ["finding id"],
      "priority": 1,
      "roiEstimate": 0,
      "feasibility": 1,
      "focusMinutes": 0,
      "alignmentScore": 0
    }
  ],
  "overallRiskScore": 0,
  "confidence": 0
}"""

REVIEW_SCHEMA = """{
  "reviewSummary": "string",
  "issues": [{"id": "string", "severity": 1, "description": "string"}],
  "patch": <full report JSON, or null>
}"""


def repo_section(snapshot: RepoSnapshot, include_listing: bool = True) -> str:
    lines = [
        "## Repository Snapshot",
        f"Root: {snapshot.root}",
        f"Files scanned: {snapshot.file_count}",
    ]
    if snapshot.scanned_at:
        lines.append(f"Scanned at: {snapshot.scanned_at}")
    if not include_listing:
        return "\n".join(lines)

    if not snapshot.files:
        lines.append("No repository files are available. Do not cite file paths.")
        return "\n".join(lines)

    lines.append(f"\nFile list (first {MAX_LISTED_FILES}):")
    for entry in snapshot.files[:MAX_LISTED_FILES]:
        kind = "DIR" if entry.is_directory else f"{entry.size} bytes"
        lines.append(f"  - {entry.path} ({kind})")
    if len(snapshot.files) > MAX_LISTED_FILES:
        lines.append(f"... and {len(snapshot.files) - MAX_LISTED_FILES} more entries")
    return "\n".join(lines)


def related_section(related: dict[str, str] | None) -> str:
    if not related:
        return ""
    blocks = []
    used = 0
    for path, content in related.items():
        block = f"### {path}\n```\n{content}\n```"
        if used + len(block) > MAX_RELATED_CHARS:
            logger.warning("Related file section truncated at %d chars; %s and later files dropped", used, path)
            break
        blocks.append(block)
        used += len(block)
    if not blocks:
        return ""
    return "## Related Files (full content)\n\n" + "\n\n".join(blocks)


def context_blocks(request: PanelRequest) -> str:
    blocks = []
    for title, value in (
        ("Logs", request.logs),
        ("Stack Traces", request.stack_traces),
        ("Agent Output", request.agent_output),
        ("Current Prompt", request.current_prompt),
    ):
        if value:
            blocks.append(f"## {title}\n```\n{value}\n```")
    return "\n\n".join(blocks)


def _join(*parts: str) -> str:
    return "\n\n".join(p.strip() for p in parts if p and p.strip())


def _report_json(report: Report) -> str:
    return json.dumps(report.to_dict(), indent=2)


def build_lead_prompt(
    mode_prompt: str,
    request: PanelRequest,
    snapshot: RepoSnapshot,
    related: dict[str, str] | None = None,
) -> str:
    role = """## Your Role: Lead Thinker
You are the first stage of the panel. A Reviewer will critique your draft and a
Synthesizer will merge both into the final report.
- Reason deeply and take a firm position. Never stay neutral.
- Identify risks, contradictions and causal chains.
- Produce 5 to 15 findings with severity 1-10, each backed by evidence.
- Cite file paths with line ranges for every claim. Never invent files or APIs."""
    output = (
        "## Output\nRespond with **only** a valid JSON object, no commentary and no code fences:\n\n"
        + REPORT_SCHEMA.replace("<mode>", request.mode)
    )
    return _join(
        role,
        "## Mode Instructions\n" + mode_prompt,
        repo_section(snapshot),
        related_section(related),
        context_blocks(request),
        f"## Question\n{request.question}",
        output,
    )


def build_review_prompt(mode_prompt: str, request: PanelRequest, snapshot: RepoSnapshot, lead_draft: Report) -> str:
    role = """## Your Role: Reviewer
You are the second stage. The Lead Thinker produced the draft report below.
- Attack its logic and expose hidden flaws and contradictions.
- Check every cited file path against the repository file list.
- Flag missing evidence, weak conclusions and invented files or APIs.
- Add risks the draft missed.
- Optionally return a full patched report."""
    output = "## Output\nRespond with **only** a valid JSON object:\n\n" + REVIEW_SCHEMA
    return _join(
        role,
        "## Mode Instructions\n" + mode_prompt,
        repo_section(snapshot),
        f"## Question\n{request.question}",
        "## Lead Draft\n```json\n" + _report_json(lead_draft) + "\n```",
        output,
    )


def build_synthesis_prompt(
    mode_prompt: str,
    request: PanelRequest,
    snapshot: RepoSnapshot,
    lead_draft: Report,
    review: ReviewDraft,
) -> str:
    role = """## Your Role: Synthesizer
You are the final stage. Merge the lead draft with the reviewer's critique.
- Keep the strongest findings and apply the reviewer's patch where it is right.
- Remove contradictions and duplicated findings.
- Make sure every finding cites evidence with file paths.
- Normalize severities (10 = critical, 1 = minor).
- Rate how strongly the Lead and Reviewer disagree as metadata.disagreementScore:
  0-30 mostly agree, 31-70 some differences, 71-100 strong disagreement."""
    if request.structured:
        output = (
            "## Output\nRespond with **only** a valid JSON object. Add a "
            '"metadata": {"disagreementScore": 0} member to the report:\n\n'
            + REPORT_SCHEMA.replace("<mode>", request.mode)
        )
    else:
        output = (
            "## Output\nWrite the final answer as natural prose. Use paragraphs, headings or bullet "
            "points as they help clarity. No JSON. Ground every claim in repository files that appear "
            "in the file list."
        )
    return _join(
        role,
        "## Mode Instructions\n" + mode_prompt,
        repo_section(snapshot, include_listing=not request.structured),
        f"## Question\n{request.question}",
        "## Lead Draft\n```json\n" + _report_json(lead_draft) + "\n```",
        "## Review\n```json\n" + json.dumps(review.to_dict(), indent=2) + "\n```",
        output,
    )
