"""Evidence Verifier.

Cross-checks every cited file path against the repository snapshot. Nothing
is dropped: unverifiable evidence stays in the report with a marker appended
to its reasoning, and the number of such citations is returned alongside the
report as the hallucination count.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from repopanel_core.models import EVIDENCE_ON, NO_REPO_MODE, Evidence, Report, RepoSnapshot, append_note

logger = logging.getLogger(__name__)

NOT_VERIFIED_MARKER = " [NOT VERIFIED IN REPOSITORY]"


def evidence_mode(snapshot: RepoSnapshot | None) -> str:
    if snapshot is None or not snapshot.files:
        return NO_REPO_MODE
    return EVIDENCE_ON


def clean_path(file_path: str) -> str:
    """Strip a trailing ``:line`` or ``:start-end`` suffix and a leading ``./``."""
    path = file_path.strip().split(":")[0] if not file_path.startswith("[EXTERNAL:") else _clean_external(file_path)
    while path.startswith("./"):
        path = path[2:]
    return path


def _clean_external(file_path: str) -> str:
    # "[EXTERNAL:name]/src/a.py:10-20" keeps its prefix; only the suffix goes.
    prefix, sep, rest = file_path.strip().partition("]")
    return prefix + sep + rest.split(":")[0]


def path_exists(file_path: str, known_paths: list[str]) -> bool:
    path = clean_path(file_path)
    if not path:
        return False
    return any(_same_or_suffix(path, known) for known in known_paths)


def _same_or_suffix(a: str, b: str) -> bool:
    # Suffix matches only count at a path-segment boundary: "a.py" does not match "data.py".
    return a == b or b.endswith("/" + a) or a.endswith("/" + b)


def verify(report: Report, snapshot: RepoSnapshot) -> tuple[Report, int]:
    """Return ``(report', hallucination_count)``.

    In NO_REPO_MODE there is nothing to check against: the report comes back
    unchanged with a count of zero. Annotation is idempotent, so verifying an
    already verified report adds no second marker.
    """
    if evidence_mode(snapshot) == NO_REPO_MODE:
        return report, 0

    # Directory entries count: citing "src" is a reference to something that exists.
    known_paths = [entry.path for entry in snapshot.files]
    count = 0
    findings = []
    for finding in report.findings:
        evidence = []
        for item in finding.evidence:
            if path_exists(item.file_path, known_paths):
                evidence.append(item)
                continue
            count += 1
            evidence.append(_mark_unverified(item))
        findings.append(replace(finding, evidence=tuple(evidence)))

    if count == 0:
        return report, 0

    logger.warning("%d cited file path(s) not found in %s", count, snapshot.root)
    warning = f"[WARNING: {count} file path(s) not verified in repository]"
    notes = report.notes if report.notes and warning in report.notes else append_note(report.notes, warning)
    return replace(report, findings=tuple(findings), notes=notes), count


def _mark_unverified(item: Evidence) -> Evidence:
    if item.reasoning.endswith(NOT_VERIFIED_MARKER.strip()):
        return item
    return replace(item, reasoning=f"{item.reasoning}{NOT_VERIFIED_MARKER}".strip())
