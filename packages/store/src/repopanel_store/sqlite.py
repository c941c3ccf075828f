"""SQLiteStore: local file-based report history.

Schema:
  reports: one row per completed panel run. Findings live in a JSON column
           so read paths stay single-table.
"""

from __future__ import annotations

import json
import logging
import sqlite3

from repopanel_store.base import BaseStore
from repopanel_store.models import FindingRecord, ReportRecord

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS reports (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    repo                 TEXT NOT NULL,
    mode                 TEXT NOT NULL,
    question             TEXT,
    summary              TEXT,
    created_at           TEXT,
    overall_risk_score   INTEGER DEFAULT 0,
    confidence           INTEGER DEFAULT 0,
    disagreement_score   INTEGER,
    self_check_passed    INTEGER DEFAULT 0,
    hallucination_count  INTEGER DEFAULT 0,
    recommendation_count INTEGER DEFAULT 0,
    models_json          TEXT DEFAULT '[]',
    findings_json        TEXT DEFAULT '[]'
);
CREATE INDEX IF NOT EXISTS idx_reports_repo ON reports (repo);
CREATE INDEX IF NOT EXISTS idx_reports_mode ON reports (repo, mode);
"""


class SQLiteStore(BaseStore):
    """Stores report history in a local SQLite database file.

    The database path defaults to `.repopanel.db` in the current working
    directory. Configure via .repopanel.yml: `store_path: /path/to/repopanel.db`.
    """

    def __init__(self, db_path: str = ".repopanel.db"):
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def save(self, record: ReportRecord) -> None:
        findings_json = json.dumps(
            [
                {
                    "id": f.id,
                    "title": f.title,
                    "severity": f.severity,
                    "impact_area": f.impact_area,
                    "files": f.files,
                }
                for f in record.findings
            ]
        )
        self._conn.execute(
            """
            INSERT INTO reports
              (repo, mode, question, summary, created_at, overall_risk_score, confidence,
               disagreement_score, self_check_passed, hallucination_count, recommendation_count,
               models_json, findings_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.repo,
                record.mode,
                record.question,
                record.summary,
                record.created_at,
                record.overall_risk_score,
                record.confidence,
                record.disagreement_score,
                int(record.self_check_passed),
                record.hallucination_count,
                record.recommendation_count,
                json.dumps(record.models_used),
                findings_json,
            ),
        )
        self._conn.commit()
        logger.debug("Saved %s report for %s", record.mode, record.repo)

    def list_reports(self, repo: str, mode: str | None = None) -> list[ReportRecord]:
        if mode is not None:
            rows = self._conn.execute(
                "SELECT * FROM reports WHERE repo=? AND mode=? ORDER BY created_at, id",
                (repo, mode),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM reports WHERE repo=? ORDER BY created_at, id",
                (repo,),
            ).fetchall()

        return [self._row_to_record(r) for r in rows]

    def close(self) -> None:
        self._conn.close()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ReportRecord:
        findings = [
            FindingRecord(
                id=f.get("id", ""),
                title=f.get("title", ""),
                severity=f.get("severity", 5),
                impact_area=f.get("impact_area", "unknown"),
                files=list(f.get("files", [])),
            )
            for f in json.loads(row["findings_json"] or "[]")
        ]
        return ReportRecord(
            repo=row["repo"],
            mode=row["mode"],
            question=row["question"] or "",
            summary=row["summary"] or "",
            created_at=row["created_at"] or "",
            overall_risk_score=row["overall_risk_score"],
            confidence=row["confidence"],
            disagreement_score=row["disagreement_score"],
            self_check_passed=bool(row["self_check_passed"]),
            hallucination_count=row["hallucination_count"],
            recommendation_count=row["recommendation_count"],
            models_used=json.loads(row["models_json"] or "[]"),
            findings=findings,
        )
