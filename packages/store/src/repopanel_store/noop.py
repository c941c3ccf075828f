"""No-op store, the default when no store is configured.

Reports are printed but not persisted anywhere. Using a NoOpStore rather
than None lets the CLI always call store.save() without conditional checks.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from repopanel_store.base import BaseStore

if TYPE_CHECKING:
    from repopanel_store.models import ReportRecord


class NoOpStore(BaseStore):
    """Silently discards all records. Set ``store: sqlite`` in .repopanel.yml for history."""

    def save(self, record: ReportRecord) -> None:
        pass

    def list_reports(self, repo: str, mode: str | None = None) -> list[ReportRecord]:
        return []
