"""Abstract store interface.

Any storage backend (SQLite, Postgres, S3) implements this interface. The
CLI depends on BaseStore, not on a concrete backend, so backends are
swappable without touching CLI code.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from repopanel_store.models import ReportRecord


class BaseStore(ABC):
    """Pluggable persistence layer for panel report history."""

    @abstractmethod
    def save(self, record: ReportRecord) -> None:
        """Persist a completed report record."""

    @abstractmethod
    def list_reports(self, repo: str, mode: str | None = None) -> list[ReportRecord]:
        """Return reports for a repository, oldest first, optionally filtered by mode.

        Returns an empty list if no reports exist. Never raises.
        """

    def close(self) -> None:
        """Release any resources held by the store (connections, file handles).

        Default is a no-op so callers can always call close() safely.
        """
