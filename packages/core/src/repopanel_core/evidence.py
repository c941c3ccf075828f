"""Evidence stores and repository snapshots.

An evidence store is anything that can list a repository's paths and load a
file's content on demand. The panel only ever sees the resulting
``RepoSnapshot``; content is pulled lazily for the related files a request
names, never for the whole tree.
"""

from __future__ import annotations

import fnmatch
import logging
import os
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath

from repopanel_core.models import FileEntry, RepoSnapshot

logger = logging.getLogger(__name__)

EXCLUDED_DIRS = {
    "node_modules",
    ".next",
    ".git",
    "dist",
    "build",
    ".cache",
    "coverage",
    ".vscode",
    ".idea",
    "__pycache__",
    ".venv",
    "venv",
    ".tox",
    ".mypy_cache",
    ".pytest_cache",
}

LOCK_FILES = {
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "poetry.lock",
    "Pipfile.lock",
    "Cargo.lock",
    "uv.lock",
}

# Listed in the snapshot but never loaded as text.
BINARY_EXTENSIONS = {
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".svg",
    ".ico",
    ".webp",
    ".pdf",
    ".woff",
    ".woff2",
    ".ttf",
    ".mp4",
    ".mp3",
    ".zip",
    ".tar",
    ".gz",
    ".7z",
    ".db",
    ".sqlite",
    ".pyc",
}

MAX_FILE_BYTES = 500 * 1024
PREVIEW_BYTES = 10 * 1024
TRUNCATION_MARKER = "\n\n[... FILE TRUNCATED - TOO LARGE ...]"
MAX_DEPTH = 10

MAX_RELATED_FILES = 50
MATCHES_PER_PATTERN = 10

EXTERNAL_PREFIX = "[EXTERNAL:{name}]/"


def is_text_file(file_name: str) -> bool:
    return not any(file_name.lower().endswith(ext) for ext in BINARY_EXTENSIONS)


def is_excluded(path: str, patterns: list[str]) -> bool:
    """Return True if ``path`` matches any exclude pattern.

    Supports:
    - fnmatch globs on the full path: "src/generated/*.py"
    - fnmatch globs on the basename: "*.min.js"
    - Directory names/prefixes: "migrations/", "tests" (matches any file within that tree)
    """
    for pattern in patterns:
        if fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(path.rsplit("/", 1)[-1], pattern):
            return True
        name = pattern.rstrip("/")
        prefix = name + "/"
        if path == name or path.endswith("/" + name) or path.startswith(prefix) or ("/" + prefix) in path:
            return True
    return False


def truncate_content(raw: bytes, max_bytes: int = MAX_FILE_BYTES) -> str:
    if len(raw) > max_bytes:
        return raw[:PREVIEW_BYTES].decode("utf-8", errors="replace") + TRUNCATION_MARKER
    return raw.decode("utf-8", errors="replace")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------- #
# Stores                                                                  #
# ---------------------------------------------------------------------- #


class EvidenceStore(ABC):
    """Read-only view of one repository."""

    root: str = ""

    @abstractmethod
    def list_files(self) -> list[FileEntry]:
        """Return every file and directory entry, paths relative to the root."""

    @abstractmethod
    def load_content(self, path: str) -> str | None:
        """Return the file's text, a truncated preview for large files, or None."""


class LocalEvidenceStore(EvidenceStore):
    def __init__(
        self,
        root: str,
        exclude: list[str] | None = None,
        max_depth: int = MAX_DEPTH,
        max_file_bytes: int = MAX_FILE_BYTES,
    ):
        self.root = str(Path(root).resolve())
        self.exclude = list(exclude or [])
        self.max_depth = max_depth
        self.max_file_bytes = max_file_bytes

    def list_files(self) -> list[FileEntry]:
        entries: list[FileEntry] = []
        root = Path(self.root)
        if not root.is_dir():
            logger.warning("Repository root %s is not a directory", self.root)
            return entries

        for dirpath, dirnames, filenames in os.walk(root):
            rel_dir = Path(dirpath).relative_to(root)
            depth = len(rel_dir.parts)
            kept_dirs = []
            for name in sorted(dirnames):
                rel = (rel_dir / name).as_posix()
                if name in EXCLUDED_DIRS or name.startswith(".") or is_excluded(rel, self.exclude):
                    continue
                if depth + 1 > self.max_depth:
                    continue
                kept_dirs.append(name)
                entries.append(FileEntry(path=rel, is_directory=True))
            dirnames[:] = kept_dirs

            for name in sorted(filenames):
                rel = (rel_dir / name).as_posix()
                if name.startswith(".") or name in LOCK_FILES or is_excluded(rel, self.exclude):
                    continue
                full = Path(dirpath) / name
                try:
                    stat = full.stat()
                except OSError:
                    continue
                entries.append(
                    FileEntry(
                        path=rel,
                        size=stat.st_size,
                        last_modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
                    )
                )
        return entries

    def load_content(self, path: str) -> str | None:
        root = Path(self.root)
        full = (root / path).resolve()
        if root not in full.parents or not full.is_file() or not is_text_file(full.name):
            return None
        try:
            return truncate_content(full.read_bytes(), self.max_file_bytes)
        except OSError as e:
            logger.warning("Could not read %s: %s", full, e)
            return None


class CompositeEvidenceStore(EvidenceStore):
    """A primary store plus external stores mounted under ``[EXTERNAL:<name>]/``."""

    def __init__(self, primary: EvidenceStore, externals: dict[str, EvidenceStore]):
        self.primary = primary
        self.externals = dict(externals)
        self.root = primary.root

    def list_files(self) -> list[FileEntry]:
        entries = list(self.primary.list_files())
        for name, store in self.externals.items():
            prefix = EXTERNAL_PREFIX.format(name=name)
            entries.extend(replace(e, path=prefix + e.path) for e in store.list_files())
        return entries

    def load_content(self, path: str) -> str | None:
        if path.startswith("[EXTERNAL:"):
            name, _, inner = path[len("[EXTERNAL:") :].partition("]/")
            store = self.externals.get(name)
            return store.load_content(inner) if store is not None else None
        return self.primary.load_content(path)


# ---------------------------------------------------------------------- #
# Snapshots                                                               #
# ---------------------------------------------------------------------- #


def build_snapshot(store: EvidenceStore) -> RepoSnapshot:
    files = tuple(store.list_files())
    logger.info("Scanned %d entries under %s", len(files), store.root)
    return RepoSnapshot(root=store.root, files=files, scanned_at=_now())


def merge_snapshots(primary: RepoSnapshot, externals: list[RepoSnapshot]) -> RepoSnapshot:
    """Mount each external snapshot under ``[EXTERNAL:<basename of its root>]/``."""
    files = list(primary.files)
    for snapshot in externals:
        prefix = EXTERNAL_PREFIX.format(name=PurePosixPath(snapshot.root.rstrip("/")).name or snapshot.root)
        files.extend(replace(f, path=prefix + f.path) for f in snapshot.files)
    return RepoSnapshot(root=primary.root, files=tuple(files), scanned_at=primary.scanned_at or _now())


def _matches(path: str, pattern: str) -> bool:
    if any(ch in pattern for ch in "*?["):
        return fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(path.rsplit("/", 1)[-1], pattern)
    return pattern in path


def load_related_files(
    snapshot: RepoSnapshot,
    store: EvidenceStore,
    patterns: list[str] | tuple[str, ...],
    max_files: int = MAX_RELATED_FILES,
) -> dict[str, str]:
    """Load content for files matching ``patterns``.

    Patterns containing ``*``, ``?`` or ``[`` are globs; anything else is a
    substring of the path. At most MATCHES_PER_PATTERN files per pattern and
    ``max_files`` overall, in pattern order.
    """
    related: dict[str, str] = {}
    for pattern in patterns:
        matched = 0
        for entry in snapshot.files:
            if len(related) >= max_files:
                return related
            if matched >= MATCHES_PER_PATTERN:
                break
            if entry.is_directory or entry.path in related or not _matches(entry.path, pattern):
                continue
            content = entry.content if entry.content is not None else store.load_content(entry.path)
            if content is None:
                continue
            related[entry.path] = content
            matched += 1
    return related


def summarize_snapshot(snapshot: RepoSnapshot, top: int = 10) -> dict:
    files = [f for f in snapshot.files if not f.is_directory]
    extensions: Counter[str] = Counter(PurePosixPath(f.path).suffix or "(none)" for f in files)
    return {
        "root": snapshot.root,
        "total_files": len(files),
        "total_directories": len(snapshot.files) - len(files),
        "total_bytes": sum(f.size for f in files),
        "top_extensions": extensions.most_common(top),
        "scanned_at": snapshot.scanned_at,
    }
