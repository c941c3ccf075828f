"""GitHub-backed evidence store.

Every listing and content fetch is pinned to one ref (a branch name or a
commit SHA resolved at construction), so all evidence in a run comes from the
same snapshot of the repository regardless of pushes made meanwhile.
"""

from __future__ import annotations

import logging

from github import Auth, Github, GithubException

from repopanel_core.evidence import (
    EXCLUDED_DIRS,
    LOCK_FILES,
    MAX_FILE_BYTES,
    EvidenceStore,
    is_excluded,
    is_text_file,
    truncate_content,
)
from repopanel_core.models import FileEntry

logger = logging.getLogger(__name__)


def get_repo(repo_name: str, token: str | None):
    client = Github(auth=Auth.Token(token)) if token else Github()
    return client.get_repo(repo_name)


class GitHubEvidenceStore(EvidenceStore):
    def __init__(
        self,
        repo,
        ref: str | None = None,
        exclude: list[str] | None = None,
        max_file_bytes: int = MAX_FILE_BYTES,
    ):
        self.repo = repo
        self.ref = ref or repo.get_branch(repo.default_branch).commit.sha
        self.root = repo.full_name
        self.exclude = list(exclude or [])
        self.max_file_bytes = max_file_bytes

    def list_files(self) -> list[FileEntry]:
        try:
            tree = self.repo.get_git_tree(self.ref, recursive=True)
        except GithubException as e:
            logger.warning("Could not list %s@%s: %s", self.root, self.ref, e)
            return []

        entries = []
        for item in tree.tree:
            parts = item.path.split("/")
            if any(p in EXCLUDED_DIRS or p.startswith(".") for p in parts):
                continue
            if parts[-1] in LOCK_FILES or is_excluded(item.path, self.exclude):
                continue
            if item.type == "tree":
                entries.append(FileEntry(path=item.path, is_directory=True))
            elif item.type == "blob":
                entries.append(FileEntry(path=item.path, size=item.size or 0))
        return entries

    def load_content(self, path: str) -> str | None:
        if not is_text_file(path):
            return None
        try:
            raw = self.repo.get_contents(path, ref=self.ref).decoded_content
        except GithubException:
            # Path is in the tree but not readable as a file (submodule, symlink).
            return None
        return truncate_content(raw, self.max_file_bytes)
