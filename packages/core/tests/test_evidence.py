"""Tests for local evidence stores and snapshots."""

from repopanel_core.evidence import (
    MAX_FILE_BYTES,
    PREVIEW_BYTES,
    TRUNCATION_MARKER,
    CompositeEvidenceStore,
    EvidenceStore,
    LocalEvidenceStore,
    build_snapshot,
    is_excluded,
    load_related_files,
    merge_snapshots,
    summarize_snapshot,
    truncate_content,
)
from repopanel_core.models import FileEntry, RepoSnapshot


def _make_repo(root):
    (root / "src" / "app").mkdir(parents=True)
    (root / "src" / "app" / "main.py").write_text("print('main')\n")
    (root / "src" / "app" / "util.py").write_text("def helper(): pass\n")
    (root / "README.md").write_text("# Demo\n")
    (root / "logo.png").write_bytes(b"\x89PNG")
    (root / "node_modules" / "dep").mkdir(parents=True)
    (root / "node_modules" / "dep" / "index.js").write_text("x")
    (root / ".git").mkdir()
    (root / ".git" / "HEAD").write_text("ref")
    (root / ".env").write_text("SECRET=1")
    (root / "package-lock.json").write_text("{}")
    (root / "migrations").mkdir()
    (root / "migrations" / "0001.py").write_text("pass")
    return root


class _DictStore(EvidenceStore):
    def __init__(self, root, files):
        self.root = root
        self.files = files

    def list_files(self):
        return [FileEntry(path=p, size=len(c)) for p, c in self.files.items()]

    def load_content(self, path):
        return self.files.get(path)


class TestExclusion:
    def test_glob_on_basename(self):
        assert is_excluded("static/app.min.js", ["*.min.js"])

    def test_directory_prefix(self):
        assert is_excluded("migrations/0001.py", ["migrations/"])
        assert is_excluded("app/migrations/0001.py", ["migrations"])

    def test_not_excluded(self):
        assert not is_excluded("src/main.py", ["*.min.js", "migrations/"])


class TestTruncation:
    def test_small_content_unchanged(self):
        assert truncate_content(b"hello") == "hello"

    def test_large_content_truncated_to_preview(self):
        text = truncate_content(b"a" * (MAX_FILE_BYTES + 1))
        assert text == "a" * PREVIEW_BYTES + TRUNCATION_MARKER


class TestLocalEvidenceStore:
    def test_lists_files_and_directories(self, tmp_path):
        store = LocalEvidenceStore(str(_make_repo(tmp_path)))
        paths = {e.path: e for e in store.list_files()}
        assert "src/app/main.py" in paths
        assert "README.md" in paths
        assert "logo.png" in paths
        assert paths["src"].is_directory is True
        assert paths["src/app/main.py"].size == len("print('main')\n")
        assert paths["src/app/main.py"].last_modified_at

    def test_skips_excluded_hidden_and_lock_files(self, tmp_path):
        store = LocalEvidenceStore(str(_make_repo(tmp_path)), exclude=["migrations/"])
        paths = {e.path for e in store.list_files()}
        assert not any(p.startswith("node_modules") for p in paths)
        assert not any(p.startswith(".git") for p in paths)
        assert ".env" not in paths
        assert "package-lock.json" not in paths
        assert not any(p.startswith("migrations") for p in paths)

    def test_max_depth(self, tmp_path):
        store = LocalEvidenceStore(str(_make_repo(tmp_path)), max_depth=1)
        paths = {e.path for e in store.list_files()}
        assert "src" in paths
        assert "src/app" not in paths
        assert "src/app/main.py" not in paths

    def test_missing_root_gives_empty_listing(self, tmp_path):
        assert LocalEvidenceStore(str(tmp_path / "missing")).list_files() == []

    def test_load_content(self, tmp_path):
        store = LocalEvidenceStore(str(_make_repo(tmp_path)))
        assert store.load_content("src/app/main.py") == "print('main')\n"

    def test_binary_and_missing_files_return_none(self, tmp_path):
        store = LocalEvidenceStore(str(_make_repo(tmp_path)))
        assert store.load_content("logo.png") is None
        assert store.load_content("nope.py") is None

    def test_path_traversal_is_refused(self, tmp_path):
        repo = tmp_path / "repo"
        repo.mkdir()
        (tmp_path / "secret.txt").write_text("secret")
        assert LocalEvidenceStore(str(repo)).load_content("../secret.txt") is None


class TestSnapshots:
    def test_build_snapshot(self, tmp_path):
        store = LocalEvidenceStore(str(_make_repo(tmp_path)))
        snapshot = build_snapshot(store)
        assert snapshot.root == store.root
        assert snapshot.scanned_at
        assert snapshot.file_count == len(snapshot.paths())
        assert "src/app/util.py" in snapshot.paths()

    def test_composite_store_mounts_externals(self):
        primary = _DictStore("/repo", {"main.py": "main"})
        external = _DictStore("org/lib", {"lib/core.py": "core"})
        store = CompositeEvidenceStore(primary, {"lib": external})
        paths = [e.path for e in store.list_files()]
        assert paths == ["main.py", "[EXTERNAL:lib]/lib/core.py"]
        assert store.load_content("[EXTERNAL:lib]/lib/core.py") == "core"
        assert store.load_content("[EXTERNAL:other]/x.py") is None
        assert store.load_content("main.py") == "main"

    def test_merge_snapshots(self):
        primary = RepoSnapshot(root="/repo", files=(FileEntry(path="a.py"),), scanned_at="t")
        external = RepoSnapshot(root="/work/shared-lib/", files=(FileEntry(path="b.py"),))
        merged = merge_snapshots(primary, [external])
        assert merged.paths() == ["a.py", "[EXTERNAL:shared-lib]/b.py"]
        assert merged.root == "/repo"

    def test_summarize_snapshot(self):
        snapshot = RepoSnapshot(
            root="/repo",
            files=(
                FileEntry(path="src", is_directory=True),
                FileEntry(path="src/a.py", size=10),
                FileEntry(path="src/b.py", size=5),
                FileEntry(path="Makefile", size=1),
            ),
        )
        summary = summarize_snapshot(snapshot)
        assert summary["total_files"] == 3
        assert summary["total_directories"] == 1
        assert summary["total_bytes"] == 16
        assert summary["top_extensions"][0] == (".py", 2)


class TestRelatedFiles:
    def _snapshot(self, store):
        return RepoSnapshot(root=store.root, files=tuple(store.list_files()))

    def test_glob_and_substring_patterns(self):
        store = _DictStore("/repo", {"src/a.py": "A", "src/b.js": "B", "docs/readme.md": "R"})
        related = load_related_files(self._snapshot(store), store, ["*.py", "readme"])
        assert related == {"src/a.py": "A", "docs/readme.md": "R"}

    def test_per_pattern_cap(self):
        files = {f"src/m{i:02d}.py": str(i) for i in range(15)}
        store = _DictStore("/repo", files)
        related = load_related_files(self._snapshot(store), store, ["*.py"])
        assert len(related) == 10

    def test_overall_cap(self):
        files = {f"src/m{i:02d}.py": str(i) for i in range(15)}
        store = _DictStore("/repo", files)
        related = load_related_files(self._snapshot(store), store, ["m0", "m1"], max_files=12)
        assert len(related) == 12

    def test_unreadable_files_are_skipped(self):
        store = _DictStore("/repo", {"src/a.py": "A"})
        snapshot = RepoSnapshot(root="/repo", files=(FileEntry(path="src/ghost.py"), FileEntry(path="src/a.py")))
        assert load_related_files(snapshot, store, ["src/"]) == {"src/a.py": "A"}
