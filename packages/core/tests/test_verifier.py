"""Tests for the evidence verifier."""

from repopanel_core.models import NO_REPO_MODE, Evidence, FileEntry, Finding, Report, RepoSnapshot
from repopanel_core.verifier import NOT_VERIFIED_MARKER, clean_path, evidence_mode, path_exists, verify

SNAPSHOT = RepoSnapshot(
    root="/repo",
    files=(
        FileEntry(path="src", is_directory=True),
        FileEntry(path="src/app/data.py", size=10),
        FileEntry(path="src/app/main.py", size=10),
        FileEntry(path="[EXTERNAL:lib]/core/util.py", size=10),
    ),
)
ALL_PATHS = [entry.path for entry in SNAPSHOT.files]


def _report(*paths, notes=None):
    evidence = tuple(Evidence(file_path=p, reasoning="because") for p in paths)
    return Report(
        mode="pipeline_diagnosis",
        question="q",
        summary="s",
        findings=(Finding(id="f1", title="t", evidence=evidence),),
        notes=notes,
    )


class TestCleanPath:
    def test_strips_line_range(self):
        assert clean_path("src/a.py:20-50") == "src/a.py"
        assert clean_path("src/a.py:7") == "src/a.py"

    def test_strips_leading_dot_slash(self):
        assert clean_path("./src/a.py") == "src/a.py"

    def test_keeps_external_prefix(self):
        assert clean_path("[EXTERNAL:lib]/core/util.py:3-4") == "[EXTERNAL:lib]/core/util.py"


class TestPathExists:
    def test_exact_match(self):
        assert path_exists("src/app/main.py", ALL_PATHS)

    def test_suffix_match_at_segment_boundary(self):
        assert path_exists("app/main.py:1-5", ALL_PATHS)

    def test_partial_basename_does_not_match(self):
        assert not path_exists("a.py", ALL_PATHS)

    def test_directory_entries_are_evidence(self):
        assert path_exists("src", ALL_PATHS)
        assert path_exists("./src", ALL_PATHS)

    def test_external_path(self):
        assert path_exists("[EXTERNAL:lib]/core/util.py:10", ALL_PATHS)


class TestVerify:
    def test_all_verified(self):
        report = _report("src/app/main.py:1-10", "./src/app/data.py")
        verified, count = verify(report, SNAPSHOT)
        assert count == 0
        assert verified is report

    def test_unverified_is_annotated_not_dropped(self):
        verified, count = verify(_report("src/app/main.py", "src/ghost.py:3"), SNAPSHOT)
        assert count == 1
        evidence = verified.findings[0].evidence
        assert len(evidence) == 2
        assert evidence[0].reasoning == "because"
        assert evidence[1].reasoning == "because" + NOT_VERIFIED_MARKER
        assert "[WARNING: 1 file path(s) not verified in repository]" in verified.notes

    def test_existing_notes_are_kept(self):
        verified, _ = verify(_report("ghost.py", notes="Earlier note"), SNAPSHOT)
        assert verified.notes.startswith("Earlier note\n")

    def test_idempotent(self):
        once, first_count = verify(_report("ghost.py"), SNAPSHOT)
        twice, second_count = verify(once, SNAPSHOT)
        assert first_count == second_count == 1
        assert twice.findings == once.findings
        assert twice.notes == once.notes

    def test_no_repo_mode_skips_checks(self):
        empty = RepoSnapshot(root="/nowhere")
        report = _report("anything.py")
        verified, count = verify(report, empty)
        assert count == 0
        assert verified is report
        assert evidence_mode(empty) == NO_REPO_MODE

    def test_directories_only_snapshot_has_evidence(self):
        only_dirs = RepoSnapshot(root="/r", files=(FileEntry(path="src", is_directory=True),))
        assert evidence_mode(only_dirs) == "ON"
        _, count = verify(_report("src"), only_dirs)
        assert count == 0
        assert evidence_mode(None) == NO_REPO_MODE
        assert evidence_mode(SNAPSHOT) == "ON"

    def test_cited_directory_is_verified(self):
        verified, count = verify(_report("src", "src/app/main.py"), SNAPSHOT)
        assert count == 0
        assert verified.notes is None

    def test_evidence_without_path_is_unverified(self):
        report = Report(
            mode="pipeline_diagnosis",
            question="q",
            findings=(Finding(id="f1", title="t", evidence=(Evidence(file_path="", snippet="lock.acquire()"),)),),
        )
        verified, count = verify(report, SNAPSHOT)
        assert count == 1
        evidence = verified.findings[0].evidence[0]
        assert evidence.snippet == "lock.acquire()"
        assert evidence.reasoning == NOT_VERIFIED_MARKER.strip()
