"""
Tests for the build artifact cache.
"""
import os
import tarfile
import time

import pytest

from cartserver.core.artifact_store import BuildArtifactStore, human_size
from cartserver.core.errors import InvalidReference

COMMIT_A = "a" * 40
COMMIT_B = "b" * 40


class TestHumanSize:
    """Tests for human_size()."""

    @pytest.mark.parametrize("size,expected", [
        (0, "0.0 B"),
        (9, "9.0 B"),
        (10, "10 B"),
        (512, "512 B"),
        (1024, "1.0 KB"),
        (5120, "5.0 KB"),
        (9 * 1024 + 512, "9.5 KB"),
        (10240, "10 KB"),
        (3 * 1024 * 1024, "3.0 MB"),
        (200 * 1024 ** 3, "200 GB"),
        (5 * 1024 ** 5, "5120 TB"),
    ])
    def test_thresholds(self, size, expected):
        """Test unit choice and the decimal threshold."""
        assert human_size(size) == expected


class TestPaths:
    """Tests for derived file locations."""

    def test_paths_are_deterministic(self, tmp_path):
        """Test that every location derives from the commit id only."""
        store = BuildArtifactStore(tmp_path / "builds")
        root = store.build_root

        assert store.artifact_path(COMMIT_A) == root / f"{COMMIT_A}.tar.gz"
        assert store.working_directory(COMMIT_A) == root / f"{COMMIT_A}.build"
        assert store.log_path(COMMIT_A) == root / f"{COMMIT_A}.log"
        assert BuildArtifactStore(tmp_path / "builds").artifact_path(COMMIT_A) == store.artifact_path(COMMIT_A)

    def test_build_root_created(self, tmp_path):
        """Test that the build root is created on construction."""
        BuildArtifactStore(tmp_path / "nested" / "builds")
        assert (tmp_path / "nested" / "builds").is_dir()

    @pytest.mark.parametrize("commit_id", ["master", "../escape", "a" * 39, ""])
    def test_rejects_unresolved_ids(self, tmp_path, commit_id):
        """Test that only full commit ids name files."""
        store = BuildArtifactStore(tmp_path)
        with pytest.raises(InvalidReference):
            store.artifact_path(commit_id)
        with pytest.raises(InvalidReference):
            store.working_directory(commit_id)


class TestStoreArtifact:
    """Tests for packaging and listing."""

    def _source(self, tmp_path):
        source = tmp_path / "src"
        (source / "out").mkdir(parents=True)
        (source / "out" / "result.txt").write_text("built\n")
        (source / "README.md").write_text("hello\n")
        return source

    def test_store_and_has_artifact(self, tmp_path):
        """Test that a stored artifact is visible and complete."""
        store = BuildArtifactStore(tmp_path / "builds")
        assert store.has_artifact(COMMIT_A) is False

        info = store.store_artifact(COMMIT_A, self._source(tmp_path))

        assert store.has_artifact(COMMIT_A) is True
        assert info.size_bytes > 0
        with tarfile.open(info.path, "r:gz") as tar:
            names = set(tar.getnames())
        assert {"README.md", "out", "out/result.txt"} <= names

    def test_no_temp_files_left(self, tmp_path):
        """Test that packaging leaves only the final artifact."""
        store = BuildArtifactStore(tmp_path / "builds")
        store.store_artifact(COMMIT_A, self._source(tmp_path))
        assert [p.name for p in store.build_root.iterdir()] == [f"{COMMIT_A}.tar.gz"]

    def test_failed_packaging_leaves_nothing(self, tmp_path):
        """Test that a failure never produces a partial artifact."""
        store = BuildArtifactStore(tmp_path / "builds")
        with pytest.raises(OSError):
            store.store_artifact(COMMIT_A, tmp_path / "missing")
        assert store.has_artifact(COMMIT_A) is False
        assert list(store.build_root.iterdir()) == []

    def test_list_newest_first(self, tmp_path):
        """Test listing order and contents."""
        store = BuildArtifactStore(tmp_path / "builds")
        source = self._source(tmp_path)
        older = store.store_artifact(COMMIT_A, source)
        store.store_artifact(COMMIT_B, source)

        past = time.time() - 3600
        os.utime(older.path, (past, past))
        (store.build_root / "notes.tar.gz").write_text("ignored")
        store.working_directory(COMMIT_A).mkdir()

        listed = store.list_artifacts()
        assert [a.commit_id for a in listed] == [COMMIT_B, COMMIT_A]
        assert listed[0].human_size == human_size(listed[0].size_bytes)


class TestStartupCleanup:
    """Tests for run_startup_cleanup()."""

    def test_removes_temp_files_only(self, tmp_path):
        """Test that interrupted packaging leftovers are removed."""
        store = BuildArtifactStore(tmp_path / "builds")
        root = store.build_root
        (root / f".{COMMIT_A}.x1y2.tmp").write_bytes(b"partial")
        (root / f".{COMMIT_B}.z3.tmp").write_bytes(b"partial")
        (root / f"{COMMIT_A}.tar.gz").write_bytes(b"complete")

        assert store.run_startup_cleanup() == 2
        assert [p.name for p in root.iterdir()] == [f"{COMMIT_A}.tar.gz"]
        assert store.run_startup_cleanup() == 0
