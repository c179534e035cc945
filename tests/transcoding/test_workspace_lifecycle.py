"""Tests for per-attempt workspace allocation and release."""

from pathlib import Path

import pytest

from hls_pipeline.modules.transcoding.errors import ResourceError
from hls_pipeline.modules.transcoding.workspace import WorkspaceManager


class TestWorkspaceAcquire:
    """Tests for WorkspaceManager.acquire."""

    def test_acquire_creates_directory_tree(self, workspace_root: Path) -> None:
        manager = WorkspaceManager(workspace_root)

        workspace = manager.acquire("job-1", attempt=1)

        assert workspace.path == workspace_root / "job-1-a1"
        assert workspace.input_dir.is_dir()
        assert workspace.work_dir.is_dir()
        assert workspace.package_dir.is_dir()

    def test_attempts_get_distinct_workspaces(self, workspace_root: Path) -> None:
        manager = WorkspaceManager(workspace_root)

        first = manager.acquire("job-1", attempt=1)
        second = manager.acquire("job-1", attempt=2)

        assert first.path != second.path
        assert first.path.is_dir() and second.path.is_dir()

    def test_existing_path_raises_resource_error(self, workspace_root: Path) -> None:
        manager = WorkspaceManager(workspace_root)
        manager.acquire("job-1", attempt=1)

        with pytest.raises(ResourceError):
            manager.acquire("job-1", attempt=1)

    def test_unwritable_root_raises_resource_error(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("file")
        manager = WorkspaceManager(blocker / "root")

        with pytest.raises(ResourceError):
            manager.acquire("job-1")


class TestWorkspaceRelease:
    """Tests for WorkspaceManager.release and session."""

    def test_release_removes_tree(self, workspace_root: Path) -> None:
        manager = WorkspaceManager(workspace_root)
        workspace = manager.acquire("job-1")
        (workspace.work_dir / "720p").mkdir()
        (workspace.work_dir / "720p" / "segment_000.ts").write_bytes(b"data")

        assert manager.release(workspace) is True
        assert not workspace.path.exists()

    def test_double_release_is_noop(self, workspace_root: Path) -> None:
        manager = WorkspaceManager(workspace_root)
        workspace = manager.acquire("job-1")

        assert manager.release(workspace) is True
        assert manager.release(workspace) is False

    def test_release_of_missing_tree_does_not_raise(self, workspace_root: Path) -> None:
        manager = WorkspaceManager(workspace_root)
        workspace = manager.acquire("job-1")
        workspace.path.rename(workspace_root / "moved")

        assert manager.release(workspace) is True

    def test_session_releases_on_exception(self, workspace_root: Path) -> None:
        manager = WorkspaceManager(workspace_root)

        with pytest.raises(RuntimeError):
            with manager.session("job-1", 3) as workspace:
                path = workspace.path
                raise RuntimeError("stage crashed")

        assert not path.exists()
        assert workspace.released


class TestWorkspacePurge:
    """Tests for WorkspaceManager.purge."""

    def test_purge_removes_trees_left_by_killed_attempts(self, workspace_root: Path) -> None:
        manager = WorkspaceManager(workspace_root)
        abandoned = manager.acquire("job-1", attempt=1)
        (abandoned.input_dir / "source.mp4").write_bytes(b"\x00" * 64)
        manager.acquire("job-2", attempt=3)

        assert manager.purge() == 2
        assert list(workspace_root.iterdir()) == []

        fresh = manager.acquire("job-1", attempt=1)
        assert fresh.path.is_dir()

    def test_purge_without_root_is_noop(self, tmp_path: Path) -> None:
        assert WorkspaceManager(tmp_path / "missing").purge() == 0
