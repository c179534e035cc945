"""Tests for the Prometheus registry exposition."""

from prometheus_client import generate_latest

from hls_pipeline.core.metrics import (
    JOBS_TOTAL,
    REGISTRY,
    exposition_registry,
    get_metrics,
    prepare_multiprocess_dir,
    set_app_info,
)
from hls_pipeline.modules.transcoding.workspace import WorkspaceManager


class TestMetricsExposition:
    """Tests for get_metrics."""

    def test_workspace_gauge_tracks_acquire_and_release(self, tmp_path) -> None:
        manager = WorkspaceManager(tmp_path)
        before = REGISTRY.get_sample_value("transcode_workspaces_active") or 0.0

        workspace = manager.acquire("job-metrics", 1)
        assert REGISTRY.get_sample_value("transcode_workspaces_active") == before + 1

        manager.release(workspace)
        assert REGISTRY.get_sample_value("transcode_workspaces_active") == before

    def test_exposition_includes_app_info(self, monkeypatch) -> None:
        monkeypatch.delenv("PROMETHEUS_MULTIPROC_DIR", raising=False)
        set_app_info("0.1.0", "test")

        text = get_metrics().decode()

        assert "hls_pipeline_app_info{" in text
        assert 'version="0.1.0"' in text
        assert "transcode_jobs_total" in text


class TestMultiprocessExposition:
    """Tests for serving metrics written by pool processes."""

    def test_single_process_serves_live_registry(self, monkeypatch) -> None:
        monkeypatch.delenv("PROMETHEUS_MULTIPROC_DIR", raising=False)

        assert exposition_registry() is REGISTRY

    def test_multiprocess_registry_excludes_live_metrics(self, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv("PROMETHEUS_MULTIPROC_DIR", str(tmp_path))
        JOBS_TOTAL.labels(outcome="done").inc()

        registry = exposition_registry()
        text = generate_latest(registry).decode()

        assert registry is not REGISTRY
        assert 'transcode_jobs_total{outcome="done"}' not in text

    def test_prepare_removes_previous_run_files(self, tmp_path, monkeypatch) -> None:
        directory = tmp_path / "prom"
        monkeypatch.setenv("PROMETHEUS_MULTIPROC_DIR", str(directory))
        directory.mkdir()
        (directory / "counter_1234.db").write_bytes(b"")
        (directory / "gauge_livesum_1234.db").write_bytes(b"")
        (directory / "keep.txt").write_text("x")

        assert prepare_multiprocess_dir() == 2
        assert [path.name for path in directory.iterdir()] == ["keep.txt"]
