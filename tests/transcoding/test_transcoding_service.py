"""Tests for running one job attempt through every pipeline stage."""

import asyncio
from pathlib import Path

import pytest

from hls_pipeline.modules.transcoding.errors import JobCancelled, ResourceError, SourceUnavailable
from hls_pipeline.modules.transcoding.fetcher import SourceFetcher
from hls_pipeline.modules.transcoding.ffmpeg import FFmpegTranscoder
from hls_pipeline.modules.transcoding.manifest import ManifestAssembler, parse_master_manifest
from hls_pipeline.modules.transcoding.publisher import ArtifactPublisher
from hls_pipeline.modules.transcoding.service import PipelineRequest, TranscodingService
from hls_pipeline.modules.transcoding.workspace import WorkspaceManager


@pytest.fixture
def service(storage, fake_binaries, workspace_root) -> TranscodingService:
    ffmpeg, ffprobe = fake_binaries
    return TranscodingService(
        workspaces=WorkspaceManager(workspace_root),
        fetcher=SourceFetcher(storage),
        transcoder=FFmpegTranscoder(ffmpeg_path=ffmpeg, ffprobe_path=ffprobe, parallelism=2),
        assembler=ManifestAssembler(),
        publisher=ArtifactPublisher(storage, key_prefix=""),
    )


def make_request(source_key: str, ladder, attempt: int = 1) -> PipelineRequest:
    return PipelineRequest(job_id="job-1", attempt=attempt, asset_id=42, source_key=source_key, ladder=ladder)


class TestTranscodingService:
    """Tests for TranscodingService.run."""

    @pytest.mark.asyncio
    async def test_successful_attempt_publishes_package(
        self, service, storage, source_video, ladder, workspace_root
    ) -> None:
        result = await service.run(make_request(source_video, ladder))

        assert result.success, result.error
        assert result.stage == "done"
        assert result.variant_labels == ["720p", "360p"]
        assert result.manifest_url.endswith("hls/video/42/master.m3u8")

        master_path = Path(storage._backend.base_path) / "hls/video/42/master.m3u8"
        uris = [s.uri for s in parse_master_manifest(master_path.read_text())]
        assert uris == ["720p/playlist.m3u8", "360p/playlist.m3u8"]
        assert list(workspace_root.iterdir()) == []

    @pytest.mark.asyncio
    async def test_missing_source_fails_at_fetch(self, service, ladder, workspace_root) -> None:
        result = await service.run(make_request("raw/42/missing.mp4", ladder))

        assert not result.success
        assert result.stage == "fetch"
        assert isinstance(result.error, SourceUnavailable)
        assert list(workspace_root.iterdir()) == []

    @pytest.mark.asyncio
    async def test_workspace_collision_is_resource_error(
        self, service, source_video, ladder, workspace_root
    ) -> None:
        (workspace_root / "job-1-a1").mkdir(parents=True)

        result = await service.run(make_request(source_video, ladder))

        assert result.stage == "workspace"
        assert isinstance(result.error, ResourceError)

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, service, storage, source_video, ladder) -> None:
        cancel_event = asyncio.Event()
        cancel_event.set()

        result = await service.run(make_request(source_video, ladder), cancel_event)

        assert isinstance(result.error, JobCancelled)
        assert result.stage == "fetch"
        assert storage.uploaded == []

    @pytest.mark.asyncio
    async def test_failed_transcode_publishes_nothing(
        self, service, storage, source_video, ladder, monkeypatch
    ) -> None:
        monkeypatch.setenv("FAKE_FFMPEG_FAIL", "360p")

        result = await service.run(make_request(source_video, ladder))

        assert result.stage == "transcode"
        assert not any(key.startswith("hls/") for key in storage.uploaded)
