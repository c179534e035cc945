"""Fixtures for job dispatcher tests."""

import pytest

from hls_pipeline.modules.asset.service import AssetStateTracker
from hls_pipeline.modules.job.service import JobDispatcher
from hls_pipeline.modules.job.tasks import RetryConfig
from hls_pipeline.modules.transcoding.fetcher import SourceFetcher
from hls_pipeline.modules.transcoding.ffmpeg import FFmpegTranscoder
from hls_pipeline.modules.transcoding.manifest import ManifestAssembler
from hls_pipeline.modules.transcoding.publisher import ArtifactPublisher
from hls_pipeline.modules.transcoding.service import TranscodingService
from hls_pipeline.modules.transcoding.workspace import WorkspaceManager


@pytest.fixture
def dispatcher(session_factory, queue, storage, fake_binaries, workspace_root, ladder) -> JobDispatcher:
    """Dispatcher wired to SQLite, local storage and the stand-in encoder."""
    ffmpeg, ffprobe = fake_binaries
    service = TranscodingService(
        workspaces=WorkspaceManager(workspace_root),
        fetcher=SourceFetcher(storage),
        transcoder=FFmpegTranscoder(ffmpeg_path=ffmpeg, ffprobe_path=ffprobe, parallelism=2),
        assembler=ManifestAssembler(),
        publisher=ArtifactPublisher(storage, key_prefix=""),
    )
    return JobDispatcher(
        session_factory=session_factory,
        queue=queue,
        tracker=AssetStateTracker(session_factory),
        service=service,
        storage=storage,
        retry_config=RetryConfig(max_attempts=3, initial_delay=1.0, max_delay=300.0),
        default_ladder=ladder,
        cancel_poll_interval=0.05,
        busy_retry_delay=30.0,
        stale_after_seconds=3600,
    )
