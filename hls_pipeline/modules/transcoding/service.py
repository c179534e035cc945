"""Transcoding service running one job attempt end to end.

Stage order within an attempt is fixed: fetch, transcode, assemble the
master manifest, publish. Every stage returns a typed result; the first
failed result ends the attempt and is returned to the caller unchanged.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Sequence

from hls_pipeline.core.logging import log_info
from hls_pipeline.core.storage import Storage
from hls_pipeline.core.tracing import create_span, record_exception
from hls_pipeline.modules.transcoding.abr import QualityVariant
from hls_pipeline.modules.transcoding.errors import JobCancelled, PipelineError, ResourceError
from hls_pipeline.modules.transcoding.fetcher import SourceFetcher
from hls_pipeline.modules.transcoding.ffmpeg import FFmpegTranscoder
from hls_pipeline.modules.transcoding.manifest import MASTER_MANIFEST_NAME, ManifestAssembler
from hls_pipeline.modules.transcoding.publisher import ArtifactPublisher
from hls_pipeline.modules.transcoding.workspace import Workspace, WorkspaceManager

if TYPE_CHECKING:
    from hls_pipeline.core.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class PipelineRequest:
    """Input of a single job attempt."""
    job_id: str
    attempt: int
    asset_id: int
    source_key: str
    ladder: Sequence[QualityVariant]
    content_type: Optional[str] = None


@dataclass
class PipelineResult:
    """Outcome of a single job attempt."""
    success: bool
    stage: str
    manifest_url: Optional[str] = None
    variant_labels: list[str] = field(default_factory=list)
    error: Optional[PipelineError] = None


class TranscodingService:
    """Runs fetch, transcode, manifest assembly and publish for one attempt."""

    def __init__(
        self,
        workspaces: WorkspaceManager,
        fetcher: SourceFetcher,
        transcoder: FFmpegTranscoder,
        assembler: ManifestAssembler,
        publisher: ArtifactPublisher,
    ):
        self.workspaces = workspaces
        self.fetcher = fetcher
        self.transcoder = transcoder
        self.assembler = assembler
        self.publisher = publisher

    @classmethod
    def from_settings(cls, settings: "Settings", storage: Storage) -> "TranscodingService":
        """Wire the pipeline stages from application settings."""
        return cls(
            workspaces=WorkspaceManager(settings.WORKSPACE_ROOT),
            fetcher=SourceFetcher(
                storage,
                read_url_ttl=settings.READ_URL_TTL_SECONDS,
                timeout=settings.FETCH_TIMEOUT_SECONDS,
                chunk_size=settings.FETCH_CHUNK_SIZE,
            ),
            transcoder=FFmpegTranscoder(
                ffmpeg_path=settings.FFMPEG_PATH,
                ffprobe_path=settings.FFPROBE_PATH,
                segment_duration=settings.HLS_SEGMENT_DURATION,
                parallelism=settings.TRANSCODE_PARALLELISM,
                timeout_multiplier=settings.FFMPEG_TIMEOUT_MULTIPLIER,
                timeout_minimum=settings.FFMPEG_TIMEOUT_MINIMUM,
                timeout_maximum=settings.FFMPEG_TIMEOUT_MAXIMUM,
                probe_timeout=settings.PROBE_TIMEOUT,
            ),
            assembler=ManifestAssembler(settings.MANIFEST_ORDER),
            publisher=ArtifactPublisher(storage, settings.STORAGE_KEY_PREFIX),
        )

    async def run(
        self,
        request: PipelineRequest,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PipelineResult:
        """Run one job attempt inside its own workspace.

        The workspace is released on every exit path, including task
        cancellation.

        Args:
            request: Attempt input
            cancel_event: Set by the dispatcher when the job is cancelled

        Returns:
            PipelineResult
        """
        attributes = {
            "job_id": request.job_id,
            "asset_id": request.asset_id,
            "attempt": request.attempt,
        }
        with create_span("transcode.job", attributes):
            try:
                with self.workspaces.session(request.job_id, request.attempt) as workspace:
                    result = await self._run_stages(request, workspace, cancel_event)
            except ResourceError as e:
                result = PipelineResult(success=False, stage="workspace", error=e)

            if result.error is not None:
                record_exception(result.error, {"stage": result.stage})
            return result

    async def _run_stages(
        self,
        request: PipelineRequest,
        workspace: Workspace,
        cancel_event: Optional[asyncio.Event],
    ) -> PipelineResult:
        if _is_cancelled(cancel_event):
            return _cancelled("fetch")

        with create_span("transcode.fetch", {"storage_key": request.source_key}):
            fetched = await self.fetcher.fetch(request.source_key, workspace, request.content_type)
        if not fetched.success:
            return PipelineResult(success=False, stage="fetch", error=fetched.error)

        transcoded = await self.transcoder.transcode(
            fetched.local_path,
            request.ladder,
            workspace,
            cancel_event,
        )
        if not transcoded.success:
            return PipelineResult(success=False, stage="transcode", error=transcoded.error)

        if _is_cancelled(cancel_event):
            return _cancelled("publish")

        manifest = self.assembler.assemble(transcoded.variants)
        master_path = workspace.package_dir / MASTER_MANIFEST_NAME
        try:
            manifest.write(master_path)
        except OSError as e:
            return PipelineResult(
                success=False,
                stage="manifest",
                error=ResourceError(f"Cannot write master manifest: {e}"),
            )

        published = await self.publisher.publish(request.asset_id, transcoded.variants, master_path)
        if not published.success:
            return PipelineResult(success=False, stage="publish", error=published.error)

        labels = [output.label for output in transcoded.variants]
        log_info(
            logger,
            "Job attempt finished",
            job_id=request.job_id,
            asset_id=request.asset_id,
            variants=labels,
        )
        return PipelineResult(
            success=True,
            stage="done",
            manifest_url=published.manifest_url,
            variant_labels=labels,
        )


def _is_cancelled(cancel_event: Optional[asyncio.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def _cancelled(stage: str) -> PipelineResult:
    return PipelineResult(
        success=False,
        stage=stage,
        error=JobCancelled(f"Job cancelled before {stage}"),
    )
