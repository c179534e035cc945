"""Artifact publisher.

Uploads a packaged HLS tree under a key prefix derived from the asset id.
Segments go first, then each variant playlist, and the master manifest is
always the last object written so readers never see a master manifest that
points at missing objects.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from hls_pipeline.core.logging import log_error, log_info
from hls_pipeline.core.metrics import PUBLISHED_OBJECTS_TOTAL
from hls_pipeline.core.storage import Storage
from hls_pipeline.core.tracing import create_span
from hls_pipeline.modules.transcoding.errors import PublishFailed
from hls_pipeline.modules.transcoding.ffmpeg import VariantOutput
from hls_pipeline.modules.transcoding.manifest import MASTER_MANIFEST_NAME

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/MP2T",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass
class PublishResult:
    """Result of publishing an HLS package."""
    success: bool
    manifest_url: Optional[str] = None
    master_key: Optional[str] = None
    uploaded_keys: list[str] = field(default_factory=list)
    error: Optional[PublishFailed] = None


def content_type_for(path: Path) -> str:
    return CONTENT_TYPES.get(path.suffix.lower(), DEFAULT_CONTENT_TYPE)


class ArtifactPublisher:
    """Publishes variant outputs and the master manifest to storage."""

    def __init__(self, storage: Storage, key_prefix: str = "assets"):
        self.storage = storage
        self.key_prefix = key_prefix.strip("/")

    def asset_prefix(self, asset_id: int) -> str:
        """Key prefix of an asset's HLS package, e.g. ``assets/hls/video/42``."""
        parts = [self.key_prefix, "hls", "video", str(asset_id)]
        return "/".join(part for part in parts if part)

    def variant_key(self, asset_id: int, label: str, filename: str) -> str:
        return f"{self.asset_prefix(asset_id)}/{label}/{filename}"

    def master_key(self, asset_id: int) -> str:
        return f"{self.asset_prefix(asset_id)}/{MASTER_MANIFEST_NAME}"

    async def publish(
        self,
        asset_id: int,
        variants: Sequence[VariantOutput],
        master_manifest_path: Path,
    ) -> PublishResult:
        """Upload every variant file and then the master manifest.

        Keys are deterministic, so publishing the same package twice
        overwrites the same objects.

        Args:
            asset_id: Asset the package belongs to
            variants: Validated variant outputs
            master_manifest_path: Rendered master manifest on disk

        Returns:
            PublishResult with the manifest URL, or a PublishFailed error
        """
        uploads: list[tuple[Path, str, str]] = []
        for output in variants:
            for segment_path in output.segment_paths:
                uploads.append((segment_path, self.variant_key(asset_id, output.label, segment_path.name), "segment"))
        for output in variants:
            playlist_path = output.playlist_path
            uploads.append((playlist_path, self.variant_key(asset_id, output.label, playlist_path.name), "playlist"))

        master_key = self.master_key(asset_id)
        uploaded: list[str] = []

        with create_span("transcode.publish", {"asset_id": asset_id, "objects": len(uploads) + 1}):
            for path, key, kind in uploads:
                error = await self._upload(path, key, kind)
                if error is not None:
                    return PublishResult(success=False, uploaded_keys=uploaded, error=error)
                uploaded.append(key)

            error = await self._upload(master_manifest_path, master_key, "master")
            if error is not None:
                return PublishResult(success=False, uploaded_keys=uploaded, error=error)
            uploaded.append(master_key)

        manifest_url = self.storage.public_url(master_key)
        log_info(
            logger,
            "HLS package published",
            asset_id=asset_id,
            objects=len(uploaded),
            manifest_url=manifest_url,
        )
        return PublishResult(
            success=True,
            manifest_url=manifest_url,
            master_key=master_key,
            uploaded_keys=uploaded,
        )

    async def _upload(self, path: Path, key: str, kind: str) -> Optional[PublishFailed]:
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None,
            self.storage.upload,
            str(path),
            key,
            content_type_for(path),
        )
        if not result.success:
            log_error(logger, "Upload failed", key=key, reason=result.error_message)
            return PublishFailed(key, result.error_message)

        PUBLISHED_OBJECTS_TOTAL.labels(kind=kind).inc()
        return None
