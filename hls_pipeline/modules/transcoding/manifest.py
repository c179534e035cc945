"""HLS playlist assembly and parsing.

The master manifest lists every variant with its approximate peak bandwidth
and resolution and points at the variant's relative media playlist.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Sequence

from hls_pipeline.modules.transcoding.abr import QualityVariant

if TYPE_CHECKING:
    from hls_pipeline.modules.transcoding.ffmpeg import VariantOutput

MASTER_MANIFEST_NAME = "master.m3u8"
VARIANT_PLAYLIST_NAME = "playlist.m3u8"

ORDER_ASCENDING = "ascending"
ORDER_DESCENDING = "descending"


@dataclass
class MasterManifest:
    """Rendered master manifest."""
    text: str
    variants: list[QualityVariant]

    def write(self, path: Path) -> Path:
        path.write_text(self.text, encoding="utf-8")
        return path


@dataclass
class MediaPlaylist:
    """Parsed view of a variant media playlist."""
    has_header: bool
    complete: bool
    target_duration: Optional[int] = None
    segments: list[str] = field(default_factory=list)


@dataclass
class VariantStream:
    """One ``#EXT-X-STREAM-INF`` entry of a master manifest."""
    uri: str
    bandwidth: int
    resolution: Optional[str] = None
    average_bandwidth: Optional[int] = None


def variant_playlist_uri(label: str) -> str:
    return f"{label}/{VARIANT_PLAYLIST_NAME}"


class ManifestAssembler:
    """Builds the master manifest for a set of transcoded variants."""

    def __init__(self, order: str = ORDER_DESCENDING):
        """Initialize the assembler.

        Args:
            order: ``descending`` lists the highest bandwidth first,
                ``ascending`` lists the lowest first so players that start
                with the first entry begin conservatively
        """
        if order not in (ORDER_ASCENDING, ORDER_DESCENDING):
            raise ValueError(f"Unsupported manifest order: {order}")
        self.order = order

    def assemble(self, variants: Sequence["VariantOutput"]) -> MasterManifest:
        """Render the master manifest.

        Variants with equal bandwidth keep their ladder order.

        Args:
            variants: Transcoded variant outputs

        Returns:
            MasterManifest
        """
        ordered = sorted(
            (output.variant for output in variants),
            key=lambda v: v.peak_bandwidth,
            reverse=self.order == ORDER_DESCENDING,
        )

        lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
        for variant in ordered:
            lines.append(
                f"#EXT-X-STREAM-INF:BANDWIDTH={variant.peak_bandwidth},"
                f"AVERAGE-BANDWIDTH={variant.average_bandwidth},"
                f"RESOLUTION={variant.resolution}"
            )
            lines.append(variant_playlist_uri(variant.label))

        return MasterManifest(text="\n".join(lines) + "\n", variants=ordered)


def parse_media_playlist(text: str) -> MediaPlaylist:
    """Parse a variant media playlist.

    Args:
        text: Playlist content

    Returns:
        MediaPlaylist with the referenced segment URIs in order
    """
    playlist = MediaPlaylist(
        has_header=text.startswith("#EXTM3U"),
        complete="#EXT-X-ENDLIST" in text,
    )
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        if line.startswith("#EXT-X-TARGETDURATION:"):
            try:
                playlist.target_duration = int(line.split(":", 1)[1])
            except ValueError:
                pass
        elif not line.startswith("#"):
            playlist.segments.append(line)
    return playlist


def parse_master_manifest(text: str) -> list[VariantStream]:
    """Parse the variant entries of a master manifest."""
    streams = []
    pending: Optional[dict] = None
    for line in text.splitlines():
        line = line.strip()
        if line.startswith("#EXT-X-STREAM-INF:"):
            pending = _parse_attributes(line.split(":", 1)[1])
        elif line and not line.startswith("#") and pending is not None:
            streams.append(VariantStream(
                uri=line,
                bandwidth=int(pending.get("BANDWIDTH", 0)),
                resolution=pending.get("RESOLUTION"),
                average_bandwidth=(
                    int(pending["AVERAGE-BANDWIDTH"]) if "AVERAGE-BANDWIDTH" in pending else None
                ),
            ))
            pending = None
    return streams


def _parse_attributes(raw: str) -> dict:
    attributes = {}
    for item in raw.split(","):
        if "=" in item:
            key, value = item.split("=", 1)
            attributes[key.strip()] = value.strip().strip('"')
    return attributes
