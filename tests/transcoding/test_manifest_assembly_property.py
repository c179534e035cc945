"""Property-based tests for master manifest assembly."""

from pathlib import Path

import pytest
from hypothesis import given, settings, strategies as st

from hls_pipeline.modules.transcoding.abr import QualityVariant
from hls_pipeline.modules.transcoding.ffmpeg import VariantOutput
from hls_pipeline.modules.transcoding.manifest import (
    ORDER_ASCENDING,
    ORDER_DESCENDING,
    ManifestAssembler,
    parse_master_manifest,
    parse_media_playlist,
)


def make_output(variant: QualityVariant) -> VariantOutput:
    return VariantOutput(
        label=variant.label,
        variant=variant,
        playlist_path=Path("/package") / variant.label / "playlist.m3u8",
    )


ladder_strategy = st.lists(
    st.builds(
        QualityVariant,
        label=st.from_regex(r"v[0-9]{1,4}", fullmatch=True),
        width=st.sampled_from([640, 854, 1280, 1920]),
        height=st.sampled_from([360, 480, 720, 1080]),
        video_bitrate=st.integers(min_value=100000, max_value=8000000),
    ),
    min_size=1,
    max_size=6,
    unique_by=lambda v: v.label,
)


class TestManifestAssembler:
    """Tests for ManifestAssembler.assemble."""

    def test_two_variant_manifest(self) -> None:
        ladder = [
            QualityVariant(label="720p", width=1280, height=720, video_bitrate="2500k"),
            QualityVariant(label="360p", width=640, height=360, video_bitrate="800k"),
        ]

        manifest = ManifestAssembler(ORDER_DESCENDING).assemble([make_output(v) for v in ladder])

        lines = manifest.text.splitlines()
        assert lines[0] == "#EXTM3U"
        assert lines[1] == "#EXT-X-VERSION:3"
        assert lines[2].startswith("#EXT-X-STREAM-INF:BANDWIDTH=")
        assert "RESOLUTION=1280x720" in lines[2]
        assert lines[3] == "720p/playlist.m3u8"
        assert "RESOLUTION=640x360" in lines[4]
        assert lines[5] == "360p/playlist.m3u8"
        assert manifest.text.endswith("\n")

    def test_ascending_order_lists_lowest_first(self) -> None:
        ladder = [
            QualityVariant(label="720p", width=1280, height=720, video_bitrate="2500k"),
            QualityVariant(label="360p", width=640, height=360, video_bitrate="800k"),
        ]

        manifest = ManifestAssembler(ORDER_ASCENDING).assemble([make_output(v) for v in ladder])

        assert [s.uri for s in parse_master_manifest(manifest.text)] == [
            "360p/playlist.m3u8",
            "720p/playlist.m3u8",
        ]

    def test_unknown_order_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            ManifestAssembler("random")

    @given(ladder=ladder_strategy, order=st.sampled_from([ORDER_ASCENDING, ORDER_DESCENDING]))
    @settings(max_examples=100)
    def test_every_variant_listed_once_in_bandwidth_order(self, ladder, order) -> None:
        """Each variant appears exactly once, sorted by advertised bandwidth."""
        manifest = ManifestAssembler(order).assemble([make_output(v) for v in ladder])

        streams = parse_master_manifest(manifest.text)
        assert sorted(s.uri for s in streams) == sorted(f"{v.label}/playlist.m3u8" for v in ladder)

        bandwidths = [s.bandwidth for s in streams]
        assert bandwidths == sorted(bandwidths, reverse=order == ORDER_DESCENDING)

    @given(ladder=ladder_strategy)
    @settings(max_examples=100)
    def test_assembly_is_deterministic(self, ladder) -> None:
        assembler = ManifestAssembler()
        outputs = [make_output(v) for v in ladder]

        assert assembler.assemble(outputs).text == assembler.assemble(outputs).text

    @given(ladder=ladder_strategy)
    @settings(max_examples=100)
    def test_advertised_values_match_variants(self, ladder) -> None:
        manifest = ManifestAssembler().assemble([make_output(v) for v in ladder])

        by_uri = {f"{v.label}/playlist.m3u8": v for v in ladder}
        for stream in parse_master_manifest(manifest.text):
            variant = by_uri[stream.uri]
            assert stream.bandwidth == variant.peak_bandwidth
            assert stream.average_bandwidth == variant.average_bandwidth
            assert stream.resolution == variant.resolution


class TestParseMediaPlaylist:
    """Tests for media playlist parsing."""

    def test_complete_playlist(self) -> None:
        text = (
            "#EXTM3U\n#EXT-X-VERSION:3\n#EXT-X-TARGETDURATION:6\n"
            "#EXTINF:6.0,\nsegment_000.ts\n#EXTINF:4.2,\nsegment_001.ts\n#EXT-X-ENDLIST\n"
        )

        playlist = parse_media_playlist(text)

        assert playlist.has_header
        assert playlist.complete
        assert playlist.target_duration == 6
        assert playlist.segments == ["segment_000.ts", "segment_001.ts"]

    def test_truncated_playlist_is_incomplete(self) -> None:
        playlist = parse_media_playlist("#EXTM3U\n#EXTINF:6.0,\nsegment_000.ts\n")

        assert not playlist.complete
