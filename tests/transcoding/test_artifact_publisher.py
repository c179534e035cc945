"""Tests for publishing HLS packages to storage."""

from pathlib import Path

import pytest

from hls_pipeline.modules.transcoding.abr import QualityVariant
from hls_pipeline.modules.transcoding.errors import PublishFailed
from hls_pipeline.modules.transcoding.ffmpeg import VariantOutput
from hls_pipeline.modules.transcoding.manifest import ManifestAssembler
from hls_pipeline.modules.transcoding.publisher import ArtifactPublisher, content_type_for


def build_package(package_dir: Path, ladder: list[QualityVariant]) -> tuple[list[VariantOutput], Path]:
    outputs = []
    for variant in ladder:
        directory = package_dir / variant.label
        directory.mkdir(parents=True)
        segments = []
        for index in range(2):
            segment = directory / f"segment_{index:03d}.ts"
            segment.write_bytes(f"{variant.label}-{index}".encode())
            segments.append(segment)
        playlist = directory / "playlist.m3u8"
        playlist.write_text(
            "#EXTM3U\n" + "".join(f"#EXTINF:6.0,\n{s.name}\n" for s in segments) + "#EXT-X-ENDLIST\n"
        )
        outputs.append(VariantOutput(label=variant.label, variant=variant, playlist_path=playlist, segment_paths=segments))

    master = ManifestAssembler().assemble(outputs).write(package_dir / "master.m3u8")
    return outputs, master


class TestContentTypes:
    def test_known_extensions(self) -> None:
        assert content_type_for(Path("master.m3u8")) == "application/vnd.apple.mpegurl"
        assert content_type_for(Path("segment_000.ts")) == "video/MP2T"
        assert content_type_for(Path("notes.txt")) == "application/octet-stream"


class TestArtifactPublisher:
    """Tests for ArtifactPublisher.publish."""

    def test_keys_are_derived_from_asset_id(self, storage) -> None:
        publisher = ArtifactPublisher(storage, key_prefix="assets")

        assert publisher.master_key(42) == "assets/hls/video/42/master.m3u8"
        assert publisher.variant_key(42, "720p", "segment_000.ts") == "assets/hls/video/42/720p/segment_000.ts"
        assert ArtifactPublisher(storage, key_prefix="").master_key(42) == "hls/video/42/master.m3u8"

    @pytest.mark.asyncio
    async def test_master_manifest_uploaded_last(self, storage, ladder, tmp_path) -> None:
        outputs, master = build_package(tmp_path / "package", ladder)
        publisher = ArtifactPublisher(storage, key_prefix="")

        result = await publisher.publish(42, outputs, master)

        assert result.success
        assert storage.uploaded[-1] == "hls/video/42/master.m3u8"
        assert len(storage.uploaded) == 7
        assert set(storage.uploaded[:4]) == {
            "hls/video/42/720p/segment_000.ts",
            "hls/video/42/720p/segment_001.ts",
            "hls/video/42/360p/segment_000.ts",
            "hls/video/42/360p/segment_001.ts",
        }
        assert result.manifest_url.endswith("hls/video/42/master.m3u8")
        assert storage.exists("hls/video/42/360p/playlist.m3u8")

    @pytest.mark.asyncio
    async def test_failed_upload_never_publishes_master(self, storage, ladder, tmp_path) -> None:
        outputs, master = build_package(tmp_path / "package", ladder)
        storage.fail_keys.add("hls/video/42/360p/playlist.m3u8")

        result = await ArtifactPublisher(storage, key_prefix="").publish(42, outputs, master)

        assert not result.success
        assert isinstance(result.error, PublishFailed)
        assert result.error.key == "hls/video/42/360p/playlist.m3u8"
        assert not storage.exists("hls/video/42/master.m3u8")

    @pytest.mark.asyncio
    async def test_republishing_overwrites_same_keys(self, storage, ladder, tmp_path) -> None:
        outputs, master = build_package(tmp_path / "package", ladder)
        publisher = ArtifactPublisher(storage, key_prefix="")

        first = await publisher.publish(42, outputs, master)
        keys_after_first = storage.list_files("hls/video/42")
        second = await publisher.publish(42, outputs, master)

        assert first.uploaded_keys == second.uploaded_keys
        assert storage.list_files("hls/video/42") == keys_after_first
