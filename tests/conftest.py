"""Shared fixtures for pipeline tests.

Tests run against a SQLite database through aiosqlite, local filesystem
storage and small stand-in ``ffmpeg``/``ffprobe`` executables whose
behavior is driven by environment variables:

* ``FAKE_PROBE_NO_AUDIO=1``  ffprobe reports a video-only source
* ``FAKE_PROBE_FAIL=1``      ffprobe exits non-zero
* ``FAKE_FFMPEG_FAIL=<label>``  ffmpeg exits non-zero for that variant
* ``FAKE_FFMPEG_HANG=<label>``  ffmpeg sleeps for that variant
* ``FAKE_FFMPEG_EMPTY=<label>`` ffmpeg writes a playlist without segments
* ``FAKE_FFMPEG_LOG=<path>``    every ffmpeg invocation appends its label
"""

import stat
import sys
import uuid
from pathlib import Path
from typing import Optional

import pytest
import pytest_asyncio

from hls_pipeline.core.database import create_engine, create_session_factory, init_models
from hls_pipeline.core.storage import Storage, StorageConfig, StorageResult
from hls_pipeline.modules.asset.models import AssetType
from hls_pipeline.modules.asset.repository import AssetRepository
from hls_pipeline.modules.transcoding.abr import QualityVariant


FAKE_FFPROBE = '''
import json, os, sys

if os.environ.get("FAKE_PROBE_FAIL") == "1":
    sys.exit(1)

streams = [{"codec_type": "video", "width": 1920, "height": 1080, "duration": "12.0"}]
if os.environ.get("FAKE_PROBE_NO_AUDIO") != "1":
    streams.append({"codec_type": "audio", "channels": 2})
print(json.dumps({"streams": streams, "format": {"duration": "12.0"}}))
'''

FAKE_FFMPEG = '''
import os, sys, time
from pathlib import Path

args = sys.argv[1:]
playlist = Path(args[-1])
pattern = args[args.index("-hls_segment_filename") + 1]
label = playlist.parent.name

log = os.environ.get("FAKE_FFMPEG_LOG")
if log:
    with open(log, "a") as f:
        f.write(label + "\\n")

if os.environ.get("FAKE_FFMPEG_HANG") == label:
    time.sleep(60)
if os.environ.get("FAKE_FFMPEG_FAIL") == label:
    sys.stderr.write("Encoder error for " + label + "\\n")
    sys.exit(1)

lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:6", "#EXT-X-PLAYLIST-TYPE:VOD"]
if os.environ.get("FAKE_FFMPEG_EMPTY") != label:
    for index in range(2):
        segment = Path(pattern % index)
        segment.write_bytes(("segment %d of %s" % (index, label)).encode())
        lines.append("#EXTINF:6.000000,")
        lines.append(segment.name)
lines.append("#EXT-X-ENDLIST")
playlist.write_text("\\n".join(lines) + "\\n")
'''


def _write_executable(path: Path, body: str) -> Path:
    path.write_text(f"#!{sys.executable}\n{body}")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


class RecordingStorage(Storage):
    """Local storage that records upload order and can fail chosen keys."""

    def __init__(self, config: StorageConfig):
        super().__init__(config)
        self.uploaded: list[str] = []
        self.fail_keys: set[str] = set()

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        if key in self.fail_keys:
            return StorageResult(success=False, key=key, url="", error_message="connection reset")
        result = super().upload(file_path, key, content_type)
        if result.success:
            self.uploaded.append(key)
        return result


class FakeQueue:
    """In-memory job queue recording every delivery."""

    def __init__(self):
        self.deliveries: list[tuple[uuid.UUID, float]] = []

    def enqueue(self, job_id: uuid.UUID, countdown: float = 0.0) -> None:
        self.deliveries.append((job_id, countdown))

    def job_ids(self) -> list[uuid.UUID]:
        return [job_id for job_id, _ in self.deliveries]


@pytest.fixture
def queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def fake_binaries(tmp_path: Path) -> tuple[str, str]:
    """Paths of the stand-in ffmpeg and ffprobe executables."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    ffmpeg = _write_executable(bin_dir / "ffmpeg", FAKE_FFMPEG)
    ffprobe = _write_executable(bin_dir / "ffprobe", FAKE_FFPROBE)
    return str(ffmpeg), str(ffprobe)


@pytest.fixture
def ffmpeg_log(tmp_path: Path, monkeypatch) -> Path:
    log = tmp_path / "ffmpeg.log"
    monkeypatch.setenv("FAKE_FFMPEG_LOG", str(log))
    return log


@pytest.fixture
def storage(tmp_path: Path) -> RecordingStorage:
    return RecordingStorage(StorageConfig(backend="local", local_path=str(tmp_path / "storage")))


@pytest.fixture
def source_video(storage: RecordingStorage) -> str:
    """Uploaded source object; returns its storage key."""
    key = "raw/42/input.mp4"
    storage.put_object(key, b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 1024, "video/mp4")
    return key


@pytest.fixture
def ladder() -> list[QualityVariant]:
    return [
        QualityVariant(label="720p", width=1280, height=720, video_bitrate="2500k"),
        QualityVariant(label="360p", width=640, height=360, video_bitrate="800k"),
    ]


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    return tmp_path / "workspaces"


@pytest_asyncio.fixture
async def engine(tmp_path: Path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def create_asset(session_factory):
    """Factory inserting a pending asset."""

    async def _create(
        asset_id: Optional[int] = None,
        storage_key: Optional[str] = "raw/42/input.mp4",
        source_url: str = "https://cdn.example.com/raw/42/input.mp4",
        asset_type: AssetType = AssetType.VIDEO,
    ):
        async with session_factory() as session:
            asset = await AssetRepository(session).create(
                asset_name="input.mp4",
                source_url=source_url,
                asset_type=asset_type,
                storage_key=storage_key,
                content_type="video/mp4",
                asset_id=asset_id,
            )
            await session.commit()
            return asset

    return _create
