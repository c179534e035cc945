"""FFmpeg HLS transcoding.

Each ladder variant is encoded by its own ffmpeg process into a scratch
directory, validated, then promoted into the workspace package directory.
Variants run concurrently up to a parallelism limit; the first failure
aborts the others.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from hls_pipeline.core.logging import log_error, log_info, log_warning
from hls_pipeline.core.metrics import VARIANT_DURATION_SECONDS
from hls_pipeline.core.tracing import create_span
from hls_pipeline.modules.transcoding.abr import QualityVariant, get_ffmpeg_args_for_variant
from hls_pipeline.modules.transcoding.errors import (
    JobCancelled,
    MalformedInput,
    NoAudioTrack,
    PipelineError,
    TranscodeFailed,
)
from hls_pipeline.modules.transcoding.manifest import VARIANT_PLAYLIST_NAME, parse_media_playlist
from hls_pipeline.modules.transcoding.workspace import Workspace

logger = logging.getLogger(__name__)

SEGMENT_FILENAME = "segment_%03d.ts"

# Encode time relative to source duration, by target height
RESOLUTION_TIMEOUT_MULTIPLIERS = {
    360: 1.0,
    480: 1.25,
    720: 1.5,
    1080: 2.0,
    1440: 3.0,
    2160: 4.0,
}

PROCESS_KILL_GRACE_SECONDS = 5.0


@dataclass
class MediaInfo:
    """Stream summary of a source file."""
    duration: float
    width: int
    height: int
    has_video: bool
    has_audio: bool


@dataclass
class ProbeResult:
    success: bool
    info: Optional[MediaInfo] = None
    error: Optional[PipelineError] = None


@dataclass
class VariantOutput:
    """Validated output of one variant encode."""
    label: str
    variant: QualityVariant
    playlist_path: Path
    segment_paths: list[Path] = field(default_factory=list)

    @property
    def directory(self) -> Path:
        return self.playlist_path.parent


@dataclass
class VariantResult:
    success: bool
    label: str
    output: Optional[VariantOutput] = None
    error: Optional[PipelineError] = None
    duration_seconds: float = 0.0


@dataclass
class TranscodeResult:
    """Result of transcoding the whole ladder."""
    success: bool
    variants: list[VariantOutput] = field(default_factory=list)
    media_info: Optional[MediaInfo] = None
    error: Optional[PipelineError] = None


@dataclass
class ProcessOutcome:
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False


def calculate_ffmpeg_timeout(
    duration: float,
    height: int,
    multiplier: float = 3.0,
    minimum: float = 300.0,
    maximum: float = 7200.0,
) -> float:
    """Calculate the timeout for encoding one variant.

    Higher resolutions take longer to encode, so timeouts scale with the
    target height.

    Args:
        duration: Source duration in seconds (0 if unknown)
        height: Target height of the variant
        multiplier: Base seconds of encode time allowed per source second
        minimum: Lower clamp in seconds
        maximum: Upper clamp in seconds

    Returns:
        Timeout in seconds
    """
    resolution_multiplier = RESOLUTION_TIMEOUT_MULTIPLIERS.get(height, 2.0)
    timeout = duration * multiplier * resolution_multiplier
    return max(minimum, min(timeout, maximum))


async def cleanup_process(process: asyncio.subprocess.Process) -> None:
    """Kill a subprocess if it is still running and reap it."""
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=PROCESS_KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            log_warning(logger, "Process did not terminate after kill", pid=process.pid)


async def run_process(
    cmd: Sequence[str],
    timeout: float,
    cancel_event: Optional[asyncio.Event] = None,
) -> ProcessOutcome:
    """Run a subprocess until it exits, times out or is cancelled.

    The process is killed on timeout, on ``cancel_event`` and when the
    calling task itself is cancelled.

    Args:
        cmd: Program and arguments
        timeout: Maximum run time in seconds
        cancel_event: Optional event that aborts the run when set

    Returns:
        ProcessOutcome
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    communicate = asyncio.ensure_future(process.communicate())
    waiters = {communicate}
    cancel_waiter = None
    if cancel_event is not None:
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        waiters.add(cancel_waiter)

    outcome = ProcessOutcome(returncode=None)
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        if communicate not in done:
            if cancel_waiter is not None and cancel_waiter in done:
                outcome.cancelled = True
            else:
                outcome.timed_out = True
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()
        if not communicate.done():
            await cleanup_process(process)
            try:
                await asyncio.wait_for(communicate, timeout=PROCESS_KILL_GRACE_SECONDS)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass

    if communicate.done() and not communicate.cancelled():
        stdout, stderr = communicate.result()
        outcome.stdout = (stdout or b"").decode("utf-8", errors="replace")
        outcome.stderr = (stderr or b"").decode("utf-8", errors="replace").strip()
    if not outcome.timed_out and not outcome.cancelled:
        outcome.returncode = process.returncode
    return outcome


def validate_hls_playlist(playlist_path: Path) -> tuple[bool, Optional[str]]:
    """Validate that a variant playlist is complete and its segments exist.

    Args:
        playlist_path: Path to the variant playlist

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not playlist_path.is_file():
        return False, "Playlist file does not exist"

    playlist = parse_media_playlist(playlist_path.read_text(encoding="utf-8", errors="replace"))
    if not playlist.has_header:
        return False, "Missing #EXTM3U header"
    if not playlist.complete:
        return False, "Missing #EXT-X-ENDLIST (incomplete transcode)"
    if not playlist.segments:
        return False, "Playlist contains no segment references"

    for uri in playlist.segments:
        segment_path = playlist_path.parent / uri
        if not segment_path.is_file():
            return False, f"Missing segment file: {uri}"
        if segment_path.stat().st_size == 0:
            return False, f"Empty segment file: {uri}"

    return True, None


class FFmpegTranscoder:
    """Transcodes a source file into an HLS variant set."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        segment_duration: int = 6,
        parallelism: int = 1,
        timeout_multiplier: float = 3.0,
        timeout_minimum: float = 300.0,
        timeout_maximum: float = 7200.0,
        probe_timeout: float = 30.0,
    ):
        """Initialize transcoder.

        Args:
            ffmpeg_path: Path to ffmpeg binary
            ffprobe_path: Path to ffprobe binary
            segment_duration: Target HLS segment duration in seconds
            parallelism: Maximum number of concurrent variant encodes
            timeout_multiplier: Encode seconds allowed per source second
            timeout_minimum: Lower bound of a variant encode timeout
            timeout_maximum: Upper bound of a variant encode timeout
            probe_timeout: Timeout for ffprobe in seconds
        """
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.segment_duration = segment_duration
        self.parallelism = max(1, parallelism)
        self.timeout_multiplier = timeout_multiplier
        self.timeout_minimum = timeout_minimum
        self.timeout_maximum = timeout_maximum
        self.probe_timeout = probe_timeout

    async def probe(self, input_path: Path) -> ProbeResult:
        """Inspect the source streams with ffprobe.

        A source without a video stream is malformed; a source without an
        audio stream fails with NoAudioTrack before any encode starts.
        """
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(input_path),
        ]
        try:
            outcome = await run_process(cmd, timeout=self.probe_timeout)
        except OSError as e:
            return ProbeResult(success=False, error=MalformedInput(f"Cannot run ffprobe: {e}"))

        if outcome.timed_out:
            return ProbeResult(
                success=False,
                error=MalformedInput(f"ffprobe exceeded {self.probe_timeout}s"),
            )
        if outcome.returncode != 0:
            return ProbeResult(
                success=False,
                error=MalformedInput(f"ffprobe exited with code {outcome.returncode}"),
            )

        try:
            info = parse_probe_output(outcome.stdout)
        except ValueError as e:
            return ProbeResult(success=False, error=MalformedInput(f"Unreadable probe output: {e}"))

        if not info.has_video:
            return ProbeResult(success=False, info=info, error=MalformedInput("Source has no video stream"))
        if not info.has_audio:
            return ProbeResult(success=False, info=info, error=NoAudioTrack("Video must contain an audio track"))
        return ProbeResult(success=True, info=info)

    def build_hls_command(
        self,
        input_path: Path,
        variant: QualityVariant,
        output_dir: Path,
    ) -> list[str]:
        """Build the ffmpeg argument list for one variant.

        Keyframes are forced on every segment boundary with scene-cut
        detection disabled and closed GOPs, so every segment starts with an
        IDR frame and has the configured duration. Metadata is stripped and
        bit-exact flags are set for reproducible output.

        Args:
            input_path: Source file
            variant: Ladder variant
            output_dir: Directory receiving the playlist and segments

        Returns:
            FFmpeg command as list of arguments
        """
        seg = self.segment_duration
        return [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-nostdin",
            "-loglevel", "error",
            "-i", str(input_path),
            "-map", "0:v:0",
            "-map", "0:a:0",
            *get_ffmpeg_args_for_variant(variant),
            "-preset", "veryfast",
            "-sc_threshold", "0",
            "-force_key_frames", f"expr:gte(t,n_forced*{seg})",
            "-flags:v", "+cgop+bitexact",
            "-flags:a", "+bitexact",
            "-fflags", "+bitexact",
            "-map_metadata", "-1",
            "-f", "hls",
            "-hls_time", str(seg),
            "-hls_playlist_type", "vod",
            "-hls_list_size", "0",
            "-hls_segment_type", "mpegts",
            "-hls_flags", "independent_segments",
            "-hls_segment_filename", str(output_dir / SEGMENT_FILENAME),
            str(output_dir / VARIANT_PLAYLIST_NAME),
        ]

    async def transcode(
        self,
        input_path: Path,
        ladder: Sequence[QualityVariant],
        workspace: Workspace,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> TranscodeResult:
        """Transcode the source into every ladder variant.

        Args:
            input_path: Downloaded source file
            ladder: Ordered quality ladder
            workspace: Workspace owned by the current attempt
            cancel_event: Set to abort the encode

        Returns:
            TranscodeResult listing variant outputs in ladder order
        """
        probe = await self.probe(input_path)
        if not probe.success:
            return TranscodeResult(success=False, media_info=probe.info, error=probe.error)

        info = probe.info
        semaphore = asyncio.Semaphore(self.parallelism)

        async def run_variant(variant: QualityVariant) -> VariantResult:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return VariantResult(
                        success=False,
                        label=variant.label,
                        error=JobCancelled("Job cancelled before variant encode"),
                    )
                return await self._transcode_variant(input_path, variant, workspace, info, cancel_event)

        tasks = [asyncio.ensure_future(run_variant(variant)) for variant in ladder]
        error: Optional[PipelineError] = None
        try:
            for next_done in asyncio.as_completed(tasks):
                result = await next_done
                if not result.success:
                    error = result.error
                    break
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if error is not None:
            if cancel_event is not None and cancel_event.is_set():
                error = JobCancelled("Job cancelled during transcode")
            return TranscodeResult(success=False, media_info=info, error=error)

        outputs = [task.result().output for task in tasks]
        return TranscodeResult(success=True, variants=outputs, media_info=info)

    async def _transcode_variant(
        self,
        input_path: Path,
        variant: QualityVariant,
        workspace: Workspace,
        info: MediaInfo,
        cancel_event: Optional[asyncio.Event],
    ) -> VariantResult:
        scratch_dir = workspace.work_dir / variant.label
        cmd = self.build_hls_command(input_path, variant, scratch_dir)
        timeout = calculate_ffmpeg_timeout(
            info.duration,
            variant.height,
            multiplier=self.timeout_multiplier,
            minimum=self.timeout_minimum,
            maximum=self.timeout_maximum,
        )

        started = time.monotonic()
        with create_span("transcode.variant", {"variant": variant.label, "timeout": timeout}):
            try:
                scratch_dir.mkdir(parents=True, exist_ok=True)
                outcome = await run_process(cmd, timeout=timeout, cancel_event=cancel_event)
            except OSError as e:
                return self._variant_failure(variant, f"cannot start ffmpeg: {e}", started)

            if outcome.cancelled:
                return self._variant_failure(
                    variant, "cancelled", started, error=JobCancelled("Job cancelled during transcode"),
                )
            if outcome.timed_out:
                return self._variant_failure(variant, f"ffmpeg exceeded {timeout:.0f}s", started)
            if outcome.returncode != 0:
                reason = f"ffmpeg exited with code {outcome.returncode}"
                if outcome.stderr:
                    reason = f"{reason}: {outcome.stderr[-500:]}"
                return self._variant_failure(variant, reason, started)

            is_valid, validation_error = validate_hls_playlist(scratch_dir / VARIANT_PLAYLIST_NAME)
            if not is_valid:
                return self._variant_failure(variant, validation_error, started)

            try:
                output = self._promote(variant, scratch_dir, workspace.package_dir / variant.label)
            except OSError as e:
                return self._variant_failure(variant, f"cannot promote output: {e}", started)

        elapsed = time.monotonic() - started
        VARIANT_DURATION_SECONDS.labels(variant=variant.label, status="success").observe(elapsed)
        log_info(
            logger,
            "Variant transcoded",
            variant=variant.label,
            segments=len(output.segment_paths),
            duration_seconds=round(elapsed, 3),
        )
        return VariantResult(success=True, label=variant.label, output=output, duration_seconds=elapsed)

    def _promote(self, variant: QualityVariant, scratch_dir: Path, target_dir: Path) -> VariantOutput:
        scratch_dir.replace(target_dir)
        playlist_path = target_dir / VARIANT_PLAYLIST_NAME
        playlist = parse_media_playlist(playlist_path.read_text(encoding="utf-8"))
        return VariantOutput(
            label=variant.label,
            variant=variant,
            playlist_path=playlist_path,
            segment_paths=[target_dir / uri for uri in playlist.segments],
        )

    def _variant_failure(
        self,
        variant: QualityVariant,
        reason: str,
        started: float,
        error: Optional[PipelineError] = None,
    ) -> VariantResult:
        elapsed = time.monotonic() - started
        VARIANT_DURATION_SECONDS.labels(variant=variant.label, status="failed").observe(elapsed)
        error = error or TranscodeFailed(variant.label, reason)
        log_error(logger, "Variant transcode failed", variant=variant.label, reason=reason)
        return VariantResult(success=False, label=variant.label, error=error, duration_seconds=elapsed)


def parse_probe_output(raw: str) -> MediaInfo:
    """Parse ``ffprobe -print_format json`` output.

    Raises:
        ValueError: If the output is not valid probe JSON
    """
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("ffprobe output is not an object")

    streams = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    has_audio = any(s.get("codec_type") == "audio" for s in streams)

    duration = 0.0
    raw_duration = (data.get("format") or {}).get("duration")
    if raw_duration is None and video is not None:
        raw_duration = video.get("duration")
    if raw_duration is not None:
        try:
            duration = float(raw_duration)
        except (TypeError, ValueError):
            duration = 0.0

    return MediaInfo(
        duration=duration,
        width=int(video.get("width") or 0) if video else 0,
        height=int(video.get("height") or 0) if video else 0,
        has_video=video is not None,
        has_audio=has_audio,
    )
