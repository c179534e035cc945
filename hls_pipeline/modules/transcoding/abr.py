"""Adaptive bitrate (ABR) quality ladder.

A ladder is an ordered list of ``QualityVariant`` values. Resolution and
bitrate pairs are configuration, never derived from the source, so repeated
runs with the same input produce the same encoder arguments.
"""

import re
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

AUDIO_CODEC = "aac"
AUDIO_SAMPLE_RATE = 48000
AUDIO_CHANNELS = 2

_BITRATE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kKmM]?)\s*$")


def parse_bitrate(value: Union[int, str]) -> int:
    """Parse a bitrate such as ``2500k``, ``5M`` or ``800000`` into bps.

    Args:
        value: Integer bps or a string with an optional k/M suffix

    Returns:
        Bitrate in bits per second
    """
    if isinstance(value, (int, float)):
        return int(value)
    match = _BITRATE_RE.match(value)
    if not match:
        raise ValueError(f"Invalid bitrate: {value!r}")
    number, suffix = float(match.group(1)), match.group(2).lower()
    multiplier = {"": 1, "k": 1000, "m": 1000000}[suffix]
    return int(number * multiplier)


class QualityVariant(BaseModel):
    """One rung of the quality ladder."""

    label: str = Field(pattern=r"^[A-Za-z0-9_-]+$")
    width: int
    height: int
    video_bitrate: int  # bps
    audio_bitrate: int = 128000  # bps
    max_bitrate: Optional[int] = None  # bps, defaults to 107% of video_bitrate
    buffer_size: Optional[int] = None  # bits, defaults to 150% of video_bitrate
    profile: str = "main"
    level: str = "4.0"

    @field_validator("video_bitrate", "audio_bitrate", "max_bitrate", "buffer_size", mode="before")
    @classmethod
    def coerce_bitrate(cls, value):
        if value is None:
            return value
        return parse_bitrate(value)

    @property
    def max_video_bitrate(self) -> int:
        return self.max_bitrate or int(self.video_bitrate * 1.07)

    @property
    def video_buffer_size(self) -> int:
        return self.buffer_size or int(self.video_bitrate * 1.5)

    @property
    def peak_bandwidth(self) -> int:
        """Approximate peak bandwidth advertised in the master manifest."""
        return self.max_video_bitrate + self.audio_bitrate

    @property
    def average_bandwidth(self) -> int:
        return self.video_bitrate + self.audio_bitrate

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    class Config:
        frozen = True


DEFAULT_LADDER: tuple[QualityVariant, ...] = (
    QualityVariant(label="1080p", width=1920, height=1080, video_bitrate=5000000,
                   audio_bitrate=128000, profile="high", level="4.0"),
    QualityVariant(label="720p", width=1280, height=720, video_bitrate=2800000,
                   audio_bitrate=128000, profile="main", level="3.1"),
    QualityVariant(label="480p", width=854, height=480, video_bitrate=1400000,
                   audio_bitrate=128000, profile="main", level="3.1"),
    QualityVariant(label="360p", width=640, height=360, video_bitrate=800000,
                   audio_bitrate=128000, profile="main", level="3.0"),
)


def get_ffmpeg_args_for_variant(variant: QualityVariant) -> list[str]:
    """Get FFmpeg video and audio arguments for a ladder variant.

    Video is scaled into the target box and padded so every variant has the
    exact advertised resolution. Audio settings do not depend on the tier.

    Args:
        variant: Ladder variant

    Returns:
        List of FFmpeg arguments
    """
    width, height = variant.width, variant.height
    return [
        "-vf", f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
               f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2,setsar=1",
        "-c:v", "libx264",
        "-profile:v", variant.profile,
        "-level", variant.level,
        "-b:v", str(variant.video_bitrate),
        "-maxrate", str(variant.max_video_bitrate),
        "-bufsize", str(variant.video_buffer_size),
        "-c:a", AUDIO_CODEC,
        "-b:a", str(variant.audio_bitrate),
        "-ar", str(AUDIO_SAMPLE_RATE),
        "-ac", str(AUDIO_CHANNELS),
    ]


def validate_ladder(variants: list[QualityVariant]) -> tuple[bool, list[str]]:
    """Validate a quality ladder.

    Args:
        variants: Ladder to validate

    Returns:
        Tuple of (is_valid, error_messages)
    """
    errors = []

    if not variants:
        errors.append("Quality ladder must have at least one variant")

    seen_labels = set()
    for variant in variants:
        if variant.label in seen_labels:
            errors.append(f"Duplicate variant label {variant.label}")
        seen_labels.add(variant.label)

        if variant.width <= 0 or variant.height <= 0:
            errors.append(f"Dimensions must be positive for {variant.label}")
        elif variant.width % 2 or variant.height % 2:
            errors.append(f"Dimensions must be even for {variant.label}")

        if variant.video_bitrate <= 0 or variant.audio_bitrate <= 0:
            errors.append(f"Bitrates must be positive for {variant.label}")

        if variant.max_video_bitrate < variant.video_bitrate:
            errors.append(f"Max bitrate must be >= bitrate for {variant.label}")

    return len(errors) == 0, errors
