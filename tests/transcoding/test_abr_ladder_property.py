"""Property-based tests for the quality ladder and encoder arguments."""

import pytest
from hypothesis import given, settings, strategies as st
from pydantic import ValidationError

from hls_pipeline.modules.transcoding.abr import (
    AUDIO_CHANNELS,
    AUDIO_SAMPLE_RATE,
    DEFAULT_LADDER,
    QualityVariant,
    get_ffmpeg_args_for_variant,
    parse_bitrate,
    validate_ladder,
)


even_dimension = st.integers(min_value=16, max_value=4096).map(lambda n: n - n % 2)
bitrate = st.integers(min_value=64000, max_value=50000000)
label = st.from_regex(r"[A-Za-z0-9_-]{1,12}", fullmatch=True)

variant_strategy = st.builds(
    QualityVariant,
    label=label,
    width=even_dimension,
    height=even_dimension,
    video_bitrate=bitrate,
    audio_bitrate=st.integers(min_value=32000, max_value=320000),
)


class TestParseBitrate:
    """Tests for bitrate parsing."""

    @pytest.mark.parametrize("raw, expected", [
        ("2500k", 2500000),
        ("800k", 800000),
        ("5M", 5000000),
        ("1.5m", 1500000),
        ("128000", 128000),
        (96000, 96000),
    ])
    def test_parses_suffixes(self, raw, expected) -> None:
        assert parse_bitrate(raw) == expected

    @pytest.mark.parametrize("raw", ["", "fast", "12g", "-5k"])
    def test_rejects_invalid(self, raw) -> None:
        with pytest.raises(ValueError):
            parse_bitrate(raw)

    @given(kbps=st.integers(min_value=1, max_value=100000))
    @settings(max_examples=100)
    def test_kilobit_suffix_scales_by_thousand(self, kbps: int) -> None:
        assert parse_bitrate(f"{kbps}k") == kbps * 1000


class TestQualityVariant:
    """Tests for QualityVariant."""

    def test_string_bitrates_are_coerced(self) -> None:
        variant = QualityVariant(label="720p", width=1280, height=720, video_bitrate="2500k")

        assert variant.video_bitrate == 2500000
        assert variant.resolution == "1280x720"

    def test_label_must_be_path_safe(self) -> None:
        with pytest.raises(ValidationError):
            QualityVariant(label="../720p", width=1280, height=720, video_bitrate=2500000)

    @given(variant=variant_strategy)
    @settings(max_examples=100)
    def test_peak_bandwidth_is_at_least_average(self, variant: QualityVariant) -> None:
        """Advertised peak bandwidth never undercuts the average."""
        assert variant.peak_bandwidth >= variant.average_bandwidth
        assert variant.max_video_bitrate >= variant.video_bitrate


class TestEncoderArguments:
    """Property tests for per-variant ffmpeg arguments."""

    @given(variant=variant_strategy)
    @settings(max_examples=100)
    def test_arguments_are_deterministic(self, variant: QualityVariant) -> None:
        """The same variant always yields the same arguments."""
        assert get_ffmpeg_args_for_variant(variant) == get_ffmpeg_args_for_variant(variant)

    @given(variant=variant_strategy)
    @settings(max_examples=100)
    def test_arguments_carry_target_resolution_and_audio(self, variant: QualityVariant) -> None:
        args = get_ffmpeg_args_for_variant(variant)

        filters = args[args.index("-vf") + 1]
        assert f"scale={variant.width}:{variant.height}" in filters
        assert f"pad={variant.width}:{variant.height}" in filters
        assert args[args.index("-b:v") + 1] == str(variant.video_bitrate)
        assert args[args.index("-c:a") + 1] == "aac"
        assert args[args.index("-ar") + 1] == str(AUDIO_SAMPLE_RATE)
        assert args[args.index("-ac") + 1] == str(AUDIO_CHANNELS)


class TestValidateLadder:
    """Tests for ladder validation."""

    def test_default_ladder_is_valid(self) -> None:
        is_valid, errors = validate_ladder(list(DEFAULT_LADDER))

        assert is_valid, errors

    def test_empty_ladder_is_invalid(self) -> None:
        is_valid, errors = validate_ladder([])

        assert not is_valid
        assert errors

    def test_duplicate_labels_are_invalid(self) -> None:
        variant = QualityVariant(label="720p", width=1280, height=720, video_bitrate=2500000)

        is_valid, errors = validate_ladder([variant, variant])

        assert not is_valid
        assert any("Duplicate" in error for error in errors)

    def test_odd_dimensions_are_invalid(self) -> None:
        variant = QualityVariant(label="odd", width=641, height=360, video_bitrate=800000)

        is_valid, _ = validate_ladder([variant])

        assert not is_valid

    @given(variants=st.lists(variant_strategy, min_size=1, max_size=6, unique_by=lambda v: v.label))
    @settings(max_examples=100)
    def test_generated_ladders_are_valid(self, variants: list[QualityVariant]) -> None:
        is_valid, errors = validate_ladder(variants)

        assert is_valid, errors
