"""
Tests for the FFmpeg command builder.

These tests verify that operations and option sets are converted to
deterministic, injection-safe ffmpeg argument vectors.
"""

import subprocess

import pytest

from errors import InvalidOperation, UnsupportedOperation
from models.operation_models import (
    AudioMuteOperation,
    AudioVolumeOperation,
    FormatConvertOperation,
    GrayscaleOperation,
    ResizeOperation,
    TrimOperation,
)
from utils.ffmpeg_builder import (
    GRAYSCALE_FILTER,
    OperationToFFmpeg,
    build_command,
    build_options_command,
    output_extension,
    parse_operation,
    parse_options,
)


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def no_spawn(monkeypatch):
    """Fail the test if anything tries to start a process."""

    def _refuse(*args, **kwargs):
        raise AssertionError("subprocess must not be started")

    monkeypatch.setattr(subprocess, "Popen", _refuse)


# =============================================================================
# SINGLE OPERATIONS
# =============================================================================


class TestBuildCommand:
    def test_resize_size_argument(self):
        spec = build_command(ResizeOperation(width=640, height=360), "in.mp4", "out.mp4")

        index = spec.args.index("-s")
        assert spec.args[index + 1] == "640x360"

    def test_trim_uses_stream_copy(self):
        spec = build_command(TrimOperation(start=1.5, duration=2), "in.mp4", "out.mp4")

        assert spec.argv == [
            "ffmpeg", "-y", "-hide_banner", "-i", "in.mp4",
            "-ss", "1.5", "-t", "2", "-c", "copy", "out.mp4",
        ]

    def test_grayscale_filter(self):
        spec = build_command(GrayscaleOperation(), "in.mp4", "out.mp4")

        assert spec.args[-3:] == ("-vf", GRAYSCALE_FILTER, "out.mp4")

    def test_format_convert(self):
        spec = build_command(FormatConvertOperation(format="webm"), "in.mp4", "out.webm")

        assert "-f" in spec.args
        assert spec.args[spec.args.index("-f") + 1] == "webm"

    def test_audio_mute_copies_video(self):
        spec = build_command(AudioMuteOperation(), "in.mp4", "out.mp4")

        assert spec.args[-4:] == ("-c:v", "copy", "-an", "out.mp4")

    def test_audio_volume(self):
        spec = build_command(AudioVolumeOperation(level=0.5), "in.mp4", "out.mp4")

        assert spec.args[spec.args.index("-af") + 1] == "volume=0.5"

    def test_output_path_is_last_argument(self):
        spec = build_command(GrayscaleOperation(), "in.mp4", "/tmp/out dir/out.mp4")

        assert spec.args[-1] == "/tmp/out dir/out.mp4"
        assert spec.output_path == "/tmp/out dir/out.mp4"

    def test_leading_dash_paths_are_not_options(self):
        spec = build_command(GrayscaleOperation(), "-in.mp4", "-out.mp4")

        assert spec.input_path == "./-in.mp4"
        assert spec.args[-1] == "./-out.mp4"

    def test_custom_executable(self):
        spec = build_command(GrayscaleOperation(), "in.mp4", "out.mp4", executable="/opt/ffmpeg")

        assert spec.argv[0] == "/opt/ffmpeg"

    def test_deterministic(self):
        operation = TrimOperation(start=0, duration=2)

        first = build_command(operation, "in.mp4", "out.mp4")
        second = build_command(operation, "in.mp4", "out.mp4")

        assert first == second

    def test_with_output_replaces_last_argument(self):
        spec = build_command(TrimOperation(duration=1), "in.mp4", "out.mp4")
        moved = spec.with_output("/tmp/.partial-out.mp4")

        assert moved.args[-1] == "/tmp/.partial-out.mp4"
        assert moved.args[:-1] == spec.args[:-1]


class TestInvalidParameters:
    @pytest.mark.parametrize(
        "operation,field",
        [
            (TrimOperation(start=0, duration=0), "duration"),
            (TrimOperation(start=0, duration=-1), "duration"),
            (TrimOperation(start=-1, duration=2), "start"),
            (ResizeOperation(width=0, height=360), "width"),
            (ResizeOperation(width=640, height=-2), "height"),
            (AudioVolumeOperation(level=0), "level"),
            (FormatConvertOperation(format="mp4;rm -rf /"), "format"),
            (FormatConvertOperation(format=""), "format"),
        ],
    )
    def test_rejected_without_spawning(self, no_spawn, operation, field):
        with pytest.raises(InvalidOperation) as exc_info:
            build_command(operation, "in.mp4", "out.mp4")

        assert exc_info.value.field == field
        assert exc_info.value.kind == "invalid_operation"

    def test_non_finite_duration(self, no_spawn):
        with pytest.raises(InvalidOperation):
            build_command(TrimOperation(start=0, duration=float("inf")), "in.mp4", "out.mp4")

    def test_empty_output_path(self):
        with pytest.raises(InvalidOperation):
            OperationToFFmpeg("in.mp4", "")


# =============================================================================
# PARSING
# =============================================================================


class TestParseOperation:
    def test_bare_tag(self):
        assert isinstance(parse_operation("grayscale"), GrayscaleOperation)

    def test_mapping(self):
        operation = parse_operation({"type": "trim", "start": 0, "duration": 2})

        assert isinstance(operation, TrimOperation)
        assert operation.duration == 2

    def test_unknown_tag(self):
        with pytest.raises(UnsupportedOperation) as exc_info:
            parse_operation({"type": "unsupported-op"})

        assert exc_info.value.field == "operation"
        assert exc_info.value.kind == "unsupported_operation"

    def test_missing_parameter(self):
        with pytest.raises(InvalidOperation) as exc_info:
            parse_operation({"type": "resize", "width": 640})

        assert exc_info.value.field == "height"

    def test_wrong_parameter_type(self):
        with pytest.raises(InvalidOperation) as exc_info:
            parse_operation({"type": "trim", "duration": "long"})

        assert exc_info.value.field == "duration"


# =============================================================================
# OPTION SETS
# =============================================================================


class TestOptions:
    def test_order_is_fixed(self):
        options = parse_options(
            {
                "audio": {"volume": 2},
                "format": "mp4",
                "grayscale": True,
                "resize": {"width": 320, "height": 240},
                "trim": {"start": 1, "duration": 3},
            }
        )

        spec = build_options_command(options, "in.mp4", "out.mp4")

        assert spec.args == (
            "-y", "-hide_banner", "-i", "in.mp4",
            "-ss", "1", "-t", "3",
            "-vf", GRAYSCALE_FILTER,
            "-s", "320x240",
            "-f", "mp4",
            "-af", "volume=2",
            "out.mp4",
        )

    def test_remove_audio_wins_over_volume(self):
        options = parse_options({"audio": {"remove": True, "volume": 2}})

        spec = build_options_command(options, "in.mp4", "out.mp4")

        assert "-an" in spec.args
        assert "-af" not in spec.args

    def test_trim_only_copies_streams(self):
        options = parse_options({"trim": {"duration": 2}})

        spec = build_options_command(options, "in.mp4", "out.mp4")

        assert spec.args[-3:] == ("-c", "copy", "out.mp4")

    def test_empty_options_rejected(self):
        with pytest.raises(InvalidOperation):
            build_options_command(parse_options({}), "in.mp4", "out.mp4")

    def test_unknown_option_key(self):
        with pytest.raises(InvalidOperation) as exc_info:
            parse_options({"sharpen": True})

        assert exc_info.value.field == "sharpen"


class TestOutputExtension:
    def test_format_maps_to_extension(self):
        assert output_extension(FormatConvertOperation(format="matroska")) == "mkv"
        assert output_extension(FormatConvertOperation(format="webm")) == "webm"

    def test_other_operations_keep_extension(self):
        assert output_extension(GrayscaleOperation()) is None

    def test_options_format(self):
        assert output_extension(None, parse_options({"format": "mpegts"})) == "ts"
