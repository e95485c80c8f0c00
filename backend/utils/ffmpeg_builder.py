from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, replace
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from errors import InvalidOperation, UnsupportedOperation
from models.operation_models import (
    AudioMuteOperation,
    AudioVolumeOperation,
    FormatConvertOperation,
    GrayscaleOperation,
    Operation,
    OperationAdapter,
    OperationType,
    ProcessingOptions,
    ResizeOperation,
    TrimOperation,
)

DEFAULT_FFMPEG_BIN = "ffmpeg"

GRAYSCALE_FILTER = "colorchannelmixer=.3:.4:.3:0:.3:.4:.3:0:.3:.4:.3"

_FORMAT_PATTERN = re.compile(r"^[A-Za-z0-9_]{1,32}$")

_KNOWN_OPERATIONS = {op.value for op in OperationType}


@dataclass(frozen=True)
class InvocationSpec:
    executable: str
    args: tuple[str, ...]
    input_path: str
    output_path: str
    description: str = ""

    @property
    def argv(self) -> list[str]:
        return [self.executable, *self.args]

    def with_output(self, output_path: str) -> InvocationSpec:
        """Same invocation writing to ``output_path`` (always the last argument)."""
        return replace(self, args=(*self.args[:-1], output_path), output_path=output_path)

    def format(self, limit: int = 4000) -> str:
        text = " ".join(self.argv)
        if len(text) > limit:
            return f"{text[:limit]}... [truncated]"
        return text


@dataclass
class _Steps:
    pre_output: list[str] = field(default_factory=list)
    video_filters: list[str] = field(default_factory=list)
    audio_filters: list[str] = field(default_factory=list)
    codec_args: list[str] = field(default_factory=list)


def _number(value: Any, field_name: str) -> float:
    if isinstance(value, bool):
        raise InvalidOperation(f"{field_name} must be a number", field=field_name)
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        raise InvalidOperation(f"{field_name} must be a number", field=field_name)
    if not math.isfinite(numeric):
        raise InvalidOperation(f"{field_name} must be finite", field=field_name)
    return numeric


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.6f}".rstrip("0").rstrip(".")


def _positive_int(value: Any, field_name: str) -> int:
    numeric = _number(value, field_name)
    if not numeric.is_integer() or numeric <= 0:
        raise InvalidOperation(f"{field_name} must be a positive integer", field=field_name)
    return int(numeric)


def _validate_trim(start: Any, duration: Any) -> tuple[float, float]:
    start_value = _number(start, "start")
    if start_value < 0:
        raise InvalidOperation("start must be >= 0", field="start")
    duration_value = _number(duration, "duration")
    if duration_value <= 0:
        raise InvalidOperation("duration must be > 0", field="duration")
    return start_value, duration_value


def _validate_format(value: Any) -> str:
    if not isinstance(value, str) or not _FORMAT_PATTERN.match(value):
        raise InvalidOperation(
            "format must be a muxer name made of letters, digits or '_'",
            field="format",
        )
    return value.lower()


def _validate_volume(value: Any, field_name: str = "level") -> float:
    level = _number(value, field_name)
    if level <= 0:
        raise InvalidOperation(f"{field_name} must be > 0", field=field_name)
    return level


def _safe_path(path: str, field_name: str) -> str:
    if not path:
        raise InvalidOperation(f"{field_name} is required", field=field_name)
    # A bare leading '-' would be parsed by ffmpeg as an option.
    if path.startswith("-"):
        return f"./{path}"
    return path


class OperationToFFmpeg:
    """Maps a single operation or an option set onto ffmpeg arguments.

    Output arguments are assembled in a fixed order: seek/duration, video
    filter chain, size, container format, audio mode, audio filter chain,
    codec copies. The same inputs always produce the same argument vector.
    """

    def __init__(self, input_path: str, output_path: str, executable: str = DEFAULT_FFMPEG_BIN):
        self.input_path = _safe_path(input_path, "input_path")
        self.output_path = _safe_path(output_path, "output_path")
        self.executable = executable

        self._trim: tuple[float, float] | None = None
        self._size: tuple[int, int] | None = None
        self._grayscale = False
        self._format: str | None = None
        self._mute = False
        self._volume: float | None = None
        self._stream_copy = False
        self._copy_video = False

    def apply_operation(self, operation: Operation) -> OperationToFFmpeg:
        if isinstance(operation, TrimOperation):
            self._trim = _validate_trim(operation.start, operation.duration)
            self._stream_copy = True
        elif isinstance(operation, ResizeOperation):
            self._size = (
                _positive_int(operation.width, "width"),
                _positive_int(operation.height, "height"),
            )
        elif isinstance(operation, GrayscaleOperation):
            self._grayscale = True
        elif isinstance(operation, FormatConvertOperation):
            self._format = _validate_format(operation.format)
        elif isinstance(operation, AudioMuteOperation):
            self._mute = True
            self._copy_video = True
        elif isinstance(operation, AudioVolumeOperation):
            self._volume = _validate_volume(operation.level)
            self._copy_video = True
        else:
            raise UnsupportedOperation(getattr(operation, "type", type(operation).__name__))
        return self

    def apply_options(self, options: ProcessingOptions) -> OperationToFFmpeg:
        if options.is_empty():
            raise InvalidOperation("At least one processing option is required", field="options")

        if options.trim is not None:
            self._trim = _validate_trim(options.trim.start, options.trim.duration)
        if options.resize is not None:
            self._size = (
                _positive_int(options.resize.width, "resize.width"),
                _positive_int(options.resize.height, "resize.height"),
            )
        if options.grayscale:
            self._grayscale = True
        if options.format is not None:
            self._format = _validate_format(options.format)
        if options.audio is not None:
            if options.audio.remove:
                self._mute = True
            elif options.audio.volume is not None:
                self._volume = _validate_volume(options.audio.volume, "audio.volume")

        # A trim on its own keeps the original streams.
        only_trim = (
            self._trim is not None
            and self._size is None
            and not self._grayscale
            and self._format is None
            and not self._mute
            and self._volume is None
        )
        self._stream_copy = only_trim
        return self

    def build(self, description: str = "") -> InvocationSpec:
        steps = _Steps()

        if self._trim is not None:
            start, duration = self._trim
            steps.pre_output.extend(["-ss", _format_number(start), "-t", _format_number(duration)])

        if self._grayscale:
            steps.video_filters.append(GRAYSCALE_FILTER)

        if self._mute:
            steps.codec_args.append("-an")
        elif self._volume is not None:
            steps.audio_filters.append(f"volume={_format_number(self._volume)}")

        args: list[str] = ["-y", "-hide_banner", "-i", self.input_path]
        args.extend(steps.pre_output)
        if steps.video_filters:
            args.extend(["-vf", ",".join(steps.video_filters)])
        if self._size is not None:
            width, height = self._size
            args.extend(["-s", f"{width}x{height}"])
        if self._format is not None:
            args.extend(["-f", self._format])
        if steps.audio_filters:
            args.extend(["-af", ",".join(steps.audio_filters)])
        if self._stream_copy:
            args.extend(["-c", "copy"])
        elif self._copy_video and not steps.video_filters and self._size is None:
            args.extend(["-c:v", "copy"])
        args.extend(steps.codec_args)
        args.append(self.output_path)

        return InvocationSpec(
            executable=self.executable,
            args=tuple(args),
            input_path=self.input_path,
            output_path=self.output_path,
            description=description,
        )


def parse_operation(data: dict[str, Any] | str) -> Operation:
    """Parse a raw request value into an ``Operation``.

    Accepts either a bare tag (``"grayscale"``) or a mapping with a ``type``
    key plus parameters.
    """
    if isinstance(data, str):
        data = {"type": data}
    if not isinstance(data, dict):
        raise InvalidOperation("operation must be an object or a name", field="operation")

    tag = data.get("type")
    if not isinstance(tag, str) or tag not in _KNOWN_OPERATIONS:
        raise UnsupportedOperation(str(tag))

    try:
        return OperationAdapter.validate_python(data)
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        loc = [str(part) for part in first.get("loc", ()) if str(part) != tag]
        field_name = loc[-1] if loc else "operation"
        raise InvalidOperation(
            f"Invalid {tag} parameter {field_name}: {first.get('msg', 'invalid value')}",
            field=field_name,
        ) from e


def parse_options(data: dict[str, Any]) -> ProcessingOptions:
    if not isinstance(data, dict):
        raise InvalidOperation("options must be an object", field="options")
    try:
        return ProcessingOptions.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        loc = ".".join(str(part) for part in first.get("loc", ())) or "options"
        raise InvalidOperation(
            f"Invalid processing option {loc}: {first.get('msg', 'invalid value')}",
            field=loc,
        ) from e


def build_command(
    operation: Operation,
    input_path: str,
    output_path: str,
    executable: str = DEFAULT_FFMPEG_BIN,
) -> InvocationSpec:
    converter = OperationToFFmpeg(input_path, output_path, executable)
    converter.apply_operation(operation)
    return converter.build(description=operation.type)


def build_options_command(
    options: ProcessingOptions,
    input_path: str,
    output_path: str,
    executable: str = DEFAULT_FFMPEG_BIN,
) -> InvocationSpec:
    converter = OperationToFFmpeg(input_path, output_path, executable)
    converter.apply_options(options)
    return converter.build(description="options")


def output_extension(operation: Operation | None, options: ProcessingOptions | None = None) -> str | None:
    """Extension implied by a format conversion, if any."""
    target = None
    if isinstance(operation, FormatConvertOperation):
        target = operation.format
    elif options is not None and options.format:
        target = options.format
    if not target or not _FORMAT_PATTERN.match(target):
        return None
    return FORMAT_EXTENSIONS.get(target.lower(), target.lower())


FORMAT_EXTENSIONS = {
    "matroska": "mkv",
    "mpegts": "ts",
    "mov": "mov",
    "mp4": "mp4",
    "webm": "webm",
    "avi": "avi",
    "gif": "gif",
    "ogg": "ogv",
    "mp3": "mp3",
    "wav": "wav",
}
