"""
Pydantic models for video transformation operations.

An operation is a tagged variant keyed by ``type``:

- ``trim``         start/duration in seconds
- ``resize``       target width/height in pixels
- ``grayscale``    no parameters
- ``format``       target container/muxer name
- ``audio_mute``   drop the audio stream
- ``audio_volume`` scale the audio level

Parameter domains (``duration > 0``, ``width > 0`` ...) are deliberately not
enforced here: the command builder owns that check so that it reports the
offending field as an ``InvalidOperation``.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class OperationType(str, Enum):
    TRIM = "trim"
    RESIZE = "resize"
    GRAYSCALE = "grayscale"
    FORMAT = "format"
    AUDIO_MUTE = "audio_mute"
    AUDIO_VOLUME = "audio_volume"


class TrimOperation(BaseModel):
    type: Literal["trim"] = "trim"
    start: float = Field(default=0.0, description="Start offset in seconds")
    duration: float = Field(description="Length of the kept segment in seconds")


class ResizeOperation(BaseModel):
    type: Literal["resize"] = "resize"
    width: int
    height: int


class GrayscaleOperation(BaseModel):
    type: Literal["grayscale"] = "grayscale"


class FormatConvertOperation(BaseModel):
    type: Literal["format"] = "format"
    format: str = Field(description="Target muxer, e.g. 'mp4', 'webm', 'matroska'")


class AudioMuteOperation(BaseModel):
    type: Literal["audio_mute"] = "audio_mute"


class AudioVolumeOperation(BaseModel):
    type: Literal["audio_volume"] = "audio_volume"
    level: float = Field(description="Volume multiplier, 1.0 = unchanged")


Operation = Annotated[
    Union[
        TrimOperation,
        ResizeOperation,
        GrayscaleOperation,
        FormatConvertOperation,
        AudioMuteOperation,
        AudioVolumeOperation,
    ],
    Field(discriminator="type"),
]

OperationAdapter: TypeAdapter[Operation] = TypeAdapter(Operation)


# =============================================================================
# FLUENT PROCESSING OPTIONS
# =============================================================================


class TrimOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start: float = 0.0
    duration: float


class ResizeOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    width: int
    height: int


class AudioOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    remove: bool = False
    volume: float | None = None


class ProcessingOptions(BaseModel):
    """Option set applied in one engine pass.

    Steps are always composed in the same order (trim, scale, grayscale,
    format, audio mode, audio volume) whatever order the keys arrived in.
    """

    model_config = ConfigDict(extra="forbid")

    trim: TrimOptions | None = None
    resize: ResizeOptions | None = None
    grayscale: bool = False
    format: str | None = None
    audio: AudioOptions | None = None

    def is_empty(self) -> bool:
        audio_empty = self.audio is None or (
            not self.audio.remove and self.audio.volume is None
        )
        return (
            self.trim is None
            and self.resize is None
            and not self.grayscale
            and self.format is None
            and audio_empty
        )
