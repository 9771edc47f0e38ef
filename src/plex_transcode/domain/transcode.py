"""Domain models for transcode options, negotiation verdicts and progress.

These types are shared by the synchronous transcode session and the
asynchronous download queue; both negotiate with the same options and report
progress with the same stats record.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from plex_transcode.domain.media import (
    AudioCodec,
    ContainerFormat,
    Decision,
    PlexModel,
    Protocol,
    VideoCodec,
)


class Context(str, Enum):
    """Negotiation context: ``STATIC`` for offline downloads, ``STREAMING`` for playback."""

    STATIC = "static"
    STREAMING = "streaming"


class SubtitleMode(str, Enum):
    """How subtitles should be handled in the rendition."""

    AUTO = "auto"
    BURN = "burn"
    NONE = "none"


class VideoTranscodeOptions(BaseModel):
    """Preferences for a video rendition.

    Notes
    -----
    - ``bitrate`` is in kbps.
    - List order is preference order: the server treats the first matching
      transcode target as preferred.
    - Frozen once built; one options instance produces exactly one profile.
    """

    model_config = ConfigDict(frozen=True)

    bitrate: int = Field(default=2000, description="Target video bitrate in kbps")
    width: Optional[int] = Field(default=None, description="Maximum width in pixels")
    height: Optional[int] = Field(default=None, description="Maximum height in pixels")
    subtitles: SubtitleMode = Field(default=SubtitleMode.AUTO, description="Subtitle handling")
    containers: list[ContainerFormat] = Field(default_factory=lambda: [ContainerFormat.MP4])
    video_codecs: list[VideoCodec] = Field(default_factory=lambda: [VideoCodec.H264])
    audio_codecs: list[AudioCodec] = Field(default_factory=lambda: [AudioCodec.AAC])


class MusicTranscodeOptions(BaseModel):
    """Preferences for an audio-only rendition (``bitrate`` in kbps)."""

    model_config = ConfigDict(frozen=True)

    bitrate: int = Field(default=192, description="Target audio bitrate in kbps")
    containers: list[ContainerFormat] = Field(default_factory=lambda: [ContainerFormat.MP3])
    codecs: list[AudioCodec] = Field(default_factory=lambda: [AudioCodec.MP3])


TranscodeOptions = Union[VideoTranscodeOptions, MusicTranscodeOptions]


class DecisionResult(PlexModel):
    """The server's verdict on a negotiation.

    Notes
    -----
    - Codes are only meaningful together with their context; see
      ``services.decision`` for the named sentinel values.
    """

    available_bandwidth: Optional[int] = None
    direct_play_decision_code: Optional[int] = None
    direct_play_decision_text: Optional[str] = None
    general_decision_code: Optional[int] = None
    general_decision_text: Optional[str] = None
    mde_decision_code: Optional[int] = None
    mde_decision_text: Optional[str] = None
    transcode_decision_code: Optional[int] = None
    transcode_decision_text: Optional[str] = None


class TranscodeSessionStats(PlexModel):
    """Progress record of a running (or finished) transcode session."""

    key: str
    throttled: bool = False
    complete: bool = False
    progress: float = 0.0
    size: Optional[int] = None
    speed: Optional[float] = None
    error: bool = False
    duration: Optional[int] = None
    remaining: Optional[int] = None
    context: Optional[Context] = None
    source_video_codec: Optional[VideoCodec] = None
    source_audio_codec: Optional[AudioCodec] = None
    video_decision: Optional[Decision] = None
    audio_decision: Optional[Decision] = None
    subtitle_decision: Optional[Decision] = None
    protocol: Protocol = Protocol.HTTP
    container: ContainerFormat
    video_codec: Optional[VideoCodec] = None
    audio_codec: Optional[AudioCodec] = None
    audio_channels: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    transcode_hw_requested: Optional[bool] = None
    transcode_hw_full_pipeline: Optional[bool] = None
    time_stamp: Optional[float] = None
    max_offset_available: Optional[float] = None
    min_offset_available: Optional[float] = None
    offline_transcode: bool = False


class TranscodeState(str, Enum):
    COMPLETE = "complete"
    ERROR = "error"
    TRANSCODING = "transcoding"


@dataclass(frozen=True)
class TranscodeStatus:
    """Summary of a session's progress.

    Notes
    -----
    - ``progress`` (0-100, fractional) and ``remaining`` (estimated seconds) are only
      meaningful while ``state`` is ``TRANSCODING``.
    """

    state: TranscodeState
    progress: float = 0.0
    remaining: Optional[int] = None

    @classmethod
    def from_stats(cls, stats: TranscodeSessionStats) -> TranscodeStatus:
        if stats.error:
            return cls(state=TranscodeState.ERROR)
        if stats.complete:
            return cls(state=TranscodeState.COMPLETE, progress=100.0)
        return cls(state=TranscodeState.TRANSCODING, progress=stats.progress, remaining=stats.remaining)


class QueueItemStatus(str, Enum):
    """Lifecycle of a download queue item.

    Notes
    -----
    - ``DECIDING`` and ``WAITING`` are pre-start states; ``PROCESSING`` carries live stats.
    - ``AVAILABLE`` means the rendition (transcoded or original) can be downloaded.
    - ``ERROR`` and ``EXPIRED`` are terminal failure states.
    """

    DECIDING = "deciding"
    WAITING = "waiting"
    PROCESSING = "processing"
    AVAILABLE = "available"
    ERROR = "error"
    EXPIRED = "expired"

    @property
    def is_pending(self) -> bool:
        return self in {QueueItemStatus.DECIDING, QueueItemStatus.WAITING}

    @property
    def is_terminal(self) -> bool:
        return self in {QueueItemStatus.AVAILABLE, QueueItemStatus.ERROR, QueueItemStatus.EXPIRED}


class QueueStatus(str, Enum):
    """Aggregate status the server reports for a whole queue."""

    DECIDING = "deciding"
    WAITING = "waiting"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class QueueItemState(PlexModel):
    """Server-side state of one queue item, replaced wholesale on every refresh."""

    id: int
    queue_id: int
    key: str
    status: QueueItemStatus
    error: Optional[str] = None
    # Documented as a transcode session object; servers have only been seen sending null
    transcode: Optional[Any] = None
    decision_result: DecisionResult = Field(default_factory=DecisionResult, alias="DecisionResult")
    session_stats: Optional[TranscodeSessionStats] = Field(default=None, alias="TranscodeSession")

    @field_validator("decision_result", "session_stats", mode="before")
    @classmethod
    def _unwrap_single(cls, value: Any) -> Any:
        # XML bodies carry child elements as lists even when only one may exist
        if isinstance(value, list) and len(value) == 1:
            return value[0]
        return value
