"""Domain models for the media tree returned by the server.

Only the substructures that matter for transcode negotiation are modeled: the
item reference (``Metadata``), its ``Media`` versions, their ``Part`` files and
the per-part ``Stream`` list. All models accept both JSON bodies and the mapping
produced from the server's XML representation.
"""
from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Generic, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, field_validator
from pydantic.alias_generators import to_camel


class PlexModel(BaseModel):
    """Base model for server payloads.

    Notes
    -----
    - Field names are snake_case in Python and camelCase on the wire; capitalized
      child collections (``Media``, ``Part``, ...) use explicit aliases.
    - Unknown fields are kept in ``model_extra`` so strict mode can report them;
      otherwise they are ignored.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        frozen=True,
    )


class _LenientEnum(str, Enum):
    """String enum that maps values it does not know to ``UNKNOWN``."""

    @classmethod
    def _missing_(cls, value: object) -> Any:
        return cls("unknown")


class ContainerFormat(_LenientEnum):
    AAC = "aac"
    AVI = "avi"
    FLAC = "flac"
    JPEG = "jpeg"
    M4A = "m4a"
    MKV = "mkv"
    MOV = "mov"
    MP3 = "mp3"
    MP4 = "mp4"
    MPEG = "mpeg"
    MPEGTS = "mpegts"
    OGG = "ogg"
    PNG = "png"
    WAV = "wav"
    WEBM = "webm"
    UNKNOWN = "unknown"


class VideoCodec(_LenientEnum):
    H264 = "h264"
    HEVC = "hevc"
    AV1 = "av1"
    MPEG1 = "mpeg1video"
    MPEG2 = "mpeg2video"
    MPEG4 = "mpeg4"
    MSMPEG4V3 = "msmpeg4v3"
    VC1 = "vc1"
    VP8 = "vp8"
    VP9 = "vp9"
    UNKNOWN = "unknown"


class AudioCodec(_LenientEnum):
    AAC = "aac"
    AC3 = "ac3"
    ALAC = "alac"
    DCA = "dca"
    EAC3 = "eac3"
    FLAC = "flac"
    MP2 = "mp2"
    MP3 = "mp3"
    OPUS = "opus"
    PCM = "pcm"
    TRUEHD = "truehd"
    VORBIS = "vorbis"
    UNKNOWN = "unknown"


class SubtitleCodec(_LenientEnum):
    ASS = "ass"
    DVD_SUBTITLE = "dvd_subtitle"
    MOV_TEXT = "mov_text"
    PGS = "pgs"
    SRT = "srt"
    SSA = "ssa"
    VOBSUB = "vobsub"
    WEBVTT = "vtt"
    UNKNOWN = "unknown"


class Decision(_LenientEnum):
    """What the server will do with a stream or part."""

    COPY = "copy"
    TRANSCODE = "transcode"
    BURN = "burn"
    DIRECT_PLAY = "directplay"
    IGNORE = "ignore"
    UNKNOWN = "unknown"


class Protocol(str, Enum):
    HTTP = "http"
    HLS = "hls"
    DASH = "dash"


class _StreamBase(PlexModel):
    """Fields shared by every stream kind."""

    id: Optional[int] = None
    stream_type: int
    index: Optional[int] = None
    selected: Optional[bool] = None
    default: Optional[bool] = None
    decision: Optional[Decision] = None
    location: Optional[str] = None
    bitrate: Optional[int] = None
    title: Optional[str] = None
    display_title: Optional[str] = None
    language: Optional[str] = None
    language_code: Optional[str] = None


class VideoStream(_StreamBase):
    codec: VideoCodec
    width: Optional[int] = None
    height: Optional[int] = None
    frame_rate: Optional[float] = None
    profile: Optional[str] = None
    level: Optional[int] = None
    bit_depth: Optional[int] = None


class AudioStream(_StreamBase):
    codec: AudioCodec
    channels: Optional[int] = None
    sampling_rate: Optional[int] = None
    audio_channel_layout: Optional[str] = None
    profile: Optional[str] = None


class SubtitleStream(_StreamBase):
    codec: Optional[SubtitleCodec] = None
    forced: Optional[bool] = None
    key: Optional[str] = None


_STREAM_KINDS: dict[int, str] = {1: "video", 2: "audio", 3: "subtitle"}


def _stream_kind(value: Any) -> Optional[str]:
    """Return the union tag for a raw or parsed stream, ``None`` if unknown."""

    raw: Any = value.get("streamType") if isinstance(value, dict) else getattr(value, "stream_type", None)
    try:
        return _STREAM_KINDS.get(int(raw))
    except (TypeError, ValueError):
        return None


Stream = Annotated[
    Union[
        Annotated[VideoStream, Tag("video")],
        Annotated[AudioStream, Tag("audio")],
        Annotated[SubtitleStream, Tag("subtitle")],
    ],
    Discriminator(_stream_kind),
]


class Part(PlexModel):
    """A single file of a media version, with its streams."""

    id: Optional[int] = None
    key: Optional[str] = None
    file: Optional[str] = None
    size: Optional[int] = None
    duration: Optional[int] = None
    container: Optional[ContainerFormat] = None
    protocol: Optional[Protocol] = None
    decision: Optional[Decision] = None
    selected: Optional[bool] = None
    streams: list[Stream] = Field(default_factory=list, alias="Stream")

    @field_validator("streams", mode="before")
    @classmethod
    def _drop_unknown_kinds(cls, value: Any) -> Any:
        # Lyrics and other stream kinds are irrelevant to transcoding
        if isinstance(value, list):
            return [s for s in value if _stream_kind(s) is not None]
        return value


class Media(PlexModel):
    """One version of an item (a specific encode), possibly split over parts."""

    id: Optional[int] = None
    selected: Optional[bool] = None
    container: Optional[ContainerFormat] = None
    protocol: Optional[Protocol] = None
    bitrate: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[int] = None
    video_codec: Optional[VideoCodec] = None
    audio_codec: Optional[AudioCodec] = None
    audio_channels: Optional[int] = None
    video_resolution: Optional[str] = None
    parts: list[Part] = Field(default_factory=list, alias="Part")


class Metadata(PlexModel):
    """Reference to a library item; ``key`` is what negotiation needs."""

    key: str
    rating_key: Optional[str] = None
    guid: Optional[str] = None
    type: Optional[str] = None
    title: Optional[str] = None
    parent_title: Optional[str] = None
    grandparent_title: Optional[str] = None
    duration: Optional[int] = None
    media: list[Media] = Field(default_factory=list, alias="Media")


class MediaContainer(PlexModel):
    """Attributes every ``MediaContainer`` envelope may carry."""

    size: Optional[int] = None
    identifier: Optional[str] = None
    allow_sync: Optional[bool] = None
    library_section_id: Optional[str] = Field(default=None, alias="librarySectionID")
    library_section_title: Optional[str] = None
    library_section_uuid: Optional[str] = Field(default=None, alias="librarySectionUUID")
    media_tag_prefix: Optional[str] = None
    media_tag_version: Optional[str] = None
    resource_session: Optional[str] = None


ContainerT = TypeVar("ContainerT", bound=BaseModel)


class MediaContainerWrapper(PlexModel, Generic[ContainerT]):
    """Top-level ``{"MediaContainer": {...}}`` envelope."""

    media_container: ContainerT = Field(alias="MediaContainer")


def collect_unknown_fields(model: BaseModel, path: str = "") -> list[str]:
    """List dotted paths of every unrecognized field in a parsed model tree."""

    found: list[str] = [f"{path}{name}" for name in (model.model_extra or {})]
    for name in type(model).model_fields:
        value: Any = getattr(model, name)
        children: list[Any] = value if isinstance(value, list) else [value]
        for child in children:
            if isinstance(child, BaseModel):
                found.extend(collect_unknown_fields(child, f"{path}{name}."))
    return found
