"""Client profile encoding for transcode negotiation.

The server accepts an extra client profile as a tiny clause language, e.g.::

    add-transcode-target(type=videoProfile&context=static&...)+add-direct-play-profile(...)

Encoding happens in two pure steps: ``build_profile`` turns options into an
ordered list of ``Directive`` values and ``serialize_profile`` renders them.
``transcode_params`` wraps the profile together with the flat query parameters
of a negotiation request.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional
from urllib.parse import urlencode

from plex_transcode.core.errors import InvalidTranscodeSettingsError
from plex_transcode.domain.media import ContainerFormat, Protocol
from plex_transcode.domain.transcode import (
    Context,
    TranscodeOptions,
    VideoTranscodeOptions,
)

PROFILE_PARAM: str = "X-Plex-Client-Profile-Extra"
DIRECTIVE_SEPARATOR: str = "+"

ADD_TRANSCODE_TARGET: str = "add-transcode-target"
ADD_DIRECT_PLAY_PROFILE: str = "add-direct-play-profile"

# Index value letting the server pick the media version and combine all parts.
AUTO_INDEX: int = -1


def bs(value: bool) -> str:
    """Render a boolean the way the server expects in query strings."""

    return "1" if value else "0"


def session_id() -> str:
    """Generate an opaque client-side session identifier."""

    return uuid.uuid4().hex


class Query:
    """Ordered, immutable list of query parameters.

    Notes
    -----
    - Order is preserved so the same options always produce the same request.
    - ``param`` returns a new instance; existing queries are never mutated.
    """

    def __init__(self, items: Optional[list[tuple[str, str]]] = None) -> None:
        self._items: tuple[tuple[str, str], ...] = tuple(items or ())

    def param(self, name: str, value: object) -> Query:
        rendered: str = value.value if isinstance(value, Enum) else str(value)
        return Query([*self._items, (name, rendered)])

    def get(self, name: str) -> Optional[str]:
        for key, value in self._items:
            if key == name:
                return value
        return None

    def items(self) -> list[tuple[str, str]]:
        return list(self._items)

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(self._items)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Query) and self._items == other._items

    def __str__(self) -> str:
        return urlencode(self._items)

    def __repr__(self) -> str:
        return f"Query({self._items!r})"


@dataclass(frozen=True)
class Directive:
    """One clause of the client profile: a name and its ordered attributes."""

    name: str
    attributes: tuple[tuple[str, str], ...]

    def serialize(self) -> str:
        rendered: str = "&".join(f"{key}={value}" for key, value in self.attributes)
        return f"{self.name}({rendered})"


def serialize_profile(directives: list[Directive]) -> str:
    return DIRECTIVE_SEPARATOR.join(d.serialize() for d in directives)


def _target_containers(
    containers: list[ContainerFormat], context: Context, protocol: Protocol
) -> list[ContainerFormat]:
    """Containers to offer as transcode targets.

    Notes
    -----
    - Offline (static) transcodes use the caller's containers as given.
    - Streaming transcodes are segmented; the protocol dictates the container
      (DASH segments are mp4, HLS segments are mpegts). Plain HTTP cannot stream.
    """

    if context == Context.STATIC:
        return list(containers)
    if protocol == Protocol.DASH:
        return [ContainerFormat.MP4]
    if protocol == Protocol.HLS:
        return [ContainerFormat.MPEGTS]
    raise InvalidTranscodeSettingsError(f"Protocol {protocol.value} cannot be used in a {context.value} context")


def build_profile(options: TranscodeOptions, context: Context, protocol: Protocol) -> list[Directive]:
    """Build the ordered directive list for ``options``.

    Parameters
    ----------
    options: TranscodeOptions
        Video or music preferences; list order is preference order.
    context: Context
        ``STATIC`` for offline downloads, ``STREAMING`` for playback.
    protocol: Protocol
        Target delivery protocol.

    Returns
    -------
    list[Directive]
        One ``add-transcode-target`` per (container, codec) pair in caller order,
        plus one ``add-direct-play-profile`` matching the first pair.

    Notes
    -----
    - For video the pair codec is the video codec; the audio codec list rides along
      as a comma-separated attribute on every clause.
    - For music the pair codec is the audio codec.
    - Empty container or codec lists are a caller error and simply yield no clauses.
    """

    directives: list[Directive] = []
    containers: list[ContainerFormat] = _target_containers(options.containers, context, protocol)

    if isinstance(options, VideoTranscodeOptions):
        audio_codecs: str = ",".join(c.value for c in options.audio_codecs)
        for container in containers:
            for codec in options.video_codecs:
                directives.append(
                    Directive(
                        ADD_TRANSCODE_TARGET,
                        (
                            ("type", "videoProfile"),
                            ("context", context.value),
                            ("protocol", protocol.value),
                            ("container", container.value),
                            ("videoCodec", codec.value),
                            ("audioCodec", audio_codecs),
                            ("subtitleCodec", ""),
                            ("replace", "true"),
                        ),
                    )
                )
        if containers and options.video_codecs:
            directives.append(
                Directive(
                    ADD_DIRECT_PLAY_PROFILE,
                    (
                        ("type", "videoProfile"),
                        ("container", containers[0].value),
                        ("videoCodec", options.video_codecs[0].value),
                        ("audioCodec", audio_codecs),
                        ("subtitleCodec", ""),
                        ("replace", "true"),
                    ),
                )
            )
    else:
        for container in containers:
            for codec in options.codecs:
                directives.append(
                    Directive(
                        ADD_TRANSCODE_TARGET,
                        (
                            ("type", "musicProfile"),
                            ("context", context.value),
                            ("protocol", protocol.value),
                            ("container", container.value),
                            ("audioCodec", codec.value),
                            ("replace", "true"),
                        ),
                    )
                )
        if containers and options.codecs:
            directives.append(
                Directive(
                    ADD_DIRECT_PLAY_PROFILE,
                    (
                        ("type", "musicProfile"),
                        ("container", containers[0].value),
                        ("audioCodec", options.codecs[0].value),
                        ("replace", "true"),
                    ),
                )
            )
    return directives


def _option_params(query: Query, options: TranscodeOptions) -> Query:
    if isinstance(options, VideoTranscodeOptions):
        query = query.param("transcodeType", "video")
        query = query.param("maxVideoBitrate", options.bitrate).param("videoBitrate", options.bitrate)
        if options.width is not None and options.height is not None:
            query = query.param("videoResolution", f"{options.width}x{options.height}")
        return query.param("subtitles", options.subtitles.value).param("subtitleSize", 100)
    return query.param("transcodeType", "music").param("musicBitrate", options.bitrate)


def transcode_params(
    session: str,
    options: TranscodeOptions,
    context: Context,
    protocol: Protocol,
    media_index: Optional[int] = None,
    part_index: Optional[int] = None,
) -> Query:
    """Build the query parameters of a negotiation request.

    Notes
    -----
    - Numeric bounds (bitrate, resolution) are top-level parameters, never
      directive attributes.
    - ``media_index``/``part_index`` select one media version or one part; when
      omitted ``AUTO_INDEX`` is sent and the server picks the media and combines
      all parts.
    - Callers add ``path`` (and ``keys`` for the queue) themselves.
    """

    query: Query = (
        Query()
        .param("session", session)
        .param("transcodeSessionId", session)
        .param("protocol", protocol)
        .param("context", context)
        .param("directPlay", bs(False))
        .param("directStream", bs(True))
        .param("directStreamAudio", bs(True))
        .param("location", "lan")
        .param("fastSeek", bs(True))
    )
    query = query.param("mediaIndex", AUTO_INDEX if media_index is None else media_index)
    query = query.param("partIndex", AUTO_INDEX if part_index is None else part_index)
    query = _option_params(query, options)
    return query.param(PROFILE_PARAM, serialize_profile(build_profile(options, context, protocol)))
