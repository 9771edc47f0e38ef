"""Interpretation of the server's transcode decision response.

The decision endpoint answers with a ``MediaContainer`` carrying the verdict
codes plus the media tree the server chose. ``parse_decision`` is pure: it takes
the status code and raw body and returns a ``NegotiatedDecision`` or raises.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence, TypeVar

from pydantic import Field

from plex_transcode.core.errors import (
    SubscriptionFeatureNotAvailableError,
    TranscodeError,
    TranscodeRefusedError,
    UnexpectedApiResponseError,
)
from plex_transcode.domain.media import (
    AudioStream,
    Media,
    MediaContainer,
    MediaContainerWrapper,
    Metadata,
    Part,
    Stream,
    VideoStream,
)
from plex_transcode.domain.transcode import DecisionResult
from plex_transcode.infra.http import decode_model, parse_body

logger = logging.getLogger(__name__)

# General decision code the server uses for account-level refusals.
SUBSCRIPTION_REQUIRED_CODE: int = 2011
DOWNLOADS_NOT_ALLOWED_TEXT: str = "downloads not allowed"
SYNC_FEATURE: str = "sync"

# On the decision endpoint this direct-play code means the server will not
# transcode this content at all.
NEGOTIATION_TRANSCODE_REFUSED_CODE: int = 1000

# On a queue item the same value records that the server serves the original
# file (direct play) instead of a transcode.
QUEUE_DIRECT_PLAY_CODE: int = 1000

StreamT = TypeVar("StreamT", VideoStream, AudioStream)


class TranscodeDecisionContainer(DecisionResult, MediaContainer):
    """Decision response envelope; verdict fields sit directly on the container."""

    metadata: list[Metadata] = Field(default_factory=list, alias="Metadata")

    def decision_result(self) -> DecisionResult:
        fields: dict[str, Any] = {name: getattr(self, name) for name in DecisionResult.model_fields}
        return DecisionResult(**fields)


@dataclass(frozen=True)
class NegotiatedDecision:
    """The verdict plus the media, part and streams the server selected."""

    result: DecisionResult
    media: Media
    part: Part
    video: Optional[VideoStream]
    audio: Optional[AudioStream]


def select_stream(streams: Sequence[Stream], kind: type[StreamT]) -> Optional[StreamT]:
    """Pick the stream of ``kind`` flagged selected, else the first one of that kind."""

    candidates: list[StreamT] = [s for s in streams if isinstance(s, kind)]
    for stream in candidates:
        if stream.selected:
            return stream
    return candidates[0] if candidates else None


def select_media(metadata: list[Metadata]) -> Optional[Media]:
    if not metadata:
        return None
    return next((m for m in metadata[0].media if m.selected), None)


def select_part(media: Media) -> Optional[Part]:
    return next((p for p in media.parts if p.selected), None)


def _is_downloads_disallowed(result: DecisionResult) -> bool:
    return (
        result.general_decision_code == SUBSCRIPTION_REQUIRED_CODE
        and DOWNLOADS_NOT_ALLOWED_TEXT in (result.general_decision_text or "").lower()
    )


def parse_decision(status_code: int, body: str, strict: bool = False) -> NegotiatedDecision:
    """Turn a decision response into the negotiated media selection.

    Parameters
    ----------
    status_code: int
        HTTP status of the decision response; kept for diagnostics.
    body: str
        Raw JSON (or XML) body.
    strict: bool
        Reject unknown fields (test mode).

    Returns
    -------
    NegotiatedDecision
        The verdict with the selected media, part and video/audio streams.

    Notes
    -----
    - Refusals are checked first and short-circuit: a subscription refusal (2011 with
      the downloads-not-allowed text) wins over everything, then the direct-play code
      1000 means transcoding is refused. Only then is the media tree inspected, so a
      refused item never yields a meaningless "selected" stream.
    - Selection takes the first ``Metadata``, its ``Media`` flagged selected, that
      media's selected ``Part``, then per kind the selected stream or the first one.

    Raises
    ------
    SubscriptionFeatureNotAvailableError, TranscodeRefusedError
        For authoritative refusals.
    TranscodeError
        When nothing could be selected and the server explained why.
    UnexpectedApiResponseError
        When nothing could be selected and there is no explanation.
    DecodeError
        When the body is malformed.
    """

    wrapper: MediaContainerWrapper[TranscodeDecisionContainer] = decode_model(
        MediaContainerWrapper[TranscodeDecisionContainer], parse_body(body), strict=strict
    )
    container: TranscodeDecisionContainer = wrapper.media_container
    result: DecisionResult = container.decision_result()

    if _is_downloads_disallowed(result):
        raise SubscriptionFeatureNotAvailableError(SYNC_FEATURE)

    if result.direct_play_decision_code == NEGOTIATION_TRANSCODE_REFUSED_CODE:
        raise TranscodeRefusedError(result.direct_play_decision_text or "Transcode refused by server")

    def unresolved() -> Exception:
        if result.transcode_decision_text:
            return TranscodeError(result.transcode_decision_text)
        return UnexpectedApiResponseError(status_code, body)

    media: Optional[Media] = select_media(container.metadata)
    if media is None:
        raise unresolved()
    part: Optional[Part] = select_part(media)
    if part is None:
        raise unresolved()

    video: Optional[VideoStream] = select_stream(part.streams, VideoStream)
    audio: Optional[AudioStream] = select_stream(part.streams, AudioStream)
    if video is None and audio is None:
        raise unresolved()

    logger.debug(
        "Negotiated container=%s video=%s audio=%s",
        media.container,
        video.codec if video else None,
        audio.codec if audio else None,
    )
    return NegotiatedDecision(result=result, media=media, part=part, video=video, audio=audio)
