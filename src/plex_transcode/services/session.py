"""Synchronous transcode sessions.

A session is negotiated once (``create_transcode_session``), then polled for
progress, downloaded from and finally cancelled. The client never renegotiates:
container and codecs are fixed for the session's life.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import Field

from plex_transcode.core.errors import ItemNotFoundError, TranscodeError, UnexpectedApiResponseError
from plex_transcode.domain.media import (
    AudioCodec,
    ContainerFormat,
    Decision,
    MediaContainer,
    MediaContainerWrapper,
    Metadata,
    Protocol,
    VideoCodec,
)
from plex_transcode.domain.transcode import (
    Context,
    TranscodeOptions,
    TranscodeSessionStats,
    TranscodeStatus,
)
from plex_transcode.infra.http import HttpClient, Response, error_from_response
from plex_transcode.services.decision import NegotiatedDecision, parse_decision
from plex_transcode.services.profile import Query, bs, session_id, transcode_params

logger = logging.getLogger(__name__)

SERVER_TRANSCODE_DECISION: str = "/video/:/transcode/universal/decision"
SERVER_TRANSCODE_DOWNLOAD: str = "/video/:/transcode/universal/start.{extension}"
SERVER_TRANSCODE_SESSIONS: str = "/transcode/sessions"
SERVER_TRANSCODE_STOP: str = "/video/:/transcode/universal/stop"


class TranscodeSessionsContainer(MediaContainer):
    transcode_sessions: list[TranscodeSessionStats] = Field(default_factory=list, alias="TranscodeSession")


async def transcode_decision(client: HttpClient, params: Query) -> NegotiatedDecision:
    """Run the negotiation call and interpret its verdict."""

    response: Response = await (
        client.get(SERVER_TRANSCODE_DECISION).params(params).header("Accept", "application/json").send()
    )
    if response.status_code != 200:
        raise await error_from_response(response)
    body: str = await response.text()
    return parse_decision(response.status_code, body, strict=client.strict_schema)


async def transcode_session_stats(client: HttpClient, session_id: str) -> TranscodeSessionStats:
    """Fetch the stats of one session.

    Notes
    -----
    - The server recycles finished or abandoned sessions; a 404 (or an empty list)
      is reported as ``ItemNotFoundError`` rather than a generic server error.
    """

    try:
        data: Any = await client.get(f"{SERVER_TRANSCODE_SESSIONS}/{session_id}").json()
    except UnexpectedApiResponseError as ex:
        if ex.status_code == 404:
            raise ItemNotFoundError(f"Transcode session {session_id} not found") from ex
        raise
    wrapper = client.decode(MediaContainerWrapper[TranscodeSessionsContainer], data)
    sessions: list[TranscodeSessionStats] = wrapper.media_container.transcode_sessions
    if not sessions:
        raise ItemNotFoundError(f"Transcode session {session_id} not found")
    return sessions[0]


async def transcode_sessions(client: HttpClient) -> list[TranscodeSessionStats]:
    """List every transcode session the server currently knows about."""

    data: Any = await client.get(SERVER_TRANSCODE_SESSIONS).json()
    wrapper = client.decode(MediaContainerWrapper[TranscodeSessionsContainer], data)
    return list(wrapper.media_container.transcode_sessions)


class TranscodeSession:
    """A negotiated transcode held by this client.

    Notes
    -----
    - ``session_id`` is client-generated and stable; it is enough to find the
      session again later (see ``TranscodeSession.from_stats``).
    - Holds a reference to the shared ``HttpClient`` but no mutable state, so
      several sessions can be driven concurrently.
    """

    def __init__(
        self,
        client: HttpClient,
        session_id: str,
        params: Query,
        offline: bool,
        protocol: Protocol,
        container: ContainerFormat,
        video_transcode: Optional[tuple[Decision, VideoCodec]] = None,
        audio_transcode: Optional[tuple[Decision, AudioCodec]] = None,
    ) -> None:
        self._client: HttpClient = client
        self._id: str = session_id
        self._params: Query = params
        self._offline: bool = offline
        self._protocol: Protocol = protocol
        self._container: ContainerFormat = container
        self._video_transcode: Optional[tuple[Decision, VideoCodec]] = video_transcode
        self._audio_transcode: Optional[tuple[Decision, AudioCodec]] = audio_transcode

    @classmethod
    def from_stats(cls, client: HttpClient, stats: TranscodeSessionStats) -> TranscodeSession:
        """Rebuild a session from server stats; only the session key is needed to download."""

        video: Optional[tuple[Decision, VideoCodec]] = None
        if stats.video_decision is not None and stats.video_codec is not None:
            video = (stats.video_decision, stats.video_codec)
        audio: Optional[tuple[Decision, AudioCodec]] = None
        if stats.audio_decision is not None and stats.audio_codec is not None:
            audio = (stats.audio_decision, stats.audio_codec)
        return cls(
            client,
            stats.key,
            Query().param("session", stats.key),
            offline=stats.offline_transcode,
            protocol=stats.protocol,
            container=stats.container,
            video_transcode=video,
            audio_transcode=audio,
        )

    @classmethod
    def from_decision(
        cls,
        client: HttpClient,
        session_id: str,
        decision: NegotiatedDecision,
        offline: bool,
        params: Query,
    ) -> TranscodeSession:
        if decision.media.container is None:
            raise TranscodeError("Server returned unexpected response")
        video: Optional[tuple[Decision, VideoCodec]] = None
        if decision.video is not None and decision.video.decision is not None:
            video = (decision.video.decision, decision.video.codec)
        audio: Optional[tuple[Decision, AudioCodec]] = None
        if decision.audio is not None and decision.audio.decision is not None:
            audio = (decision.audio.decision, decision.audio.codec)
        return cls(
            client,
            session_id,
            params,
            offline=offline,
            protocol=decision.media.protocol or Protocol.HTTP,
            container=decision.media.container,
            video_transcode=video,
            audio_transcode=audio,
        )

    @property
    def session_id(self) -> str:
        return self._id

    @property
    def params(self) -> Query:
        return self._params

    @property
    def is_offline(self) -> bool:
        return self._offline

    @property
    def protocol(self) -> Protocol:
        return self._protocol

    @property
    def container(self) -> ContainerFormat:
        return self._container

    @property
    def video_transcode(self) -> Optional[tuple[Decision, VideoCodec]]:
        """The video decision and target codec, if the rendition has video."""
        return self._video_transcode

    @property
    def audio_transcode(self) -> Optional[tuple[Decision, AudioCodec]]:
        """The audio decision and target codec, if the rendition has audio."""
        return self._audio_transcode

    def _extension(self) -> str:
        # The server does not seem to care, but other clients request a matching extension
        if self._protocol == Protocol.DASH:
            return "mpd"
        if self._protocol == Protocol.HLS:
            return "m3u8"
        return self._container.value

    async def stats(self) -> TranscodeSessionStats:
        return await transcode_session_stats(self._client, self._id)

    async def status(self) -> TranscodeStatus:
        """Summarize the current stats as complete, error or transcoding."""

        return TranscodeStatus.from_stats(await self.stats())

    async def download(self, writer: Any) -> None:
        """Download the rendition into ``writer``.

        Notes
        -----
        - For DASH/HLS sessions this fetches the manifest bytes as-is; interpreting
          the manifest is up to the caller.
        - Offline transcodes can be downloaded while still running: the server sends
          what exists and keeps the connection open until more is produced, so the
          timeout is disabled for them.
        - There is no way to resume mid-file. If the download fails it has to start
          over, so waiting for completion before downloading large offline
          transcodes is usually better.
        - Only HTTP 200 is success; a 503 (transcode not ready) is an error too.
        """

        builder = self._client.get(SERVER_TRANSCODE_DOWNLOAD.format(extension=self._extension())).params(
            self._params
        )
        if self._offline:
            builder = builder.timeout(None)
        response: Response = await builder.send()
        if response.status_code != 200:
            raise await error_from_response(response)
        await response.copy_to(writer)

    async def cancel(self) -> None:
        """Stop the transcode and remove its data from the server.

        Notes
        -----
        - A 404 also counts as success: the server sometimes reports the session
          missing while still cancelling it.
        - Cancelling several sessions in quick succession, or a session right after
          it started, has been seen to crash some server builds. Pace cancellations.
        """

        response: Response = await self._client.get(SERVER_TRANSCODE_STOP).params([("session", self._id)]).send()
        if response.status_code not in (200, 404):
            raise await error_from_response(response)
        await response.consume()
        logger.info("Cancelled transcode session %s", self._id, extra={"session_id": self._id})

    def __repr__(self) -> str:
        return (
            f"TranscodeSession(id={self._id!r}, offline={self._offline}, protocol={self._protocol.value}, "
            f"container={self._container.value})"
        )


async def create_transcode_session(
    client: HttpClient,
    item: Metadata,
    options: TranscodeOptions,
    context: Context = Context.STATIC,
    protocol: Protocol = Protocol.HTTP,
    media_index: Optional[int] = None,
    part_index: Optional[int] = None,
) -> TranscodeSession:
    """Negotiate a new transcode session for ``item``.

    Parameters
    ----------
    client: HttpClient
        Transport bound to the server.
    item: Metadata
        The library item; only its ``key`` is sent.
    options: TranscodeOptions
        Video or music preferences.
    context: Context
        ``STATIC`` produces an offline transcode for download.
    protocol: Protocol
        ``HTTP`` for a single file, ``DASH``/``HLS`` for streaming.
    media_index, part_index: Optional[int]
        Restrict negotiation to one media version or one part.

    Raises
    ------
    SubscriptionFeatureNotAvailableError, TranscodeRefusedError, TranscodeError,
    DecodeError, UnexpectedApiResponseError, TransportError
    """

    new_id: str = session_id()
    params: Query = transcode_params(new_id, options, context, protocol, media_index, part_index).param(
        "path", item.key
    )
    offline: bool = context == Context.STATIC
    if offline:
        params = params.param("offlineTranscode", bs(True))

    decision: NegotiatedDecision = await transcode_decision(client, params)

    if (decision.media.protocol or Protocol.HTTP) != protocol:
        raise TranscodeError("Server returned an invalid protocol.")

    session: TranscodeSession = TranscodeSession.from_decision(client, new_id, decision, offline, params)
    logger.info(
        "Negotiated transcode session %s for %s: %r",
        new_id,
        item.key,
        session,
        extra={"session_id": new_id, "key": item.key},
    )
    return session
