"""Tests for transcode sessions against the in-process fake server."""
from __future__ import annotations

import io
import json
import unittest
from typing import Any

import httpx

from fake_server import CONTENT, FakeMediaServer, load_json_fixture, mock_client
from plex_transcode.core.errors import (
    ItemNotFoundError,
    SubscriptionFeatureNotAvailableError,
    TranscodeError,
    UnexpectedApiResponseError,
)
from plex_transcode.domain.media import AudioCodec, ContainerFormat, Decision, Metadata, Protocol, VideoCodec
from plex_transcode.domain.transcode import (
    Context,
    TranscodeSessionStats,
    TranscodeState,
    TranscodeStatus,
    VideoTranscodeOptions,
)
from plex_transcode.infra.http import HttpClient
from plex_transcode.services.server import Server
from plex_transcode.services.session import TranscodeSession

ITEM: Metadata = Metadata(key="/library/metadata/159637", title="Big Buck Bunny")
DECISION_PATH: str = "/video/:/transcode/universal/decision"


def _stats(**overrides: Any) -> TranscodeSessionStats:
    data: dict[str, Any] = {"key": "s1", "container": "mp4", "progress": 40.0, "remaining": 30}
    data.update(overrides)
    return TranscodeSessionStats.model_validate(data)


class TestTranscodeStatus(unittest.TestCase):
    """Tests for summarizing stats into a status."""

    def test_error_wins(self) -> None:
        status: TranscodeStatus = TranscodeStatus.from_stats(_stats(error=True, complete=True))
        self.assertEqual(status.state, TranscodeState.ERROR)

    def test_complete(self) -> None:
        status: TranscodeStatus = TranscodeStatus.from_stats(_stats(complete=True))
        self.assertEqual(status, TranscodeStatus(TranscodeState.COMPLETE, progress=100.0))

    def test_transcoding_reports_progress(self) -> None:
        status: TranscodeStatus = TranscodeStatus.from_stats(_stats())
        self.assertEqual(status.state, TranscodeState.TRANSCODING)
        self.assertEqual(status.progress, 40.0)
        self.assertEqual(status.remaining, 30)


class TestTranscodeSession(unittest.IsolatedAsyncioTestCase):
    """Negotiate, poll, download and cancel sessions."""

    async def asyncSetUp(self) -> None:
        self.fake: FakeMediaServer = FakeMediaServer()
        self.client: HttpClient = self.fake.client()
        self.server: Server = Server(self.client)

    async def asyncTearDown(self) -> None:
        await self.client.aclose()

    async def test_negotiates_offline_session(self) -> None:
        """A static session sends the offline flag and the item path, and records the negotiated result."""
        session: TranscodeSession = await self.server.create_transcode_session(
            ITEM, VideoTranscodeOptions(bitrate=4000, width=1280, height=720)
        )

        self.assertTrue(session.is_offline)
        self.assertEqual(session.protocol, Protocol.HTTP)
        self.assertEqual(session.container, ContainerFormat.MP4)
        self.assertEqual(session.video_transcode, (Decision.TRANSCODE, VideoCodec.H264))
        self.assertEqual(session.audio_transcode, (Decision.TRANSCODE, AudioCodec.AAC))

        query: dict[str, str] = dict(self.fake.calls("GET", DECISION_PATH)[0])
        self.assertEqual(query["path"], ITEM.key)
        self.assertEqual(query["offlineTranscode"], "1")
        self.assertEqual(query["session"], session.session_id)
        self.assertEqual(query["transcodeSessionId"], session.session_id)
        self.assertEqual(query["videoResolution"], "1280x720")
        self.assertTrue(query["X-Plex-Client-Profile-Extra"].startswith("add-transcode-target("))

    async def test_status_download_and_cancel(self) -> None:
        """A live session reports progress, downloads its rendition and can be cancelled."""
        session: TranscodeSession = await self.server.create_transcode_session(ITEM, VideoTranscodeOptions())

        status: TranscodeStatus = await session.status()
        self.assertEqual(status.state, TranscodeState.TRANSCODING)
        self.assertEqual(status.progress, 25.5)

        buffer: io.BytesIO = io.BytesIO()
        await session.download(buffer)
        self.assertEqual(buffer.getvalue(), CONTENT)
        self.assertEqual(len(self.fake.calls("GET", "/video/:/transcode/universal/start.mp4")), 1)

        await session.cancel()
        with self.assertRaises(ItemNotFoundError):
            await session.stats()
        # Cancelling a session the server already forgot is still a success
        await session.cancel()

    async def test_sessions_can_be_rebuilt_from_stats(self) -> None:
        """Listing sessions yields handles that download with just the session key."""
        created: TranscodeSession = await self.server.create_transcode_session(ITEM, VideoTranscodeOptions())

        listed: list[TranscodeSession] = await self.server.transcode_sessions()
        self.assertEqual([s.session_id for s in listed], [created.session_id])

        resumed: TranscodeSession = await self.server.transcode_session(created.session_id)
        self.assertEqual(resumed.params.items(), [("session", created.session_id)])
        self.assertEqual(resumed.container, ContainerFormat.MP4)
        self.assertTrue(resumed.is_offline)
        self.assertEqual(resumed.video_transcode, (Decision.TRANSCODE, VideoCodec.H264))

        buffer: io.BytesIO = io.BytesIO()
        await resumed.download(buffer)
        self.assertEqual(buffer.getvalue(), CONTENT)

    async def test_unknown_session_is_not_found(self) -> None:
        with self.assertRaises(ItemNotFoundError):
            await self.server.transcode_session("missing")

    async def test_download_of_missing_session_fails(self) -> None:
        session: TranscodeSession = await self.server.create_transcode_session(ITEM, VideoTranscodeOptions())
        await session.cancel()
        with self.assertRaises(UnexpectedApiResponseError) as ctx:
            await session.download(io.BytesIO())
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_subscription_refusal_surfaces(self) -> None:
        self.fake.decision = "decision_subscription.json"
        with self.assertRaises(SubscriptionFeatureNotAvailableError):
            await self.server.create_transcode_session(ITEM, VideoTranscodeOptions())

    async def test_xml_decision(self) -> None:
        """The negotiation also understands the XML representation."""
        self.fake.decision = "decision_video.xml"
        session: TranscodeSession = await self.server.create_transcode_session(ITEM, VideoTranscodeOptions())
        self.assertEqual(session.container, ContainerFormat.MKV)
        self.assertEqual(session.audio_transcode, (Decision.COPY, AudioCodec.AC3))


class TestSessionEdgeCases(unittest.IsolatedAsyncioTestCase):
    """Behaviour that needs hand-crafted responses."""

    async def test_protocol_mismatch_is_rejected(self) -> None:
        """The server must answer with the protocol that was asked for."""
        body: dict[str, Any] = load_json_fixture("decision_video.json")
        body["MediaContainer"]["Metadata"][0]["Media"][0]["protocol"] = "hls"

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=body)

        async with mock_client(handler) as client:
            with self.assertRaises(TranscodeError) as ctx:
                await Server(client).create_transcode_session(ITEM, VideoTranscodeOptions())
        self.assertIn("invalid protocol", str(ctx.exception))

    async def test_streaming_session_downloads_manifest(self) -> None:
        """DASH sessions fetch the .mpd manifest and keep the default timeout."""
        body: dict[str, Any] = load_json_fixture("decision_video.json")
        body["MediaContainer"]["Metadata"][0]["Media"][0]["protocol"] = "dash"
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.path.endswith("/decision"):
                return httpx.Response(200, json=body)
            return httpx.Response(200, content=b"<MPD/>")

        async with mock_client(handler) as client:
            session: TranscodeSession = await Server(client).create_transcode_session(
                ITEM, VideoTranscodeOptions(), context=Context.STREAMING, protocol=Protocol.DASH
            )
            buffer: io.BytesIO = io.BytesIO()
            await session.download(buffer)

        self.assertFalse(session.is_offline)
        self.assertNotIn("offlineTranscode", seen[0].url.params)
        self.assertEqual(seen[1].url.path, "/video/:/transcode/universal/start.mpd")
        self.assertEqual(seen[1].extensions["timeout"]["read"], 30.0)
        self.assertEqual(buffer.getvalue(), b"<MPD/>")

    async def test_offline_download_disables_timeout(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=b"data")

        async with mock_client(handler) as client:
            session: TranscodeSession = TranscodeSession.from_stats(client, _stats(offlineTranscode=True))
            await session.download(io.BytesIO())

        self.assertEqual(seen[0].url.path, "/video/:/transcode/universal/start.mp4")
        self.assertIsNone(seen[0].extensions["timeout"]["read"])

    async def test_incomplete_download_is_an_error(self) -> None:
        """Only a 200 counts; a not-ready 503 is reported."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="not ready")

        async with mock_client(handler) as client:
            session: TranscodeSession = TranscodeSession.from_stats(client, _stats())
            with self.assertRaises(UnexpectedApiResponseError) as ctx:
                await session.download(io.BytesIO())
        self.assertEqual(ctx.exception.status_code, 503)

    async def test_cancel_failure_is_reported(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text=json.dumps({"error": "crash"}))

        async with mock_client(handler) as client:
            session: TranscodeSession = TranscodeSession.from_stats(client, _stats())
            with self.assertRaises(UnexpectedApiResponseError):
                await session.cancel()

    async def test_stats_server_error_is_not_not_found(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="oops")

        async with mock_client(handler) as client:
            with self.assertRaises(UnexpectedApiResponseError):
                await Server(client).transcode_session("s1")

    async def test_empty_session_list_is_not_found(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"MediaContainer": {"size": 0}})

        async with mock_client(handler) as client:
            with self.assertRaises(ItemNotFoundError):
                await Server(client).transcode_session("s1")
            self.assertEqual(await Server(client).transcode_sessions(), [])


if __name__ == "__main__":
    unittest.main()
