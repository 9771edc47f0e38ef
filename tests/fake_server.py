"""In-process fake media server used by the transcode and queue tests.

Built with FastAPI and served to ``HttpClient`` through ``httpx.ASGITransport``.
Only the endpoints the client uses are implemented, with just enough state to
walk a queue item through its lifecycle.
"""
from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from plex_transcode.infra.http import HttpClient

FIXTURES: Path = Path(__file__).resolve().parent / "fixtures"

API_URL: str = "http://plex.test:32400"
CLIENT_ID: str = "test-client"
QUEUE_ID: int = 1
FIRST_ITEM_ID: int = 123

CONTENT: bytes = bytes(range(256)) * 8
SCRIPT: tuple[str, ...] = ("deciding", "waiting", "processing", "available")


def load_fixture(name: str) -> str:
    return (FIXTURES / name).read_text(encoding="utf-8")


def load_json_fixture(name: str) -> dict[str, Any]:
    return json.loads(load_fixture(name))


def _stats(key: str, status: str, container: str = "mp4", protocol: str = "http", offline: bool = True) -> dict[str, Any]:
    complete: bool = status == "available"
    return {
        "key": key,
        "throttled": False,
        "complete": complete,
        "progress": 100.0 if complete else 25.5,
        "speed": 2.5,
        "error": False,
        "duration": 596459,
        "remaining": None if complete else 12,
        "context": "static",
        "sourceVideoCodec": "h264",
        "sourceAudioCodec": "aac",
        "videoDecision": "transcode",
        "audioDecision": "transcode",
        "protocol": protocol,
        "container": container,
        "videoCodec": "h264",
        "audioCodec": "aac",
        "audioChannels": 2,
        "width": 1280,
        "height": 720,
        "offlineTranscode": offline,
    }


class FakeMediaServer:
    """Scripted server state.

    Notes
    -----
    - Each fetch of a queue item advances it one step through ``script``; the
      first fetch (the one ``add_item`` performs) reports ``deciding``. Pass
      another ``script`` to end differently (e.g. ``expired``).
    - Adding the same key with the same client profile returns the existing item.
    - ``requests`` records ``(method, path, query items)`` of every call.
    """

    def __init__(
        self,
        decision: str = "decision_video.json",
        filename: str = "Big Buck Bunny.mp4",
        direct_play: bool = False,
        script: tuple[str, ...] = SCRIPT,
    ) -> None:
        self.decision: str = decision
        self.filename: str = filename
        self.direct_play: bool = direct_play
        self.script: tuple[str, ...] = script
        self.items: dict[int, dict[str, Any]] = {}
        self.sessions: dict[str, dict[str, Any]] = {}
        self.requests: list[tuple[str, str, list[tuple[str, str]]]] = []
        self._next_id: int = FIRST_ITEM_ID

    def calls(self, method: str, path: str) -> list[list[tuple[str, str]]]:
        return [q for m, p, q in self.requests if m == method and p == path]

    def _item_status(self, item: dict[str, Any]) -> str:
        return self.script[min(item["fetches"], len(self.script) - 1)]

    def _item_body(self, item: dict[str, Any]) -> dict[str, Any]:
        status: str = self._item_status(item)
        code: int = 1000 if self.direct_play else 3000
        body: dict[str, Any] = {
            "id": item["id"],
            "queueId": QUEUE_ID,
            "key": item["key"],
            "status": status,
            "transcode": None,
            "DecisionResult": {
                "directPlayDecisionCode": code,
                "generalDecisionCode": 1001,
                "transcodeDecisionCode": 1001,
            },
        }
        if status == "processing":
            body["TranscodeSession"] = _stats(item["session"], status)
        return body

    def app(self) -> FastAPI:
        app: FastAPI = FastAPI(title="fake-media-server")

        @app.middleware("http")
        async def record(request: Request, call_next: Any) -> Any:
            self.requests.append((request.method, request.url.path, list(request.query_params.multi_items())))
            return await call_next(request)

        @app.post("/downloadQueue")
        def queue() -> dict[str, Any]:
            return {
                "MediaContainer": {
                    "size": 1,
                    "DownloadQueue": [
                        {"id": QUEUE_ID, "clientIdentifier": CLIENT_ID, "itemCount": len(self.items), "status": "deciding"}
                    ],
                }
            }

        @app.get("/downloadQueue/{queue_id}/items")
        def items(queue_id: int) -> dict[str, Any]:
            listed: list[dict[str, Any]] = [self._item_body(i) for i in self.items.values()]
            return {"MediaContainer": {"size": len(listed), "DownloadQueueItem": listed}}

        @app.post("/downloadQueue/{queue_id}/add")
        def add(queue_id: int, request: Request) -> dict[str, Any]:
            key: str = request.query_params["keys"]
            profile: str = request.query_params["X-Plex-Client-Profile-Extra"]
            existing: Optional[dict[str, Any]] = next(
                (i for i in self.items.values() if i["key"] == key and i["profile"] == profile), None
            )
            if existing is None:
                existing = {
                    "id": self._next_id,
                    "key": key,
                    "profile": profile,
                    "session": request.query_params["session"],
                    "fetches": 0,
                }
                self.items[self._next_id] = existing
                self._next_id += 1
            return {
                "MediaContainer": {
                    "size": 1,
                    "AddedQueueItems": [{"key": key, "id": existing["id"]}],
                }
            }

        @app.get("/downloadQueue/{queue_id}/items/{item_id}")
        def item(queue_id: int, item_id: int) -> dict[str, Any]:
            found: Optional[dict[str, Any]] = self.items.get(item_id)
            if found is None:
                return {"MediaContainer": {"size": 0, "DownloadQueueItem": []}}
            body: dict[str, Any] = self._item_body(found)
            found["fetches"] += 1
            return {"MediaContainer": {"size": 1, "DownloadQueueItem": [body]}}

        @app.delete("/downloadQueue/{queue_id}/items/{item_id}")
        def delete(queue_id: int, item_id: int) -> Response:
            if self.items.pop(item_id, None) is None:
                return Response(status_code=404)
            return Response(status_code=200)

        def _download_headers(length: int) -> dict[str, str]:
            return {
                "content-disposition": f'attachment; filename="{self.filename}"',
                "content-length": str(length),
                "accept-ranges": "bytes",
            }

        def _available(item_id: int) -> bool:
            found: Optional[dict[str, Any]] = self.items.get(item_id)
            return found is not None and self._item_status(found) == "available"

        @app.head("/downloadQueue/{queue_id}/items/{item_id}/download")
        def head_download(queue_id: int, item_id: int) -> Response:
            if not _available(item_id):
                return Response(status_code=503)
            return Response(content=b"", headers=_download_headers(len(CONTENT)))

        @app.get("/downloadQueue/{queue_id}/items/{item_id}/download")
        def download(queue_id: int, item_id: int, request: Request) -> Response:
            if not _available(item_id):
                return Response(status_code=503)
            header: Optional[str] = request.headers.get("range")
            if header is None:
                return Response(content=CONTENT, headers=_download_headers(len(CONTENT)))
            match = re.fullmatch(r"bytes=(\d+)-(\d*)", header)
            if match is None:
                return Response(status_code=416)
            start: int = int(match.group(1))
            end: int = int(match.group(2)) if match.group(2) else len(CONTENT) - 1
            chunk: bytes = CONTENT[start : end + 1]
            headers: dict[str, str] = _download_headers(len(chunk))
            headers["content-range"] = f"bytes {start}-{end}/{len(CONTENT)}"
            return Response(content=chunk, status_code=206, headers=headers)

        @app.get("/video/:/transcode/universal/decision")
        def decision(request: Request) -> Response:
            body: str = load_fixture(self.decision)
            session: Optional[str] = request.query_params.get("session")
            if session is not None and not self.decision.endswith(".xml"):
                parsed: dict[str, Any] = json.loads(body)
                media: list[dict[str, Any]] = parsed["MediaContainer"].get("Metadata", [{}])[0].get("Media", [])
                if media and media[0].get("selected"):
                    self.sessions[session] = _stats(
                        session,
                        "processing",
                        container=media[0].get("container", "mp4"),
                        protocol=media[0].get("protocol", "http"),
                        offline=request.query_params.get("offlineTranscode") == "1",
                    )
            media_type: str = "application/xml" if self.decision.endswith(".xml") else "application/json"
            return Response(content=body, media_type=media_type)

        @app.get("/transcode/sessions")
        def sessions() -> dict[str, Any]:
            listed: list[dict[str, Any]] = list(self.sessions.values())
            return {"MediaContainer": {"size": len(listed), "TranscodeSession": listed}}

        @app.get("/transcode/sessions/{session_id}")
        def session(session_id: str) -> Response:
            found: Optional[dict[str, Any]] = self.sessions.get(session_id)
            if found is None:
                return Response(status_code=404, content="Not Found")
            return JSONResponse({"MediaContainer": {"size": 1, "TranscodeSession": [found]}})

        @app.get("/video/:/transcode/universal/start.{extension}")
        def start(extension: str, request: Request) -> Response:
            if request.query_params.get("session") not in self.sessions:
                return Response(status_code=404)
            return Response(content=CONTENT, media_type="application/octet-stream")

        @app.get("/video/:/transcode/universal/stop")
        def stop(request: Request) -> Response:
            if self.sessions.pop(request.query_params.get("session", ""), None) is None:
                return Response(status_code=404)
            return Response(status_code=200)

        return app

    def client(self, strict_schema: bool = True) -> HttpClient:
        return HttpClient(
            API_URL,
            client_identifier=CLIENT_ID,
            token="test-token",
            strict_schema=strict_schema,
            transport=httpx.ASGITransport(app=self.app()),
        )


def mock_client(handler: Any, strict_schema: bool = True, token: Optional[str] = "test-token") -> HttpClient:
    """Build an ``HttpClient`` answering every request with ``handler`` (``httpx.MockTransport``)."""

    return HttpClient(
        API_URL,
        client_identifier=CLIENT_ID,
        token=token,
        strict_schema=strict_schema,
        transport=httpx.MockTransport(handler),
    )
