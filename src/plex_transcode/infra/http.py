"""HTTP transport facade built on ``httpx``.

The transcode and queue services never touch ``httpx`` directly; they build
requests through ``HttpClient`` and read results through ``Response``. Tests
inject an ``httpx`` transport (ASGI app or mock handler) instead of a socket.
"""
from __future__ import annotations

import inspect
import json
import logging
from typing import Any, Iterable, Optional, TypeVar
from urllib.parse import urlencode
from xml.etree.ElementTree import Element, ParseError

import defusedxml.ElementTree as ET
import httpx
from defusedxml import DefusedXmlException
from pydantic import BaseModel, ValidationError

from plex_transcode.core.config import Settings
from plex_transcode.core.errors import DecodeError, TransportError, UnexpectedApiResponseError
from plex_transcode.domain.media import collect_unknown_fields

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT: float = 30.0

ModelT = TypeVar("ModelT", bound=BaseModel)

_DECODABLE_STATUSES: frozenset[int] = frozenset({200, 201, 202})


def _element_to_mapping(element: Element) -> dict[str, Any]:
    data: dict[str, Any] = dict(element.attrib)
    for child in element:
        data.setdefault(child.tag, []).append(_element_to_mapping(child))
    return data


def xml_to_mapping(text: str) -> dict[str, Any]:
    """Convert an XML body into the mapping shape of the equivalent JSON body.

    Notes
    -----
    - Attributes become keys; child elements become lists under their tag name, so
      ``<MediaContainer><Metadata .../></MediaContainer>`` maps to
      ``{"MediaContainer": {"Metadata": [{...}]}}``.
    - Attribute values stay strings; pydantic coerces them during validation.

    Raises
    ------
    DecodeError
        If the body is not well-formed XML or uses forbidden constructs.
    """

    try:
        root: Element = ET.fromstring(text)
    except (ParseError, DefusedXmlException) as ex:
        raise DecodeError(f"Invalid XML response: {ex}") from ex
    return {root.tag: _element_to_mapping(root)}


def parse_body(text: str) -> Any:
    """Decode a JSON or XML response body, picking the format from its first character."""

    if text.lstrip().startswith("<"):
        return xml_to_mapping(text)
    try:
        return json.loads(text)
    except json.JSONDecodeError as ex:
        raise DecodeError(f"Invalid JSON response: {ex}") from ex


def decode_model(model: type[ModelT], data: Any, strict: bool = False) -> ModelT:
    """Validate decoded data into ``model``.

    Notes
    -----
    - In strict mode any unrecognized field anywhere in the tree is a hard failure;
      otherwise unknown fields are ignored.
    """

    try:
        parsed: ModelT = model.model_validate(data)
    except ValidationError as ex:
        raise DecodeError(f"Response does not match {model.__name__}: {ex}") from ex
    if strict:
        unknown: list[str] = collect_unknown_fields(parsed)
        if unknown:
            raise DecodeError(f"Unrecognized fields in {model.__name__}: {', '.join(unknown)}")
    return parsed


class Response:
    """A response whose body has not been read yet.

    Notes
    -----
    - Every body-reading method releases the connection; read the body exactly once.
    """

    def __init__(self, response: httpx.Response) -> None:
        self._response: httpx.Response = response

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    async def text(self) -> str:
        try:
            await self._response.aread()
        except httpx.HTTPError as ex:
            raise TransportError(str(ex)) from ex
        finally:
            await self._response.aclose()
        return self._response.text

    async def json(self) -> Any:
        return parse_body(await self.text())

    async def copy_to(self, writer: Any) -> None:
        """Stream the body into ``writer``.

        Parameters
        ----------
        writer: Any
            Any object with a ``write(bytes)`` method, synchronous (file objects,
            ``io.BytesIO``) or asynchronous (returning an awaitable). ``flush`` is
            called at the end when available.
        """

        try:
            async for chunk in self._response.aiter_bytes():
                result: Any = writer.write(chunk)
                if inspect.isawaitable(result):
                    await result
            flush: Any = getattr(writer, "flush", None)
            if flush is not None:
                result = flush()
                if inspect.isawaitable(result):
                    await result
        except httpx.HTTPError as ex:
            raise TransportError(str(ex)) from ex
        finally:
            await self._response.aclose()

    async def consume(self) -> None:
        """Discard the body while still freeing transport resources."""

        try:
            await self._response.aread()
        except httpx.HTTPError as ex:
            raise TransportError(str(ex)) from ex
        finally:
            await self._response.aclose()


async def error_from_response(response: Response) -> UnexpectedApiResponseError:
    """Read the body of an unexpected response and wrap it for diagnosis."""

    content: str = await response.text()
    return UnexpectedApiResponseError(response.status_code, content)


class RequestBuilder:
    """Accumulates one request; terminal methods send it."""

    def __init__(self, client: HttpClient, method: str, path: str) -> None:
        self._client: HttpClient = client
        self._method: str = method
        self._path: str = path
        self._params: list[tuple[str, str]] = []
        self._headers: dict[str, str] = {}
        self._timeout: Optional[float] = client.timeout
        self._content: Optional[bytes] = None

    def params(self, params: Iterable[tuple[str, str]]) -> RequestBuilder:
        self._params.extend(params)
        return self

    def header(self, name: str, value: str) -> RequestBuilder:
        self._headers[name] = value
        return self

    def timeout(self, seconds: Optional[float]) -> RequestBuilder:
        """Override the default timeout; ``None`` disables timeouts entirely."""

        self._timeout = seconds
        return self

    def body(self, content: str | bytes) -> RequestBuilder:
        self._content = content.encode("utf-8") if isinstance(content, str) else content
        return self

    def json_body(self, payload: Any) -> RequestBuilder:
        return self.header("Content-Type", "application/json").body(json.dumps(payload))

    def form(self, fields: Iterable[tuple[str, str]]) -> RequestBuilder:
        return self.header("Content-Type", "application/x-www-form-urlencoded").body(urlencode(list(fields)))

    async def send(self) -> Response:
        """Send the request and return the response with its body unread.

        Raises
        ------
        TransportError
            On connection failures and timeouts.
        """

        http: httpx.AsyncClient = self._client.http
        request: httpx.Request = http.build_request(
            self._method,
            self._path,
            params=self._params or None,
            headers=self._headers,
            content=self._content,
            timeout=self._timeout,
        )
        logger.debug("%s %s", self._method, request.url.path)
        try:
            response: httpx.Response = await http.send(request, stream=True)
        except httpx.HTTPError as ex:
            raise TransportError(str(ex)) from ex
        logger.debug("%s %s -> %d", self._method, request.url.path, response.status_code)
        return Response(response)

    async def _decoded(self, accept: str) -> Any:
        self.header("Accept", accept)
        response: Response = await self.send()
        if response.status_code not in _DECODABLE_STATUSES:
            raise await error_from_response(response)
        return parse_body(await response.text())

    async def json(self) -> Any:
        """Send with ``Accept: application/json`` and decode a successful body."""

        return await self._decoded("application/json")

    async def xml(self) -> Any:
        """Send with ``Accept: application/xml`` and decode a successful body."""

        return await self._decoded("application/xml")

    async def consume(self) -> None:
        """Send, require HTTP 200 and discard the body."""

        response: Response = await self.header("Accept", "application/json").send()
        if response.status_code != 200:
            raise await error_from_response(response)
        await response.consume()


class HttpClient:
    """Identity-carrying HTTP client for one server.

    Notes
    -----
    - Every request carries the ``X-Plex-*`` identity headers. The token header is
      only sent when a token is configured.
    - The connection pool is owned by the wrapped ``httpx.AsyncClient`` and shared by
      every session and queue item created from this client.
    """

    def __init__(
        self,
        api_url: str,
        *,
        client_identifier: str,
        token: Optional[str] = None,
        product: str = "plex-transcode",
        version: str = "0.1.0",
        platform: str = "Generic",
        platform_version: str = "unknown",
        device: str = "Generic",
        device_name: str = "plex-transcode",
        provides: str = "controller",
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        strict_schema: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url: str = api_url.rstrip("/")
        self.client_identifier: str = client_identifier
        self.timeout: Optional[float] = timeout
        self.strict_schema: bool = strict_schema
        headers: dict[str, str] = {
            "X-Plex-Client-Identifier": client_identifier,
            "X-Plex-Product": product,
            "X-Plex-Version": version,
            "X-Plex-Platform": platform,
            "X-Plex-Platform-Version": platform_version,
            "X-Plex-Device": device,
            "X-Plex-Device-Name": device_name,
            "X-Plex-Provides": provides,
            "X-Plex-Sync-Version": "2",
            "X-Plex-Model": "hosted",
        }
        if token:
            headers["X-Plex-Token"] = token
        self.http: httpx.AsyncClient = httpx.AsyncClient(
            base_url=self.api_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> HttpClient:
        return cls(
            settings.api_url,
            client_identifier=settings.client_identifier,
            token=settings.token.get_secret_value() if settings.token else None,
            product=settings.product,
            version=settings.version,
            platform=settings.platform,
            platform_version=settings.platform_version,
            device=settings.device,
            device_name=settings.device_name,
            provides=settings.provides,
            timeout=settings.request_timeout,
            strict_schema=settings.strict_schema,
            transport=transport,
        )

    def request(self, method: str, path: str) -> RequestBuilder:
        return RequestBuilder(self, method, path)

    def get(self, path: str) -> RequestBuilder:
        return self.request("GET", path)

    def post(self, path: str) -> RequestBuilder:
        return self.request("POST", path)

    def put(self, path: str) -> RequestBuilder:
        return self.request("PUT", path)

    def delete(self, path: str) -> RequestBuilder:
        return self.request("DELETE", path)

    def head(self, path: str) -> RequestBuilder:
        return self.request("HEAD", path)

    def decode(self, model: type[ModelT], data: Any) -> ModelT:
        """Validate ``data`` into ``model`` honoring this client's strictness."""

        return decode_model(model, data, strict=self.strict_schema)

    async def aclose(self) -> None:
        await self.http.aclose()

    async def __aenter__(self) -> HttpClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
