"""Server-side download queue.

The queue performs the same negotiation as a transcode session, but the server
keeps the work going after the client disconnects. Items move through
``deciding -> waiting -> processing -> available | error | expired`` and the
client only observes transitions by re-fetching (``QueueItem.update``).
"""
from __future__ import annotations

import logging
from email.message import EmailMessage
from typing import Any, Optional, Union

from pydantic import Field

from plex_transcode.core.errors import (
    InvalidHeaderValueError,
    ItemNotFoundError,
    TranscodeIncompleteError,
    UnknownContainerFormatError,
)
from plex_transcode.domain.media import (
    ContainerFormat,
    MediaContainer,
    MediaContainerWrapper,
    Metadata,
    PlexModel,
    Protocol,
)
from plex_transcode.domain.transcode import (
    Context,
    QueueItemState,
    QueueItemStatus,
    QueueStatus,
    TranscodeOptions,
    TranscodeSessionStats,
)
from plex_transcode.infra.http import HttpClient, Response, error_from_response
from plex_transcode.services.decision import QUEUE_DIRECT_PLAY_CODE
from plex_transcode.services.profile import Query, session_id, transcode_params

logger = logging.getLogger(__name__)

DOWNLOAD_QUEUE_CREATE: str = "/downloadQueue"
DOWNLOAD_QUEUE_LIST: str = "/downloadQueue/{queue_id}/items"
DOWNLOAD_QUEUE_ADD: str = "/downloadQueue/{queue_id}/add"
DOWNLOAD_QUEUE_ITEM: str = "/downloadQueue/{queue_id}/items/{item_id}"
DOWNLOAD_QUEUE_DOWNLOAD: str = "/downloadQueue/{queue_id}/items/{item_id}/download"

ByteRange = Union[slice, range]


class QueueRecord(PlexModel):
    id: int
    owner: Optional[int] = None
    client_identifier: Optional[str] = None
    item_count: int = 0
    status: Optional[QueueStatus] = None


class DownloadQueueContainer(MediaContainer):
    queues: list[QueueRecord] = Field(default_factory=list, alias="DownloadQueue")


class QueueAddedItem(PlexModel):
    key: str
    id: int


class QueueAddedContainer(MediaContainer):
    items: list[QueueAddedItem] = Field(default_factory=list, alias="AddedQueueItems")


class QueueItemContainer(MediaContainer):
    items: list[QueueItemState] = Field(default_factory=list, alias="DownloadQueueItem")


def range_header(byte_range: Optional[ByteRange]) -> Optional[str]:
    """Render a ``Range`` header value for a half-open byte range.

    Notes
    -----
    - ``slice(100, 200)`` and ``range(100, 200)`` cover bytes 100..199 and render
      ``bytes=100-199``; ``slice(100, None)`` renders ``bytes=100-``.
    - A range starting at 0 with no end is the whole file and needs no header.

    Raises
    ------
    ValueError
        If the range is empty (``stop <= start``); no valid ``Range`` header exists for it.
    """

    if byte_range is None:
        return None
    start: int = byte_range.start or 0
    if byte_range.stop is not None and byte_range.stop <= start:
        raise ValueError(f"Empty byte range {start}..{byte_range.stop}")
    end: Optional[int] = byte_range.stop - 1 if byte_range.stop is not None else None
    if start == 0 and end is None:
        return None
    return f"bytes={start}-{'' if end is None else end}"


def _filename_extension(content_disposition: str) -> Optional[str]:
    """Extract the filename extension from a ``Content-Disposition`` value.

    Notes
    -----
    - Parsed as a MIME header so quoted filenames may contain ``;`` and RFC 2231/5987
      ``filename*`` values are decoded.
    """

    message: EmailMessage = EmailMessage()
    message["Content-Disposition"] = content_disposition
    filename: Optional[str] = message.get_filename()
    if not filename or "." not in filename:
        return None
    return filename.rsplit(".", 1)[1]


async def fetch_item_state(client: HttpClient, queue_id: int, item_id: int) -> QueueItemState:
    data: Any = await client.get(DOWNLOAD_QUEUE_ITEM.format(queue_id=queue_id, item_id=item_id)).json()
    wrapper = client.decode(MediaContainerWrapper[QueueItemContainer], data)
    if not wrapper.media_container.items:
        raise ItemNotFoundError(f"Queue item {item_id} not found in queue {queue_id}")
    return wrapper.media_container.items[0]


class DownloadQueue:
    """A download queue on the server.

    Notes
    -----
    - The server keeps one queue per user and client identifier; two queue handles
      are equal when both match.
    """

    def __init__(self, client: HttpClient, queue_id: int) -> None:
        self._client: HttpClient = client
        self._id: int = queue_id

    @classmethod
    async def get_or_create(cls, client: HttpClient) -> DownloadQueue:
        """Fetch this client's queue, creating it on first use (idempotent)."""

        data: Any = await client.post(DOWNLOAD_QUEUE_CREATE).json()
        wrapper = client.decode(MediaContainerWrapper[DownloadQueueContainer], data)
        if not wrapper.media_container.queues:
            raise ItemNotFoundError("Server did not return a download queue")
        queue: QueueRecord = wrapper.media_container.queues[0]
        logger.debug("Using download queue %d (%d items)", queue.id, queue.item_count, extra={"queue_id": queue.id})
        return cls(client, queue.id)

    @property
    def id(self) -> int:
        return self._id

    async def items(self) -> list[QueueItem]:
        data: Any = await self._client.get(DOWNLOAD_QUEUE_LIST.format(queue_id=self._id)).json()
        wrapper = self._client.decode(MediaContainerWrapper[QueueItemContainer], data)
        return [QueueItem(self._client, state) for state in wrapper.media_container.items]

    async def item(self, item_id: int) -> QueueItem:
        return QueueItem(self._client, await fetch_item_state(self._client, self._id, item_id))

    async def add_item(
        self,
        metadata: Metadata,
        options: TranscodeOptions,
        media_index: Optional[int] = None,
        part_index: Optional[int] = None,
    ) -> QueueItem:
        """Queue ``metadata`` for an offline transcode with ``options``.

        Notes
        -----
        - Adding the same item with the same options returns the existing entry.
        - Pass no indexes to let the server pick the media and combine all parts, or
          select a specific media version/part.
        - The add response only carries ids, so the item is always re-fetched.
        """

        params: Query = (
            transcode_params(session_id(), options, Context.STATIC, Protocol.HTTP, media_index, part_index)
            .param("keys", metadata.key)
            .param("path", metadata.key)
        )
        data: Any = await self._client.post(DOWNLOAD_QUEUE_ADD.format(queue_id=self._id)).params(params).json()
        wrapper = self._client.decode(MediaContainerWrapper[QueueAddedContainer], data)
        added: Optional[QueueAddedItem] = next(
            (i for i in wrapper.media_container.items if i.key == metadata.key), None
        )
        if added is None:
            raise ItemNotFoundError(f"Server did not add {metadata.key} to queue {self._id}")
        item: QueueItem = await self.item(added.id)
        logger.info(
            "Queued %s as item %d in queue %d",
            metadata.key,
            item.id,
            self._id,
            extra={"queue_id": self._id, "item_id": item.id, "key": metadata.key},
        )
        return item

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DownloadQueue):
            return NotImplemented
        return self._id == other._id and self._client.client_identifier == other._client.client_identifier

    def __hash__(self) -> int:
        return hash((self._id, self._client.client_identifier))

    def __repr__(self) -> str:
        return f"DownloadQueue(id={self._id})"


class QueueItem:
    """An item in a download queue with its last fetched state."""

    def __init__(self, client: HttpClient, state: QueueItemState) -> None:
        self._client: HttpClient = client
        self._state: QueueItemState = state

    @property
    def id(self) -> int:
        return self._state.id

    @property
    def key(self) -> str:
        return self._state.key

    @property
    def queue(self) -> DownloadQueue:
        return DownloadQueue(self._client, self._state.queue_id)

    @property
    def status(self) -> QueueItemStatus:
        return self._state.status

    @property
    def stats(self) -> Optional[TranscodeSessionStats]:
        """Live transcode stats; only present while the item is processing."""
        return self._state.session_stats

    @property
    def error(self) -> Optional[str]:
        return self._state.error

    @property
    def is_transcode(self) -> bool:
        """False when the server will serve the original file untouched."""
        return self._state.decision_result.direct_play_decision_code != QUEUE_DIRECT_PLAY_CODE

    @property
    def _download_path(self) -> str:
        return DOWNLOAD_QUEUE_DOWNLOAD.format(queue_id=self._state.queue_id, item_id=self._state.id)

    async def _probe(self) -> Response:
        response: Response = await self._client.head(self._download_path).send()
        if response.status_code == 503:
            await response.consume()
            raise TranscodeIncompleteError(f"Queue item {self.id} is not ready")
        if response.status_code != 200:
            raise await error_from_response(response)
        await response.consume()
        return response

    async def container(self) -> ContainerFormat:
        """Container format of the file that will be downloaded.

        Notes
        -----
        - Stats expose the container only while transcoding; once complete they are
          gone. The download endpoint's ``Content-Disposition`` filename always has
          the right extension, so it is read from a HEAD probe instead.
        """

        response: Response = await self._probe()
        disposition: Optional[str] = response.headers.get("content-disposition")
        if disposition is None:
            raise InvalidHeaderValueError("Content-Disposition")
        extension: Optional[str] = _filename_extension(disposition)
        if extension is None:
            raise InvalidHeaderValueError("Content-Disposition", disposition)
        container: ContainerFormat = ContainerFormat(extension.lower())
        if container == ContainerFormat.UNKNOWN:
            raise UnknownContainerFormatError(extension)
        return container

    async def content_length(self) -> Optional[int]:
        """Expected download size in bytes, ``None`` when the server does not say."""

        response: Response = await self._probe()
        raw: Optional[str] = response.headers.get("content-length")
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            logger.warning(
                "Ignoring unparseable Content-Length %r for queue item %d",
                raw,
                self.id,
                extra={"queue_id": self._state.queue_id, "item_id": self.id},
            )
            return None

    async def update(self) -> None:
        """Re-fetch the item, replacing the cached state."""

        self._state = await fetch_item_state(self._client, self._state.queue_id, self._state.id)

    async def download(self, writer: Any, byte_range: Optional[ByteRange] = None) -> None:
        """Download the item (or a byte range of it) into ``writer``.

        Notes
        -----
        - Timeouts are disabled: renditions are large and server latency unknown.
        - 200 and 206 are success; 503 means the rendition is not ready yet.
        """

        builder = self._client.get(self._download_path).timeout(None)
        header: Optional[str] = range_header(byte_range)
        if header is not None:
            builder = builder.header("Range", header)
        response: Response = await builder.send()
        if response.status_code in (200, 206):
            await response.copy_to(writer)
            return
        if response.status_code == 503:
            await response.consume()
            raise TranscodeIncompleteError(f"Queue item {self.id} is not ready")
        raise await error_from_response(response)

    async def delete(self) -> None:
        """Remove this item from the queue; the queue itself stays."""

        response: Response = await self._client.delete(
            DOWNLOAD_QUEUE_ITEM.format(queue_id=self._state.queue_id, item_id=self._state.id)
        ).send()
        if response.status_code not in (200, 204):
            raise await error_from_response(response)
        await response.consume()
        logger.info(
            "Deleted item %d from queue %d",
            self.id,
            self._state.queue_id,
            extra={"queue_id": self._state.queue_id, "item_id": self.id},
        )

    def __repr__(self) -> str:
        return f"QueueItem(id={self.id}, key={self.key!r}, status={self.status.value})"
