"""Server facade binding the transcode and queue services to one client."""
from __future__ import annotations

import logging
from typing import Optional

from plex_transcode.domain.media import Metadata, Protocol
from plex_transcode.domain.transcode import Context, TranscodeOptions, TranscodeSessionStats
from plex_transcode.infra.http import HttpClient
from plex_transcode.services.download_queue import DownloadQueue, QueueItem
from plex_transcode.services.session import (
    TranscodeSession,
    create_transcode_session,
    transcode_session_stats,
    transcode_sessions,
)

logger = logging.getLogger(__name__)


class Server:
    """Entry point for transcoding against one media server.

    Notes
    -----
    - Owns no state beyond the ``HttpClient``; sessions, queues and items created
      here share its connection pool.
    """

    def __init__(self, client: HttpClient) -> None:
        self.client: HttpClient = client

    async def download_queue(self) -> DownloadQueue:
        """Get (or create) the download queue of this client identifier."""

        return await DownloadQueue.get_or_create(self.client)

    async def create_transcode_session(
        self,
        item: Metadata,
        options: TranscodeOptions,
        context: Context = Context.STATIC,
        protocol: Protocol = Protocol.HTTP,
        media_index: Optional[int] = None,
        part_index: Optional[int] = None,
    ) -> TranscodeSession:
        return await create_transcode_session(
            self.client,
            item,
            options,
            context=context,
            protocol=protocol,
            media_index=media_index,
            part_index=part_index,
        )

    async def queue_download(
        self,
        item: Metadata,
        options: TranscodeOptions,
        queue: Optional[DownloadQueue] = None,
        media_index: Optional[int] = None,
        part_index: Optional[int] = None,
    ) -> QueueItem:
        """Add ``item`` to ``queue`` (default: this client's queue) for an offline transcode."""

        target: DownloadQueue = queue if queue is not None else await self.download_queue()
        return await target.add_item(item, options, media_index=media_index, part_index=part_index)

    async def transcode_session(self, session_id: str) -> TranscodeSession:
        """Rebuild a handle for an existing session from its server-side stats.

        Raises
        ------
        ItemNotFoundError
            If the server no longer knows the session.
        """

        stats: TranscodeSessionStats = await transcode_session_stats(self.client, session_id)
        return TranscodeSession.from_stats(self.client, stats)

    async def transcode_sessions(self) -> list[TranscodeSession]:
        stats: list[TranscodeSessionStats] = await transcode_sessions(self.client)
        logger.debug("Server reports %d transcode sessions", len(stats))
        return [TranscodeSession.from_stats(self.client, s) for s in stats]
