"""Offline download workflow on top of the download queue.

Waits for a queue item to leave its pending/processing states, then writes the
rendition to disk. Used by the CLI; library callers can drive ``QueueItem``
directly instead.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

from plex_transcode.domain.media import ContainerFormat
from plex_transcode.domain.transcode import QueueItemStatus, TranscodeSessionStats
from plex_transcode.infra.fs import output_path
from plex_transcode.services.download_queue import QueueItem

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[QueueItem], None]


async def wait_for_item(
    item: QueueItem,
    deciding_interval: float = 0.2,
    processing_interval: float = 1.0,
    on_update: Optional[ProgressCallback] = None,
) -> QueueItemStatus:
    """Refresh ``item`` until it reaches a terminal status.

    Parameters
    ----------
    item: QueueItem
        The item to watch; its cached state is replaced on every refresh.
    deciding_interval: float
        Seconds between refreshes while the server is deciding or waiting.
    processing_interval: float
        Seconds between refreshes while the server is transcoding.
    on_update: Optional[Callable[[QueueItem], None]]
        Called after every refresh, e.g. to report progress.

    Returns
    -------
    QueueItemStatus
        ``AVAILABLE``, ``ERROR`` or ``EXPIRED``.
    """

    while not item.status.is_terminal:
        interval: float = deciding_interval if item.status.is_pending else processing_interval
        await asyncio.sleep(interval)
        await item.update()
        stats: Optional[TranscodeSessionStats] = item.stats
        context: dict[str, object] = {"queue_id": item.queue.id, "item_id": item.id, "status": item.status}
        if stats is not None:
            logger.debug("Queue item %d: %s %.1f%%", item.id, item.status.value, stats.progress, extra=context)
        else:
            logger.debug("Queue item %d: %s", item.id, item.status.value, extra=context)
        if on_update is not None:
            on_update(item)
    return item.status


async def save_item(item: QueueItem, directory: Path) -> Path:
    """Download an available item into ``directory`` under a unique file name.

    Notes
    -----
    - The container is resolved from the download endpoint before writing so the
      file gets the right extension.
    - A partially written file is removed if the download fails.
    """

    container: ContainerFormat = await item.container()
    target: Path = output_path(directory, item.key, container)
    try:
        with target.open("wb") as fh:
            await item.download(fh)
    except BaseException:
        target.unlink(missing_ok=True)
        raise
    logger.info("Saved queue item %d to %s", item.id, target)
    return target
