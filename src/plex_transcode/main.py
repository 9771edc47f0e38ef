"""Command line entrypoint: queue an offline transcode and download it."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

import httpx

from plex_transcode.core.config import Settings, get_settings
from plex_transcode.core.errors import PlexTranscodeError
from plex_transcode.core.logging_cfg import setup_logging
from plex_transcode.domain.media import AudioCodec, ContainerFormat, Metadata, VideoCodec
from plex_transcode.domain.transcode import (
    MusicTranscodeOptions,
    QueueItemStatus,
    TranscodeOptions,
    VideoTranscodeOptions,
)
from plex_transcode.infra.fs import resolve_output_dir
from plex_transcode.infra.http import HttpClient
from plex_transcode.services.download_queue import DownloadQueue, QueueItem
from plex_transcode.services.offline import save_item, wait_for_item
from plex_transcode.services.server import Server

logger = logging.getLogger(__name__)


def _known_values(enum: type[Enum]) -> list[str]:
    # UNKNOWN only stands in for server values this client does not recognize
    return [member.value for member in enum if member.name != "UNKNOWN"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="plex-transcode-queue",
        description="Queue an offline transcode on a media server and download the result.",
    )
    parser.add_argument("key", nargs="?", help="Metadata key of the item, e.g. /library/metadata/159637")
    parser.add_argument("--client-id", help="Client identifier; the download queue is scoped to it")
    parser.add_argument("--clear", action="store_true", help="Delete every item in the queue first")
    parser.add_argument("--music", action="store_true", help="Request an audio-only rendition")
    parser.add_argument("--bitrate", type=int, help="Target bitrate in kbps")
    parser.add_argument("--width", type=int, help="Maximum video width")
    parser.add_argument("--height", type=int, help="Maximum video height")
    parser.add_argument(
        "--container",
        action="append",
        choices=_known_values(ContainerFormat),
        help="Acceptable container, most preferred first (repeatable)",
    )
    parser.add_argument(
        "--video-codec",
        action="append",
        choices=_known_values(VideoCodec),
        help="Acceptable video codec (repeatable)",
    )
    parser.add_argument(
        "--audio-codec",
        action="append",
        choices=_known_values(AudioCodec),
        help="Acceptable audio codec (repeatable)",
    )
    parser.add_argument("--output-dir", help="Directory to save the download in")
    parser.add_argument("--keep", action="store_true", help="Leave the item in the queue after downloading")
    return parser


def build_options(args: argparse.Namespace) -> TranscodeOptions:
    """Turn parsed arguments into transcode options, keeping defaults for anything unset."""

    if args.music:
        music: dict[str, object] = {}
        if args.bitrate is not None:
            music["bitrate"] = args.bitrate
        if args.container:
            music["containers"] = [ContainerFormat(c) for c in args.container]
        if args.audio_codec:
            music["codecs"] = [AudioCodec(c) for c in args.audio_codec]
        return MusicTranscodeOptions(**music)

    video: dict[str, object] = {}
    if args.bitrate is not None:
        video["bitrate"] = args.bitrate
    if args.width is not None:
        video["width"] = args.width
    if args.height is not None:
        video["height"] = args.height
    if args.container:
        video["containers"] = [ContainerFormat(c) for c in args.container]
    if args.video_codec:
        video["video_codecs"] = [VideoCodec(c) for c in args.video_codec]
    if args.audio_codec:
        video["audio_codecs"] = [AudioCodec(c) for c in args.audio_codec]
    return VideoTranscodeOptions(**video)


def _report(item: QueueItem) -> None:
    if item.stats is not None:
        print(f"\r{item.status.value}: {item.stats.progress:5.1f}%", end="", file=sys.stderr, flush=True)


async def run(
    args: argparse.Namespace,
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[Path]:
    """Run the queue workflow and return the downloaded file, if any.

    Notes
    -----
    - Mirrors the typical offline flow: acquire the queue, optionally clear it, add
      the item, poll until terminal, resolve the container, download, delete.
    """

    async with HttpClient.from_settings(settings, transport=transport) as client:
        server: Server = Server(client)
        queue: DownloadQueue = await server.download_queue()

        if args.clear:
            for existing in await queue.items():
                await existing.delete()

        items: list[QueueItem] = await queue.items()
        logger.info("Queue %d holds %d items", queue.id, len(items))
        if not args.key:
            for existing in items:
                print(f"{existing.id}\t{existing.status.value}\t{existing.key}")
            return None

        item: QueueItem = await server.queue_download(Metadata(key=args.key), build_options(args), queue=queue)
        status: QueueItemStatus = await wait_for_item(
            item,
            deciding_interval=settings.deciding_poll_interval,
            processing_interval=settings.processing_poll_interval,
            on_update=_report,
        )
        if status != QueueItemStatus.AVAILABLE:
            raise PlexTranscodeError(f"Transcode {status.value}: {item.error or 'no details'}")

        directory: Path = resolve_output_dir(args.output_dir, settings)
        target: Path = await save_item(item, directory)
        print(target)
        if not args.keep:
            await item.delete()
        return target


def main(argv: Optional[Sequence[str]] = None) -> int:
    args: argparse.Namespace = build_parser().parse_args(argv)
    settings: Settings = get_settings()
    if args.client_id:
        settings = settings.model_copy(update={"client_identifier": args.client_id})
    setup_logging(settings.debug)

    try:
        asyncio.run(run(args, settings))
    except PlexTranscodeError as ex:
        logger.error("%s", ex)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
