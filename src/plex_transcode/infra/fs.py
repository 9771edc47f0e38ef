"""Filesystem helpers for placing downloaded renditions."""
from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from plex_transcode.core.config import Settings
from plex_transcode.domain.media import ContainerFormat


def resolve_output_dir(path_str: Optional[str], settings: Settings) -> Path:
    """Resolve and prepare the directory downloads are written to.

    Parameters
    ----------
    path_str: Optional[str]
        User-provided directory or None to use ``settings.output_dir``.
    settings: Settings
        Client settings providing the default.

    Returns
    -------
    Path
        A resolved directory path that exists (creation attempted).

    Raises
    ------
    ValueError
        If the resolved path exists but is not a directory.
    """

    if not path_str:
        target: Path = settings.output_dir.expanduser().resolve()
    else:
        target = Path(path_str).expanduser().resolve()

    if target.exists() and not target.is_dir():
        raise ValueError("Output path is not a directory")
    target.mkdir(parents=True, exist_ok=True)
    return target


def unique_path(p: Path) -> Path:
    """Return a unique path by appending " (n)" if the file already exists.

    Notes
    -----
    - Only the file name is modified; the parent directory is preserved.
    """

    if not p.exists():
        return p
    stem: str = p.stem
    suffix: str = p.suffix
    parent: Path = p.parent
    i: int = 1
    while True:
        candidate: Path = parent / f"{stem} ({i}){suffix}"
        if not candidate.exists():
            return candidate
        i += 1


def output_filename(key: str, container: ContainerFormat) -> str:
    """Build a file name for a library item from its key and container.

    Notes
    -----
    - ``/library/metadata/159637`` becomes ``159637.mp4``; characters that are not
      safe in file names are replaced with ``_``.
    """

    stem: str = key.rstrip("/").rsplit("/", 1)[-1] or "download"
    stem = re.sub(r"[^A-Za-z0-9._-]+", "_", stem)
    return f"{stem}.{container.value}"


def output_path(directory: Path, key: str, container: ContainerFormat) -> Path:
    return unique_path(directory / output_filename(key, container))
