# SPDX-License-Identifier: LGPL-3.0-or-later
# img2kvm/converters/extractors/writer.py
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Optional

from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from ...core.utils import U
from .pipeline import DecompressedStream


def _part_path(final_path: Path) -> Path:
    return final_path.with_name(final_path.name + ".part")


def materialize(
    logger: logging.Logger,
    stream: DecompressedStream,
    dest: Path,
    *,
    overwrite: bool = False,
    show_progress: Optional[bool] = None,
) -> int:
    """
    Drain `stream` into `dest`.

    Bytes go to `dest.part` first and are renamed into place only after the
    stream ended cleanly; on any error the partial file is removed. Returns
    the number of bytes written.
    """
    dest = Path(dest)
    if dest.exists() and not overwrite:
        stream.close()
        U.die(logger, f"Refusing to overwrite existing file: {dest}", 1)

    tmp = _part_path(dest)

    if show_progress is None:
        show_progress = sys.stderr.isatty()

    total = stream.entry.size if (stream.entry is not None and len(stream.layers) == 1) else None
    written = 0

    logger.info("Decompressing %s -> %s", stream.name or "<stream>", dest)
    try:
        U.ensure_dir(dest.parent)
        U.safe_unlink(tmp)
        with stream, open(tmp, "wb") as out_f, Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeElapsedColumn(),
            TimeRemainingColumn(),
            disable=not show_progress,
        ) as progress:
            task = progress.add_task(f"Decompressing {dest.name}", total=total)
            for chunk in stream:
                out_f.write(chunk)
                written += len(chunk)
                progress.update(task, advance=len(chunk))
            out_f.flush()
            os.fsync(out_f.fileno())
        os.replace(tmp, dest)
    except BaseException:
        stream.close()
        U.safe_unlink(tmp)
        raise

    logger.info("Decompressed payload: %s (%s)", dest, U.human_bytes(written))
    return written
