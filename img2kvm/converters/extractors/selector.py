# SPDX-License-Identifier: LGPL-3.0-or-later
# img2kvm/converters/extractors/selector.py
from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Iterable, Optional, Sequence, Tuple

from ...core.exceptions import AmbiguousOrEmptyArchive
from .sniff import CONTAINER_SUFFIXES

IMAGE_SUFFIXES = (".img", ".iso", ".raw", ".qcow2", ".vmdk", ".vhd", ".vhdx", ".vdi")


@dataclass(frozen=True)
class ArchiveEntry:
    name: str
    size: Optional[int]
    index: int


ArchiveCatalog = Tuple[ArchiveEntry, ...]


def _basename(name: str) -> str:
    return PurePosixPath((name or "").replace("\\", "/")).name.lower()


def is_image_name(name: str) -> bool:
    """
    True for 'disk.img', 'cd.iso', and compressed forms like 'disk.img.gz'.
    """
    base = _basename(name)
    if not base:
        return False
    # peel stream-compression suffixes: disk.img.xz -> disk.img
    p = PurePosixPath(base)
    while p.suffix in CONTAINER_SUFFIXES and p.stem:
        p = PurePosixPath(p.stem)
    return p.suffix in IMAGE_SUFFIXES


def select(entries: Iterable[ArchiveEntry]) -> ArchiveEntry:
    """
    Pick the disk image out of an archive catalog.

      1. a single entry is taken as-is
      2. otherwise the largest image-named entry wins (unknown size sorts
         last, ties go to archive order)
      3. nothing to pick -> AmbiguousOrEmptyArchive
    """
    items: Sequence[ArchiveEntry] = tuple(entries)

    if not items:
        raise AmbiguousOrEmptyArchive(msg="Archive contains no files")

    if len(items) == 1:
        return items[0]

    best: Optional[ArchiveEntry] = None
    for entry in items:
        if not is_image_name(entry.name):
            continue
        if best is None or _size_key(entry) > _size_key(best):
            best = entry

    if best is None:
        names = [e.name for e in items]
        raise AmbiguousOrEmptyArchive(
            msg=f"Archive has {len(items)} files and none looks like a disk image "
            f"(expected one of {', '.join(IMAGE_SUFFIXES)})",
            names=names,
        ).with_context(entries=names)
    return best


def _size_key(entry: ArchiveEntry) -> int:
    return entry.size if entry.size is not None else -1
