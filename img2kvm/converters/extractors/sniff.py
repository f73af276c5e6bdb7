# SPDX-License-Identifier: LGPL-3.0-or-later
# img2kvm/converters/extractors/sniff.py
"""
Content-based container detection.

The container kind of an input is decided by its leading bytes only; a file
name may be passed along as a hint, but it is never used to classify.
"""
from __future__ import annotations

import io
import logging
import os
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Optional, Union

SNIFF_BYTES = 16

GZIP_MAGIC = b"\x1f\x8b"
XZ_MAGIC = b"\xfd7zXZ\x00"
SEVEN_ZIP_MAGIC = b"7z\xbc\xaf\x27\x1c"
ZIP_MAGIC = b"PK\x03\x04"
BZIP2_MAGIC = b"BZh"

# lzma "alone" header: props(1) + dict size(4, LE) + uncompressed size(8, LE)
_LZMA_HEADER_LEN = 13
_LZMA_MAX_PROPS = 9 * 5 * 5
_LZMA_MIN_DICT = 1 << 12
_LZMA_MAX_DICT = (1 << 30) + (1 << 29)
_LZMA_UNKNOWN_SIZE = 0xFFFFFFFFFFFFFFFF


class ContainerKind(str, Enum):
    RAW = "raw"
    GZIP = "gzip"
    XZ = "xz"
    SEVEN_ZIP = "7z"
    ZIP = "zip"
    BZIP2 = "bzip2"
    LZMA = "lzma"

    @property
    def is_archive(self) -> bool:
        """Multi-entry containers; need a catalog and an entry selection."""
        return self in (ContainerKind.ZIP, ContainerKind.SEVEN_ZIP)

    @property
    def is_stream(self) -> bool:
        """Single-stream compressors; these may wrap one another."""
        return self in (ContainerKind.GZIP, ContainerKind.XZ, ContainerKind.BZIP2, ContainerKind.LZMA)


_EXTENSION_KINDS = {
    ".gz": ContainerKind.GZIP,
    ".gzip": ContainerKind.GZIP,
    ".tgz": ContainerKind.GZIP,
    ".xz": ContainerKind.XZ,
    ".txz": ContainerKind.XZ,
    ".7z": ContainerKind.SEVEN_ZIP,
    ".zip": ContainerKind.ZIP,
    ".bz2": ContainerKind.BZIP2,
    ".bzip2": ContainerKind.BZIP2,
    ".lzma": ContainerKind.LZMA,
    ".img": ContainerKind.RAW,
    ".iso": ContainerKind.RAW,
    ".raw": ContainerKind.RAW,
}

# Suffixes that only describe a container, stripped when naming the payload.
CONTAINER_SUFFIXES = frozenset(ext for ext, kind in _EXTENSION_KINDS.items() if kind is not ContainerKind.RAW)


def _looks_like_lzma_alone(head: bytes) -> bool:
    if len(head) < _LZMA_HEADER_LEN:
        return False
    if head[0] >= _LZMA_MAX_PROPS:
        return False

    dict_size = int.from_bytes(head[1:5], "little")
    if dict_size < _LZMA_MIN_DICT or dict_size > _LZMA_MAX_DICT:
        return False
    # xz-utils only writes 2^n or 2^n + 2^(n-1)
    n = dict_size.bit_length() - 1
    if dict_size != (1 << n) and dict_size != (1 << n) + (1 << (n - 1)):
        return False

    size = int.from_bytes(head[5:13], "little")
    return size == _LZMA_UNKNOWN_SIZE or size < (1 << 48)


def sniff(peek_bytes: bytes) -> ContainerKind:
    """
    Classify a container from its leading bytes.

    Never raises: anything without a known signature is RAW.
    """
    head = bytes(peek_bytes or b"")

    if head.startswith(XZ_MAGIC):
        return ContainerKind.XZ
    if head.startswith(SEVEN_ZIP_MAGIC):
        return ContainerKind.SEVEN_ZIP
    if head.startswith(ZIP_MAGIC):
        return ContainerKind.ZIP
    if head.startswith(GZIP_MAGIC):
        return ContainerKind.GZIP
    if head.startswith(BZIP2_MAGIC) and len(head) > 3 and head[3:4] in b"123456789":
        return ContainerKind.BZIP2
    if _looks_like_lzma_alone(head):
        return ContainerKind.LZMA
    return ContainerKind.RAW


class InputSource(io.RawIOBase):
    """
    Forward-readable view over a caller-owned binary file with non-consuming peek.

    Seekable files are peeked by reading and seeking back. Non-seekable
    streams keep the peeked prefix in a small buffer that is handed out again
    before the underlying stream is read.
    """

    def __init__(self, fileobj: BinaryIO, *, name: Optional[str] = None, owned: bool = False):
        super().__init__()
        self._f = fileobj
        self._owned = owned
        self._prefix = b""
        try:
            self._seekable = bool(fileobj.seekable())
        except (AttributeError, OSError, ValueError):
            self._seekable = False
        if name is None:
            fname = getattr(fileobj, "name", None)
            name = fname if isinstance(fname, str) else None
        self.name = name

    @classmethod
    def open(cls, path: Union[str, os.PathLike]) -> "InputSource":
        p = Path(path)
        return cls(open(p, "rb"), name=str(p), owned=True)

    @property
    def fileobj(self) -> BinaryIO:
        return self._f

    def peek(self, n: int = SNIFF_BYTES) -> bytes:
        if self._seekable:
            pos = self._f.tell()
            try:
                return self._f.read(n)
            finally:
                self._f.seek(pos)

        while len(self._prefix) < n:
            more = self._f.read(n - len(self._prefix))
            if not more:
                break
            self._prefix += more
        return self._prefix[:n]

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return self._seekable

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if not self._seekable:
            raise io.UnsupportedOperation("seek")
        return self._f.seek(offset, whence)

    def tell(self) -> int:
        if not self._seekable:
            raise io.UnsupportedOperation("tell")
        return self._f.tell()

    def readinto(self, b) -> int:
        view = memoryview(b).cast("B")
        if self._prefix:
            n = min(len(view), len(self._prefix))
            view[:n] = self._prefix[:n]
            self._prefix = self._prefix[n:]
            return n
        data = self._f.read(len(view))
        n = len(data)
        view[:n] = data
        return n

    def close(self) -> None:
        if not self.closed and self._owned:
            self._f.close()
        super().close()


def sniff_source(source: InputSource, n: int = SNIFF_BYTES) -> ContainerKind:
    """Sniff without consuming; a subsequent read starts at the same byte."""
    return sniff(source.peek(n))


def kind_from_extension(name: Union[str, os.PathLike, None]) -> Optional[ContainerKind]:
    if not name:
        return None
    suffix = PurePosixPath(str(name).replace("\\", "/")).suffix.lower()
    return _EXTENSION_KINDS.get(suffix)


def check_extension_hint(
    kind: ContainerKind,
    name: Union[str, os.PathLike, None],
    logger: Optional[logging.Logger] = None,
) -> bool:
    """
    Compare the sniffed kind with what the file name suggests.

    Returns False (and warns) on disagreement. The sniffed kind is kept either way.
    """
    hinted = kind_from_extension(name)
    if hinted is None or hinted is kind:
        return True
    if logger is not None:
        logger.warning(
            "Content of %s looks like %s but its extension suggests %s; trusting content",
            name,
            kind.value,
            hinted.value,
        )
    return False


def strip_container_suffixes(name: str) -> str:
    """'disk.img.xz' -> 'disk.img', 'disk.img.gz.zip' -> 'disk.img'."""
    base = PurePosixPath(str(name).replace("\\", "/")).name
    while True:
        p = PurePosixPath(base)
        if p.suffix.lower() in CONTAINER_SUFFIXES and p.stem:
            base = p.stem
            continue
        return base
