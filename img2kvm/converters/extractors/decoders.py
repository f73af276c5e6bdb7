# SPDX-License-Identifier: LGPL-3.0-or-later
# img2kvm/converters/extractors/decoders.py
"""
One decoder adapter per container kind.

Every adapter hands out a DecoderHandle whose read_chunk() returns the next
slice of decompressed bytes, b"" at end of stream, and raises DecodeError
for anything that goes wrong. Archive adapters (zip, 7z) additionally build
a catalog of their entries first; a handle is then opened for one entry.
"""
from __future__ import annotations

import bz2
import gzip
import io
import logging
import lzma
import zipfile
import zlib
from typing import BinaryIO, ClassVar, Dict, List, Optional, Type

import py7zr
from py7zr.exceptions import (
    Bad7zFile,
    CrcError,
    DecompressionError,
    PasswordRequired,
    UnsupportedCompressionMethodError,
)

from ...core.exceptions import DecodeError, DecodeErrorKind, decode_error
from .selector import ArchiveCatalog, ArchiveEntry, select
from .sniff import ContainerKind, InputSource

DEFAULT_CHUNK_SIZE = 1024 * 1024

_ZIP_FLAG_ENCRYPTED = 0x1

# Exceptions the decoding libraries use to report bad input.
_DECODE_FAILURES = (
    EOFError,
    OSError,
    zlib.error,
    lzma.LZMAError,
    zipfile.BadZipFile,
    NotImplementedError,
    Bad7zFile,
    CrcError,
    DecompressionError,
    PasswordRequired,
    UnsupportedCompressionMethodError,
)


def translate_error(exc: BaseException, *, kind: ContainerKind, what: str) -> DecodeError:
    """Map a library exception onto the DecodeError taxonomy."""
    if isinstance(exc, DecodeError):
        return exc

    text = str(exc)
    low = text.lower()

    if isinstance(exc, EOFError):
        k = DecodeErrorKind.TRUNCATED_STREAM
    elif isinstance(exc, gzip.BadGzipFile):
        if "crc" in low or "length" in low:
            k = DecodeErrorKind.CORRUPT_DATA
        elif "compression method" in low:
            k = DecodeErrorKind.UNSUPPORTED_METHOD
        else:
            k = DecodeErrorKind.CORRUPT_HEADER
    elif isinstance(exc, zlib.error):
        k = DecodeErrorKind.CORRUPT_DATA
    elif isinstance(exc, lzma.LZMAError):
        if "format not supported" in low:
            k = DecodeErrorKind.CORRUPT_HEADER
        elif "unsupported" in low or "memory usage limit" in low:
            k = DecodeErrorKind.UNSUPPORTED_METHOD
        else:
            k = DecodeErrorKind.CORRUPT_DATA
    elif isinstance(exc, zipfile.BadZipFile):
        k = DecodeErrorKind.CORRUPT_DATA if "crc" in low else DecodeErrorKind.CORRUPT_HEADER
    elif isinstance(exc, (NotImplementedError, UnsupportedCompressionMethodError, PasswordRequired)):
        k = DecodeErrorKind.UNSUPPORTED_METHOD
    elif isinstance(exc, Bad7zFile):
        k = DecodeErrorKind.CORRUPT_HEADER
    elif isinstance(exc, (CrcError, DecompressionError)):
        k = DecodeErrorKind.CORRUPT_DATA
    elif isinstance(exc, OSError) and exc.errno is None:
        # bz2 reports bad payloads as a bare OSError("Invalid data stream")
        k = DecodeErrorKind.CORRUPT_DATA
    else:
        k = DecodeErrorKind.IO_FAILURE

    return decode_error(k, f"{kind.value}: {what}: {text or type(exc).__name__}", exc, container=kind.value)


# ---------------------------------------------------------------------------
# Handles
# ---------------------------------------------------------------------------

class DecoderHandle:
    """Live decode state for one stream; read_chunk() until it returns b""."""

    kind: ContainerKind = ContainerKind.RAW

    def __init__(self, *, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size
        self.bytes_out = 0

    def read_chunk(self) -> bytes:
        raise NotImplementedError

    def close(self) -> None:
        pass


class ReaderHandle(DecoderHandle):
    """Handle over a file-like reader that already decompresses on read()."""

    def __init__(
        self,
        reader: BinaryIO,
        *,
        kind: ContainerKind,
        what: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        owns_reader: bool = True,
    ):
        super().__init__(chunk_size=chunk_size)
        self.kind = kind
        self.what = what
        self._reader: Optional[BinaryIO] = reader
        self._owns_reader = owns_reader

    def read_chunk(self) -> bytes:
        if self._reader is None:
            return b""
        try:
            data = self._reader.read(self.chunk_size)
        except _DECODE_FAILURES as e:
            raise translate_error(e, kind=self.kind, what=self.what) from e
        self.bytes_out += len(data)
        return data

    def close(self) -> None:
        reader, self._reader = self._reader, None
        if reader is not None and self._owns_reader:
            reader.close()


class SevenZipEntryHandle(DecoderHandle):
    """
    Pulls one 7z entry out of its folder's decompressor in bounded slices.

    Entries of a solid folder share one compressed stream, so the bytes of the
    members stored before this one are decoded and dropped first.
    """

    kind = ContainerKind.SEVEN_ZIP

    def __init__(
        self,
        fp: InputSource,
        decompressor,
        *,
        name: str,
        size: int,
        skip: int,
        crc: Optional[int],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        super().__init__(chunk_size=chunk_size)
        self.what = name
        self._fp: Optional[InputSource] = fp
        self._decompressor = decompressor
        self._remaining = size
        self._skip = skip
        self._crc_expected = crc
        self._crc = 0

    def _pull(self, want: int) -> bytes:
        assert self._fp is not None
        before = self._fp.tell()
        try:
            data = self._decompressor.decompress(self._fp, want)
        except _DECODE_FAILURES as e:
            raise translate_error(e, kind=self.kind, what=self.what) from e
        if not data and self._fp.tell() == before:
            raise decode_error(
                DecodeErrorKind.TRUNCATED_STREAM,
                f"7z: {self.what}: packed stream ended with {self._skip + self._remaining} bytes still expected",
                container=self.kind.value,
            )
        return data

    def read_chunk(self) -> bytes:
        if self._fp is None:
            return b""

        while self._skip > 0:
            dropped = self._pull(min(self.chunk_size, self._skip))
            self._skip -= len(dropped)

        if self._remaining <= 0:
            self._finish()
            return b""

        data = self._pull(min(self.chunk_size, self._remaining))
        self._remaining -= len(data)
        self._crc = zlib.crc32(data, self._crc)
        self.bytes_out += len(data)
        return data

    def _finish(self) -> None:
        self._fp = None
        self._decompressor = None
        if self._crc_expected is not None and self._crc != self._crc_expected:
            raise decode_error(
                DecodeErrorKind.CORRUPT_DATA,
                f"7z: {self.what}: CRC mismatch (expected {self._crc_expected:08x}, got {self._crc:08x})",
                container=self.kind.value,
            )

    def close(self) -> None:
        self._fp = None
        self._decompressor = None


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

class Decoder:
    kind: ClassVar[ContainerKind]

    def __init__(self, source: InputSource, *, chunk_size: int = DEFAULT_CHUNK_SIZE, logger: Optional[logging.Logger] = None):
        self.source = source
        self.chunk_size = chunk_size
        self.logger = logger or logging.getLogger(__name__)

    @property
    def label(self) -> str:
        return self.source.name or "<stream>"

    def open(self) -> DecoderHandle:
        raise NotImplementedError

    def close(self) -> None:
        pass


class RawDecoder(Decoder):
    kind = ContainerKind.RAW

    def open(self) -> DecoderHandle:
        # passthrough; the source belongs to whoever opened it
        return ReaderHandle(
            self.source,
            kind=self.kind,
            what=self.label,
            chunk_size=self.chunk_size,
            owns_reader=False,
        )


class _StreamDecoder(Decoder):
    def _reader(self) -> BinaryIO:
        raise NotImplementedError

    def open(self) -> DecoderHandle:
        try:
            reader = self._reader()
        except _DECODE_FAILURES as e:
            raise translate_error(e, kind=self.kind, what=self.label) from e
        return ReaderHandle(reader, kind=self.kind, what=self.label, chunk_size=self.chunk_size)


class GzipDecoder(_StreamDecoder):
    kind = ContainerKind.GZIP

    def _reader(self) -> BinaryIO:
        # GzipFile walks concatenated members on its own.
        return gzip.GzipFile(fileobj=self.source, mode="rb")


class XzDecoder(_StreamDecoder):
    kind = ContainerKind.XZ

    def _reader(self) -> BinaryIO:
        return lzma.LZMAFile(self.source, mode="rb", format=lzma.FORMAT_XZ)


class LzmaDecoder(_StreamDecoder):
    kind = ContainerKind.LZMA

    def _reader(self) -> BinaryIO:
        return lzma.LZMAFile(self.source, mode="rb", format=lzma.FORMAT_ALONE)


class Bzip2Decoder(_StreamDecoder):
    kind = ContainerKind.BZIP2

    def _reader(self) -> BinaryIO:
        return bz2.BZ2File(self.source, mode="rb")


class ArchiveDecoder(Decoder):
    """Multi-entry container: catalog first, then one entry stream."""

    def _require_seekable(self) -> None:
        if not self.source.seekable():
            raise decode_error(
                DecodeErrorKind.UNSUPPORTED_METHOD,
                f"{self.kind.value}: {self.label}: archive needs a seekable input",
                container=self.kind.value,
            )

    def catalog(self) -> ArchiveCatalog:
        raise NotImplementedError

    def open_entry(self, entry: ArchiveEntry) -> DecoderHandle:
        raise NotImplementedError

    def open(self) -> DecoderHandle:
        return self.open_entry(select(self.catalog()))


class ZipArchiveDecoder(ArchiveDecoder):
    kind = ContainerKind.ZIP

    def __init__(self, source: InputSource, **kw):
        super().__init__(source, **kw)
        self._zip: Optional[zipfile.ZipFile] = None

    def _archive(self) -> zipfile.ZipFile:
        if self._zip is None:
            self._require_seekable()
            try:
                self._zip = zipfile.ZipFile(self.source, mode="r")
            except _DECODE_FAILURES as e:
                raise translate_error(e, kind=self.kind, what=self.label) from e
        return self._zip

    def catalog(self) -> ArchiveCatalog:
        infos = self._archive().infolist()
        return tuple(
            ArchiveEntry(name=info.filename, size=info.file_size, index=i)
            for i, info in enumerate(infos)
            if not info.is_dir()
        )

    def open_entry(self, entry: ArchiveEntry) -> DecoderHandle:
        zf = self._archive()
        info = zf.infolist()[entry.index]
        if info.flag_bits & _ZIP_FLAG_ENCRYPTED:
            raise decode_error(
                DecodeErrorKind.UNSUPPORTED_METHOD,
                f"zip: {info.filename}: encrypted entries are not supported",
                container=self.kind.value,
            )
        try:
            fh = zf.open(info, mode="r")
        except _DECODE_FAILURES as e:
            raise translate_error(e, kind=self.kind, what=info.filename) from e
        self.logger.debug(
            "zip entry %s: method=%d packed=%d size=%d",
            info.filename,
            info.compress_type,
            info.compress_size,
            info.file_size,
        )
        return ReaderHandle(fh, kind=self.kind, what=info.filename, chunk_size=self.chunk_size)

    def close(self) -> None:
        zf, self._zip = self._zip, None
        if zf is not None:
            zf.close()


class SevenZipArchiveDecoder(ArchiveDecoder):
    kind = ContainerKind.SEVEN_ZIP

    def __init__(self, source: InputSource, **kw):
        super().__init__(source, **kw)
        self._7z: Optional[py7zr.SevenZipFile] = None
        self._files: List = []

    def _archive(self) -> py7zr.SevenZipFile:
        if self._7z is None:
            self._require_seekable()
            try:
                self._7z = py7zr.SevenZipFile(self.source, mode="r")
            except _DECODE_FAILURES as e:
                raise translate_error(e, kind=self.kind, what=self.label) from e
            self._files = list(self._7z.files)
        return self._7z

    def catalog(self) -> ArchiveCatalog:
        self._archive()
        return tuple(
            ArchiveEntry(name=f.filename, size=(0 if f.emptystream else f.uncompressed), index=i)
            for i, f in enumerate(self._files)
            if not f.is_directory
        )

    def open_entry(self, entry: ArchiveEntry) -> DecoderHandle:
        archive = self._archive()
        f = self._files[entry.index]

        if f.emptystream:
            return ReaderHandle(io.BytesIO(b""), kind=self.kind, what=f.filename, chunk_size=self.chunk_size)

        main = archive.header.main_streams
        folders = main.unpackinfo.folders
        positions = main.packinfo.packpositions
        folder = f.folder

        if len(positions) != len(folders) + 1:
            raise decode_error(
                DecodeErrorKind.UNSUPPORTED_METHOD,
                f"7z: {f.filename}: folders with several packed streams (e.g. BCJ2) are not supported",
                container=self.kind.value,
            )

        fi = next(i for i, fo in enumerate(folders) if fo is folder)
        start = archive.afterheader + positions[fi]
        packsize = positions[fi + 1] - positions[fi]
        skip = sum(
            g.uncompressed
            for g in self._files[: entry.index]
            if not g.emptystream and g.folder is folder
        )

        try:
            self.source.seek(start)
            decompressor = folder.get_decompressor(packsize, True)
        except _DECODE_FAILURES as e:
            raise translate_error(e, kind=self.kind, what=f.filename) from e

        self.logger.debug(
            "7z entry %s: folder=%d pack_offset=%d packed=%d skip=%d size=%d",
            f.filename,
            fi,
            start,
            packsize,
            skip,
            f.uncompressed,
        )
        return SevenZipEntryHandle(
            self.source,
            decompressor,
            name=f.filename,
            size=f.uncompressed,
            skip=skip,
            crc=f.crc32,
            chunk_size=self.chunk_size,
        )

    def close(self) -> None:
        archive, self._7z = self._7z, None
        self._files = []
        if archive is not None:
            archive.close()


DECODERS: Dict[ContainerKind, Type[Decoder]] = {
    ContainerKind.RAW: RawDecoder,
    ContainerKind.GZIP: GzipDecoder,
    ContainerKind.XZ: XzDecoder,
    ContainerKind.LZMA: LzmaDecoder,
    ContainerKind.BZIP2: Bzip2Decoder,
    ContainerKind.ZIP: ZipArchiveDecoder,
    ContainerKind.SEVEN_ZIP: SevenZipArchiveDecoder,
}


def decoder_for(kind: ContainerKind, source: InputSource, **kw) -> Decoder:
    return DECODERS[kind](source, **kw)
