# SPDX-License-Identifier: LGPL-3.0-or-later
# img2kvm/converters/extractors/pipeline.py
"""
Sniff -> decode -> (select entry) -> lazy stream of decompressed chunks.

    with open_stream("openwrt.img.gz") as stream:
        for chunk in stream:
            out.write(chunk)

The container kind is decided once per layer when the stream is opened. A
stream container found inside another one (disk.img.gz stored in a zip,
.img.xz.gz) is unwrapped as well, up to ``max_nesting`` extra layers.
"""
from __future__ import annotations

import io
import logging
import os
from dataclasses import dataclass
from typing import BinaryIO, List, Optional, Tuple, Union

from ...core.utils import U
from .decoders import DEFAULT_CHUNK_SIZE, ArchiveDecoder, Decoder, DecoderHandle, ReaderHandle, decoder_for
from .selector import ArchiveEntry, select
from .sniff import ContainerKind, InputSource, check_extension_hint, sniff_source, strip_container_suffixes

SourceLike = Union[InputSource, BinaryIO, str, "os.PathLike[str]"]


@dataclass(frozen=True)
class PipelineOptions:
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_nesting: int = 2

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.max_nesting < 0:
            raise ValueError(f"max_nesting must be >= 0, got {self.max_nesting}")


class HandleReader(io.RawIOBase):
    """Readable file object over a DecoderHandle, so another decoder can sit on top."""

    def __init__(self, handle: DecoderHandle):
        super().__init__()
        self._handle = handle
        self._buf = memoryview(b"")

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        view = memoryview(b).cast("B")
        if not self._buf:
            self._buf = memoryview(self._handle.read_chunk())
            if not self._buf:
                return 0
        n = min(len(view), len(self._buf))
        view[:n] = self._buf[:n]
        self._buf = self._buf[n:]
        return n


class DecompressedStream:
    """
    Lazy, forward-only, non-restartable sequence of decompressed chunks.

    The first error closes every decoder and is re-raised; after that (or after
    close()) the stream is exhausted and never touches the input again.
    """

    _closed = True

    def __init__(
        self,
        *,
        decoders: List[Decoder],
        handles: List[DecoderHandle],
        layers: Tuple[ContainerKind, ...],
        entry: Optional[ArchiveEntry],
        source: InputSource,
        owns_source: bool,
        logger: logging.Logger,
    ):
        self.layers = layers
        self.entry = entry
        self.name = source.name
        self.bytes_out = 0
        self.error: Optional[BaseException] = None
        self._decoders = decoders
        self._handles = handles
        self._source = source
        self._owns_source = owns_source
        self._pending = b""
        self._closed = False
        self.logger = logger

    @property
    def kind(self) -> ContainerKind:
        """Outermost container kind."""
        return self.layers[0]

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> "DecompressedStream":
        return self

    def __next__(self) -> bytes:
        if self._pending:
            chunk, self._pending = self._pending, b""
            return chunk
        if self._closed:
            raise StopIteration
        try:
            chunk = self._handles[-1].read_chunk()
        except BaseException as e:
            self.error = e
            self.logger.debug("Decompression of %s failed after %d bytes: %s", self.name, self.bytes_out, e)
            self.close()
            raise
        if not chunk:
            self.logger.debug("Decompressed %s: %s", self.name, U.human_bytes(self.bytes_out))
            self.close()
            raise StopIteration
        self.bytes_out += len(chunk)
        return chunk

    def read(self, size: int = -1) -> bytes:
        """File-like read on top of the chunk iterator (size < 0 reads everything)."""
        parts: List[bytes] = []
        have = 0
        while size < 0 or have < size:
            try:
                chunk = next(self)
            except StopIteration:
                break
            if size >= 0 and have + len(chunk) > size:
                cut = size - have
                chunk, self._pending = chunk[:cut], chunk[cut:]
            parts.append(chunk)
            have += len(chunk)
        return b"".join(parts)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._pending = b""
        # innermost first; each layer reads from the one before it
        for handle in reversed(self._handles):
            handle.close()
        for decoder in reversed(self._decoders):
            decoder.close()
        self._handles = []
        self._decoders = []
        if self._owns_source:
            self._source.close()

    def __enter__(self) -> "DecompressedStream":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __del__(self) -> None:
        self.close()


class Pipeline:
    def __init__(self, options: Optional[PipelineOptions] = None, *, logger: Optional[logging.Logger] = None):
        self.options = options or PipelineOptions()
        self.logger = logger or logging.getLogger(__name__)

    def open(self, source: SourceLike, *, name_hint: Optional[str] = None) -> DecompressedStream:
        if isinstance(source, InputSource):
            src, owns = source, False
        elif isinstance(source, (str, os.PathLike)):
            src, owns = InputSource.open(source), True
        else:
            src, owns = InputSource(source, name=name_hint), False

        hint = name_hint or src.name
        decoders: List[Decoder] = []
        handles: List[DecoderHandle] = []

        try:
            kind = sniff_source(src)
            check_extension_hint(kind, hint, self.logger)
            self.logger.info("Detected container: %s (%s)", kind.value, hint or "<stream>")

            decoder = decoder_for(kind, src, chunk_size=self.options.chunk_size, logger=self.logger)
            decoders.append(decoder)

            entry: Optional[ArchiveEntry] = None
            if isinstance(decoder, ArchiveDecoder):
                catalog = decoder.catalog()
                self.logger.debug("%s catalog: %s", kind.value, ", ".join(e.name for e in catalog) or "(empty)")
                entry = select(catalog)
                self.logger.info("Selected archive entry: %s (%s)", entry.name, U.human_bytes(entry.size))
                handles.append(decoder.open_entry(entry))
            else:
                handles.append(decoder.open())

            layers = [kind]
            if kind is not ContainerKind.RAW:
                inner_name = entry.name if entry is not None else strip_container_suffixes(hint or "")
                self._unwrap_nested(layers, decoders, handles, inner_name)

        except BaseException:
            for h in reversed(handles):
                h.close()
            for d in reversed(decoders):
                d.close()
            if owns:
                src.close()
            raise

        return DecompressedStream(
            decoders=decoders,
            handles=handles,
            layers=tuple(layers),
            entry=entry,
            source=src,
            owns_source=owns,
            logger=self.logger,
        )

    def _unwrap_nested(
        self,
        layers: List[ContainerKind],
        decoders: List[Decoder],
        handles: List[DecoderHandle],
        inner_name: str,
    ) -> None:
        for _depth in range(self.options.max_nesting):
            inner = InputSource(HandleReader(handles[-1]), name=inner_name or None)
            kind = sniff_source(inner)

            if not kind.is_stream:
                if kind.is_archive:
                    self.logger.warning(
                        "Payload %s looks like a nested %s archive; passing it through unchanged",
                        inner_name,
                        kind.value,
                    )
                # keep the peeked prefix: read through the InputSource from here on
                handles.append(
                    ReaderHandle(
                        inner,
                        kind=layers[-1],
                        what=inner_name,
                        chunk_size=self.options.chunk_size,
                        owns_reader=False,
                    )
                )
                return

            self.logger.info("Unwrapping nested %s stream inside %s", kind.value, layers[-1].value)
            decoder = decoder_for(kind, inner, chunk_size=self.options.chunk_size, logger=self.logger)
            decoders.append(decoder)
            handles.append(decoder.open())
            layers.append(kind)
            inner_name = strip_container_suffixes(inner_name)


def open_stream(
    source: SourceLike,
    *,
    name_hint: Optional[str] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    max_nesting: int = 2,
    logger: Optional[logging.Logger] = None,
) -> DecompressedStream:
    return Pipeline(PipelineOptions(chunk_size=chunk_size, max_nesting=max_nesting), logger=logger).open(
        source, name_hint=name_hint
    )
