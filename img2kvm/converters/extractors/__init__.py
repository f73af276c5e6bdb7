# SPDX-License-Identifier: LGPL-3.0-or-later
# img2kvm/converters/extractors/__init__.py
"""
Streaming extraction of compressed / archived disk images.

- sniff: content-based container detection (gzip, xz, bzip2, lzma, zip, 7z, raw)
- decoders: one streaming decoder adapter per container kind
- selector: picks the disk image out of multi-file archives
- pipeline: sniff + decode + select as one lazy chunk stream
- writer: drains a stream into a file with progress
"""

from .decoders import DECODERS, DEFAULT_CHUNK_SIZE, DecoderHandle
from .pipeline import DecompressedStream, Pipeline, PipelineOptions, open_stream
from .selector import ArchiveEntry, is_image_name, select
from .sniff import ContainerKind, InputSource, sniff, sniff_source
from .writer import materialize

__all__ = [
    "ArchiveEntry",
    "ContainerKind",
    "DECODERS",
    "DEFAULT_CHUNK_SIZE",
    "DecoderHandle",
    "DecompressedStream",
    "InputSource",
    "Pipeline",
    "PipelineOptions",
    "is_image_name",
    "materialize",
    "open_stream",
    "select",
    "sniff",
    "sniff_source",
]
