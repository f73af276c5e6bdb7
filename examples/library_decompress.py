#!/usr/bin/env python3
# SPDX-License-Identifier: LGPL-3.0-or-later
"""
Example: decompress a downloaded disk image with the img2kvm library.

This example demonstrates:
- Content-based detection of the container (gz, xz, bz2, lzma, zip, 7z)
- Streaming the payload chunk by chunk without loading it into memory
- Handling the decompression error taxonomy

Usage:
    python library_decompress.py openwrt-24.10.2-x86-64-generic-squashfs-combined-efi.img.gz out.img
"""

import hashlib
import logging
import sys

from img2kvm import AmbiguousOrEmptyArchive, DecodeError, open_stream

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def decompress(source_path: str, output_path: str) -> int:
    digest = hashlib.sha256()
    try:
        with open_stream(source_path, chunk_size=4 * 1024 * 1024, logger=logger) as stream, \
                open(output_path, "wb") as out:
            logger.info(f"Layers: {' -> '.join(k.value for k in stream.layers)}")
            if stream.entry is not None:
                logger.info(f"Archive entry: {stream.entry.name}")
            for chunk in stream:
                out.write(chunk)
                digest.update(chunk)
    except DecodeError as e:
        logger.error(f"Decompression failed ({e.kind.value}): {e}")
        return e.code
    except AmbiguousOrEmptyArchive as e:
        logger.error(f"No disk image in archive: {', '.join(e.names) or '(empty)'}")
        return e.code

    logger.info(f"Wrote {stream.bytes_out} bytes, sha256={digest.hexdigest()}")
    return 0


def main():
    if len(sys.argv) != 3:
        print(__doc__)
        sys.exit(1)
    sys.exit(decompress(sys.argv[1], sys.argv[2]))


if __name__ == "__main__":
    main()
