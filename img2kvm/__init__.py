# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2kvm/__init__.py
"""
img2kvm - import (compressed) disk images into Proxmox VE VMs

Usage as a library:

    from img2kvm import open_stream

    with open_stream("openwrt.img.gz") as stream, open("openwrt.img", "wb") as out:
        for chunk in stream:
            out.write(chunk)
"""

__version__ = "0.1.0"

from .converters.extractors import ContainerKind, DecompressedStream, open_stream, sniff
from .core.exceptions import AmbiguousOrEmptyArchive, DecodeError, DecodeErrorKind, DecompressError

__all__ = [
    "__version__",
    "AmbiguousOrEmptyArchive",
    "ContainerKind",
    "DecodeError",
    "DecodeErrorKind",
    "DecompressError",
    "DecompressedStream",
    "open_stream",
    "sniff",
]
