# SPDX-License-Identifier: LGPL-3.0-or-later
# img2kvm/core/__init__.py
from .exceptions import (
    AmbiguousOrEmptyArchive,
    DecodeError,
    DecodeErrorKind,
    DecompressError,
    Fatal,
    Img2KvmError,
)

__all__ = [
    "AmbiguousOrEmptyArchive",
    "DecodeError",
    "DecodeErrorKind",
    "DecompressError",
    "Fatal",
    "Img2KvmError",
]
