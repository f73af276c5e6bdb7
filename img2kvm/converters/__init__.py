# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2kvm/converters/__init__.py
"""Decompression and disk format conversion."""

from .extractors import open_stream
from .qemu_converter import Convert

__all__ = ["Convert", "open_stream"]
