# SPDX-License-Identifier: LGPL-3.0-or-later
import bz2
import gzip
import io
import lzma
import tempfile
import unittest
import zipfile
from pathlib import Path
from unittest.mock import Mock

import py7zr
import pytest

from img2kvm.converters.extractors.sniff import (
    ContainerKind,
    InputSource,
    check_extension_hint,
    kind_from_extension,
    sniff,
    sniff_source,
    strip_container_suffixes,
)

PAYLOAD = b"\x00" * 512 + b"disk image payload " * 256


class _NonSeekable(io.RawIOBase):
    """Pipe-like reader: no seek, no tell."""

    def __init__(self, data: bytes):
        super().__init__()
        self._buf = io.BytesIO(data)

    def readable(self):
        return True

    def readinto(self, b):
        data = self._buf.read(len(b))
        b[: len(data)] = data
        return len(data)


def _zip_bytes() -> bytes:
    bio = io.BytesIO()
    with zipfile.ZipFile(bio, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("disk.img", PAYLOAD)
    return bio.getvalue()


def _7z_bytes() -> bytes:
    with tempfile.TemporaryDirectory() as td:
        src = Path(td) / "disk.img"
        src.write_bytes(PAYLOAD)
        arc = Path(td) / "disk.img.7z"
        with py7zr.SevenZipFile(arc, "w") as z:
            z.write(src, "disk.img")
        return arc.read_bytes()


SAMPLES = {
    ContainerKind.RAW: lambda: PAYLOAD,
    ContainerKind.GZIP: lambda: gzip.compress(PAYLOAD),
    ContainerKind.XZ: lambda: lzma.compress(PAYLOAD, format=lzma.FORMAT_XZ),
    ContainerKind.LZMA: lambda: lzma.compress(PAYLOAD, format=lzma.FORMAT_ALONE),
    ContainerKind.BZIP2: lambda: bz2.compress(PAYLOAD),
    ContainerKind.ZIP: _zip_bytes,
    ContainerKind.SEVEN_ZIP: _7z_bytes,
}


@pytest.mark.parametrize("kind", list(SAMPLES), ids=lambda k: k.value)
def test_sniff_detects_every_kind(kind):
    data = SAMPLES[kind]()
    assert sniff(data[:16]) is kind


@pytest.mark.parametrize("kind", list(SAMPLES), ids=lambda k: k.value)
def test_sniff_source_does_not_consume_input(kind):
    data = SAMPLES[kind]()
    src = InputSource(io.BytesIO(data))

    assert sniff_source(src) is kind
    assert sniff_source(src) is kind
    assert src.read() == data


class TestSniffHeuristics(unittest.TestCase):
    """Edge cases of the magic byte checks."""

    def test_empty_input_is_raw(self):
        """Test that zero bytes classify as RAW."""
        self.assertIs(sniff(b""), ContainerKind.RAW)
        self.assertIs(sniff(None), ContainerKind.RAW)

    def test_short_prefix_is_raw(self):
        """Test that a partial magic is not enough."""
        self.assertIs(sniff(b"\xfd7zX"), ContainerKind.RAW)
        self.assertIs(sniff(b"PK\x03"), ContainerKind.RAW)

    def test_bzip2_needs_block_size_digit(self):
        """Test that 'BZh' followed by a non-digit is not bzip2."""
        self.assertIs(sniff(b"BZh9" + b"1AY&SY"), ContainerKind.BZIP2)
        self.assertIs(sniff(b"BZhx" + b"\x00" * 12), ContainerKind.RAW)
        self.assertIs(sniff(b"BZh0" + b"\x00" * 12), ContainerKind.RAW)

    def test_empty_zip_is_not_a_zip_entry_archive(self):
        """Test that an empty zip (end-of-central-directory only) falls back to RAW."""
        bio = io.BytesIO()
        with zipfile.ZipFile(bio, "w"):
            pass
        self.assertIs(sniff(bio.getvalue()[:16]), ContainerKind.RAW)

    def test_zero_filled_sector_is_raw_not_lzma(self):
        """Test that a blank disk sector does not pass the lzma header check."""
        self.assertIs(sniff(b"\x00" * 16), ContainerKind.RAW)

    def test_lzma_rejects_odd_dictionary_size(self):
        """Test that a dictionary size xz-utils never writes is not lzma."""
        header = bytes([0x5D]) + (12345).to_bytes(4, "little") + b"\xff" * 8
        self.assertIs(sniff(header), ContainerKind.RAW)
        header = bytes([0x5D]) + (1 << 23).to_bytes(4, "little") + b"\xff" * 8
        self.assertIs(sniff(header), ContainerKind.LZMA)

    def test_content_wins_over_name(self):
        """Test that a gzip file named .img is still gzip."""
        src = InputSource(io.BytesIO(gzip.compress(PAYLOAD)), name="disk.img")
        self.assertIs(sniff_source(src), ContainerKind.GZIP)


class TestInputSource(unittest.TestCase):
    """Peek and read semantics of InputSource."""

    def test_peek_non_seekable_keeps_prefix(self):
        """Test that peeked bytes are handed out again by read()."""
        data = gzip.compress(PAYLOAD)
        src = InputSource(_NonSeekable(data))

        self.assertFalse(src.seekable())
        self.assertEqual(src.peek(16), data[:16])
        self.assertEqual(src.peek(4), data[:4])
        self.assertIs(sniff_source(src), ContainerKind.GZIP)
        self.assertEqual(src.read(), data)

    def test_peek_seekable_restores_position(self):
        """Test that a seekable peek leaves the position untouched."""
        bio = io.BytesIO(b"0123456789abcdef")
        bio.seek(4)
        src = InputSource(bio)

        self.assertEqual(src.peek(4), b"4567")
        self.assertEqual(src.tell(), 4)

    def test_peek_past_end(self):
        """Test that peeking a short input returns what is there."""
        src = InputSource(_NonSeekable(b"abc"))
        self.assertEqual(src.peek(16), b"abc")
        self.assertEqual(src.read(), b"abc")

    def test_open_owns_file(self):
        """Test that InputSource.open closes the file it opened."""
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "disk.img"
            p.write_bytes(PAYLOAD)
            src = InputSource.open(p)
            f = src.fileobj
            self.assertEqual(src.name, str(p))
            src.close()
            self.assertTrue(f.closed)

    def test_borrowed_file_stays_open(self):
        """Test that a caller's file object survives InputSource.close."""
        bio = io.BytesIO(PAYLOAD)
        src = InputSource(bio)
        src.close()
        self.assertFalse(bio.closed)


class TestNameHints(unittest.TestCase):
    """Extension helpers (hints only)."""

    def test_kind_from_extension(self):
        self.assertIs(kind_from_extension("disk.img.xz"), ContainerKind.XZ)
        self.assertIs(kind_from_extension("DISK.IMG.GZ"), ContainerKind.GZIP)
        self.assertIs(kind_from_extension("disk.img"), ContainerKind.RAW)
        self.assertIsNone(kind_from_extension("disk.qcow2"))
        self.assertIsNone(kind_from_extension(None))

    def test_check_extension_hint_warns_on_mismatch(self):
        """Test that a disagreeing extension is logged and reported."""
        logger = Mock()
        self.assertFalse(check_extension_hint(ContainerKind.XZ, "disk.img.gz", logger))
        logger.warning.assert_called_once()

    def test_check_extension_hint_accepts_match_and_unknown(self):
        logger = Mock()
        self.assertTrue(check_extension_hint(ContainerKind.GZIP, "disk.img.gz", logger))
        self.assertTrue(check_extension_hint(ContainerKind.GZIP, "disk.bin", logger))
        logger.warning.assert_not_called()

    def test_strip_container_suffixes(self):
        self.assertEqual(strip_container_suffixes("disk.img.xz"), "disk.img")
        self.assertEqual(strip_container_suffixes("/tmp/disk.img.gz.zip"), "disk.img")
        self.assertEqual(strip_container_suffixes("disk.iso"), "disk.iso")
        self.assertEqual(strip_container_suffixes(".gz"), ".gz")


if __name__ == "__main__":
    unittest.main()
