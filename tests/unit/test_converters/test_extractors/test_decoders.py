# SPDX-License-Identifier: LGPL-3.0-or-later
import bz2
import gzip
import hashlib
import io
import lzma
import tempfile
import unittest
import zipfile
import zlib
from pathlib import Path

import py7zr

from img2kvm.converters.extractors.decoders import (
    DECODERS,
    Bzip2Decoder,
    DecoderHandle,
    GzipDecoder,
    LzmaDecoder,
    RawDecoder,
    ReaderHandle,
    SevenZipArchiveDecoder,
    XzDecoder,
    ZipArchiveDecoder,
    decoder_for,
    translate_error,
)
from img2kvm.converters.extractors.sniff import ContainerKind, InputSource
from img2kvm.core.exceptions import DecodeError, DecodeErrorKind


def _noise(n: int) -> bytes:
    """Deterministic, incompressible bytes."""
    out = bytearray()
    i = 0
    while len(out) < n:
        out += hashlib.sha256(i.to_bytes(8, "little")).digest()
        i += 1
    return bytes(out[:n])


def _drain(handle: DecoderHandle) -> bytes:
    parts = []
    while True:
        chunk = handle.read_chunk()
        if not chunk:
            return b"".join(parts)
        parts.append(chunk)


PAYLOAD = _noise(300_000)


class TestStreamDecoders(unittest.TestCase):
    """gzip / xz / lzma / bzip2 adapters."""

    def _roundtrip(self, decoder_cls, blob, chunk_size=4096):
        dec = decoder_cls(InputSource(io.BytesIO(blob)), chunk_size=chunk_size)
        handle = dec.open()
        try:
            return _drain(handle), handle
        finally:
            handle.close()
            dec.close()

    def test_gzip(self):
        data, handle = self._roundtrip(GzipDecoder, gzip.compress(PAYLOAD))
        self.assertEqual(data, PAYLOAD)
        self.assertEqual(handle.bytes_out, len(PAYLOAD))

    def test_gzip_concatenated_members(self):
        """Test that multi-member gzip files decode to the concatenation."""
        blob = gzip.compress(PAYLOAD[:1000]) + gzip.compress(PAYLOAD[1000:])
        data, _ = self._roundtrip(GzipDecoder, blob)
        self.assertEqual(data, PAYLOAD)

    def test_xz(self):
        data, _ = self._roundtrip(XzDecoder, lzma.compress(PAYLOAD, format=lzma.FORMAT_XZ))
        self.assertEqual(data, PAYLOAD)

    def test_lzma_alone(self):
        data, _ = self._roundtrip(LzmaDecoder, lzma.compress(PAYLOAD, format=lzma.FORMAT_ALONE))
        self.assertEqual(data, PAYLOAD)

    def test_bzip2(self):
        data, _ = self._roundtrip(Bzip2Decoder, bz2.compress(PAYLOAD))
        self.assertEqual(data, PAYLOAD)

    def test_chunks_are_bounded(self):
        """Test that no chunk exceeds the configured chunk size."""
        dec = GzipDecoder(InputSource(io.BytesIO(gzip.compress(PAYLOAD))), chunk_size=1000)
        handle = dec.open()
        sizes = []
        while True:
            chunk = handle.read_chunk()
            if not chunk:
                break
            sizes.append(len(chunk))
        handle.close()
        self.assertTrue(sizes)
        self.assertLessEqual(max(sizes), 1000)
        self.assertEqual(sum(sizes), len(PAYLOAD))

    def test_raw_passthrough_does_not_close_source(self):
        bio = io.BytesIO(PAYLOAD)
        src = InputSource(bio)
        handle = RawDecoder(src, chunk_size=65536).open()
        self.assertEqual(_drain(handle), PAYLOAD)
        handle.close()
        self.assertFalse(src.closed)
        self.assertFalse(bio.closed)

    def test_truncated_xz(self):
        """Test that an xz stream cut mid-frame is TRUNCATED_STREAM."""
        blob = lzma.compress(PAYLOAD, format=lzma.FORMAT_XZ)
        dec = XzDecoder(InputSource(io.BytesIO(blob[: len(blob) // 2])))
        handle = dec.open()
        with self.assertRaises(DecodeError) as cm:
            _drain(handle)
        self.assertIs(cm.exception.kind, DecodeErrorKind.TRUNCATED_STREAM)
        self.assertEqual(cm.exception.code, 3)

    def test_truncated_gzip(self):
        blob = gzip.compress(PAYLOAD)
        handle = GzipDecoder(InputSource(io.BytesIO(blob[:-100]))).open()
        with self.assertRaises(DecodeError) as cm:
            _drain(handle)
        self.assertIs(cm.exception.kind, DecodeErrorKind.TRUNCATED_STREAM)

    def test_gzip_unknown_method(self):
        """Test that a gzip header with a non-deflate method is UNSUPPORTED_METHOD."""
        blob = b"\x1f\x8b\x09\x00" + b"\x00" * 6 + b"garbage"
        handle = GzipDecoder(InputSource(io.BytesIO(blob))).open()
        with self.assertRaises(DecodeError) as cm:
            handle.read_chunk()
        self.assertIs(cm.exception.kind, DecodeErrorKind.UNSUPPORTED_METHOD)

    def test_corrupt_bzip2(self):
        blob = bytearray(bz2.compress(PAYLOAD))
        for i in range(200, 400):
            blob[i] ^= 0xFF
        handle = Bzip2Decoder(InputSource(io.BytesIO(bytes(blob)))).open()
        with self.assertRaises(DecodeError) as cm:
            _drain(handle)
        self.assertIn(cm.exception.kind, (DecodeErrorKind.CORRUPT_DATA, DecodeErrorKind.TRUNCATED_STREAM))

    def test_registry_covers_every_kind(self):
        self.assertEqual(set(DECODERS), set(ContainerKind))
        self.assertIsInstance(decoder_for(ContainerKind.XZ, InputSource(io.BytesIO(b""))), XzDecoder)


class TestZipArchiveDecoder(unittest.TestCase):
    """zip catalog + entry streams."""

    def _zip(self, entries, compression=zipfile.ZIP_DEFLATED):
        bio = io.BytesIO()
        with zipfile.ZipFile(bio, "w", compression=compression) as zf:
            for name, data in entries:
                zf.writestr(name, data)
        bio.seek(0)
        return bio

    def test_catalog_skips_directories(self):
        bio = self._zip([("images/", b""), ("readme.txt", b"hi"), ("images/disk.img", PAYLOAD)])
        dec = ZipArchiveDecoder(InputSource(bio))
        catalog = dec.catalog()
        self.assertEqual([e.name for e in catalog], ["readme.txt", "images/disk.img"])
        self.assertEqual(catalog[1].size, len(PAYLOAD))
        self.assertEqual(catalog[1].index, 2)
        dec.close()

    def test_open_selects_image(self):
        bio = self._zip([("readme.txt", b"x" * 50), ("disk.img", PAYLOAD), ("checksum.sha256", b"0" * 64)])
        dec = ZipArchiveDecoder(InputSource(bio), chunk_size=8192)
        handle = dec.open()
        self.assertEqual(_drain(handle), PAYLOAD)
        handle.close()
        dec.close()

    def test_stored_entry(self):
        bio = self._zip([("disk.img", PAYLOAD)], compression=zipfile.ZIP_STORED)
        dec = ZipArchiveDecoder(InputSource(bio))
        entry = dec.catalog()[0]
        self.assertEqual(_drain(dec.open_entry(entry)), PAYLOAD)
        dec.close()

    def test_encrypted_entry_rejected(self):
        bio = self._zip([("disk.img", PAYLOAD)])
        dec = ZipArchiveDecoder(InputSource(bio))
        entry = dec.catalog()[0]
        dec._archive().infolist()[0].flag_bits |= 0x1
        with self.assertRaises(DecodeError) as cm:
            dec.open_entry(entry)
        self.assertIs(cm.exception.kind, DecodeErrorKind.UNSUPPORTED_METHOD)
        dec.close()

    def test_corrupt_central_directory(self):
        """Test that a zip without a readable directory is CORRUPT_HEADER."""
        blob = self._zip([("disk.img", PAYLOAD)]).getvalue()
        dec = ZipArchiveDecoder(InputSource(io.BytesIO(blob[: len(blob) // 2])))
        with self.assertRaises(DecodeError) as cm:
            dec.catalog()
        self.assertIs(cm.exception.kind, DecodeErrorKind.CORRUPT_HEADER)

    def test_crc_mismatch(self):
        """Test that damaged stored data is detected by the entry CRC."""
        blob = bytearray(self._zip([("disk.img", PAYLOAD)], compression=zipfile.ZIP_STORED).getvalue())
        blob[1000] ^= 0xFF
        dec = ZipArchiveDecoder(InputSource(io.BytesIO(bytes(blob))))
        handle = dec.open()
        with self.assertRaises(DecodeError) as cm:
            _drain(handle)
        self.assertIs(cm.exception.kind, DecodeErrorKind.CORRUPT_DATA)
        dec.close()

    def test_non_seekable_input_rejected(self):
        class Pipe(io.RawIOBase):
            def readable(self):
                return True

            def readinto(self, b):
                return 0

        dec = ZipArchiveDecoder(InputSource(Pipe()))
        with self.assertRaises(DecodeError) as cm:
            dec.catalog()
        self.assertIs(cm.exception.kind, DecodeErrorKind.UNSUPPORTED_METHOD)


class TestSevenZipArchiveDecoder(unittest.TestCase):
    """7z catalog + bounded entry streams."""

    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.td = Path(self._td.name)

    def tearDown(self):
        self._td.cleanup()

    def _7z(self, entries):
        arc = self.td / "archive.7z"
        with py7zr.SevenZipFile(arc, "w") as z:
            for name, data in entries:
                src = self.td / "src" / name
                src.parent.mkdir(parents=True, exist_ok=True)
                src.write_bytes(data)
                z.write(src, name)
        return arc

    def test_single_entry(self):
        arc = self._7z([("disk.img", PAYLOAD)])
        with open(arc, "rb") as f:
            dec = SevenZipArchiveDecoder(InputSource(f), chunk_size=16384)
            handle = dec.open()
            self.assertEqual(_drain(handle), PAYLOAD)
            handle.close()
            dec.close()

    def test_entry_after_others_in_solid_folder(self):
        """Test that members stored before the selected one are skipped."""
        readme = b"read me first\n" * 100
        arc = self._7z([("readme.txt", readme), ("disk.img", PAYLOAD), ("notes.txt", b"n" * 10)])
        with open(arc, "rb") as f:
            dec = SevenZipArchiveDecoder(InputSource(f), chunk_size=4096)
            catalog = dec.catalog()
            self.assertEqual([e.name for e in catalog], ["readme.txt", "disk.img", "notes.txt"])
            disk = next(e for e in catalog if e.name == "disk.img")
            self.assertEqual(disk.size, len(PAYLOAD))

            self.assertEqual(_drain(dec.open_entry(disk)), PAYLOAD)
            notes = catalog[2]
            self.assertEqual(_drain(dec.open_entry(notes)), b"n" * 10)
            dec.close()

    def test_empty_member(self):
        arc = self._7z([("empty.img", b""), ("disk.img", PAYLOAD)])
        with open(arc, "rb") as f:
            dec = SevenZipArchiveDecoder(InputSource(f))
            empty = next(e for e in dec.catalog() if e.name == "empty.img")
            self.assertEqual(empty.size, 0)
            self.assertEqual(_drain(dec.open_entry(empty)), b"")
            dec.close()

    def test_truncated_archive(self):
        """Test that a 7z missing its trailing header is a DecodeError."""
        blob = self._7z([("disk.img", PAYLOAD)]).read_bytes()
        dec = SevenZipArchiveDecoder(InputSource(io.BytesIO(blob[: len(blob) // 2])))
        with self.assertRaises(DecodeError):
            dec.catalog()


class TestTranslateError(unittest.TestCase):
    """Library exceptions -> DecodeErrorKind."""

    def _kind(self, exc):
        return translate_error(exc, kind=ContainerKind.GZIP, what="disk.img.gz").kind

    def test_mapping(self):
        K = DecodeErrorKind
        cases = [
            (EOFError("Compressed file ended before the end-of-stream marker was reached"), K.TRUNCATED_STREAM),
            (gzip.BadGzipFile("Not a gzipped file (b'xx')"), K.CORRUPT_HEADER),
            (gzip.BadGzipFile("CRC check failed 0x1 != 0x2"), K.CORRUPT_DATA),
            (gzip.BadGzipFile("Unknown compression method"), K.UNSUPPORTED_METHOD),
            (zlib.error("invalid distance too far back"), K.CORRUPT_DATA),
            (lzma.LZMAError("Input format not supported by decoder"), K.CORRUPT_HEADER),
            (lzma.LZMAError("Corrupt input data"), K.CORRUPT_DATA),
            (lzma.LZMAError("Unsupported options"), K.UNSUPPORTED_METHOD),
            (zipfile.BadZipFile("File is not a zip file"), K.CORRUPT_HEADER),
            (zipfile.BadZipFile("Bad CRC-32 for file 'disk.img'"), K.CORRUPT_DATA),
            (NotImplementedError("That compression method is not supported"), K.UNSUPPORTED_METHOD),
            (OSError("Invalid data stream"), K.CORRUPT_DATA),
            (OSError(5, "Input/output error"), K.IO_FAILURE),
        ]
        for exc, want in cases:
            with self.subTest(exc=exc):
                self.assertIs(self._kind(exc), want)

    def test_keeps_cause_and_container(self):
        exc = EOFError("short")
        err = translate_error(exc, kind=ContainerKind.XZ, what="disk.img.xz")
        self.assertIs(err.cause, exc)
        self.assertEqual(err.context["container"], "xz")
        self.assertIn("disk.img.xz", str(err))

    def test_decode_error_passthrough(self):
        err = DecodeError(msg="x", kind=DecodeErrorKind.IO_FAILURE)
        self.assertIs(translate_error(err, kind=ContainerKind.ZIP, what="a"), err)


class TestHandles(unittest.TestCase):
    def test_chunk_size_must_be_positive(self):
        with self.assertRaises(ValueError):
            ReaderHandle(io.BytesIO(b""), kind=ContainerKind.RAW, what="x", chunk_size=0)

    def test_closed_handle_returns_eof(self):
        bio = io.BytesIO(PAYLOAD)
        handle = ReaderHandle(bio, kind=ContainerKind.RAW, what="x", chunk_size=10)
        self.assertEqual(handle.read_chunk(), PAYLOAD[:10])
        handle.close()
        self.assertTrue(bio.closed)
        self.assertEqual(handle.read_chunk(), b"")


if __name__ == "__main__":
    unittest.main()
