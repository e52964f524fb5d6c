"""Minimal reader for MOBI / AZW3 (KF8) containers.

Both formats are Palm databases (`BOOKMOBI`): a table of records, record 0
holding the PalmDOC header, the MOBI header and an optional EXTH block. The
reader only exposes what page extraction needs: the encryption flag, the
format version, the book text and the image records in reading order.

Reading order comes from the book text: MOBI 6 markup points at images with
`<img recindex="00003">`, KF8 markup with `kindle:embed:0003?mime=...` (a
base-32 number). Both count from 1, relative to the first image record.
"""

from __future__ import annotations

import logging
import re
import struct
from typing import Dict, List, NamedTuple, Optional

from .errors import UnsupportedSourceError

logger = logging.getLogger(__name__)

PDB_HEADER_SIZE = 78
PDB_RECORD_ENTRY_SIZE = 8
PALMDOC_HEADER_SIZE = 16
NULL_INDEX = 0xFFFFFFFF

COMPRESSION_NONE = 1
COMPRESSION_PALMDOC = 2
COMPRESSION_HUFFCDIC = 17480

# extra record data flags live at this record 0 offset, for headers long enough
EXTRA_FLAGS_OFFSET = PALMDOC_HEADER_SIZE + 0xE2
EXTRA_FLAGS_MIN_HEADER = 0xE4

EXTH_FLAG = 0x40
EXTH_COVER_OFFSET = 201
EXTH_THUMB_OFFSET = 202
EXTH_KF8_BOUNDARY = 121

TEXT_ENCODINGS = {65001: "utf-8", 1252: "cp1252"}

IMAGE_SIGNATURES = (
    (b"\xff\xd8\xff", "jpeg"),
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"GIF87a", "gif"),
    (b"GIF89a", "gif"),
)

RECINDEX_REF = re.compile(rb"""recindex\s*=\s*["']?([0-9]+)""", re.IGNORECASE)
EMBED_REF = re.compile(rb"kindle:embed:([0-9A-Va-v]{4})")


class MobiHeader(NamedTuple):
    """Fields of record 0 used by the decoders."""

    compression: int
    encryption: int
    text_record_count: int
    mobi_type: int
    text_encoding: int
    version: int
    first_image_index: int
    extra_flags: int
    exth: Dict[int, List[bytes]]


class ImageRecord(NamedTuple):
    index: int
    image_format: str
    data: bytes


def _is_bmp(data: bytes) -> bool:
    # "BM" alone is too weak: the header also stores the file size
    return len(data) >= 14 and data.startswith(b"BM") and struct.unpack_from("<I", data, 2)[0] == len(data)


def sniff_image(data: bytes) -> Optional[str]:
    for signature, image_format in IMAGE_SIGNATURES:
        if data.startswith(signature):
            return image_format
    if _is_bmp(data):
        return "bmp"
    return None


def palmdoc_decompress(data: bytes) -> bytes:
    """Expand a PalmDOC (LZ77 flavoured) compressed text record.

    >>> palmdoc_decompress(b"abc\\x80\\x18\\xe1")
    b'abcabc a'
    >>> palmdoc_decompress(b"\\x02\\x90\\xa0!")
    b'\\x90\\xa0!'
    """
    out = bytearray()
    i = 0
    while i < len(data):
        c = data[i]
        i += 1
        if 1 <= c <= 8:
            out += data[i:i + c]
            i += c
        elif c < 0x80:
            out.append(c)
        elif c >= 0xC0:
            out += b" "
            out.append(c ^ 0x80)
        else:
            if i >= len(data):
                break
            pair = ((c << 8) | data[i]) & 0x3FFF
            i += 1
            distance, length = pair >> 3, (pair & 7) + 3
            if distance == 0 or distance > len(out):
                raise ValueError(f"back reference {distance} outside of {len(out)} decoded bytes")
            for _ in range(length):
                out.append(out[-distance])
    return bytes(out)


def _backward_size(data: bytes) -> int:
    size = 0
    for byte in data[-4:]:
        if byte & 0x80:
            size = 0
        size = (size << 7) | (byte & 0x7F)
    return size


def _trailing_size(record: bytes, flags: int) -> int:
    """Bytes of trailing entries appended to a text record."""
    size = 0
    for bit in range(1, 16):
        if flags & (1 << bit):
            size += _backward_size(record[:len(record) - size])
    if flags & 1 and len(record) > size:
        size += (record[len(record) - size - 1] & 0x3) + 1
    return min(size, len(record))


def _parse_exth(record0: bytes, offset: int) -> Dict[int, List[bytes]]:
    exth: Dict[int, List[bytes]] = {}
    if record0[offset:offset + 4] != b"EXTH":
        logger.debug("EXTH flag set but no EXTH block found")
        return exth
    _, count = struct.unpack_from(">II", record0, offset + 4)
    pos = offset + 12
    for _ in range(count):
        rec_type, rec_len = struct.unpack_from(">II", record0, pos)
        if rec_len < 8:
            break
        exth.setdefault(rec_type, []).append(record0[pos + 8:pos + rec_len])
        pos += rec_len
    return exth


class MobiBook:
    """Parsed Palm database with a MOBI header."""

    def __init__(self, data: bytes, name: str = "<memory>"):
        self.name = name
        try:
            self.records = self._split_records(data)
            self.header = self._parse_header(self.records[0])
        except (struct.error, IndexError) as e:
            raise UnsupportedSourceError(f"{name} is not a readable MOBI container: {e}") from e

    @classmethod
    def from_path(cls, path: str) -> "MobiBook":
        with open(path, "rb") as fh:
            return cls(fh.read(), name=path)

    def _split_records(self, data: bytes) -> List[bytes]:
        if len(data) < PDB_HEADER_SIZE:
            raise UnsupportedSourceError(f"{self.name} is too short to be a Palm database")
        db_type = data[60:68]
        if db_type != b"BOOKMOBI":
            raise UnsupportedSourceError(
                f"{self.name} is not a MOBI book (database type {db_type!r})"
            )
        (count,) = struct.unpack_from(">H", data, 76)
        offsets = [
            struct.unpack_from(">I", data, PDB_HEADER_SIZE + i * PDB_RECORD_ENTRY_SIZE)[0]
            for i in range(count)
        ]
        offsets.append(len(data))
        return [data[offsets[i]:offsets[i + 1]] for i in range(count)]

    def _parse_header(self, record0: bytes) -> MobiHeader:
        compression, _, _, text_record_count, _, encryption = struct.unpack_from(">HHIHHH", record0, 0)
        if record0[16:20] != b"MOBI":
            raise UnsupportedSourceError(f"{self.name} has no MOBI header")
        header_length, mobi_type, text_encoding, _, version = struct.unpack_from(
            ">IIIII", record0, 20
        )
        (first_image_index,) = struct.unpack_from(">I", record0, 108)
        (exth_flags,) = struct.unpack_from(">I", record0, 128)
        extra_flags = 0
        if header_length >= EXTRA_FLAGS_MIN_HEADER:
            (extra_flags,) = struct.unpack_from(">H", record0, EXTRA_FLAGS_OFFSET)
        exth = {}
        if exth_flags & EXTH_FLAG:
            exth = _parse_exth(record0, PALMDOC_HEADER_SIZE + header_length)
        return MobiHeader(
            compression=compression,
            encryption=encryption,
            text_record_count=text_record_count,
            mobi_type=mobi_type,
            text_encoding=text_encoding,
            version=version,
            first_image_index=first_image_index,
            extra_flags=extra_flags,
            exth=exth,
        )

    @property
    def is_encrypted(self) -> bool:
        """True when the PalmDOC encryption field is set (DRM protected)."""
        return self.header.encryption != 0

    @property
    def is_kf8(self) -> bool:
        """True for KF8 (AZW3) books and for joint MOBI/KF8 files."""
        return self.header.version >= 8 or EXTH_KF8_BOUNDARY in self.header.exth

    def _exth_int(self, rec_type: int) -> Optional[int]:
        values = self.header.exth.get(rec_type)
        if not values or len(values[0]) != 4:
            return None
        return struct.unpack(">I", values[0])[0]

    def raw_text(self) -> Optional[bytes]:
        """The book markup, or None when it cannot be decompressed here.

        Only uncompressed and PalmDOC text is handled; HUFF/CDIC books
        return None.
        """
        compression = self.header.compression
        if compression not in (COMPRESSION_NONE, COMPRESSION_PALMDOC):
            logger.debug(f"{self.name}: text compression {compression} not supported")
            return None
        last = min(self.header.text_record_count, len(self.records) - 1)
        chunks = []
        for record in self.records[1:last + 1]:
            record = record[:len(record) - _trailing_size(record, self.header.extra_flags)]
            if compression == COMPRESSION_PALMDOC:
                try:
                    record = palmdoc_decompress(record)
                except ValueError as e:
                    logger.warning(f"{self.name}: cannot decompress text ({e})")
                    return None
            chunks.append(record)
        return b"".join(chunks)

    def text(self) -> Optional[str]:
        raw = self.raw_text()
        if raw is None:
            return None
        encoding = TEXT_ENCODINGS.get(self.header.text_encoding, "cp1252")
        return raw.decode(encoding, errors="replace")

    def image_references(self) -> List[int]:
        """1-based image numbers referenced by the text, in text order, first use only."""
        raw = self.raw_text()
        if not raw:
            return []
        # joint MOBI/KF8 files open with MOBI 6 markup
        kf8_text = self.header.version >= 8
        pattern = EMBED_REF if kf8_text else RECINDEX_REF
        base = 32 if kf8_text else 10
        numbers: List[int] = []
        for m in pattern.finditer(raw):
            number = int(m.group(1), base)
            if number not in numbers:
                numbers.append(number)
        return numbers

    def image_records(self) -> List[ImageRecord]:
        """Image resources in reading order.

        When the text references images, those references decide the order
        and unreferenced records are left out. Otherwise every image record
        is returned in storage order, without the cover thumbnail duplicate.
        """
        first = self.header.first_image_index
        if first == NULL_INDEX or first >= len(self.records):
            return []
        references = self.image_references()
        if references:
            return self._referenced_images(first, references)
        logger.debug(f"{self.name}: no image reference in the text, using storage order")
        return self._stored_images(first)

    def _referenced_images(self, first: int, references: List[int]) -> List[ImageRecord]:
        images: List[ImageRecord] = []
        for number in references:
            index = first + number - 1
            if number < 1 or index >= len(self.records):
                logger.warning(f"{self.name}: text references unknown image {number}")
                continue
            data = self.records[index]
            image_format = sniff_image(data)
            if image_format is None:
                logger.warning(f"{self.name}: referenced record {index} is not an image")
                continue
            images.append(ImageRecord(index=index, image_format=image_format, data=data))
        return images

    def _stored_images(self, first: int) -> List[ImageRecord]:
        thumb = self._exth_int(EXTH_THUMB_OFFSET)
        images: List[ImageRecord] = []
        for index in range(first, len(self.records)):
            data = self.records[index]
            image_format = sniff_image(data)
            if image_format is None:
                logger.debug(f"{self.name}: record {index} is not an image ({data[:4]!r})")
                continue
            if thumb is not None and index - first == thumb:
                logger.debug(f"{self.name}: skipping thumbnail record {index}")
                continue
            images.append(ImageRecord(index=index, image_format=image_format, data=data))
        return images
