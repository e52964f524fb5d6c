"""Small helpers exported for tests.

These convenience functions build throw-away sources (images, CBZ, MOBI,
PDF and EPUB files) and run the CLI shim. They are intended for use by the
test suite only.
"""
from __future__ import annotations

import io
import struct
import subprocess
import sys
import zipfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pymupdf as fitz
from ebooklib import epub
from PIL import Image

from .core import entry_name

Color = Tuple[int, int, int]


def color_for(index: int) -> Color:
    """A distinct solid colour per page index, so pages can be told apart after a round trip."""
    return ((index * 37) % 256, (index * 71 + 40) % 256, (index * 113 + 80) % 256)


def make_image_bytes(size: Tuple[int, int] = (40, 60), fmt: str = "PNG", color: Color = (200, 50, 50)) -> bytes:
    img = Image.new("RGB", size, color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def make_mpo_bytes(size: Tuple[int, int] = (40, 60), color: Color = (200, 50, 50)) -> bytes:
    """A two-frame MPO: a JPEG with an MPF marker, as written by most phone cameras."""
    first = Image.new("RGB", size, color)
    second = Image.new("RGB", size, (0, 0, 0))
    buf = io.BytesIO()
    first.save(buf, format="MPO", save_all=True, append_images=[second])
    return buf.getvalue()


def pixel_at(data: bytes, xy: Tuple[int, int] = (0, 0)) -> Color:
    with Image.open(io.BytesIO(data)) as img:
        return img.convert("RGB").getpixel(xy)


def image_size(data: bytes) -> Tuple[int, int]:
    with Image.open(io.BytesIO(data)) as img:
        return img.size


def make_image_file(
    path: Path, name: str, size: Tuple[int, int] = (40, 60), fmt: str = "PNG", color: Color = (200, 50, 50)
) -> Path:
    p = path / name
    p.write_bytes(make_image_bytes(size, fmt, color))
    return p


def make_cbz(
    path: Path,
    name: str,
    count: int = 2,
    fmt: str = "PNG",
    entries: Optional[Dict[str, bytes]] = None,
    first_color: int = 0,
) -> Path:
    """Write a CBZ with `count` canonically named pages, or with `entries` verbatim.

    Page `i` is filled with `color_for(first_color + i)`.
    """
    if entries is None:
        entries = {
            entry_name(i, fmt.lower(), count): make_image_bytes(fmt=fmt, color=color_for(first_color + i))
            for i in range(count)
        }
    p = path / name
    with zipfile.ZipFile(p, "w") as z:
        for entry, data in entries.items():
            z.writestr(entry, data)
    return p


def palmdoc_literals(data: bytes) -> bytes:
    """PalmDOC-compress `data` with literals only; a valid stream, never a smaller one."""
    out = bytearray()
    for byte in data:
        if byte == 0 or 0x09 <= byte <= 0x7F:
            out.append(byte)
        else:
            out += bytes((1, byte))
    return bytes(out)


def make_mobi(
    path: Path,
    name: str,
    images: Sequence[bytes],
    encryption: int = 0,
    version: int = 6,
    thumb_index: Optional[int] = None,
    text: Optional[str] = None,
    compression: int = 1,
) -> Path:
    """Write a minimal BOOKMOBI Palm database.

    Record 0 holds the PalmDOC/MOBI headers (plus an EXTH block when
    `thumb_index` is given), record 1 the book text, then one record per
    image and a trailing non-image FLIS record. With `compression=2` the
    text record is PalmDOC compressed.
    """
    exth_records: List[Tuple[int, bytes]] = []
    if thumb_index is not None:
        exth_records.append((202, struct.pack(">I", thumb_index)))
    exth = b""
    if exth_records:
        body = b"".join(struct.pack(">II", t, 8 + len(d)) + d for t, d in exth_records)
        exth = b"EXTH" + struct.pack(">II", 12 + len(body), len(exth_records)) + body

    raw_text = (text if text is not None else "<html><body><p>comic</p></body></html>").encode("utf-8")
    text_record = palmdoc_literals(raw_text) if compression == 2 else raw_text
    header_length = 232
    mobi = bytearray(header_length)
    mobi[0:4] = b"MOBI"
    struct.pack_into(">IIIII", mobi, 4, header_length, 2, 65001, 0, version)
    struct.pack_into(">I", mobi, 92, 2)  # first image record
    struct.pack_into(">I", mobi, 112, 0x40 if exth else 0)
    palmdoc = struct.pack(">HHIHHHH", compression, 0, len(raw_text), 1, 4096, encryption, 0)
    records = [palmdoc + bytes(mobi) + exth, text_record] + list(images) + [b"FLIS\x00\x00\x00\x08"]

    header = bytearray(78)
    title = name.encode("ascii", "replace")[:31]
    header[0:len(title)] = title
    header[60:68] = b"BOOKMOBI"
    struct.pack_into(">H", header, 76, len(records))
    offset = 78 + 8 * len(records) + 2
    table = b""
    for i, record in enumerate(records):
        table += struct.pack(">II", offset, 2 * i)
        offset += len(record)

    p = path / name
    p.write_bytes(bytes(header) + table + b"\x00\x00" + b"".join(records))
    return p


def make_pdf(
    path: Path,
    name: str,
    count: int = 2,
    images: Optional[Sequence[bytes]] = None,
    password: Optional[str] = None,
) -> Path:
    """Write a PDF with `count` text pages, or one full-page image per entry of `images`.

    Image pages get the image's own size, so the image covers the page.
    With `password` the document is AES-256 encrypted.
    """
    doc = fitz.open()
    if images:
        for data in images:
            with Image.open(io.BytesIO(data)) as img:
                width, height = img.size
            page = doc.new_page(width=width, height=height)
            page.insert_image(page.rect, stream=data)
    else:
        for i in range(count):
            page = doc.new_page(width=300, height=400)
            page.insert_text((40, 60), f"page {i + 1}")
    p = path / name
    if password:
        doc.save(str(p), encryption=fitz.PDF_ENCRYPT_AES_256, owner_pw=password + "-owner", user_pw=password)
    else:
        doc.save(str(p))
    doc.close()
    return p


def make_epub(
    path: Path,
    name: str,
    images: Sequence[bytes],
    manifest_reversed: bool = False,
    encryption_xml: Optional[str] = None,
) -> Path:
    """Write an EPUB with one XHTML page per PNG image, spine in list order.

    `manifest_reversed` registers the image items in reverse order so spine
    order and manifest order disagree. `encryption_xml` is stored verbatim as
    `META-INF/encryption.xml`.
    """
    book = epub.EpubBook()
    book.set_identifier(f"cbzkit-test-{name}")
    book.set_title(name)
    book.set_language("en")

    image_items = [
        epub.EpubImage(uid=f"img{i}", file_name=f"images/p{i}.png", media_type="image/png", content=data)
        for i, data in enumerate(images)
    ]
    for item in reversed(image_items) if manifest_reversed else image_items:
        book.add_item(item)

    chapters = []
    for i in range(len(images)):
        chapter = epub.EpubHtml(title=f"Page {i + 1}", file_name=f"text/p{i}.xhtml", lang="en")
        chapter.content = f'<html><body><img src="../images/p{i}.png" alt="page {i + 1}"/></body></html>'
        book.add_item(chapter)
        chapters.append(chapter)
    book.add_item(epub.EpubNcx())
    book.add_item(epub.EpubNav())
    book.toc = chapters
    book.spine = chapters

    p = path / name
    epub.write_epub(str(p), book)
    if encryption_xml is not None:
        with zipfile.ZipFile(p, "a") as z:
            z.writestr("META-INF/encryption.xml", encryption_xml)
    return p


def run_cbzkit(args, cwd: Optional[Path] = None):
    script = Path(__file__).resolve().parent / "main.py"
    cmd = [sys.executable, str(script)] + [str(a) for a in args]
    res = subprocess.run(cmd, capture_output=True, text=True, cwd=str(cwd) if cwd else None)
    return res
