"""Core utilities: natural ordering, entry naming, file discovery and hints."""

from __future__ import annotations

import glob
import math
import os
import re
from typing import List, Optional, Tuple, Union

from .types_ import OrderHint

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".bmp", ".webp", ".tif", ".tiff"}

# Pillow format name -> archive entry extension
FORMAT_EXTENSIONS = {
    "jpeg": "jpg",
    "png": "png",
    "gif": "gif",
    "bmp": "bmp",
    "webp": "webp",
    "tiff": "tif",
}

MIN_PADDING = 4

ENTRY_PATTERN = re.compile(r"^([0-9]+)\.([A-Za-z0-9]+)$")

VOLUME_PATTERN = re.compile(r"(?i)\bv(?:ol(?:ume)?)?\.?[\s._-]*0*([0-9]+)")
CHAPTER_PATTERN = re.compile(r"(?i)\bch(?:ap(?:ter)?)?\.?[\s._-]*0*([0-9]+)(?:\.([0-9]+))?")

_UNSAFE_CHARS = re.compile(r'[\x00-\x1f\x7f/\\:*?"<>|]')


def natural_key(text: str) -> Tuple[Union[int, str], ...]:
    """Sort key treating runs of digits as numbers.

    >>> sorted(['p10.png', 'p2.png', 'p1.png'], key=natural_key)
    ['p1.png', 'p2.png', 'p10.png']
    >>> sorted(['B2', 'a10', 'a9'], key=natural_key)
    ['a9', 'a10', 'B2']
    """
    return tuple(
        int(part) if part.isdecimal() else part.lower()
        for part in re.split(r"([0-9]+)", text)
    )


def padding_width(count: int) -> int:
    """Digits used to name the entries of an archive holding `count` pages.

    >>> padding_width(12)
    4
    >>> padding_width(9999)
    4
    >>> padding_width(10000)
    5
    """
    return max(MIN_PADDING, math.ceil(math.log10(count + 1)))


def entry_name(ordinal: int, image_format: str, count: int) -> str:
    """Archive entry name for the page at `ordinal` (entries are numbered from 1).

    >>> entry_name(0, 'png', 3)
    '0001.png'
    >>> entry_name(1, 'jpeg', 3)
    '0002.jpg'
    """
    extension = FORMAT_EXTENSIONS.get(image_format, image_format)
    return f"{ordinal + 1:0{padding_width(count)}d}.{extension}"


def parse_entry_name(name: str) -> Optional[int]:
    """Return the numeric prefix of a page entry, or None for other entries.

    >>> parse_entry_name('0012.jpg')
    12
    >>> parse_entry_name('ComicInfo.xml') is None
    True
    >>> parse_entry_name('0003.xml') is None
    True
    """
    m = ENTRY_PATTERN.match(name)
    if not m:
        return None
    if f".{m.group(2).lower()}" not in IMAGE_EXTENSIONS:
        return None
    return int(m.group(1))


def is_image_name(name: str) -> bool:
    return os.path.splitext(name)[1].lower() in IMAGE_EXTENSIONS


def expand_glob(pattern: str) -> List[str]:
    """Expand `pattern` to image files sorted by file name in natural order."""
    matches = [p for p in glob.glob(pattern) if os.path.isfile(p) and is_image_name(p)]
    return sorted(matches, key=lambda p: (natural_key(os.path.basename(p)), p))


def sanitize_name(name: str) -> str:
    """Make a human archive name safe to use as a file name.

    >>> sanitize_name('Berserk: v01/02?')
    'Berserk v0102'
    >>> sanitize_name('...')
    'archive'
    """
    cleaned = _UNSAFE_CHARS.sub("", name).strip(" .")
    return cleaned or "archive"


def output_path(outdir: str, name: str) -> str:
    """Return `<outdir>/<sanitized name>.cbz`, creating `outdir` if needed."""
    os.makedirs(outdir, exist_ok=True)
    base = sanitize_name(name)
    if not base.lower().endswith(".cbz"):
        base = f"{base}.cbz"
    return os.path.join(outdir, base)


def extract_order_hint(filename: str) -> Optional[OrderHint]:
    """Parse a volume/chapter hint from a file name.

    Returns None when neither a volume nor a chapter number is present.

    >>> extract_order_hint('Berserk v02 Chapter 13.cbz')
    OrderHint(volume=2, chapter=13, extra=0)
    >>> extract_order_hint('Mashle Ch.013.5.cbz')
    OrderHint(volume=0, chapter=13, extra=5)
    >>> extract_order_hint('cover.cbz') is None
    True
    """
    base = os.path.basename(filename)
    volume_match = VOLUME_PATTERN.search(base)
    chapter_match = CHAPTER_PATTERN.search(base)
    if volume_match is None and chapter_match is None:
        return None
    volume = int(volume_match.group(1)) if volume_match else 0
    chapter = int(chapter_match.group(1)) if chapter_match else 0
    extra = 0
    if chapter_match and chapter_match.group(2):
        extra = int(chapter_match.group(2))
    return OrderHint(volume=volume, chapter=chapter, extra=extra)
