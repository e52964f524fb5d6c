from __future__ import annotations

import io
import os
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, List, NamedTuple, Optional, TypeAlias

from PIL import Image, UnidentifiedImageError

from .errors import DecodeError, EmptyPayloadError


class ReadingOrder(str, Enum):
    """Which half of a split spread is read first."""

    RTL = "rtl"
    LTR = "ltr"


class SourceKind(str, Enum):
    """Kind tag of a source descriptor, used to select a decoder."""

    IMAGES = "images"
    PDF = "pdf"
    MOBI = "mobi"
    AZW3 = "azw3"
    EPUB = "epub"
    CBZ = "cbz"


# extension -> kind, used when the caller does not give an explicit kind
KIND_BY_EXTENSION = {
    ".pdf": SourceKind.PDF,
    ".mobi": SourceKind.MOBI,
    ".prc": SourceKind.MOBI,
    ".azw3": SourceKind.AZW3,
    ".azw": SourceKind.AZW3,
    ".epub": SourceKind.EPUB,
    ".cbz": SourceKind.CBZ,
    ".zip": SourceKind.CBZ,
}


class OrderHint(NamedTuple):
    """Volume/chapter tuple parsed from a file name, used to order merge inputs.

    `extra` is the numeric suffix of an extra chapter (5 for chapter 13.5) and
    0 for main chapters.
    """

    volume: int = 0
    chapter: int = 0
    extra: int = 0


class SourceDescriptor(NamedTuple):
    """One input of an operation: what it is and where it lives."""

    kind: SourceKind
    location: str
    order_hint: Optional[OrderHint] = None

    @classmethod
    def from_path(
        cls, location: str, kind: Optional[SourceKind] = None, order_hint: Optional[OrderHint] = None
    ) -> "SourceDescriptor":
        """Build a descriptor, inferring the kind from the location when not given.

        A directory becomes an images glob over its direct children; anything
        with glob metacharacters is an images glob as well.

        >>> SourceDescriptor.from_path('book.azw3').kind
        <SourceKind.AZW3: 'azw3'>
        >>> SourceDescriptor.from_path('scans/*.png').kind
        <SourceKind.IMAGES: 'images'>
        """
        location = str(location)
        if kind is None:
            if os.path.isdir(location):
                kind = SourceKind.IMAGES
                location = os.path.join(location, "*")
            elif any(ch in location for ch in "*?["):
                kind = SourceKind.IMAGES
            else:
                ext = os.path.splitext(location)[1].lower()
                kind = KIND_BY_EXTENSION.get(ext, SourceKind.IMAGES)
        return cls(kind=SourceKind(kind), location=location, order_hint=order_hint)


# Archives are concatenated in list order
MergePlan: TypeAlias = List[SourceDescriptor]

# Pillow formats stored as another format (MPO is a JPEG carrying an MPF marker)
FORMAT_ALIASES = {"mpo": "jpeg"}


def normalize_format(name: Optional[str]) -> str:
    """Lower-cased Pillow format name, aliases folded.

    >>> normalize_format('MPO')
    'jpeg'
    >>> normalize_format('PNG')
    'png'
    """
    name = (name or "").lower()
    return FORMAT_ALIASES.get(name, name)


@dataclass
class Page:
    """One image destined for one archive entry.

    `image_format` is the lower-cased Pillow format name (`png`, `jpeg`, ...).
    """

    ordinal: int
    data: bytes
    image_format: str

    @classmethod
    def from_bytes(cls, ordinal: int, data: bytes, origin: str = "") -> "Page":
        """Build a page from raw bytes, detecting the format from the payload."""
        if not data:
            raise EmptyPayloadError(f"empty payload for page {ordinal} {origin}".rstrip())
        try:
            with Image.open(io.BytesIO(data)) as img:
                image_format = normalize_format(img.format)
        except (UnidentifiedImageError, OSError) as e:
            raise DecodeError(f"cannot identify image for page {ordinal} {origin}: {e}") from e
        if not image_format:
            raise DecodeError(f"unknown image format for page {ordinal} {origin}".rstrip())
        return cls(ordinal=ordinal, data=data, image_format=image_format)

    def validate(self) -> None:
        """Check the payload is non-empty and decodes under `image_format`.

        Raises:
            EmptyPayloadError: zero-length payload.
            DecodeError: the payload does not decode, or decodes as another format.
        """
        if not self.data:
            raise EmptyPayloadError(f"page {self.ordinal} has an empty payload")
        try:
            with Image.open(io.BytesIO(self.data)) as img:
                detected = normalize_format(img.format)
                img.load()
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            raise DecodeError(
                f"page {self.ordinal} does not decode as {self.image_format}: {e}"
            ) from e
        if detected != self.image_format:
            raise DecodeError(
                f"page {self.ordinal} is tagged {self.image_format} but contains {detected or 'unknown'} data"
            )


class PageSet:
    """Ordered sequence of pages making up one archive.

    Pages are addressed by position; `renumber` rewrites every ordinal from
    the current position, which is all that is needed after a page has been
    replaced by two.
    """

    def __init__(self, pages: Optional[Iterable[Page]] = None):
        self._pages: List[Page] = list(pages or [])

    def __iter__(self) -> Iterator[Page]:
        return iter(self._pages)

    def __len__(self) -> int:
        return len(self._pages)

    def __getitem__(self, index: int) -> Page:
        return self._pages[index]

    def __repr__(self) -> str:
        return f"PageSet({len(self._pages)} pages)"

    @property
    def pages(self) -> List[Page]:
        return list(self._pages)

    def append(self, page: Page) -> None:
        self._pages.append(page)

    def replace(self, index: int, pages: Iterable[Page]) -> None:
        """Replace the page at `index` with `pages`, then renumber."""
        self._pages[index:index + 1] = list(pages)
        self.renumber()

    def renumber(self) -> "PageSet":
        for position, page in enumerate(self._pages):
            page.ordinal = position
        return self

    def sort(self) -> "PageSet":
        """Re-sort pages by ordinal (stable)."""
        self._pages.sort(key=lambda p: p.ordinal)
        return self

    def is_contiguous(self) -> bool:
        """True when ordinals are exactly 0..len-1 in order."""
        return all(page.ordinal == i for i, page in enumerate(self._pages))

    @classmethod
    def concat(cls, sets: Iterable["PageSet"]) -> "PageSet":
        """Concatenate sets keeping each one's internal order, ordinals renumbered."""
        merged = cls()
        for page_set in sets:
            for page in sorted(page_set, key=lambda p: p.ordinal):
                merged.append(Page(ordinal=0, data=page.data, image_format=page.image_format))
        return merged.renumber()
