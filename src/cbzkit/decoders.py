"""Format decoders: turn one SourceDescriptor into an ordered PageSet.

Each source kind has one decoder class; `decoder_for` picks it from the
descriptor's kind tag through `DECODER_FACTORIES`, so supporting a new format
means registering a factory, nothing else.
"""

from __future__ import annotations

import logging
import posixpath
import re
import zipfile
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional
from urllib.parse import unquote
from xml.etree import ElementTree

import ebooklib
import pymupdf as fitz
from ebooklib import epub

from .archive import read_archive
from .config import EngineConfig
from .core import expand_glob
from .errors import (
    DecodeError,
    DrmProtectedError,
    NoMatchError,
    UnsupportedPdfFeatureError,
    UnsupportedSourceError,
)
from .mobi import EXTH_KF8_BOUNDARY, MobiBook
from .types_ import Page, PageSet, SourceDescriptor, SourceKind

logger = logging.getLogger(__name__)


class Decoder(ABC):
    """Capability: decode(SourceDescriptor) -> PageSet."""

    kind: SourceKind

    @abstractmethod
    def decode(self, descriptor: SourceDescriptor) -> PageSet:
        """Extract the pages of `descriptor`, ordinals 0..n-1 in source order."""
        pass


class ImageGlobDecoder(Decoder):
    """Raster images matched by a glob, ordered by natural file-name order."""

    kind = SourceKind.IMAGES

    def decode(self, descriptor: SourceDescriptor) -> PageSet:
        paths = expand_glob(descriptor.location)
        if not paths:
            raise NoMatchError(f"no image matches {descriptor.location}")
        logger.debug(f"glob {descriptor.location} matched {len(paths)} images")
        page_set = PageSet()
        for ordinal, path in enumerate(paths):
            try:
                with open(path, "rb") as fh:
                    data = fh.read()
            except OSError as e:
                raise DecodeError(f"cannot read {path}: {e}") from e
            page_set.append(Page.from_bytes(ordinal, data, origin=path))
        return page_set


class PdfDecoder(Decoder):
    """PDF pages in document order.

    A page made of a single embedded JPEG covering the page is extracted
    as-is when `prefer_embedded` is set; every other page is rasterized to
    PNG at `dpi`.
    """

    kind = SourceKind.PDF

    # share of the page area an embedded image must cover to be the page
    COVERAGE = 0.95

    def __init__(self, dpi: int = 150, prefer_embedded: bool = True) -> None:
        self.dpi = dpi
        self.prefer_embedded = prefer_embedded

    def decode(self, descriptor: SourceDescriptor) -> PageSet:
        try:
            doc = fitz.open(descriptor.location)
        except (RuntimeError, OSError, ValueError) as e:
            raise UnsupportedSourceError(f"cannot open PDF {descriptor.location}: {e}") from e

        try:
            if not doc.is_pdf:
                raise UnsupportedSourceError(f"{descriptor.location} is not a PDF document")
            metadata = doc.metadata or {}
            if doc.needs_pass or doc.is_encrypted or metadata.get("encryption"):
                raise UnsupportedPdfFeatureError(
                    f"{descriptor.location} is encrypted, refusing to extract pages"
                )
            if doc.page_count == 0:
                raise NoMatchError(f"{descriptor.location} has no page")
            scale = self.dpi / 72
            matrix = fitz.Matrix(scale, scale)
            page_set = PageSet()
            for index, pdf_page in enumerate(doc):
                try:
                    data = self._embedded_jpeg(doc, pdf_page) if self.prefer_embedded else None
                    if data is not None:
                        logger.debug(f"page {index}: using embedded JPEG")
                        page_set.append(Page(ordinal=index, data=data, image_format="jpeg"))
                        continue
                    pix = pdf_page.get_pixmap(matrix=matrix)
                    png = pix.tobytes("png")
                except RuntimeError as e:
                    raise DecodeError(f"cannot render page {index} of {descriptor.location}: {e}") from e
                page_set.append(Page(ordinal=index, data=png, image_format="png"))
                logger.debug(f"page {index}: rendered at {self.dpi} dpi")
        finally:
            doc.close()
        return page_set

    def _embedded_jpeg(self, doc, pdf_page) -> Optional[bytes]:
        images = pdf_page.get_images(full=True)
        if len(images) != 1:
            return None
        xref, smask = images[0][0], images[0][1]
        if smask:
            return None
        info = doc.extract_image(xref)
        if not info or info.get("ext") not in ("jpeg", "jpg"):
            return None
        page_area = abs(pdf_page.rect)
        rects = pdf_page.get_image_rects(xref)
        if not page_area or not rects:
            return None
        covered = abs(rects[0] & pdf_page.rect)
        if covered / page_area < self.COVERAGE:
            return None
        return info["image"]


class _MobiContainerDecoder(Decoder):
    """Shared logic of the MOBI and AZW3 decoders."""

    def decode(self, descriptor: SourceDescriptor) -> PageSet:
        try:
            book = MobiBook.from_path(descriptor.location)
        except OSError as e:
            raise UnsupportedSourceError(f"cannot read {descriptor.location}: {e}") from e
        if book.is_encrypted:
            raise DrmProtectedError(
                f"{descriptor.location} is DRM protected (encryption type {book.header.encryption})"
            )
        self.check_version(book)

        records = book.image_records()
        if not records:
            raise NoMatchError(f"no image resource found in {descriptor.location}")
        logger.debug(f"{descriptor.location}: {len(records)} image records")
        return PageSet(
            Page(ordinal=ordinal, data=record.data, image_format=record.image_format)
            for ordinal, record in enumerate(records)
        )

    def check_version(self, book: MobiBook) -> None:
        pass


class MobiDecoder(_MobiContainerDecoder):
    kind = SourceKind.MOBI

    def check_version(self, book: MobiBook) -> None:
        if book.header.version >= 8 and EXTH_KF8_BOUNDARY not in book.header.exth:
            logger.warning(f"{book.name} looks like a KF8 (AZW3) book, decoding anyway")


class Azw3Decoder(_MobiContainerDecoder):
    kind = SourceKind.AZW3

    def check_version(self, book: MobiBook) -> None:
        if not book.is_kf8:
            logger.warning(
                f"{book.name} has no KF8 section (version {book.header.version}), decoding anyway"
            )


class EpubDecoder(Decoder):
    """Raster images of a DRM-free EPUB, in reading order.

    Images referenced by spine documents come first, in document order; image
    items no document references follow in manifest order.
    """

    kind = SourceKind.EPUB

    # encryption.xml algorithms that only obfuscate embedded fonts
    FONT_OBFUSCATION = (
        "http://www.idpf.org/2008/embedding",
        "http://ns.adobe.com/pdf/enc#RC",
    )
    IMG_REF = re.compile(
        r"""<(?:\w+:)?(?:img|image)\b[^>]*?\b(?:src|xlink:href|href)\s*=\s*["']([^"']+)["']""",
        re.IGNORECASE,
    )

    def decode(self, descriptor: SourceDescriptor) -> PageSet:
        self._check_drm(descriptor.location)
        try:
            book = epub.read_epub(descriptor.location, options={"ignore_ncx": True})
        except Exception as e:
            raise UnsupportedSourceError(f"cannot read EPUB {descriptor.location}: {e}") from e

        ordered = self._ordered_images(book)
        page_set = PageSet()
        for item in ordered:
            page_set.append(
                Page.from_bytes(len(page_set), item.get_content(), origin=item.get_name())
            )
        if not page_set:
            raise NoMatchError(f"no raster image found in {descriptor.location}")
        return page_set

    def _check_drm(self, location: str) -> None:
        try:
            with zipfile.ZipFile(location) as z:
                names = set(z.namelist())
                if "META-INF/rights.xml" in names:
                    raise DrmProtectedError(f"{location} carries a rights.xml, it is DRM protected")
                if "META-INF/encryption.xml" not in names:
                    return
                root = ElementTree.fromstring(z.read("META-INF/encryption.xml"))
        except (zipfile.BadZipFile, OSError) as e:
            raise UnsupportedSourceError(f"cannot read EPUB {location}: {e}") from e
        except ElementTree.ParseError as e:
            raise DrmProtectedError(f"{location} has an unreadable encryption.xml: {e}") from e

        for element in root.iter():
            if element.tag.endswith("EncryptionMethod"):
                algorithm = element.get("Algorithm", "")
                if algorithm not in self.FONT_OBFUSCATION:
                    raise DrmProtectedError(f"{location} is encrypted with {algorithm}")
        logger.debug(f"{location}: encryption.xml only obfuscates fonts")

    def _is_raster(self, item) -> bool:
        return item.get_type() in (ebooklib.ITEM_IMAGE, ebooklib.ITEM_COVER) and (
            item.media_type != "image/svg+xml"
        )

    def _ordered_images(self, book) -> List:
        ordered = []
        seen = set()
        for idref, _ in book.spine:
            document = book.get_item_with_id(idref)
            if document is None or document.get_type() != ebooklib.ITEM_DOCUMENT:
                continue
            base = posixpath.dirname(document.get_name())
            content = document.get_content().decode("utf-8", errors="replace")
            for m in self.IMG_REF.finditer(content):
                href = posixpath.normpath(posixpath.join(base, unquote(m.group(1).split("#")[0])))
                item = book.get_item_with_href(href)
                if item is None or not self._is_raster(item) or href in seen:
                    continue
                seen.add(href)
                ordered.append(item)

        for item in book.get_items():
            if self._is_raster(item) and item.get_name() not in seen:
                logger.debug(f"image {item.get_name()} not referenced by the spine, appending")
                seen.add(item.get_name())
                ordered.append(item)
        return ordered


class CbzDecoder(Decoder):
    """Pages of an existing CBZ, in stored order."""

    kind = SourceKind.CBZ

    def __init__(self, strict: bool = True) -> None:
        self.strict = strict

    def decode(self, descriptor: SourceDescriptor) -> PageSet:
        return read_archive(descriptor.location, strict=self.strict)


DECODER_FACTORIES: Dict[SourceKind, Callable[[EngineConfig], Decoder]] = {
    SourceKind.IMAGES: lambda cfg: ImageGlobDecoder(),
    SourceKind.PDF: lambda cfg: PdfDecoder(dpi=cfg.pdf_dpi, prefer_embedded=cfg.pdf_prefer_embedded),
    SourceKind.MOBI: lambda cfg: MobiDecoder(),
    SourceKind.AZW3: lambda cfg: Azw3Decoder(),
    SourceKind.EPUB: lambda cfg: EpubDecoder(),
    SourceKind.CBZ: lambda cfg: CbzDecoder(),
}


def register_decoder(kind: SourceKind, factory: Callable[[EngineConfig], Decoder]) -> None:
    DECODER_FACTORIES[kind] = factory


def decoder_for(kind: SourceKind, cfg: Optional[EngineConfig] = None) -> Decoder:
    """Return the decoder registered for `kind`."""
    try:
        factory = DECODER_FACTORIES[SourceKind(kind)]
    except (KeyError, ValueError) as e:
        raise UnsupportedSourceError(f"no decoder for source kind {kind!r}") from e
    return factory(cfg or EngineConfig())
