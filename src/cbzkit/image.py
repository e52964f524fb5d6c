"""Per-page image transforms: autosplit, brightness, contrast and blur.

All functions are pure: they take a Page and return new Page objects,
re-encoded in the page's own format. A page whose payload cannot be turned
into a pixel buffer raises `ImageProcessingError`.
"""

from __future__ import annotations

import io
import logging
from typing import List, Sequence

from PIL import Image, ImageFilter, UnidentifiedImageError

from .config import TransformConfig
from .errors import ImageProcessingError
from .types_ import Page, ReadingOrder

logger = logging.getLogger(__name__)

# formats Pillow cannot write with an alpha channel
_NO_ALPHA_FORMATS = ("JPEG", "BMP")


def open_image(page: Page) -> Image.Image:
    """Decode a page into a fully loaded Pillow image."""
    try:
        img = Image.open(io.BytesIO(page.data))
        img.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise ImageProcessingError(
            f"cannot decode page {page.ordinal} ({page.image_format}): {e}"
        ) from e
    return img


def encode_image(img: Image.Image, image_format: str, quality: int = 95) -> bytes:
    """Encode `img` as `image_format`, converting the mode when the format requires it."""
    fmt = image_format.upper()
    if fmt in _NO_ALPHA_FORMATS and img.mode not in ("L", "RGB"):
        img = img.convert("RGB")
    params = {"quality": quality} if fmt in ("JPEG", "WEBP") else {}
    buf = io.BytesIO()
    try:
        img.save(buf, format=fmt, **params)
    except (OSError, ValueError, KeyError) as e:
        raise ImageProcessingError(f"cannot encode image as {image_format}: {e}") from e
    return buf.getvalue()


def is_landscape(page: Page) -> bool:
    """A landscape spread is strictly wider than tall; squares are not spreads."""
    img = open_image(page)
    return img.width > img.height


def autosplit(
    page: Page, reading_order: ReadingOrder = ReadingOrder.RTL, quality: int = 95
) -> List[Page]:
    """Split a landscape spread at its vertical midpoint.

    Returns `[page]` unchanged for portrait and square pages. For a spread,
    returns two pages in reading order: with RTL the right half comes first,
    with LTR the left half comes first. The returned pages carry ordinals
    `page.ordinal` and `page.ordinal + 1`; the caller renumbers the set.
    """
    img = open_image(page)
    width, height = img.size
    if width <= height:
        return [page]

    middle = width // 2
    left = img.crop((0, 0, middle, height))
    right = img.crop((middle, 0, width, height))
    if reading_order == ReadingOrder.RTL:
        halves = (right, left)
    else:
        halves = (left, right)

    logger.debug(
        f"split page {page.ordinal} ({width}x{height}) reading order {ReadingOrder(reading_order).value}"
    )
    return [
        Page(
            ordinal=page.ordinal + offset,
            data=encode_image(half, page.image_format, quality),
            image_format=page.image_format,
        )
        for offset, half in enumerate(halves)
    ]


def _clamp(value: float) -> int:
    return max(0, min(255, int(round(value))))


def _apply_table(img: Image.Image, table: Sequence[int]) -> Image.Image:
    """Map every colour channel through `table`; alpha is left untouched."""
    if img.mode not in ("L", "LA", "RGB", "RGBA"):
        has_alpha = img.mode.endswith("A") or "transparency" in img.info
        img = img.convert("RGBA" if has_alpha else "RGB")
    lut: List[int] = []
    for band in img.getbands():
        lut.extend(range(256) if band == "A" else table)
    return img.point(lut)


def _with_image(page: Page, img: Image.Image, quality: int) -> Page:
    return Page(
        ordinal=page.ordinal,
        data=encode_image(img, page.image_format, quality),
        image_format=page.image_format,
    )


def adjust_contrast(page: Page, factor: float, quality: int = 95) -> Page:
    """out = clamp((in - 128) * factor + 128) per channel. `factor == 1.0` is the identity."""
    if factor <= 0:
        raise ValueError(f"contrast factor must be positive, got {factor}")
    if factor == 1.0:
        return page
    table = [_clamp((v - 128) * factor + 128) for v in range(256)]
    return _with_image(page, _apply_table(open_image(page), table), quality)


def adjust_brightness(page: Page, delta: int, quality: int = 95) -> Page:
    """out = clamp(in + delta) per channel, `delta` in [-255, 255]."""
    if not -255 <= delta <= 255:
        raise ValueError(f"brightness delta must be within [-255, 255], got {delta}")
    if delta == 0:
        return page
    table = [_clamp(v + delta) for v in range(256)]
    return _with_image(page, _apply_table(open_image(page), table), quality)


def blur(page: Page, radius: float, quality: int = 95) -> Page:
    """Gaussian blur; a radius of 0 is the identity."""
    if radius <= 0:
        return page
    img = open_image(page)
    if img.mode == "P":
        img = img.convert("RGBA" if "transparency" in img.info else "RGB")
    return _with_image(page, img.filter(ImageFilter.GaussianBlur(radius)), quality)


def transform_page(page: Page, cfg: TransformConfig, quality: int = 95) -> List[Page]:
    """Run the whole pipeline on one page.

    Autosplit first (it may turn one page into two), then brightness,
    contrast and blur on every resulting page.
    """
    pages = autosplit(page, cfg.reading_order, quality) if cfg.autosplit else [page]
    out = []
    for p in pages:
        p = adjust_brightness(p, cfg.brightness, quality)
        p = adjust_contrast(p, cfg.contrast, quality)
        p = blur(p, cfg.blur, quality)
        out.append(p)
    return out
