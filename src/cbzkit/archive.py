"""CBZ container codec.

Write side: one zip entry per page, named `<zero padded number>.<ext>` in
ordinal order, written to a temporary file next to the destination and
renamed into place only once the archive is complete.

Read side: strict mode keeps only entries following the page naming scheme;
lenient mode keeps every image entry and orders them naturally, which is what
re-indexing archives produced by other tools needs.
"""

from __future__ import annotations

import logging
import os
import tempfile
import zipfile
import zlib
from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple

from .core import entry_name, is_image_name, natural_key, parse_entry_name
from .errors import CorruptArchiveError, DecodeError, IoError
from .types_ import Page, PageSet

logger = logging.getLogger(__name__)

# classic (non zip64) archives hold at most 65535 entries
MAX_PAGES = 65535


@contextmanager
def atomic_destination(destination: str) -> Iterator[str]:
    """Yield a temporary path next to `destination`; rename it over on success.

    The temporary file is removed on every exit path that does not commit,
    so a failed operation never leaves a file at `destination`.
    """
    directory = os.path.dirname(os.path.abspath(destination)) or "."
    try:
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{os.path.basename(destination)}.", suffix=".part", dir=directory
        )
    except OSError as e:
        raise IoError(f"cannot create temporary file for {destination}: {e}") from e
    os.close(fd)
    committed = False
    try:
        yield tmp_path
        try:
            os.replace(tmp_path, destination)
        except OSError as e:
            raise IoError(f"cannot move archive into place at {destination}: {e}") from e
        committed = True
        logger.debug(f"committed {tmp_path} -> {destination}")
    finally:
        if not committed and os.path.exists(tmp_path):
            logger.debug(f"removing temporary file {tmp_path}")
            os.remove(tmp_path)


def write_archive(
    page_set: PageSet, destination: str, compresslevel: Optional[int] = None
) -> str:
    """Write `page_set` as a CBZ at `destination`.

    Pages are sorted by ordinal first; the ordinals must then be exactly
    0..n-1. Entries are stored uncompressed unless `compresslevel` is given.

    Raises:
        IoError: on any write failure, or when the set exceeds `MAX_PAGES`.
        DecodeError: a page format has no entry extension strict read accepts.
        ValueError: when ordinals have gaps or duplicates.
    """
    page_set.sort()
    if not page_set.is_contiguous():
        raise ValueError("page ordinals must be contiguous and zero-based before writing")
    count = len(page_set)
    if count > MAX_PAGES:
        raise IoError(f"an archive holds at most {MAX_PAGES} pages, got {count}")
    names = [entry_name(page.ordinal, page.image_format, count) for page in page_set]
    for page, name in zip(page_set, names):
        # every written entry must be one strict read picks up again
        if parse_entry_name(name) is None:
            raise DecodeError(
                f"page {page.ordinal} has format {page.image_format!r}, which has no page entry extension"
            )

    if compresslevel is None:
        compression, level = zipfile.ZIP_STORED, None
    else:
        compression, level = zipfile.ZIP_DEFLATED, compresslevel

    with atomic_destination(destination) as tmp_path:
        try:
            with zipfile.ZipFile(tmp_path, "w", compression=compression, compresslevel=level) as z:
                for page, name in zip(page_set, names):
                    z.writestr(name, page.data)
                    logger.debug(f"wrote entry {name} ({len(page.data)} bytes)")
        except OSError as e:
            raise IoError(f"cannot write archive {destination}: {e}") from e
    logger.debug(f"wrote {count} pages to {destination}")
    return destination


def _select_entries(names: List[str], strict: bool) -> List[str]:
    if strict:
        numbered: List[Tuple[int, str]] = []
        for name in names:
            number = parse_entry_name(name)
            if number is None:
                logger.debug(f"ignoring non-page entry {name}")
                continue
            numbered.append((number, name))
        return [name for _, name in sorted(numbered)]

    selected = []
    for name in names:
        parts = name.split("/")
        if name.endswith("/") or parts[0] == "__MACOSX" or parts[-1].startswith("."):
            continue
        if not is_image_name(name):
            logger.debug(f"ignoring non-image entry {name}")
            continue
        selected.append(name)
    return sorted(selected, key=lambda n: (natural_key(n), n))


def read_archive(source: str, strict: bool = True) -> PageSet:
    """Read a CBZ back into a PageSet with ordinals 0..n-1 in stored order.

    Raises:
        CorruptArchiveError: the zip index cannot be read.
        DecodeError: an entry cannot be read or is not an identifiable image.
    """
    try:
        z = zipfile.ZipFile(source, "r")
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError) as e:
        raise CorruptArchiveError(f"cannot read archive index of {source}: {e}") from e

    page_set = PageSet()
    with z:
        for ordinal, name in enumerate(_select_entries(z.namelist(), strict)):
            try:
                data = z.read(name)
            except (zipfile.BadZipFile, zlib.error, OSError, EOFError) as e:
                raise DecodeError(f"cannot read entry {name} of {source}: {e}") from e
            page_set.append(Page.from_bytes(ordinal, data, origin=f"{source}:{name}"))
    logger.debug(f"read {len(page_set)} pages from {source}")
    return page_set
