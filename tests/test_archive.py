import os
import zipfile
from pathlib import Path

import pytest

from cbzkit import archive
from cbzkit.errors import CorruptArchiveError, DecodeError, IoError
from cbzkit.testing import color_for, make_cbz, make_image_bytes, make_mpo_bytes, pixel_at
from cbzkit.types_ import Page, PageSet


def page_set(n: int, fmt: str = "PNG") -> PageSet:
    return PageSet(Page.from_bytes(i, make_image_bytes(fmt=fmt, color=color_for(i))) for i in range(n))


def leftovers(directory: Path):
    return [n for n in os.listdir(directory) if n.endswith(".part")]


def test_write_names_entries_in_ordinal_order(tmp_path: Path):
    ps = page_set(3)
    dest = tmp_path / "out.cbz"
    archive.write_archive(ps, str(dest))
    with zipfile.ZipFile(dest) as z:
        assert z.namelist() == ["0001.png", "0002.png", "0003.png"]
        assert all(info.compress_type == zipfile.ZIP_STORED for info in z.infolist())


def test_write_uses_format_extension(tmp_path: Path):
    ps = PageSet([Page.from_bytes(0, make_image_bytes(fmt="JPEG")), Page.from_bytes(1, make_image_bytes(fmt="GIF"))])
    dest = tmp_path / "mixed.cbz"
    archive.write_archive(ps, str(dest))
    with zipfile.ZipFile(dest) as z:
        assert z.namelist() == ["0001.jpg", "0002.gif"]


def test_write_sorts_pages_first(tmp_path: Path):
    pages = page_set(3).pages
    dest = tmp_path / "out.cbz"
    archive.write_archive(PageSet(reversed(pages)), str(dest))
    back = archive.read_archive(str(dest))
    assert [pixel_at(p.data) for p in back] == [color_for(i) for i in range(3)]


def test_round_trip_keeps_order_and_bytes(tmp_path: Path):
    ps = page_set(4)
    dest = tmp_path / "rt.cbz"
    archive.write_archive(ps, str(dest))
    back = archive.read_archive(str(dest))
    assert [p.ordinal for p in back] == [0, 1, 2, 3]
    assert [p.data for p in back] == [p.data for p in ps]


def test_compresslevel_deflates_entries(tmp_path: Path):
    dest = tmp_path / "deflated.cbz"
    archive.write_archive(page_set(2), str(dest), compresslevel=9)
    with zipfile.ZipFile(dest) as z:
        assert all(info.compress_type == zipfile.ZIP_DEFLATED for info in z.infolist())


def test_write_rejects_gaps(tmp_path: Path):
    ps = PageSet([Page.from_bytes(0, make_image_bytes()), Page.from_bytes(2, make_image_bytes())])
    with pytest.raises(ValueError):
        archive.write_archive(ps, str(tmp_path / "gap.cbz"))
    assert not (tmp_path / "gap.cbz").exists()


def test_write_refuses_more_than_max_pages(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(archive, "MAX_PAGES", 2)
    dest = tmp_path / "big.cbz"
    with pytest.raises(IoError):
        archive.write_archive(page_set(3), str(dest))
    assert not dest.exists()


def test_failed_write_leaves_no_file(tmp_path: Path, monkeypatch):
    def boom(self, name, data, *args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(zipfile.ZipFile, "writestr", boom)
    dest = tmp_path / "broken.cbz"
    with pytest.raises(IoError, match="disk full"):
        archive.write_archive(page_set(2), str(dest))
    assert not dest.exists()
    assert leftovers(tmp_path) == []


def test_write_into_missing_directory_is_io_error(tmp_path: Path):
    with pytest.raises(IoError):
        archive.write_archive(page_set(1), str(tmp_path / "missing" / "out.cbz"))


def test_empty_page_set_writes_empty_archive(tmp_path: Path):
    dest = tmp_path / "empty.cbz"
    archive.write_archive(PageSet(), str(dest))
    with zipfile.ZipFile(dest) as z:
        assert z.namelist() == []


def test_strict_read_ignores_metadata_entries(tmp_path: Path):
    entries = {
        "0002.png": make_image_bytes(color=color_for(1)),
        "ComicInfo.xml": b"<ComicInfo/>",
        "0001.png": make_image_bytes(color=color_for(0)),
        "0003.xml": b"<x/>",
    }
    src = make_cbz(tmp_path, "meta.cbz", entries=entries)
    back = archive.read_archive(str(src))
    assert len(back) == 2
    assert [pixel_at(p.data) for p in back] == [color_for(0), color_for(1)]


def test_lenient_read_orders_naturally_and_skips_junk(tmp_path: Path):
    entries = {
        "chapter/p10.jpg": make_image_bytes(fmt="JPEG", color=(0, 0, 250)),
        "chapter/p2.png": make_image_bytes(color=color_for(2)),
        "__MACOSX/chapter/._p2.png": b"resource fork",
        "chapter/.hidden.png": b"nope",
        "chapter/": b"",
        "readme.txt": b"hello",
    }
    src = make_cbz(tmp_path, "loose.cbz", entries=entries)
    back = archive.read_archive(str(src), strict=False)
    assert [p.image_format for p in back] == ["png", "jpeg"]
    # strict mode finds no page entry at all
    assert len(archive.read_archive(str(src))) == 0


def test_not_a_zip_is_corrupt(tmp_path: Path):
    bad = tmp_path / "bad.cbz"
    bad.write_bytes(b"this is not a zip archive")
    with pytest.raises(CorruptArchiveError):
        archive.read_archive(str(bad))


def test_missing_archive_is_corrupt(tmp_path: Path):
    with pytest.raises(CorruptArchiveError):
        archive.read_archive(str(tmp_path / "nope.cbz"))


def test_non_image_page_entry_is_decode_error(tmp_path: Path):
    src = make_cbz(tmp_path, "liar.cbz", entries={"0001.png": b"not a png"})
    with pytest.raises(DecodeError):
        archive.read_archive(str(src))


def test_camera_jpegs_round_trip_as_jpg_entries(tmp_path: Path):
    shots = [make_mpo_bytes(color=color_for(i)) for i in range(2)]
    dest = tmp_path / "camera.cbz"
    archive.write_archive(PageSet(Page.from_bytes(i, data) for i, data in enumerate(shots)), str(dest))
    with zipfile.ZipFile(dest) as z:
        assert z.namelist() == ["0001.jpg", "0002.jpg"]
    assert [p.data for p in archive.read_archive(str(dest))] == shots


def test_write_refuses_formats_strict_read_skips(tmp_path: Path):
    ps = PageSet([Page(ordinal=0, data=make_image_bytes(fmt="PPM"), image_format="ppm")])
    dest = tmp_path / "odd.cbz"
    with pytest.raises(DecodeError, match="ppm"):
        archive.write_archive(ps, str(dest))
    assert not dest.exists()
    assert leftovers(tmp_path) == []
