import zipfile
from pathlib import Path

import pytest

from cbzkit import decoders
from cbzkit.config import EngineConfig
from cbzkit.decoders import (
    CbzDecoder,
    EpubDecoder,
    ImageGlobDecoder,
    PdfDecoder,
    decoder_for,
)
from cbzkit.errors import (
    DrmProtectedError,
    NoMatchError,
    UnsupportedPdfFeatureError,
    UnsupportedSourceError,
)
from cbzkit.testing import (
    color_for,
    image_size,
    make_cbz,
    make_epub,
    make_image_bytes,
    make_pdf,
    pixel_at,
)
from cbzkit.types_ import PageSet, SourceDescriptor, SourceKind

AES_ENCRYPTION = """<?xml version="1.0"?>
<encryption xmlns="urn:oasis:names:tc:opendocument:xmlns:container"
            xmlns:enc="http://www.w3.org/2001/04/xmlenc#">
  <enc:EncryptedData>
    <enc:EncryptionMethod Algorithm="http://www.w3.org/2001/04/xmlenc#aes128-cbc"/>
    <enc:CipherData><enc:CipherReference URI="EPUB/images/p0.png"/></enc:CipherData>
  </enc:EncryptedData>
</encryption>
"""

FONT_OBFUSCATION = """<?xml version="1.0"?>
<encryption xmlns="urn:oasis:names:tc:opendocument:xmlns:container"
            xmlns:enc="http://www.w3.org/2001/04/xmlenc#">
  <enc:EncryptedData>
    <enc:EncryptionMethod Algorithm="http://www.idpf.org/2008/embedding"/>
    <enc:CipherData><enc:CipherReference URI="EPUB/fonts/font.otf"/></enc:CipherData>
  </enc:EncryptedData>
</encryption>
"""


def colors(page_set: PageSet):
    return [pixel_at(p.data) for p in page_set]


def test_glob_uses_natural_order(scans_dir: Path):
    ps = ImageGlobDecoder().decode(SourceDescriptor(SourceKind.IMAGES, str(scans_dir / "p*.png")))
    assert [p.ordinal for p in ps] == [0, 1, 2]
    # p1, p2, p10
    assert colors(ps) == [color_for(0), color_for(1), color_for(2)]


def test_directory_source_skips_non_images(scans_dir: Path):
    ps = ImageGlobDecoder().decode(SourceDescriptor.from_path(str(scans_dir)))
    assert len(ps) == 3


def test_glob_without_match_raises(tmp_path: Path):
    with pytest.raises(NoMatchError):
        ImageGlobDecoder().decode(SourceDescriptor(SourceKind.IMAGES, str(tmp_path / "*.png")))


def test_pdf_pages_are_rendered(tmp_path: Path):
    pdf = make_pdf(tmp_path, "text.pdf", count=3)
    ps = PdfDecoder(dpi=144).decode(SourceDescriptor(SourceKind.PDF, str(pdf)))
    assert len(ps) == 3
    assert all(p.image_format == "png" for p in ps)
    # 300x400pt at 144 dpi
    assert image_size(ps[0].data) == (600, 800)


def test_pdf_single_jpeg_page_is_extracted_as_is(tmp_path: Path):
    jpeg = make_image_bytes(size=(120, 160), fmt="JPEG", color=(10, 120, 200))
    pdf = make_pdf(tmp_path, "scan.pdf", images=[jpeg, jpeg])
    ps = PdfDecoder().decode(SourceDescriptor(SourceKind.PDF, str(pdf)))
    assert [p.image_format for p in ps] == ["jpeg", "jpeg"]
    assert image_size(ps[0].data) == (120, 160)


def test_pdf_embedded_fast_path_can_be_disabled(tmp_path: Path):
    jpeg = make_image_bytes(size=(120, 160), fmt="JPEG")
    pdf = make_pdf(tmp_path, "scan.pdf", images=[jpeg])
    ps = PdfDecoder(prefer_embedded=False).decode(SourceDescriptor(SourceKind.PDF, str(pdf)))
    assert ps[0].image_format == "png"


def test_encrypted_pdf_is_refused(tmp_path: Path):
    pdf = make_pdf(tmp_path, "locked.pdf", password="secret")
    with pytest.raises(UnsupportedPdfFeatureError):
        PdfDecoder().decode(SourceDescriptor(SourceKind.PDF, str(pdf)))


def test_garbage_pdf_is_unsupported(tmp_path: Path):
    bad = tmp_path / "bad.pdf"
    bad.write_bytes(b"not a pdf at all")
    with pytest.raises(UnsupportedSourceError):
        PdfDecoder().decode(SourceDescriptor(SourceKind.PDF, str(bad)))


def test_epub_follows_spine_order(tmp_path: Path):
    images = [make_image_bytes(color=color_for(i)) for i in range(3)]
    book = make_epub(tmp_path, "book.epub", images, manifest_reversed=True)
    ps = EpubDecoder().decode(SourceDescriptor(SourceKind.EPUB, str(book)))
    assert colors(ps) == [color_for(0), color_for(1), color_for(2)]


def test_epub_with_encrypted_resources_is_drm(tmp_path: Path):
    book = make_epub(tmp_path, "drm.epub", [make_image_bytes()], encryption_xml=AES_ENCRYPTION)
    with pytest.raises(DrmProtectedError):
        EpubDecoder().decode(SourceDescriptor(SourceKind.EPUB, str(book)))


def test_epub_with_rights_file_is_drm(tmp_path: Path):
    book = make_epub(tmp_path, "rights.epub", [make_image_bytes()])
    with zipfile.ZipFile(book, "a") as z:
        z.writestr("META-INF/rights.xml", "<rights/>")
    with pytest.raises(DrmProtectedError):
        EpubDecoder().decode(SourceDescriptor(SourceKind.EPUB, str(book)))


def test_epub_font_obfuscation_is_not_drm(tmp_path: Path):
    book = make_epub(tmp_path, "fonts.epub", [make_image_bytes()], encryption_xml=FONT_OBFUSCATION)
    ps = EpubDecoder().decode(SourceDescriptor(SourceKind.EPUB, str(book)))
    assert len(ps) == 1


def test_cbz_decoder_reads_pages(tmp_path: Path):
    src = make_cbz(tmp_path, "a.cbz", count=3)
    ps = CbzDecoder().decode(SourceDescriptor(SourceKind.CBZ, str(src)))
    assert colors(ps) == [color_for(i) for i in range(3)]


@pytest.mark.parametrize(
    "kind, cls",
    [
        (SourceKind.IMAGES, decoders.ImageGlobDecoder),
        (SourceKind.PDF, decoders.PdfDecoder),
        (SourceKind.MOBI, decoders.MobiDecoder),
        (SourceKind.AZW3, decoders.Azw3Decoder),
        (SourceKind.EPUB, decoders.EpubDecoder),
        (SourceKind.CBZ, decoders.CbzDecoder),
    ],
)
def test_decoder_for_every_kind(kind, cls):
    assert isinstance(decoder_for(kind), cls)


def test_decoder_for_passes_pdf_settings():
    dec = decoder_for(SourceKind.PDF, EngineConfig(pdf_dpi=300, pdf_prefer_embedded=False))
    assert (dec.dpi, dec.prefer_embedded) == (300, False)


def test_unknown_kind_is_unsupported():
    with pytest.raises(UnsupportedSourceError):
        decoder_for("djvu")


def test_register_decoder_replaces_factory(monkeypatch):
    class Fake(decoders.Decoder):
        kind = SourceKind.IMAGES

        def decode(self, descriptor):
            return PageSet()

    monkeypatch.setitem(decoders.DECODER_FACTORIES, SourceKind.IMAGES, decoders.DECODER_FACTORIES[SourceKind.IMAGES])
    decoders.register_decoder(SourceKind.IMAGES, lambda cfg: Fake())
    assert isinstance(decoder_for(SourceKind.IMAGES), Fake)


def test_pdf_library_is_imported_under_its_current_name():
    # the legacy `fitz` module name warns on import in recent PyMuPDF releases
    assert decoders.fitz.__name__ == "pymupdf"
