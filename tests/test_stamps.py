from pathlib import Path
from tempfile import TemporaryDirectory

import fitz
import pytest
from PIL import Image
from pypdf import PdfReader

import pagepress.stamps as stamps
from pagepress.coords import PercentRect
from pagepress.stamps import (
    _page_number_origin,
    add_text_pdf,
    page_numbers_pdf,
    parse_hex_color,
    redact_pdf,
    sign_pdf,
    watermark_pdf,
)


def _make_pdf(path: Path, pages: int, label: str = "Page") -> None:
    """Create a letter-sized PDF with a text line on each page."""
    document = fitz.open()
    for index in range(pages):
        page = document.new_page(width=612, height=792)
        page.insert_text((72, 100), f"{label} {index + 1}", fontsize=14)
    document.save(str(path))
    document.close()


def _texts(path: Path) -> list:
    return [page.extract_text() or "" for page in PdfReader(str(path)).pages]


def test_watermark_pdf() -> None:
    """Watermark text lands on every page."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 2)
        output = watermark_pdf(
            source, temp_path / "marked.pdf", "CONFIDENTIAL", rotation=0, color="#ff0000"
        )
        texts = _texts(output)
        assert len(texts) == 2
        assert all("CONFIDENTIAL" in text for text in texts)


def test_watermark_pdf_rotated_on_selected_pages() -> None:
    """Rotated watermarks only touch the selected pages."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 3)
        output = watermark_pdf(source, temp_path / "marked.pdf", "DRAFT", pages="2")
        reader = PdfReader(str(output))
        assert len(reader.pages) == 3
        first = reader.pages[0].get_contents().get_data()
        second = reader.pages[1].get_contents().get_data()
        assert len(second) > len(first)


def test_watermark_pdf_validates_input() -> None:
    """Blank text and malformed colors are rejected."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 1)
        with pytest.raises(ValueError):
            watermark_pdf(source, temp_path / "marked.pdf", "   ")
        with pytest.raises(ValueError):
            watermark_pdf(source, temp_path / "marked.pdf", "DRAFT", color="red")


def test_unicode_watermark_without_font(monkeypatch: pytest.MonkeyPatch) -> None:
    """Non Latin-1 text needs a Unicode font."""
    monkeypatch.setattr(stamps, "_resolve_unicode_font_path", lambda: None)
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 1)
        with pytest.raises(RuntimeError, match="PAGEPRESS_TTF_PATH"):
            watermark_pdf(source, temp_path / "marked.pdf", "機密")


def test_parse_hex_color() -> None:
    """Colors parse with or without the leading hash."""
    assert parse_hex_color("#FF8000") == (255, 128, 0)
    assert parse_hex_color("00ff00") == (0, 255, 0)
    with pytest.raises(ValueError):
        parse_hex_color("#GG0000")


def test_page_numbers_pdf() -> None:
    """Each page is labelled with its number and the document total."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 3, label="Body")
        output = page_numbers_pdf(source, temp_path / "numbered.pdf")
        texts = _texts(output)
        assert "Page 1 of 3" in texts[0]
        assert "Page 2 of 3" in texts[1]
        assert "Page 3 of 3" in texts[2]


def test_page_numbers_pdf_start_offset() -> None:
    """A custom start shifts both the number and the total."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 2, label="Body")
        output = page_numbers_pdf(
            source, temp_path / "numbered.pdf", start=5, position="top-right"
        )
        texts = _texts(output)
        assert "Page 5 of 6" in texts[0]
        assert "Page 6 of 6" in texts[1]


def test_page_number_origin() -> None:
    """Positions map to margins in top-left page space."""
    assert _page_number_origin("bottom-center", 600, 800, 100) == (250, 770)
    assert _page_number_origin("top-left", 600, 800, 100) == (40, 40)
    assert _page_number_origin("bottom-right", 600, 800, 100) == (460, 770)


def test_add_text_pdf() -> None:
    """Text is added to the requested page only."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 2, label="Body")
        output = add_text_pdf(source, temp_path / "edited.pdf", "Approved", page=2)
        texts = _texts(output)
        assert "Approved" not in texts[0]
        assert "Approved" in texts[1]


def test_add_text_pdf_requires_text() -> None:
    """Empty text is a user error."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 1)
        with pytest.raises(ValueError):
            add_text_pdf(source, temp_path / "edited.pdf", "")


def test_sign_pdf_default_placement() -> None:
    """The signature is placed bottom-right of the chosen page."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        signature = temp_path / "signature.png"
        _make_pdf(source, 2)
        Image.new("RGB", (300, 100), color=(20, 20, 120)).save(signature)

        output = sign_pdf(source, temp_path / "signed.pdf", signature, page=1)
        with fitz.open(str(output)) as document:
            first = document.load_page(0)
            assert len(first.get_images()) == 1
            assert len(document.load_page(1).get_images()) == 0
            placed = first.get_image_rects(first.get_images()[0][0])[0]
        assert placed.x1 == pytest.approx(562, abs=1)
        assert placed.y1 == pytest.approx(742, abs=1)
        assert placed.width == pytest.approx(150, abs=1)
        assert placed.height == pytest.approx(50, abs=1)


def test_sign_pdf_in_selected_area() -> None:
    """A selection places the signature inside that area."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        signature = temp_path / "signature.png"
        _make_pdf(source, 1)
        Image.new("RGB", (200, 100), color=(0, 0, 0)).save(signature)

        output = sign_pdf(
            source,
            temp_path / "signed.pdf",
            signature,
            rect=PercentRect(0.0, 0.0, 0.5, 0.5),
        )
        with fitz.open(str(output)) as document:
            page = document.load_page(0)
            placed = page.get_image_rects(page.get_images()[0][0])[0]
        assert placed.x1 <= 306 + 1
        assert placed.y1 <= 396 + 1


def _ink_box(path: Path) -> tuple:
    """Return the dark-pixel bounding box and size of page 1 as displayed."""
    with fitz.open(str(path)) as document:
        pix = document.load_page(0).get_pixmap(colorspace=fitz.csGRAY, alpha=False)
        image = Image.frombytes("L", (pix.width, pix.height), pix.samples)
    ink = image.point(lambda value: 255 if value < 128 else 0)
    return ink.getbbox(), image.size


def _rotated_source(path: Path, rotation: int) -> None:
    document = fitz.open()
    page = document.new_page(width=600, height=800)
    page.set_rotation(rotation)
    document.save(str(path))
    document.close()


def test_sign_pdf_on_rotated_page() -> None:
    """The default placement stays bottom-right and upright on a rotated page."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "rotated.pdf"
        signature = temp_path / "signature.png"
        _rotated_source(source, 90)
        Image.new("RGB", (200, 100), color=(0, 0, 0)).save(signature)

        output = sign_pdf(source, temp_path / "signed.pdf", signature)
        box, size = _ink_box(output)
        assert size == (800, 600)
        assert box is not None
        left, top, right, bottom = box
        assert right == pytest.approx(750, abs=3)
        assert bottom == pytest.approx(550, abs=3)
        assert right - left == pytest.approx(150, abs=3)
        assert bottom - top == pytest.approx(75, abs=3)


def test_sign_pdf_selected_area_on_rotated_page() -> None:
    """A wide signature stays wide inside a selection on a rotated page."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "rotated.pdf"
        signature = temp_path / "signature.png"
        _rotated_source(source, 90)
        Image.new("RGB", (200, 100), color=(0, 0, 0)).save(signature)

        output = sign_pdf(
            source,
            temp_path / "signed.pdf",
            signature,
            rect=PercentRect(0.1, 0.1, 0.25, 0.2),
        )
        box, _size = _ink_box(output)
        assert box is not None
        left, top, right, bottom = box
        assert right - left > bottom - top
        assert left >= 80 - 2
        assert top >= 60 - 2
        assert right <= 280 + 2
        assert bottom <= 180 + 2


def test_sign_pdf_rejects_bad_input() -> None:
    """Non-image signatures and missing pages are user errors."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        signature = temp_path / "signature.png"
        _make_pdf(source, 1)
        signature.write_bytes(b"not an image")
        with pytest.raises(ValueError, match="PNG or JPEG"):
            sign_pdf(source, temp_path / "signed.pdf", signature)

        Image.new("RGB", (10, 10)).save(signature)
        with pytest.raises(ValueError, match="does not exist"):
            sign_pdf(source, temp_path / "signed.pdf", signature, page=4)


def test_redact_pdf_by_text() -> None:
    """Matched text is removed from the page content."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 2, label="Secret")
        output = redact_pdf(source, temp_path / "redacted.pdf", text="Secret")
        with fitz.open(str(output)) as document:
            for page in document:
                assert "Secret" not in page.get_text()


def test_redact_pdf_by_area() -> None:
    """A full-page area wipes all text on the selected page only."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 2)
        output = redact_pdf(
            source,
            temp_path / "redacted.pdf",
            areas=[PercentRect(0, 0, 1, 1)],
            pages="1",
        )
        with fitz.open(str(output)) as document:
            assert document.load_page(0).get_text().strip() == ""
            assert "Page 2" in document.load_page(1).get_text()


def test_redact_pdf_requires_target() -> None:
    """Redaction needs an area or a search term."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 1)
        with pytest.raises(ValueError, match="Select an area"):
            redact_pdf(source, temp_path / "redacted.pdf")
