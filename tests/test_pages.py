from pathlib import Path
from tempfile import TemporaryDirectory

import fitz
import pytest
from pypdf import PdfReader

from pagepress.coords import PercentRect
from pagepress.pages import (
    crop_pdf,
    merge_pdfs,
    normalize_angle,
    organize_pdf,
    protect_pdf,
    repair_pdf,
    rotate_pdf,
    split_pdf,
    unlock_pdf,
)


def _make_pdf(path: Path, pages: int, width: float = 612, height: float = 792) -> None:
    """Create a PDF whose pages are labelled with their page number."""
    document = fitz.open()
    for index in range(pages):
        page = document.new_page(width=width, height=height)
        page.insert_text((72, 72), f"Page {index + 1}", fontsize=24)
    document.save(str(path))
    document.close()


def _page_texts(path: Path) -> list:
    return [(page.extract_text() or "").strip() for page in PdfReader(str(path)).pages]


def test_merge_pdfs() -> None:
    """Merge multiple PDFs into one output."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        first = temp_path / "first.pdf"
        second = temp_path / "second.pdf"
        _make_pdf(first, 1)
        _make_pdf(second, 2)

        output = merge_pdfs([first, second], temp_path / "merged.pdf")
        reader = PdfReader(str(output))
        assert len(reader.pages) == 3


def test_merge_requires_two_files() -> None:
    """A single input is not a merge."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "only.pdf"
        _make_pdf(source, 1)
        with pytest.raises(ValueError, match="At least 2"):
            merge_pdfs([source], temp_path / "merged.pdf")


def test_merge_rejects_corrupt_input() -> None:
    """Unreadable inputs surface as user errors."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        good = temp_path / "good.pdf"
        bad = temp_path / "bad.pdf"
        _make_pdf(good, 1)
        bad.write_bytes(b"not a pdf at all")
        with pytest.raises(ValueError, match="corrupted"):
            merge_pdfs([good, bad], temp_path / "merged.pdf")


def test_split_pdf_ranges() -> None:
    """Selected ranges are extracted, deduplicated and sorted into one file."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 4)

        outputs = split_pdf(source, temp_path, "3,1-2,2")
        assert [output.name for output in outputs] == ["split_extracted.pdf"]
        texts = _page_texts(outputs[0])
        assert len(texts) == 3
        for index, text in enumerate(texts, start=1):
            assert f"Page {index}" in text


def test_split_pdf_every_page() -> None:
    """Without ranges each page becomes its own file."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 3)

        outputs = split_pdf(source, temp_path, None)
        assert [output.name for output in outputs] == ["page_1.pdf", "page_2.pdf", "page_3.pdf"]
        assert all(len(PdfReader(str(output)).pages) == 1 for output in outputs)


def test_split_pdf_rejects_empty_selection() -> None:
    """Ranges outside the document are rejected."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 2)
        with pytest.raises(ValueError):
            split_pdf(source, temp_path, "5-8")


def test_organize_pdf_reorders_and_duplicates() -> None:
    """Pages follow the given 0-based order and may repeat."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 3)

        output = organize_pdf(source, temp_path / "organized.pdf", [2, 0, 0])
        texts = _page_texts(output)
        assert len(texts) == 3
        assert "Page 3" in texts[0]
        assert "Page 1" in texts[1]
        assert "Page 1" in texts[2]


def test_organize_pdf_rejects_bad_index() -> None:
    """Out-of-range indices and empty orders are user errors."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 2)
        with pytest.raises(ValueError, match="Invalid page index"):
            organize_pdf(source, temp_path / "out.pdf", [0, 2])
        with pytest.raises(ValueError):
            organize_pdf(source, temp_path / "out.pdf", [])


def test_rotate_pdf() -> None:
    """Rotate pages in a PDF."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 1)
        output = rotate_pdf(source, temp_path / "rotated.pdf", 90, None)
        assert PdfReader(str(output)).pages[0].rotation == 90


def test_rotate_pdf_selected_pages() -> None:
    """Only selected pages turn; negative angles normalize."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 3)
        output = rotate_pdf(source, temp_path / "rotated.pdf", -90, "2")
        rotations = [page.rotation for page in PdfReader(str(output)).pages]
        assert rotations == [0, 270, 0]


def test_normalize_angle() -> None:
    """Angles wrap into [0, 360) and must be quarter turns."""
    assert normalize_angle(450) == 90
    assert normalize_angle(-180) == 180
    with pytest.raises(ValueError):
        normalize_angle(45)


def test_crop_pdf() -> None:
    """The crop box matches the selected fraction of the page."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 2)
        output = crop_pdf(
            source, temp_path / "cropped.pdf", PercentRect(0.1, 0.1, 0.5, 0.5), pages="1"
        )
        with fitz.open(str(output)) as document:
            first = document.load_page(0).rect
            second = document.load_page(1).rect
        assert first.width == pytest.approx(306, abs=0.5)
        assert first.height == pytest.approx(396, abs=0.5)
        assert (second.width, second.height) == (612, 792)


def test_crop_pdf_on_rotated_page() -> None:
    """Selections on a rotated page keep their displayed proportions."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 1)
        rotated = rotate_pdf(source, temp_path / "rotated.pdf", 90)
        output = crop_pdf(rotated, temp_path / "cropped.pdf", PercentRect(0, 0, 0.5, 1))
        with fitz.open(str(output)) as document:
            shown = document.load_page(0).rect
        assert shown.width == pytest.approx(396, abs=0.5)
        assert shown.height == pytest.approx(612, abs=0.5)


def test_crop_pdf_rejects_invalid_rect() -> None:
    """A rectangle outside the page is rejected."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 1)
        with pytest.raises(ValueError):
            crop_pdf(source, temp_path / "cropped.pdf", PercentRect(0.8, 0, 0.5, 0.5))


def test_protect_and_unlock_pdf() -> None:
    """A protected copy opens again only with the right password."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 2)

        protected = protect_pdf(source, temp_path / "protected.pdf", "s3cret")
        assert PdfReader(str(protected)).is_encrypted

        with pytest.raises(ValueError, match="already encrypted"):
            protect_pdf(protected, temp_path / "twice.pdf", "other")
        with pytest.raises(ValueError, match="Wrong password"):
            unlock_pdf(protected, temp_path / "wrong.pdf", "guess")

        unlocked = unlock_pdf(protected, temp_path / "unlocked.pdf", "s3cret")
        reader = PdfReader(str(unlocked))
        assert not reader.is_encrypted
        assert len(reader.pages) == 2


def test_encrypted_input_is_rejected_by_page_tools() -> None:
    """Page tools refuse encrypted input."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 1)
        protected = protect_pdf(source, temp_path / "protected.pdf", "pw")
        with pytest.raises(ValueError, match="encrypted"):
            rotate_pdf(protected, temp_path / "rotated.pdf", 90)


def test_repair_pdf_rebuilds_missing_xref() -> None:
    """A file whose cross-reference table was cut off is rebuilt."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 3)
        data = source.read_bytes()
        damaged = temp_path / "damaged.pdf"
        damaged.write_bytes(data[: data.rfind(b"\nxref")])

        output = repair_pdf(damaged, temp_path / "repaired.pdf")
        assert len(PdfReader(str(output)).pages) == 3


def test_repair_pdf_rejects_garbage() -> None:
    """Input with no PDF structure at all cannot be repaired."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        garbage = temp_path / "garbage.pdf"
        garbage.write_bytes(b"\x00\x01 nothing to see here")
        with pytest.raises(ValueError):
            repair_pdf(garbage, temp_path / "repaired.pdf")
