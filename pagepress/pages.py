"""Page-graph tools: merge, split, organize, rotate, crop, encryption and repair."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Sequence

import fitz
from pypdf import PdfReader, PdfWriter
from pypdf.constants import UserAccessPermissions
from pypdf.errors import PdfReadError

from .coords import PercentRect, to_top_left_box
from .selection import parse_page_list, resolve_page_selection

logger = logging.getLogger(__name__)

PROTECTED_PERMISSIONS = (
    UserAccessPermissions.PRINT | UserAccessPermissions.PRINT_TO_REPRESENTATION
)


def load_pdf(input_path: Path, allow_encrypted: bool = False) -> PdfReader:
    """Load a PDF and optionally enforce unencrypted input."""
    try:
        reader = PdfReader(str(input_path))
    except (PdfReadError, OSError) as error:
        raise ValueError("PDF appears to be corrupted or unreadable.") from error
    if reader.is_encrypted and not allow_encrypted:
        raise ValueError("PDF is encrypted")
    return reader


def copy_metadata(writer: PdfWriter, reader: PdfReader) -> None:
    """Copy string metadata from a reader into a writer."""
    metadata = {
        str(key): str(value)
        for key, value in (reader.metadata or {}).items()
        if value is not None
    }
    if metadata:
        writer.add_metadata(metadata)


def percent_to_page_rect(page: fitz.Page, rect: PercentRect) -> fitz.Rect:
    """Convert a selection on the displayed page into unrotated page space."""
    shown = fitz.Rect(to_top_left_box(rect, page.rect.width, page.rect.height))
    return shown * page.derotation_matrix


def write_pdf(writer: PdfWriter, output_path: Path) -> Path:
    """Write a pypdf writer to disk and return the path."""
    with output_path.open("wb") as handle:
        writer.write(handle)
    return output_path


def merge_pdfs(inputs: Sequence[Path], output_path: Path) -> Path:
    """Merge PDFs in the given order."""
    if len(inputs) < 2:
        raise ValueError("At least 2 files are required")
    writer = PdfWriter()
    for path in inputs:
        reader = load_pdf(path)
        for page in reader.pages:
            writer.add_page(page)
    return write_pdf(writer, output_path)


def split_pdf(input_path: Path, output_dir: Path, ranges: str | None) -> List[Path]:
    """
    Split a PDF by page ranges.

    With ``ranges`` (for example ``"1-3,5"``) the selected pages are
    deduplicated, sorted and extracted into a single ``split_extracted.pdf``.
    Without ranges every page becomes its own ``page_<n>.pdf``.

    Raises:
        ValueError: If ``ranges`` selects no page of the document.
    """
    reader = load_pdf(input_path)
    total_pages = len(reader.pages)
    if ranges and ranges.strip():
        selected = sorted(set(parse_page_list(ranges, total_pages)))
        if not selected:
            raise ValueError("No valid page ranges provided")
        writer = PdfWriter()
        for page_number in selected:
            writer.add_page(reader.pages[page_number - 1])
        return [write_pdf(writer, output_dir / "split_extracted.pdf")]

    outputs: List[Path] = []
    for index, page in enumerate(reader.pages, start=1):
        writer = PdfWriter()
        writer.add_page(page)
        outputs.append(write_pdf(writer, output_dir / f"page_{index}.pdf"))
    return outputs


def organize_pdf(input_path: Path, output_path: Path, order: Sequence[int]) -> Path:
    """
    Rebuild a PDF from a list of 0-based source page indices.

    ``[2, 0, 1]`` makes original page 3 the first page. Indices may repeat;
    pages left out of ``order`` are dropped.
    """
    reader = load_pdf(input_path)
    total_pages = len(reader.pages)
    if not order:
        raise ValueError("Page order is required")
    writer = PdfWriter()
    for index in order:
        if not isinstance(index, int) or not 0 <= index < total_pages:
            raise ValueError(f"Invalid page index: {index}")
        writer.add_page(reader.pages[index])
    copy_metadata(writer, reader)
    return write_pdf(writer, output_path)


def normalize_angle(angle: int) -> int:
    """Normalize an angle to ``[0, 360)`` and require a quarter turn."""
    normalized = angle % 360
    if normalized % 90:
        raise ValueError("Rotation must be a multiple of 90 degrees")
    return normalized


def rotate_pdf(input_path: Path, output_path: Path, angle: int, pages: str | None = None) -> Path:
    """Add ``angle`` degrees clockwise to the rotation of the selected pages."""
    angle = normalize_angle(angle)
    reader = load_pdf(input_path)
    writer = PdfWriter()
    target_pages = resolve_page_selection(pages, len(reader.pages))
    for index, page in enumerate(reader.pages, start=1):
        if angle and (target_pages is None or index in target_pages):
            page.rotate(angle)
        writer.add_page(page)
    copy_metadata(writer, reader)
    return write_pdf(writer, output_path)


def crop_pdf(
    input_path: Path,
    output_path: Path,
    rect: PercentRect,
    pages: str | None = None,
) -> Path:
    """
    Crop pages to a rectangle picked on a page preview.

    The rectangle is expressed in the page's displayed orientation, so it is
    de-rotated before it becomes the page's crop box.
    """
    rect.validate()
    with fitz.open(str(input_path)) as document:
        if document.needs_pass:
            raise ValueError("PDF is encrypted")
        target_pages = resolve_page_selection(pages, document.page_count)
        for index in range(document.page_count):
            if target_pages is not None and index + 1 not in target_pages:
                continue
            page = document.load_page(index)
            # Crop boxes are given relative to the media box, not the current crop box.
            offset = page.cropbox_position
            box = percent_to_page_rect(page, rect) * fitz.Matrix(1, 0, 0, 1, offset.x, offset.y)
            page.set_cropbox(box)
        document.save(str(output_path), garbage=1, deflate=True)
    return output_path


def protect_pdf(input_path: Path, output_path: Path, password: str) -> Path:
    """
    Encrypt a PDF with ``password`` as both user and owner password.

    The protected copy only allows printing.

    Raises:
        ValueError: If the input PDF is already encrypted.
    """
    reader = load_pdf(input_path, allow_encrypted=True)
    if reader.is_encrypted:
        raise ValueError("PDF is already encrypted")
    writer = PdfWriter()
    for page in reader.pages:
        writer.add_page(page)
    copy_metadata(writer, reader)
    writer.encrypt(
        user_password=password,
        owner_password=password,
        use_128bit=True,
        permissions_flag=PROTECTED_PERMISSIONS,
    )
    return write_pdf(writer, output_path)


def unlock_pdf(input_path: Path, output_path: Path, password: str) -> Path:
    """
    Remove password protection and write an unencrypted copy.

    Raises:
        ValueError: If the PDF is encrypted and ``password`` does not open it.
    """
    reader = load_pdf(input_path, allow_encrypted=True)
    if reader.is_encrypted and reader.decrypt(password) == 0:
        raise ValueError("Unable to unlock PDF. Wrong password?")
    writer = PdfWriter()
    for page in reader.pages:
        writer.add_page(page)
    copy_metadata(writer, reader)
    return write_pdf(writer, output_path)


def repair_pdf(input_path: Path, output_path: Path) -> Path:
    """Rebuild a PDF's cross-reference table and drop unreachable objects."""
    try:
        document = fitz.open(str(input_path), filetype="pdf")
    except (RuntimeError, ValueError) as error:
        raise ValueError("PDF is too damaged to repair.") from error
    with document:
        if document.needs_pass:
            raise ValueError("PDF is encrypted")
        if document.is_repaired:
            logger.info("Rebuilt damaged cross-reference table for %s", input_path.name)
        document.save(str(output_path), garbage=3, deflate=True, clean=True)
    return output_path
