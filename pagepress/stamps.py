"""Tools that draw onto existing pages: watermarks, page numbers, text, signatures, redaction."""

from __future__ import annotations

import logging
from io import BytesIO
from pathlib import Path
from typing import Callable, Iterable, Tuple

import fitz
from fpdf import FPDF
from PIL import Image
from pypdf import PdfReader, PdfWriter, Transformation

from .config import Settings
from .coords import PercentRect
from .pages import copy_metadata, load_pdf, percent_to_page_rect, write_pdf
from .selection import resolve_page_selection

logger = logging.getLogger(__name__)

UNICODE_FONT_PATHS = (
    Path(__file__).resolve().parent / "assets" / "DejaVuSans.ttf",
    Path("/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf"),
    Path("/usr/share/fonts/DejaVuSans.ttf"),
)
PAGE_NUMBER_POSITIONS = (
    "bottom-center",
    "bottom-right",
    "bottom-left",
    "top-center",
    "top-right",
    "top-left",
)
PAGE_NUMBER_FONT_SIZE = 12
PAGE_NUMBER_SIDE_MARGIN = 40
PAGE_NUMBER_BOTTOM_OFFSET = 30
PAGE_NUMBER_TOP_OFFSET = 40
SIGNATURE_WIDTH = 150
SIGNATURE_MARGIN = 50

DrawFn = Callable[[FPDF, float, float], None]


def _resolve_unicode_font_path() -> Path | None:
    """Locate a DejaVu Sans font, preferring ``PAGEPRESS_TTF_PATH``."""
    configured = Settings.from_env().ttf_path
    if configured and Path(configured).is_file():
        return Path(configured)
    for candidate in UNICODE_FONT_PATHS:
        if candidate.is_file():
            return candidate
    return None


def set_overlay_font(pdf: FPDF, text: str, size: float, bold: bool = False) -> None:
    """
    Select a font able to draw ``text``.

    Latin-1 text uses the core Helvetica font. Anything else needs DejaVu
    Sans from ``PAGEPRESS_TTF_PATH`` or a known system location.

    Raises:
        RuntimeError: If the text needs a Unicode font and none is installed.
    """
    try:
        text.encode("latin-1")
    except UnicodeEncodeError as error:
        font_path = _resolve_unicode_font_path()
        if font_path is None:
            raise RuntimeError(
                "Unicode font unavailable. Set PAGEPRESS_TTF_PATH to a DejaVuSans.ttf path."
            ) from error
        pdf.add_font("DejaVuSans", fname=str(font_path))
        pdf.set_font("DejaVuSans", size=size)
        return
    pdf.set_font("Helvetica", style="B" if bold else "", size=size)


def parse_hex_color(value: str) -> Tuple[int, int, int]:
    """Parse ``#RRGGBB`` into an RGB triple."""
    cleaned = value.strip().lstrip("#")
    if len(cleaned) != 6:
        raise ValueError("Color must look like #RRGGBB")
    try:
        return (int(cleaned[0:2], 16), int(cleaned[2:4], 16), int(cleaned[4:6], 16))
    except ValueError as error:
        raise ValueError("Color must look like #RRGGBB") from error


def _build_overlay_page(width: float, height: float, draw_fn: DrawFn):
    """Render ``draw_fn`` onto a transparent single page sized in points."""
    pdf = FPDF(orientation="P", unit="pt", format=(width, height))
    pdf.set_margins(0, 0, 0)
    pdf.set_auto_page_break(auto=False)
    pdf.add_page()
    draw_fn(pdf, width, height)
    return PdfReader(BytesIO(bytes(pdf.output()))).pages[0]


def _stamp_pages(
    input_path: Path,
    output_path: Path,
    pages: str | None,
    draw_for_page: Callable[[int, int], DrawFn | None],
) -> Path:
    """
    Merge an overlay onto each selected page.

    ``draw_for_page`` receives ``(page_number, total_pages)`` and returns the
    draw callback for that page, or ``None`` to leave it untouched.
    Rotation is folded into page content first so overlays land upright.
    """
    reader = load_pdf(input_path)
    writer = PdfWriter()
    total_pages = len(reader.pages)
    target_pages = resolve_page_selection(pages, total_pages)
    for index, page in enumerate(reader.pages, start=1):
        draw_fn = None
        if target_pages is None or index in target_pages:
            draw_fn = draw_for_page(index, total_pages)
        if draw_fn is not None:
            if page.rotation:
                page.transfer_rotation_to_content()
            box = page.mediabox
            overlay = _build_overlay_page(float(box.width), float(box.height), draw_fn)
            page.merge_transformed_page(
                overlay,
                Transformation().translate(float(box.left), float(box.bottom)),
            )
        writer.add_page(page)
    copy_metadata(writer, reader)
    return write_pdf(writer, output_path)


def watermark_pdf(
    input_path: Path,
    output_path: Path,
    text: str,
    opacity: float = 0.5,
    rotation: float = 45,
    font_size: float = 48,
    color: str = "#000000",
    pages: str | None = None,
) -> Path:
    """
    Stamp centered, rotated, translucent text on selected pages.

    Parameters:
        text (str): Watermark text.
        opacity (float): Fill opacity in ``[0, 1]``.
        rotation (float): Counter-clockwise rotation in degrees around the page center.
        font_size (float): Font size in points.
        color (str): Text color as ``#RRGGBB``.
        pages (str | None): Range string of target pages; ``None`` targets every page.
    """
    if not text.strip():
        raise ValueError("Watermark text is required")
    rgb = parse_hex_color(color)
    opacity = min(max(opacity, 0.0), 1.0)

    def _draw(pdf: FPDF, width: float, height: float) -> None:
        set_overlay_font(pdf, text, font_size, bold=True)
        text_width = pdf.get_string_width(text)
        center_x, center_y = width / 2, height / 2
        pdf.set_text_color(*rgb)
        with pdf.local_context(fill_opacity=opacity):
            with pdf.rotation(rotation, x=center_x, y=center_y):
                pdf.text(center_x - text_width / 2, center_y + font_size * 0.35, text)

    return _stamp_pages(input_path, output_path, pages, lambda _index, _total: _draw)


def _page_number_origin(
    position: str, width: float, height: float, text_width: float
) -> Tuple[float, float]:
    """Return the text baseline origin in top-left page space."""
    vertical, _, horizontal = position.partition("-")
    if horizontal == "left":
        x = PAGE_NUMBER_SIDE_MARGIN
    elif horizontal == "right":
        x = width - text_width - PAGE_NUMBER_SIDE_MARGIN
    else:
        x = width / 2 - text_width / 2
    if vertical == "top":
        y = PAGE_NUMBER_TOP_OFFSET
    else:
        y = height - PAGE_NUMBER_BOTTOM_OFFSET
    return x, y


def page_numbers_pdf(
    input_path: Path,
    output_path: Path,
    start: int = 1,
    position: str = "bottom-center",
    pages: str | None = None,
) -> Path:
    """
    Write ``Page n of m`` on selected pages.

    Numbering follows the physical page index offset by ``start``; ``m`` is
    the last number the document would reach. Unknown positions fall back to
    bottom-center.
    """
    if position not in PAGE_NUMBER_POSITIONS:
        position = "bottom-center"

    def _for_page(index: int, total_pages: int) -> DrawFn:
        label = f"Page {start + index - 1} of {total_pages + start - 1}"

        def _draw(pdf: FPDF, width: float, height: float) -> None:
            set_overlay_font(pdf, label, PAGE_NUMBER_FONT_SIZE)
            pdf.set_text_color(0, 0, 0)
            x, y = _page_number_origin(position, width, height, pdf.get_string_width(label))
            pdf.text(x, y, label)

        return _draw

    return _stamp_pages(input_path, output_path, pages, _for_page)


def add_text_pdf(
    input_path: Path,
    output_path: Path,
    text: str,
    page: int = 1,
    x: float = 50,
    y: float = 50,
    font_size: float = 20,
) -> Path:
    """Draw a line of black text on one page; ``(x, y)`` is the baseline from the top-left."""
    if not text.strip():
        raise ValueError("Text is required")

    def _draw(pdf: FPDF, width: float, height: float) -> None:
        set_overlay_font(pdf, text, font_size)
        pdf.set_text_color(0, 0, 0)
        pdf.text(x, y, text)

    return _stamp_pages(input_path, output_path, str(page), lambda _index, _total: _draw)


def _default_signature_rect(page_rect: fitz.Rect, image_size: Tuple[int, int]) -> fitz.Rect:
    """Bottom-right placement, fixed width, aspect preserved."""
    image_width, image_height = image_size
    signature_height = image_height / image_width * SIGNATURE_WIDTH
    x1 = page_rect.width - SIGNATURE_MARGIN
    y1 = page_rect.height - SIGNATURE_MARGIN
    return fitz.Rect(x1 - SIGNATURE_WIDTH, y1 - signature_height, x1, y1)


def sign_pdf(
    input_path: Path,
    output_path: Path,
    signature_path: Path,
    page: int = 1,
    rect: PercentRect | None = None,
) -> Path:
    """
    Place a signature image on one page.

    Without ``rect`` the signature is 150 pt wide, 50 pt from the right and
    bottom edges. With ``rect`` it is fitted into the selected area keeping
    its aspect ratio. Both are measured on the page as displayed, so the
    signature lands upright on rotated pages too.
    """
    try:
        with Image.open(signature_path) as image:
            image_size = image.size
    except OSError as error:
        raise ValueError("Signature must be a PNG or JPEG image") from error
    with fitz.open(str(input_path)) as document:
        if document.needs_pass:
            raise ValueError("PDF is encrypted")
        if not 1 <= page <= document.page_count:
            raise ValueError(f"Page {page} does not exist")
        target = document.load_page(page - 1)
        if rect is None:
            shown = _default_signature_rect(target.rect, image_size)
            placement = shown * target.derotation_matrix
        else:
            placement = percent_to_page_rect(target, rect.validate())
        # insert_image works in unrotated space; turn the image back with the page.
        target.insert_image(
            placement,
            filename=str(signature_path),
            keep_proportion=True,
            rotate=target.rotation,
        )
        document.save(str(output_path), garbage=1, deflate=True)
    return output_path


def redact_pdf(
    input_path: Path,
    output_path: Path,
    areas: Iterable[PercentRect] = (),
    text: str | None = None,
    pages: str | None = None,
) -> Path:
    """
    Permanently remove content under selected areas and/or matching text.

    Areas are fractions of the displayed page. Matched content is deleted from
    the page, not just covered, and the region is filled black.
    """
    areas = [area.validate() for area in areas]
    needle = (text or "").strip()
    if not areas and not needle:
        raise ValueError("Select an area or enter text to redact")
    with fitz.open(str(input_path)) as document:
        if document.needs_pass:
            raise ValueError("PDF is encrypted")
        target_pages = resolve_page_selection(pages, document.page_count)
        redacted = 0
        for index in range(document.page_count):
            if target_pages is not None and index + 1 not in target_pages:
                continue
            page = document.load_page(index)
            rectangles = [percent_to_page_rect(page, area) for area in areas]
            if needle:
                rectangles.extend(page.search_for(needle))
            if not rectangles:
                continue
            for rectangle in rectangles:
                page.add_redact_annot(rectangle, fill=(0, 0, 0))
            page.apply_redactions()
            redacted += len(rectangles)
        logger.info("Applied %d redactions to %s", redacted, input_path.name)
        document.save(str(output_path), garbage=3, deflate=True)
    return output_path
