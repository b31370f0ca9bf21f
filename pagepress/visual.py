"""Tools built on the rasterization pipeline."""

from __future__ import annotations

import base64
import logging
import shutil
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List

import img2pdf
import pytesseract
from PIL import Image, ImageDraw
from pypdf import PdfReader, PdfWriter

from .config import Settings
from .pages import load_pdf, write_pdf
from .rasterize import (
    ProgressCallback,
    RenderConfig,
    RenderedPage,
    SkippedPage,
    count_pages,
    iter_page_results,
    render_pdf_to_images,
)

logger = logging.getLogger(__name__)

OCR_SCALE = 2.0
OCR_MAX_PAGES = 3
PREVIEW_SCALE = 0.5
COMPARE_GUTTER = 24


def _embed_page(rendered: RenderedPage) -> bytes:
    """Wrap a JPEG as a full-bleed page the size of its source page."""
    dpi = 72 * rendered.scale
    return img2pdf.convert(
        rendered.data, layout_fun=img2pdf.get_fixed_dpi_layout_fun((dpi, dpi))
    )


def compress_pdf(
    input_path: Path,
    output_path: Path,
    scale: float = 1.5,
    quality: float = 0.7,
    on_progress: ProgressCallback | None = None,
) -> Path:
    """
    Rebuild a PDF from JPEG renders of its pages ("visual compression").

    Text and vector content become pixels, so the output is no longer
    searchable; size and fidelity depend only on ``scale`` and ``quality``.
    Pages that fail to render are left out.

    Raises:
        ValueError: If the PDF is unreadable or no page could be rendered.
    """
    rendered = render_pdf_to_images(
        input_path.read_bytes(),
        RenderConfig(scale=scale, output_quality=quality),
        on_progress,
    )
    if not rendered:
        raise ValueError("No pages could be rendered")
    writer = PdfWriter()
    for page in rendered:
        for embedded in PdfReader(BytesIO(_embed_page(page))).pages:
            writer.add_page(embedded)
    write_pdf(writer, output_path)
    logger.info(
        "Compressed %s from %d to %d bytes",
        input_path.name,
        input_path.stat().st_size,
        output_path.stat().st_size,
    )
    return output_path


def pdf_to_jpg(
    input_path: Path,
    output_dir: Path,
    scale: float = 1.5,
    quality: float = 0.92,
    on_progress: ProgressCallback | None = None,
) -> List[Path]:
    """Write one ``page_<n>.jpg`` per rendered page, numbered by source page."""
    outputs: List[Path] = []
    for page in render_pdf_to_images(
        input_path.read_bytes(), RenderConfig(scale=scale, output_quality=quality), on_progress
    ):
        target = output_dir / f"page_{page.page_number}.jpg"
        target.write_bytes(page.data)
        outputs.append(target)
    if not outputs:
        raise ValueError("No pages could be rendered")
    return outputs


def render_previews(
    input_path: Path,
    scale: float = PREVIEW_SCALE,
    limit: int | None = None,
) -> Dict[str, Any]:
    """
    Build a JSON-ready preview payload for page pickers.

    Unlike :func:`render_pdf_to_images`, pages that failed to render are
    listed under ``skipped`` so the UI can tell the user. ``totalPages`` is
    the page count of the whole document, whatever ``limit`` is.

    Raises:
        ValueError: If the PDF is unreadable or ``limit`` is below 1.
    """
    if limit is not None and limit < 1:
        raise ValueError("limit must be at least 1")
    data = input_path.read_bytes()
    total_pages = count_pages(data)
    pages: List[Dict[str, Any]] = []
    skipped: List[Dict[str, Any]] = []
    results = iter_page_results(data, RenderConfig(scale=scale, page_limit=limit))
    for result in results:
        if isinstance(result, SkippedPage):
            skipped.append({"page": result.page_number, "reason": result.reason})
            continue
        encoded = base64.b64encode(result.data).decode("ascii")
        pages.append(
            {
                "page": result.page_number,
                "width": result.width,
                "height": result.height,
                "image": f"data:image/jpeg;base64,{encoded}",
            }
        )
    return {"totalPages": total_pages, "pages": pages, "skipped": skipped}


def _ocr_image(image: Image.Image, lang: str) -> str:
    """Run Tesseract on a PIL image."""
    if not shutil.which("tesseract"):
        raise RuntimeError("Tesseract is required for OCR")
    return pytesseract.image_to_string(image, lang=lang)


def ocr_pdf(
    input_path: Path,
    output_path: Path,
    lang: str | None = None,
    max_pages: int = OCR_MAX_PAGES,
    scale: float = OCR_SCALE,
    on_progress: ProgressCallback | None = None,
) -> Path:
    """Recognize text on the first ``max_pages`` pages into a text file."""
    default_lang = Settings.from_env().ocr_lang
    language = (lang or default_lang).strip() or default_lang
    blocks: List[str] = []
    for page in render_pdf_to_images(
        input_path.read_bytes(), RenderConfig(scale=scale, page_limit=max_pages), on_progress
    ):
        with Image.open(BytesIO(page.data)) as image:
            text = _ocr_image(image, language)
        blocks.append(f"--- Page {page.page_number} ---\n{text}\n\n")
    output_path.write_text("".join(blocks), encoding="utf-8")
    return output_path


def _side_by_side(left: RenderedPage | None, right: RenderedPage | None) -> Image.Image:
    """Compose two page renders next to each other on a white canvas."""
    images = []
    for rendered in (left, right):
        images.append(Image.open(BytesIO(rendered.data)).convert("RGB") if rendered else None)
    widths = [image.width if image else 0 for image in images]
    heights = [image.height if image else 0 for image in images]
    slot = max(widths) or 1
    canvas = Image.new("RGB", (slot * 2 + COMPARE_GUTTER, max(heights) or 1), "white")
    draw = ImageDraw.Draw(canvas)
    for position, image in enumerate(images):
        left_edge = position * (slot + COMPARE_GUTTER)
        if image is None:
            draw.text((left_edge + 10, 10), "(missing page)", fill=(200, 0, 0))
            continue
        canvas.paste(image, (left_edge, 0))
        image.close()
    return canvas


def _text_report(first_path: Path, second_path: Path) -> List[str]:
    reader_a = load_pdf(first_path)
    reader_b = load_pdf(second_path)
    pages_a = len(reader_a.pages)
    pages_b = len(reader_b.pages)
    lines = [
        f"File A: {first_path.name}",
        f"File B: {second_path.name}",
        f"Pages: {pages_a} vs {pages_b}",
        "",
    ]
    differences: List[str] = []
    if pages_a != pages_b:
        differences.append("Page counts differ.")
    for index in range(max(pages_a, pages_b)):
        if index >= pages_a:
            differences.append(f"Page {index + 1}: missing from file A")
        elif index >= pages_b:
            differences.append(f"Page {index + 1}: missing from file B")
        elif (reader_a.pages[index].extract_text() or "").strip() != (
            reader_b.pages[index].extract_text() or ""
        ).strip():
            differences.append(f"Page {index + 1}: text differs")
    lines.extend(differences or ["No text differences detected."])
    return lines


def compare_pdfs(
    first_path: Path,
    second_path: Path,
    output_dir: Path,
    scale: float = 1.0,
    max_pages: int = 3,
) -> List[Path]:
    """
    Compare two PDFs visually and by extracted text.

    Writes ``compare_page_<n>.jpg`` side-by-side renders for the first
    ``max_pages`` pages and a ``comparison.txt`` report.
    """
    config = RenderConfig(scale=scale, page_limit=max_pages)
    renders = []
    for path in (first_path, second_path):
        renders.append(
            {page.page_number: page for page in render_pdf_to_images(path.read_bytes(), config)}
        )
    outputs: List[Path] = []
    page_numbers = sorted(set(renders[0]) | set(renders[1]))
    for page_number in page_numbers:
        canvas = _side_by_side(renders[0].get(page_number), renders[1].get(page_number))
        target = output_dir / f"compare_page_{page_number}.jpg"
        canvas.save(target, format="JPEG", quality=85)
        canvas.close()
        outputs.append(target)
    report = output_dir / "comparison.txt"
    report.write_text("\n".join(_text_report(first_path, second_path)) + "\n", encoding="utf-8")
    outputs.append(report)
    return outputs
