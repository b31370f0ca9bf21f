"""Page rasterization pipeline.

Pages are rendered one at a time, in ascending order, onto an opaque white
surface and encoded as JPEG. A page that fails to render is reported as a
:class:`SkippedPage` and never stops the remaining pages; only a document
that cannot be parsed at all raises.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Callable, Iterator, List, Tuple, Union

import fitz
from PIL import Image

logger = logging.getLogger(__name__)

MAX_DIMENSION = 16384
DEFAULT_SCALE = 1.5
DEFAULT_QUALITY = 0.92

ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class RenderConfig:
    """Immutable render settings for one pipeline invocation.

    ``scale`` converts PDF points to pixels (1.0 is 72 DPI). ``page_limit``
    caps how many leading pages are rendered. ``output_quality`` is the JPEG
    quality in ``[0, 1]``. ``max_dimension`` is the raster ceiling applied to
    both axes.
    """

    scale: float = DEFAULT_SCALE
    page_limit: int | None = None
    output_quality: float = DEFAULT_QUALITY
    max_dimension: int = MAX_DIMENSION


@dataclass(frozen=True)
class RenderedPage:
    """A JPEG-encoded page image."""

    page_number: int
    data: bytes
    width: int
    height: int
    scale: float
    width_points: float
    height_points: float


@dataclass(frozen=True)
class SkippedPage:
    """A page that could not be rendered."""

    page_number: int
    reason: str


PageResult = Union[RenderedPage, SkippedPage]


def quality_to_jpeg(output_quality: float) -> int:
    """Map a ``[0, 1]`` quality onto Pillow's ``1..100`` JPEG scale."""
    return max(1, min(100, int(round(output_quality * 100))))


def compute_viewport(
    width_points: float,
    height_points: float,
    scale: float,
    max_dimension: int = MAX_DIMENSION,
) -> Tuple[float, float, float]:
    """
    Compute the raster viewport for a page, shrinking it to fit the ceiling.

    Parameters:
        width_points (float): Page width in PDF points.
        height_points (float): Page height in PDF points.
        scale (float): Requested magnification.
        max_dimension (int): Largest allowed size on either axis, in pixels.

    Returns:
        tuple[float, float, float]: Viewport width, height and the effective
        scale used to produce them. The effective scale equals ``scale``
        unless the requested viewport exceeded ``max_dimension``.
    """
    width = width_points * scale
    height = height_points * scale
    if width > max_dimension or height > max_dimension:
        reduced = scale * min(max_dimension / width, max_dimension / height)
        logger.warning(
            "Viewport %.0fx%.0f exceeds %d px; downscaling from %.3f to %.3f",
            width,
            height,
            max_dimension,
            scale,
            reduced,
        )
        return width_points * reduced, height_points * reduced, reduced
    return width, height, scale


def open_document(data: bytes) -> fitz.Document:
    """Parse a PDF byte buffer, rejecting unreadable or locked documents."""
    try:
        document = fitz.open(stream=data, filetype="pdf")
    except (RuntimeError, ValueError) as error:
        raise ValueError("PDF appears to be corrupted or unreadable.") from error
    if document.needs_pass:
        document.close()
        raise ValueError("PDF is encrypted")
    return document


def _rasterize_page(
    document: fitz.Document,
    page_number: int,
    config: RenderConfig,
) -> RenderedPage:
    """Render one page to JPEG bytes."""
    page = document.load_page(page_number - 1)
    bounds = page.rect
    width, height, scale = compute_viewport(
        bounds.width, bounds.height, config.scale, config.max_dimension
    )
    # alpha=False makes MuPDF clear the pixmap to opaque white before drawing.
    pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale), colorspace=fitz.csRGB, alpha=False)
    surface = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
    pix = None
    try:
        if surface.width > config.max_dimension or surface.height > config.max_dimension:
            # Pixel rounding can push a guarded viewport one pixel over the ceiling.
            cropped = surface.crop(
                (
                    0,
                    0,
                    min(surface.width, config.max_dimension),
                    min(surface.height, config.max_dimension),
                )
            )
            surface.close()
            surface = cropped
        buffer = BytesIO()
        surface.save(buffer, format="JPEG", quality=quality_to_jpeg(config.output_quality))
        return RenderedPage(
            page_number=page_number,
            data=buffer.getvalue(),
            width=surface.width,
            height=surface.height,
            scale=scale,
            width_points=float(bounds.width),
            height_points=float(bounds.height),
        )
    finally:
        surface.close()


def _iter_pages(
    document: fitz.Document,
    config: RenderConfig,
    on_progress: ProgressCallback | None,
) -> Iterator[PageResult]:
    try:
        total_pages = document.page_count
        limit = config.page_limit or total_pages
        count = min(limit, total_pages)
        for page_number in range(1, count + 1):
            if on_progress is not None:
                on_progress(page_number, total_pages)
            logger.debug("Rendering page %d of %d", page_number, total_pages)
            try:
                yield _rasterize_page(document, page_number, config)
            except Exception as error:  # noqa: BLE001
                logger.warning("Error rendering page %d: %s", page_number, error)
                yield SkippedPage(page_number=page_number, reason=str(error) or type(error).__name__)
    finally:
        document.close()


def iter_page_results(
    data: bytes,
    config: RenderConfig | None = None,
    on_progress: ProgressCallback | None = None,
) -> Iterator[PageResult]:
    """
    Rasterize a PDF lazily, one result per attempted page.

    The document is parsed before this function returns, so an unreadable
    PDF raises here and no progress is ever reported for it. The returned
    iterator renders a page only when advanced, reports ``(page, total)``
    to ``on_progress`` just before each page, and closes the document once
    exhausted. It cannot be restarted; call again to re-render.

    Raises:
        ValueError: If ``data`` is not a readable, unencrypted PDF.
    """
    document = open_document(data)
    return _iter_pages(document, config or RenderConfig(), on_progress)


def count_pages(data: bytes) -> int:
    """Return the number of pages in a PDF byte buffer."""
    document = open_document(data)
    try:
        return document.page_count
    finally:
        document.close()


def render_pdf_to_images(
    data: bytes,
    config: RenderConfig | None = None,
    on_progress: ProgressCallback | None = None,
) -> List[RenderedPage]:
    """Render pages to JPEG images, dropping pages that fail to render."""
    return [
        result
        for result in iter_page_results(data, config, on_progress)
        if isinstance(result, RenderedPage)
    ]
