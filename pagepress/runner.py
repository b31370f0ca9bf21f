"""Dispatch a named tool over uploaded inputs."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping

from .config import Settings
from .convert import (
    html_to_pdf,
    images_to_pdf,
    office_to_pdf,
    pdf_to_docx,
    pdf_to_pdfa,
    pdf_to_text,
    pdf_to_xlsx,
    web_to_pdf,
    zip_outputs,
)
from .coords import PercentRect, parse_percent_rect
from .pages import (
    crop_pdf,
    merge_pdfs,
    organize_pdf,
    protect_pdf,
    repair_pdf,
    rotate_pdf,
    split_pdf,
    unlock_pdf,
)
from .rasterize import ProgressCallback
from .stamps import add_text_pdf, page_numbers_pdf, redact_pdf, sign_pdf, watermark_pdf
from .visual import compare_pdfs, compress_pdf, ocr_pdf, pdf_to_jpg

logger = logging.getLogger(__name__)

MIN_SCALE = 0.25
MAX_SCALE = 4.0
MIN_QUALITY = 0.1
MAX_QUALITY = 1.0

USER_INPUT_INVALID = "USER_INPUT_INVALID"
PROCESSING_FAILED = "PROCESSING_FAILED"
GENERIC_FAILURE_MESSAGE = "Processing failed. Please retry."

# tool -> (filename suffix, forced extension or None to keep the input's)
TOOL_OUTPUT_SUFFIXES = {
    "compress": ("compressed", ".pdf"),
    "repair": ("repaired", None),
    "rotate": ("rotated", None),
    "organize": ("organized", None),
    "crop": ("cropped", None),
    "watermark": ("watermarked", None),
    "page-numbers": ("numbered", None),
    "edit": ("edited", None),
    "sign": ("signed", None),
    "redact": ("redacted", None),
    "protect": ("protected", None),
    "unlock": ("unlocked", None),
    "pdfa": ("pdfa", ".pdf"),
    "ocr": ("ocr", ".txt"),
    "pdf-to-word": ("word", ".docx"),
    "pdf-to-excel": ("excel", ".xlsx"),
    "pdf-to-text": ("text", ".txt"),
    "pdf-to-jpg": ("images", ".zip"),
    "compare": ("compare", ".zip"),
    "office-to-pdf": ("converted", ".pdf"),
    "images-to-pdf": ("images", ".pdf"),
}


@dataclass(frozen=True)
class ToolFailure:
    """A failure translated for end users."""

    code: str
    message: str


def classify_error(error: Exception) -> ToolFailure:
    """Expose user-input errors verbatim and hide everything else."""
    if isinstance(error, ValueError):
        return ToolFailure(USER_INPUT_INVALID, str(error))
    return ToolFailure(PROCESSING_FAILED, GENERIC_FAILURE_MESSAGE)


def _strip_input_prefix(path: Path) -> Path:
    """Drop the ``NN_`` ordering prefix added to saved uploads."""
    name = path.name
    if "_" in name:
        prefix, remainder = name.split("_", 1)
        if prefix.isdigit():
            name = remainder
    return Path(name)


def build_output_path(tool: str, inputs: List[Path], workdir: Path) -> Path:
    """Name the output after the first input, e.g. ``report_rotated.pdf``."""
    if tool == "merge":
        return workdir / "merged.pdf"
    if tool == "html-to-pdf":
        return workdir / "web.pdf"
    if tool not in TOOL_OUTPUT_SUFFIXES or not inputs:
        return workdir / "output.pdf"
    base_path = _strip_input_prefix(inputs[0])
    stem = base_path.stem or "output"
    suffix, extension = TOOL_OUTPUT_SUFFIXES[tool]
    resolved_extension = extension or base_path.suffix or ".pdf"
    if not resolved_extension.startswith("."):
        resolved_extension = f".{resolved_extension}"
    return workdir / f"{stem}_{suffix}{resolved_extension}"


def _parse_int(value: Any, default: int) -> int:
    """Parse an integer with a safe fallback."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_float(value: Any, default: float) -> float:
    """Parse a float with a safe fallback."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _clamp(value: float, lower: float, upper: float) -> float:
    return min(max(value, lower), upper)


def _parse_json(value: Any, field: str) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError as error:
        raise ValueError(f"{field} must be valid JSON") from error


def _required_text(config: Mapping[str, Any], key: str, label: str) -> str:
    value = str(config.get(key) or "")
    if not value.strip():
        raise ValueError(f"{label} is required")
    return value


def _render_options(config: Mapping[str, Any], scale: float, quality: float) -> Dict[str, float]:
    return {
        "scale": _clamp(_parse_float(config.get("scale"), scale), MIN_SCALE, MAX_SCALE),
        "quality": _clamp(_parse_float(config.get("quality"), quality), MIN_QUALITY, MAX_QUALITY),
    }


def _config_rect(config: Mapping[str, Any]) -> PercentRect:
    raw = _parse_json(config.get("rect"), "rect") if "rect" in config else config
    if not isinstance(raw, Mapping):
        raise ValueError("Selection is required")
    return parse_percent_rect(raw)


def _config_areas(config: Mapping[str, Any]) -> List[PercentRect]:
    raw = _parse_json(config.get("areas") or [], "areas")
    if not isinstance(raw, list):
        raise ValueError("areas must be a list")
    return [parse_percent_rect(item) for item in raw]


def _config_order(config: Mapping[str, Any]) -> List[int]:
    raw = _parse_json(config.get("pageOrder", config.get("order")), "pageOrder")
    if not isinstance(raw, list) or not raw:
        raise ValueError("Page order is required")
    order: List[int] = []
    for item in raw:
        if isinstance(item, bool) or not isinstance(item, (int, float)) or int(item) != item:
            raise ValueError(f"Invalid page index: {item}")
        order.append(int(item))
    return order


def _require_inputs(inputs: List[Path], count: int, message: str) -> None:
    if len(inputs) < count:
        raise ValueError(message)


def _log_progress(tool: str) -> ProgressCallback:
    def _report(current: int, total: int) -> None:
        logger.debug("%s: page %d of %d", tool, current, total)

    return _report


def run_tool(
    tool: str,
    config: Mapping[str, Any] | None,
    inputs: List[Path],
    workdir: Path,
    on_progress: ProgressCallback | None = None,
) -> Path:
    """
    Execute ``tool`` over ``inputs`` and return the single output file.

    Tools that yield several files (split without ranges, pdf-to-jpg,
    compare) are zipped.

    Raises:
        ValueError: When required configuration or inputs are missing or invalid.
        RuntimeError: When the tool is unknown or an external program fails.
    """
    config = config or {}
    progress = on_progress or _log_progress(tool)
    output_path = build_output_path(tool, inputs, workdir)
    handler = _HANDLERS.get(tool)
    if handler is None:
        raise RuntimeError(f"Unsupported tool: {tool}")
    if tool not in _NO_INPUT_TOOLS:
        _require_inputs(inputs, 1, "A file is required")
    logger.info("Running %s on %d input(s)", tool, len(inputs))
    return handler(config, inputs, workdir, output_path, progress)


Handler = Callable[[Mapping[str, Any], List[Path], Path, Path, ProgressCallback], Path]


def _merge(config, inputs, workdir, output_path, progress):
    return merge_pdfs(inputs, output_path)


def _split(config, inputs, workdir, output_path, progress):
    parts_dir = workdir / "split"
    parts_dir.mkdir(exist_ok=True)
    outputs = split_pdf(inputs[0], parts_dir, config.get("range") or config.get("ranges"))
    if config.get("range") or config.get("ranges"):
        return outputs[0]
    return zip_outputs(outputs, workdir / "split_pages.zip")


def _organize(config, inputs, workdir, output_path, progress):
    return organize_pdf(inputs[0], output_path, _config_order(config))


def _compress(config, inputs, workdir, output_path, progress):
    options = _render_options(config, 1.5, 0.7)
    return compress_pdf(inputs[0], output_path, options["scale"], options["quality"], progress)


def _repair(config, inputs, workdir, output_path, progress):
    return repair_pdf(inputs[0], output_path)


def _rotate(config, inputs, workdir, output_path, progress):
    angle = _parse_int(config.get("angle"), 90)
    return rotate_pdf(inputs[0], output_path, angle, config.get("pages"))


def _crop(config, inputs, workdir, output_path, progress):
    return crop_pdf(inputs[0], output_path, _config_rect(config), config.get("pages"))


def _watermark(config, inputs, workdir, output_path, progress):
    return watermark_pdf(
        inputs[0],
        output_path,
        _required_text(config, "text", "Watermark text"),
        opacity=_clamp(_parse_float(config.get("opacity"), 0.5), 0.0, 1.0),
        rotation=_parse_float(config.get("rotation"), 45),
        font_size=_clamp(_parse_float(config.get("fontSize"), 48), 4, 400),
        color=str(config.get("color") or "#000000"),
        pages=config.get("pages"),
    )


def _page_numbers(config, inputs, workdir, output_path, progress):
    return page_numbers_pdf(
        inputs[0],
        output_path,
        start=_parse_int(config.get("startFrom", config.get("start")), 1),
        position=str(config.get("position") or "bottom-center"),
        pages=config.get("pages"),
    )


def _edit(config, inputs, workdir, output_path, progress):
    return add_text_pdf(
        inputs[0],
        output_path,
        _required_text(config, "text", "Text"),
        page=_parse_int(config.get("page"), 1),
        x=_parse_float(config.get("x"), 50),
        y=_parse_float(config.get("y"), 50),
        font_size=_clamp(_parse_float(config.get("fontSize"), 20), 4, 400),
    )


def _sign(config, inputs, workdir, output_path, progress):
    _require_inputs(inputs, 2, "A PDF and a signature image are required")
    rect = _config_rect(config) if "rect" in config else None
    return sign_pdf(
        inputs[0], output_path, inputs[1], page=_parse_int(config.get("page"), 1), rect=rect
    )


def _redact(config, inputs, workdir, output_path, progress):
    return redact_pdf(
        inputs[0],
        output_path,
        areas=_config_areas(config),
        text=config.get("text"),
        pages=config.get("pages"),
    )


def _protect(config, inputs, workdir, output_path, progress):
    return protect_pdf(inputs[0], output_path, _required_text(config, "password", "Password"))


def _unlock(config, inputs, workdir, output_path, progress):
    return unlock_pdf(inputs[0], output_path, _required_text(config, "password", "Password"))


def _pdfa(config, inputs, workdir, output_path, progress):
    return pdf_to_pdfa(inputs[0], output_path)


def _ocr(config, inputs, workdir, output_path, progress):
    max_pages = max(1, _parse_int(config.get("maxPages"), 3))
    return ocr_pdf(inputs[0], output_path, config.get("lang"), max_pages=max_pages, on_progress=progress)


def _pdf_to_word(config, inputs, workdir, output_path, progress):
    return pdf_to_docx(inputs[0], output_path)


def _pdf_to_excel(config, inputs, workdir, output_path, progress):
    return pdf_to_xlsx(inputs[0], output_path)


def _pdf_to_text(config, inputs, workdir, output_path, progress):
    return pdf_to_text(inputs[0], output_path)


def _pdf_to_jpg(config, inputs, workdir, output_path, progress):
    settings = Settings.from_env()
    options = _render_options(config, settings.default_scale, settings.default_quality)
    images_dir = workdir / "images"
    images_dir.mkdir(exist_ok=True)
    images = pdf_to_jpg(inputs[0], images_dir, options["scale"], options["quality"], progress)
    return zip_outputs(images, output_path)


def _compare(config, inputs, workdir, output_path, progress):
    _require_inputs(inputs, 2, "Two PDF files are required")
    compare_dir = workdir / "compare"
    compare_dir.mkdir(exist_ok=True)
    outputs = compare_pdfs(
        inputs[0],
        inputs[1],
        compare_dir,
        scale=_clamp(_parse_float(config.get("scale"), 1.0), MIN_SCALE, MAX_SCALE),
        max_pages=max(1, _parse_int(config.get("maxPages"), 3)),
    )
    return zip_outputs(outputs, output_path)


def _office_to_pdf(config, inputs, workdir, output_path, progress):
    converted = office_to_pdf(inputs[0], workdir / "office")
    if output_path.exists():
        output_path.unlink()
    return converted.rename(output_path)


def _images_to_pdf(config, inputs, workdir, output_path, progress):
    return images_to_pdf(inputs, output_path)


def _html_to_pdf(config, inputs, workdir, output_path, progress):
    url = str(config.get("url") or "").strip()
    if url:
        return web_to_pdf(url, output_path)
    html = str(config.get("html") or "")
    if not html.strip():
        raise ValueError("URL or HTML is required")
    return html_to_pdf(html, output_path)


_HANDLERS: Dict[str, Handler] = {
    "merge": _merge,
    "split": _split,
    "organize": _organize,
    "compress": _compress,
    "repair": _repair,
    "rotate": _rotate,
    "crop": _crop,
    "watermark": _watermark,
    "page-numbers": _page_numbers,
    "edit": _edit,
    "sign": _sign,
    "redact": _redact,
    "protect": _protect,
    "unlock": _unlock,
    "pdfa": _pdfa,
    "ocr": _ocr,
    "pdf-to-word": _pdf_to_word,
    "pdf-to-excel": _pdf_to_excel,
    "pdf-to-text": _pdf_to_text,
    "pdf-to-jpg": _pdf_to_jpg,
    "compare": _compare,
    "office-to-pdf": _office_to_pdf,
    "images-to-pdf": _images_to_pdf,
    "html-to-pdf": _html_to_pdf,
}
_NO_INPUT_TOOLS = {"html-to-pdf"}
TOOLS = tuple(_HANDLERS)
