"""Format conversions into and out of PDF."""

from __future__ import annotations

import ipaddress
import logging
import re
import shutil
import socket
import subprocess
import zipfile
from html.parser import HTMLParser
from io import BytesIO
from pathlib import Path
from typing import Iterable, List, Sequence, Tuple
from urllib.parse import ParseResult, urlparse

import img2pdf
import requests
from docx import Document
from fpdf import FPDF
from openpyxl import Workbook
from PIL import Image
from pypdf import PdfReader, PdfWriter
from requests_toolbelt.adapters.host_header_ssl import HostHeaderSSLAdapter

from .config import Settings
from .pages import load_pdf, write_pdf
from .stamps import set_overlay_font

logger = logging.getLogger(__name__)

# One image pixel becomes one PDF point.
PIXEL_LAYOUT = img2pdf.get_fixed_dpi_layout_fun((72, 72))
PLACEHOLDER_PAGE_SIZE = 500
MAX_WEB_BYTES = 2 * 1024 * 1024
WEB_CHUNK_BYTES = 64 * 1024
WEB_TIMEOUT_SEC = 20
WEB_SCHEMES = ("http", "https")
OFFICE_BINARIES = ("soffice", "libreoffice")
OFFICE_TIMEOUT_SEC = 120
PDF_A_TIMEOUT_SEC = 120
PDF_A_VERSION_TIMEOUT_SEC = 10
PDF_A_MIN_VERSION = (10, 3, 1)
PDF_A_ARGS = (
    "-dSAFER",
    "-dPDFA=2",
    "-dBATCH",
    "-dNOPAUSE",
    "-dNOOUTERSAVE",
    "-sDEVICE=pdfwrite",
    "-dPDFACompatibilityPolicy=1",
    "-sProcessColorModel=DeviceRGB",
    "-sColorConversionStrategy=RGB",
)
VERSION_PATTERN = re.compile(r"\s*(\d+)(?:\.(\d+))?(?:\.(\d+))?")


def zip_outputs(outputs: Iterable[Path], zip_path: Path) -> Path:
    """Zip output files into a single archive."""
    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for item in outputs:
            archive.write(item, arcname=item.name)
    return zip_path


def _image_to_page_bytes(path: Path) -> bytes:
    """Embed one image as a single-page PDF, flattening alpha onto white."""
    try:
        return img2pdf.convert(str(path), layout_fun=PIXEL_LAYOUT)
    except img2pdf.AlphaChannelError:
        with Image.open(path) as image:
            rgba = image.convert("RGBA")
        flattened = Image.new("RGB", rgba.size, "white")
        flattened.paste(rgba, mask=rgba.getchannel("A"))
        buffer = BytesIO()
        flattened.save(buffer, format="PNG")
        return img2pdf.convert(buffer.getvalue(), layout_fun=PIXEL_LAYOUT)


def _placeholder_page_bytes(name: str) -> bytes:
    """A blank page noting that an image could not be loaded."""
    pdf = FPDF(unit="pt", format=(PLACEHOLDER_PAGE_SIZE, PLACEHOLDER_PAGE_SIZE))
    pdf.set_auto_page_break(auto=False)
    pdf.add_page()
    pdf.set_font("Helvetica", size=12)
    label = f"Failed to load image: {name}".encode("latin-1", "replace").decode("latin-1")
    pdf.text(50, 50, label)
    return bytes(pdf.output())


def images_to_pdf(inputs: Sequence[Path], output_path: Path) -> Path:
    """
    Combine images into a PDF, one page per image.

    Each page is sized to the image in pixels. An image that cannot be
    embedded becomes a placeholder page instead of failing the whole job.
    """
    if not inputs:
        raise ValueError("No images provided")
    writer = PdfWriter()
    for path in inputs:
        try:
            page_bytes = _image_to_page_bytes(path)
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to embed image %s: %s", path.name, error)
            page_bytes = _placeholder_page_bytes(path.name)
        for page in PdfReader(BytesIO(page_bytes)).pages:
            writer.add_page(page)
    return write_pdf(writer, output_path)


def _page_texts(input_path: Path) -> List[str]:
    reader = load_pdf(input_path)
    return [page.extract_text() or "" for page in reader.pages]


def pdf_to_docx(input_path: Path, output_path: Path) -> Path:
    """Convert PDF text into a Word document, one page break per page."""
    document = Document()
    for index, text in enumerate(_page_texts(input_path), start=1):
        if index > 1:
            document.add_page_break()
        lines = [line for line in text.splitlines() if line.strip()]
        for line in lines or [""]:
            document.add_paragraph(line)
    document.save(str(output_path))
    return output_path


def pdf_to_xlsx(input_path: Path, output_path: Path) -> Path:
    """Convert PDF text into a workbook, one line per row, a blank row between pages."""
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Pages"
    row = 1
    for index, text in enumerate(_page_texts(input_path), start=1):
        lines = [line for line in text.splitlines() if line.strip()]
        for line in lines or [f"Page {index}"]:
            sheet.cell(row=row, column=1, value=line)
            row += 1
        row += 1
    workbook.save(str(output_path))
    return output_path


def pdf_to_text(input_path: Path, output_path: Path) -> Path:
    """Extract PDF text into a UTF-8 text file."""
    blocks = [
        "\n".join(line.rstrip() for line in text.splitlines())
        for text in _page_texts(input_path)
    ]
    output_path.write_text("\n\n".join(blocks).rstrip() + "\n", encoding="utf-8")
    return output_path


def _require_binary(names: Sequence[str], message: str) -> str:
    """Return the first of ``names`` found on ``PATH``."""
    for name in names:
        found = shutil.which(name)
        if found:
            return found
    raise RuntimeError(message)


def _run_external(command: List[str], timeout: int, label: str) -> str:
    """Run a converter binary and return its stdout, or stderr when stdout is empty."""
    logger.debug("Running %s: %s", label, " ".join(command))
    try:
        completed = subprocess.run(
            command, capture_output=True, text=True, check=False, timeout=timeout
        )
    except subprocess.TimeoutExpired as error:
        raise RuntimeError(f"{label} timed out") from error
    if completed.returncode:
        raise RuntimeError(completed.stderr or completed.stdout or f"{label} failed")
    return completed.stdout or completed.stderr or ""


def _expect_output(path: Path, label: str) -> Path:
    if not path.exists():
        raise RuntimeError(f"{label} produced no output")
    return path


def office_to_pdf(input_path: Path, output_dir: Path) -> Path:
    """Convert a Word, PowerPoint or Excel file to PDF with LibreOffice."""
    soffice = _require_binary(OFFICE_BINARIES, "LibreOffice is required for office-to-pdf")
    output_dir.mkdir(parents=True, exist_ok=True)
    command = [soffice, "--headless", "--convert-to", "pdf", "--outdir", str(output_dir)]
    _run_external(command + [str(input_path)], OFFICE_TIMEOUT_SEC, "Office conversion")
    return _expect_output(output_dir / f"{input_path.stem}.pdf", "Office conversion")


def _parse_version_tuple(raw: str) -> Tuple[int, int, int]:
    """Parse ``"10.03.1"`` style version output into a comparable tuple."""
    match = VERSION_PATTERN.match(raw)
    if match is None:
        raise ValueError("Unable to parse version")
    major, minor, patch = (int(part or 0) for part in match.groups())
    return (major, minor, patch)


def _ghostscript_version(ghostscript: str) -> Tuple[int, int, int]:
    output = _run_external(
        [ghostscript, "--version"], PDF_A_VERSION_TIMEOUT_SEC, "Ghostscript version check"
    )
    try:
        return _parse_version_tuple(output)
    except ValueError as error:
        raise RuntimeError(f"Could not read the Ghostscript version from {output!r}") from error


def pdf_to_pdfa(input_path: Path, output_path: Path) -> Path:
    """
    Convert a PDF into PDF/A-2b with Ghostscript.

    Raises:
        RuntimeError: If Ghostscript is missing, too old, times out, or fails.
        ValueError: If the input PDF is encrypted.
    """
    load_pdf(input_path)
    ghostscript = _require_binary(("gs",), "Ghostscript is required for PDF/A conversion")
    version = _ghostscript_version(ghostscript)
    if version < PDF_A_MIN_VERSION:
        wanted = ".".join(str(part) for part in PDF_A_MIN_VERSION)
        found = ".".join(str(part) for part in version)
        raise RuntimeError(f"Ghostscript {wanted} or newer is required for PDF/A, found {found}")
    output_path.parent.mkdir(parents=True, exist_ok=True)
    _run_external(
        [ghostscript, *PDF_A_ARGS, f"-sOutputFile={output_path}", str(input_path)],
        PDF_A_TIMEOUT_SEC,
        "PDF/A conversion",
    )
    return _expect_output(output_path, "PDF/A conversion")


class _HTMLTextExtractor(HTMLParser):
    """Collect visible text, skipping script and style blocks."""

    _SKIPPED = {"script", "style"}

    def __init__(self) -> None:
        super().__init__()
        self._parts: List[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs) -> None:
        if tag in self._SKIPPED:
            self._skip_depth += 1

    def handle_endtag(self, tag: str) -> None:
        if tag in self._SKIPPED and self._skip_depth:
            self._skip_depth -= 1

    def handle_data(self, data: str) -> None:
        text = data.strip()
        if text and not self._skip_depth:
            self._parts.append(text)

    def text(self) -> str:
        return "\n".join(self._parts)


def html_to_pdf(html: str, output_path: Path) -> Path:
    """Render the text content of an HTML document onto A4 pages."""
    parser = _HTMLTextExtractor()
    parser.feed(html)
    text = parser.text() or "(no content)"

    pdf = FPDF(orientation="P", unit="mm", format="A4")
    pdf.set_margins(15, 15, 15)
    pdf.set_auto_page_break(auto=True, margin=15)
    pdf.add_page()
    set_overlay_font(pdf, text, 12)
    max_width = pdf.w - pdf.l_margin - pdf.r_margin
    for line in text.splitlines():
        pdf.multi_cell(max_width, 6, line, new_x="LMARGIN", new_y="NEXT")
    pdf.output(str(output_path))
    return output_path


def _is_public_ip(address: str) -> bool:
    """Return True for globally routable unicast addresses."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return ip.is_global and not ip.is_multicast


def _resolve_public_ip(hostname: str) -> str:
    """Resolve a hostname to one public address, IPv4 first."""
    try:
        infos = socket.getaddrinfo(hostname, None)
    except socket.gaierror as error:
        raise ValueError("Unable to resolve host") from error
    candidates = dict.fromkeys(str(info[4][0]) for info in infos)
    public = [address for address in candidates if _is_public_ip(address)]
    if not public:
        raise ValueError("URL host is not allowed")
    return min(public, key=lambda address: ipaddress.ip_address(address).version)


def _bracketed(host: str) -> str:
    return f"[{host}]" if ":" in host else host


def _pin_request(parsed: ParseResult, address: str) -> Tuple[str, str]:
    """Return the URL rewritten to ``address`` and the Host header naming the original host."""
    port = "" if parsed.port is None else f":{parsed.port}"
    pinned = parsed._replace(netloc=f"{_bracketed(address)}{port}").geturl()
    return pinned, f"{_bracketed(parsed.hostname)}{port}"


def _fetch_html(session: requests.Session, url: str, host_header: str | None) -> str:
    """GET ``url`` without following redirects and decode at most ``MAX_WEB_BYTES``."""
    headers = {"Host": host_header} if host_header else None
    with session.get(
        url, timeout=WEB_TIMEOUT_SEC, allow_redirects=False, stream=True, headers=headers
    ) as response:
        if response.status_code in range(300, 400):
            raise ValueError("Redirects are not allowed")
        response.raise_for_status()
        body = bytearray()
        for chunk in response.iter_content(chunk_size=WEB_CHUNK_BYTES):
            body += chunk
            if len(body) > MAX_WEB_BYTES:
                raise ValueError("Web response too large")
        return body.decode(response.encoding or "utf-8", errors="replace")


def _fetch_pinned(scheme: str, url: str, host_header: str) -> str:
    with requests.Session() as session:
        if scheme == "https":
            # Verify the certificate against the Host header, not the pinned IP.
            session.mount("https://", HostHeaderSSLAdapter())
        return _fetch_html(session, url, host_header)


def web_to_pdf(url: str, output_path: Path) -> Path:
    """
    Fetch a public http(s) URL and render its text to PDF.

    The hostname is resolved once and the request is pinned to that public
    address, so a DNS answer cannot switch to a private host mid-request.
    When ``PAGEPRESS_WEB_ALLOW_HOSTNAME_FALLBACK`` is on, an https fetch that
    fails TLS on the pinned address is retried once by hostname.
    """
    parsed = urlparse(url)
    if parsed.scheme not in WEB_SCHEMES or not parsed.hostname:
        raise ValueError("Only http/https URLs are supported")
    pinned_url, host_header = _pin_request(parsed, _resolve_public_ip(parsed.hostname))
    try:
        html = _fetch_pinned(parsed.scheme, pinned_url, host_header)
    except requests.exceptions.SSLError:
        if parsed.scheme != "https" or not Settings.from_env().web_allow_hostname_fallback:
            raise
        logger.warning("Pinned TLS fetch failed for %s; retrying by hostname", parsed.hostname)
        _resolve_public_ip(parsed.hostname)
        with requests.Session() as session:
            html = _fetch_html(session, parsed.geturl(), None)
    return html_to_pdf(html, output_path)
