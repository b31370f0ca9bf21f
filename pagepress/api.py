"""HTTP endpoints for the PDF tools."""

from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any, Dict, List

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from .config import Settings, configure_logging
from .runner import (
    TOOLS,
    USER_INPUT_INVALID,
    ToolFailure,
    classify_error,
    run_tool,
)
from .visual import PREVIEW_SCALE, render_previews

logger = logging.getLogger(__name__)

FILE_FIELDS = ("file", "files", "signature")
ROUTE_ALIASES = {
    "pdf-merge": "merge",
    "pdf-split": "split",
    "pdf-organize": "organize",
    "pdf-rotate": "rotate",
    "pdf-crop": "crop",
    "pdf-watermark": "watermark",
    "pdf-page-numbers": "page-numbers",
    "pdf-protect": "protect",
    "pdf-unlock": "unlock",
    "jpg-to-pdf": "images-to-pdf",
}


class UploadTooLarge(Exception):
    """Raised when an upload exceeds the configured limit."""


def _error_response(failure: ToolFailure, status_code: int) -> JSONResponse:
    return JSONResponse({"error": failure.code, "message": failure.message}, status_code=status_code)


def _attachment(path: Path) -> Response:
    media_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    filename = path.name.replace('"', "")
    return Response(
        content=path.read_bytes(),
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


async def _save_uploads(form, temp: Path, max_bytes: int) -> List[Path]:
    """Write uploaded files as ``NN_<name>`` so their order survives."""
    paths: List[Path] = []
    uploads = [
        item for field in FILE_FIELDS for item in form.getlist(field) if isinstance(item, UploadFile)
    ]
    for index, upload in enumerate(uploads, start=1):
        data = await upload.read()
        if len(data) > max_bytes:
            raise UploadTooLarge(upload.filename)
        target = temp / f"{index:02d}_{Path(upload.filename or 'upload').name}"
        target.write_bytes(data)
        paths.append(target)
    return paths


def _form_config(form) -> Dict[str, Any]:
    return {key: value for key, value in form.multi_items() if isinstance(value, str)}


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application; settings default to the environment."""
    settings = settings or Settings.from_env()
    app = FastAPI(title="PagePress", description="PDF tools over HTTP.")
    too_large = ToolFailure(
        USER_INPUT_INVALID, f"Files must be smaller than {settings.max_upload_mb} MB"
    )

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/tools")
    def list_tools() -> Dict[str, List[str]]:
        return {"tools": list(TOOLS)}

    @app.post("/api/pdf-preview")
    async def preview(request: Request) -> Response:
        form = await request.form()
        with TemporaryDirectory() as temp:
            try:
                inputs = await _save_uploads(form, Path(temp), settings.max_upload_bytes)
            except UploadTooLarge:
                return _error_response(too_large, 413)
            if not inputs:
                return _error_response(ToolFailure(USER_INPUT_INVALID, "A file is required"), 400)
            try:
                scale = min(max(float(form.get("scale") or PREVIEW_SCALE), 0.1), 2.0)
                limit = int(form["limit"]) if form.get("limit") else None
            except ValueError:
                return _error_response(
                    ToolFailure(USER_INPUT_INVALID, "scale and limit must be numeric"), 400
                )
            if limit is not None and limit < 1:
                return _error_response(
                    ToolFailure(USER_INPUT_INVALID, "limit must be at least 1"), 400
                )
            try:
                payload = await run_in_threadpool(render_previews, inputs[0], scale, limit)
            except Exception as error:  # noqa: BLE001
                logger.exception("Preview failed")
                failure = classify_error(error)
                return _error_response(failure, 400 if failure.code == USER_INPUT_INVALID else 500)
        return JSONResponse(payload)

    @app.post("/api/{tool}")
    async def execute(tool: str, request: Request) -> Response:
        tool = ROUTE_ALIASES.get(tool, tool)
        if tool not in TOOLS:
            return _error_response(ToolFailure("UNKNOWN_TOOL", f"Unknown tool: {tool}"), 404)
        form = await request.form()
        config = _form_config(form)
        with TemporaryDirectory() as temp:
            temp_path = Path(temp)
            try:
                inputs = await _save_uploads(form, temp_path, settings.max_upload_bytes)
            except UploadTooLarge:
                return _error_response(too_large, 413)
            try:
                output = await run_in_threadpool(run_tool, tool, config, inputs, temp_path)
            except Exception as error:  # noqa: BLE001
                failure = classify_error(error)
                logger.error("Tool %s failed: %s", tool, error)
                return _error_response(failure, 400 if failure.code == USER_INPUT_INVALID else 500)
            return _attachment(output)

    return app


def main() -> None:
    """Entrypoint for the HTTP service."""
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
