"""Environment-driven settings for the PagePress service."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

ENV_PREFIX = "PAGEPRESS_"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _env_str(name: str, default: str) -> str:
    value = os.environ.get(f"{ENV_PREFIX}{name}")
    return value.strip() if value else default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(f"{ENV_PREFIX}{name}")
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(f"{ENV_PREFIX}{name}")
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(f"{ENV_PREFIX}{name}")
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on", "y"}


@dataclass(frozen=True)
class Settings:
    """Runtime settings resolved from the environment."""

    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"
    max_upload_mb: int = 50
    ocr_lang: str = "eng"
    ttf_path: str | None = None
    web_allow_hostname_fallback: bool = False
    default_scale: float = 1.5
    default_quality: float = 0.92

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``PAGEPRESS_*`` environment variables."""
        return cls(
            host=_env_str("HOST", cls.host),
            port=_env_int("PORT", cls.port),
            log_level=_env_str("LOG_LEVEL", cls.log_level).upper(),
            max_upload_mb=max(1, _env_int("MAX_UPLOAD_MB", cls.max_upload_mb)),
            ocr_lang=_env_str("OCR_LANG", cls.ocr_lang),
            ttf_path=_env_str("TTF_PATH", "") or None,
            web_allow_hostname_fallback=_env_bool("WEB_ALLOW_HOSTNAME_FALLBACK"),
            default_scale=_env_float("DEFAULT_SCALE", cls.default_scale),
            default_quality=_env_float("DEFAULT_QUALITY", cls.default_quality),
        )


def configure_logging(level: str = "INFO") -> None:
    """Install a basic root handler once per process."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
