import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional

BYTES_PER_MB = 1024 * 1024
DEFAULT_MAX_UPLOAD_SIZE_MB = 500
DEFAULT_PORT = 3000
DEFAULT_MAX_AGE_MINUTES = 10.0
DEFAULT_CLEANUP_INTERVAL_MINUTES = 5.0
MIN_CLEANUP_INTERVAL_MINUTES = 0.1
DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR = 100
DEFAULT_SWEEP_WORKERS = 4

DEFAULT_ALLOWED_MIMES: Mapping[str, str] = MappingProxyType(
    {
        "video/mp4": ".mp4",
        "image/jpeg": ".jpg",
        "image/png": ".png",
        "image/webp": ".webp",
    }
)

logger = logging.getLogger("mediadrop.config")


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once at startup and never mutated."""

    upload_dir: Path
    upload_token: str = ""
    port: int = DEFAULT_PORT
    max_age_minutes: float = DEFAULT_MAX_AGE_MINUTES
    sweep_interval_minutes: float = DEFAULT_CLEANUP_INTERVAL_MINUTES
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_SIZE_MB * BYTES_PER_MB
    allowed_mimes: Mapping[str, str] = field(default_factory=lambda: DEFAULT_ALLOWED_MIMES)
    public_base: str = ""
    log_level: str = "INFO"
    log_dir: Optional[Path] = None
    upload_rate_limit_per_hour: int = DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR
    rate_limit_storage_uri: str = "memory://"
    sweep_workers: int = DEFAULT_SWEEP_WORKERS

    @property
    def sweeper_enabled(self) -> bool:
        return self.max_age_minutes > 0


def _resolve_env_path(environ: Mapping[str, str], env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(environ: Mapping[str, str], key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""

    raw_value = environ.get(key)
    if raw_value is None or raw_value.strip() == "":
        return default
    try:
        return max(min_value, int(raw_value))
    except (TypeError, ValueError):
        logger.warning(
            "Invalid value for %s: %s. Using default: %d", key, raw_value, default
        )
        return default


def _safe_float_env(environ: Mapping[str, str], key: str, default: float) -> float:
    raw_value = environ.get(key)
    if raw_value is None or raw_value.strip() == "":
        return default
    try:
        value = float(raw_value)
    except ValueError:
        logger.warning(
            "Invalid value for %s: %s. Using default: %s", key, raw_value, default
        )
        return default
    if value != value or value in (float("inf"), float("-inf")):
        logger.warning("Non-finite value for %s. Using default: %s", key, default)
        return default
    return value


def parse_allowed_mimes(raw_value: Optional[str]) -> Mapping[str, str]:
    """Parse ``type=.ext`` pairs separated by commas into a MIME whitelist."""

    if not raw_value or not raw_value.strip():
        return DEFAULT_ALLOWED_MIMES

    parsed = {}
    for entry in raw_value.split(","):
        entry = entry.strip()
        if not entry:
            continue
        mimetype, sep, extension = entry.partition("=")
        mimetype = mimetype.strip().lower()
        extension = extension.strip()
        if not sep or "/" not in mimetype or not extension:
            logger.warning("Ignoring malformed ALLOWED_MIME_TYPES entry: %s", entry)
            continue
        if not extension.startswith("."):
            extension = f".{extension}"
        parsed[mimetype] = extension

    if not parsed:
        logger.warning("ALLOWED_MIME_TYPES had no usable entries; using defaults")
        return DEFAULT_ALLOWED_MIMES
    return MappingProxyType(parsed)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from environment variables."""

    if environ is None:
        environ = os.environ

    log_dir_raw = environ.get("MEDIADROP_LOG_DIR")
    interval = _safe_float_env(
        environ, "CLEANUP_INTERVAL_MINUTES", DEFAULT_CLEANUP_INTERVAL_MINUTES
    )

    return Settings(
        upload_dir=_resolve_env_path(environ, "UPLOAD_DIR", Path.cwd() / "public" / "uploads"),
        upload_token=environ.get("UPLOAD_TOKEN", ""),
        port=_safe_int_env(environ, "PORT", DEFAULT_PORT),
        max_age_minutes=_safe_float_env(environ, "MAX_AGE_MINUTES", DEFAULT_MAX_AGE_MINUTES),
        sweep_interval_minutes=max(MIN_CLEANUP_INTERVAL_MINUTES, interval),
        max_upload_bytes=_safe_int_env(
            environ, "MAX_UPLOAD_SIZE_MB", DEFAULT_MAX_UPLOAD_SIZE_MB
        )
        * BYTES_PER_MB,
        allowed_mimes=parse_allowed_mimes(environ.get("ALLOWED_MIME_TYPES")),
        public_base=environ.get("PUBLIC_BASE", "").strip(),
        log_level=environ.get("LOG_LEVEL", "INFO").upper(),
        log_dir=Path(log_dir_raw).expanduser().resolve() if log_dir_raw else None,
        upload_rate_limit_per_hour=_safe_int_env(
            environ,
            "MEDIADROP_RATE_LIMIT_UPLOADS_PER_HOUR",
            DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR,
            min_value=0,
        ),
        rate_limit_storage_uri=environ.get("MEDIADROP_RATE_LIMIT_STORAGE", "memory://"),
        sweep_workers=_safe_int_env(environ, "MEDIADROP_SWEEP_WORKERS", DEFAULT_SWEEP_WORKERS),
    )
