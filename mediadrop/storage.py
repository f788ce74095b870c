import logging
import os
import re
import stat
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Mapping, Optional

from .settings import Settings

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
MAX_FILENAME_LENGTH = 255
# A generated name is a 36-character UUID plus the extension.
MAX_EXTENSION_LENGTH = MAX_FILENAME_LENGTH - 36
TEMP_SUFFIX = ".tmp"

# Letters, digits, underscore, hyphen and dot only.
_SAFE_NAME_PATTERN = re.compile(r"^[\w.-]+$", re.ASCII)

logger = logging.getLogger("mediadrop.storage")
sweeper_logger = logging.getLogger("mediadrop.sweeper")


class FileValidationError(ValueError):
    """Raised when an upload or file name fails validation; maps to HTTP 400."""

    def __init__(self, message: str, reason: str = "invalid_upload") -> None:
        super().__init__(message)
        self.reason = reason

    def to_payload(self) -> dict:
        return {"error": str(self)}


@dataclass(frozen=True)
class StoredFile:
    filename: str
    path: Path
    size: int
    content_type: str


def ensure_directories(settings: Settings) -> None:
    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    if settings.log_dir is not None:
        settings.log_dir.mkdir(parents=True, exist_ok=True)


def is_safe_name(name: str) -> bool:
    """Return True when *name* can be used verbatim inside the upload directory."""

    if not name or len(name) > MAX_FILENAME_LENGTH:
        return False
    if not _SAFE_NAME_PATTERN.match(name):
        return False
    # Rejects ".", ".." and hidden names, which are reserved for temp files.
    if ".." in name or name.startswith("."):
        return False
    return True


def _basename(name: str) -> str:
    return PurePosixPath(name.replace("\\", "/")).name


def extract_extension(original_name: Optional[str]) -> str:
    """Return the extension of *original_name* including the dot, or ``""``."""

    _, extension = os.path.splitext(_basename(original_name or "file"))
    if extension and not _SAFE_NAME_PATTERN.match(extension):
        return ""
    return extension


def resolve_filename(
    original_name: Optional[str],
    mimetype: Optional[str],
    suggested_name: Optional[str],
    allowed_mimes: Mapping[str, str],
) -> str:
    """Derive the on-disk filename for an upload.

    The extension comes from the client's original filename, or from the MIME
    whitelist when the original has none or one too long to fit beside a
    UUID. A safe caller-suggested name is used as the base; anything else
    falls back to a random UUID. The result never exceeds
    ``MAX_FILENAME_LENGTH`` characters.
    """

    extension = extract_extension(original_name)
    if len(extension) > MAX_EXTENSION_LENGTH:
        extension = ""
    if not extension and mimetype in allowed_mimes:
        extension = allowed_mimes[mimetype]
    if len(extension) > MAX_EXTENSION_LENGTH:
        extension = ""

    wanted = (suggested_name or "").strip()
    if wanted and is_safe_name(wanted):
        _, wanted_extension = os.path.splitext(wanted)
        candidate = wanted if wanted_extension else f"{wanted}{extension}"
        if len(candidate) <= MAX_FILENAME_LENGTH:
            return candidate

    return f"{uuid.uuid4()}{extension}"


def validate_mimetype(mimetype: Optional[str], allowed_mimes: Mapping[str, str]) -> str:
    normalized = (mimetype or "").split(";", 1)[0].strip().lower()
    if normalized not in allowed_mimes:
        allowed = ", ".join(sorted(allowed_mimes))
        raise FileValidationError(
            f"Unsupported content type '{normalized or 'unknown'}'. Allowed types: {allowed}",
            reason="invalid_type",
        )
    return normalized


def _remove_quietly(path: Optional[Path]) -> None:
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as error:
        logger.warning("temp_file_remove_failed path=%s error=%s", path, error)


def save_upload(
    stream: BinaryIO,
    settings: Settings,
    *,
    original_name: Optional[str],
    mimetype: Optional[str],
    suggested_name: Optional[str] = None,
) -> StoredFile:
    """Validate and stream an upload into the storage directory.

    Bytes land in a hidden temporary file first and are moved onto the final
    name only after the whole body has been written within the size limit.
    Raises :class:`FileValidationError` for validation failures and lets
    ``OSError`` propagate for disk failures; either way no partial file stays
    behind under a servable name.
    """

    content_type = validate_mimetype(mimetype, settings.allowed_mimes)
    filename = resolve_filename(
        original_name, content_type, suggested_name, settings.allowed_mimes
    )

    upload_path = settings.upload_dir / filename
    # Named independently of the final name so it stays short.
    temp_path = settings.upload_dir / f".{uuid.uuid4().hex}{TEMP_SUFFIX}"
    max_bytes = settings.max_upload_bytes
    written = 0
    try:
        with temp_path.open("xb") as destination:
            while True:
                chunk = stream.read(CHUNK_SIZE_BYTES)
                if not chunk:
                    break
                if written + len(chunk) > max_bytes:
                    raise FileValidationError(
                        f"File too large. Maximum size is {max_bytes} bytes",
                        reason="too_large",
                    )
                destination.write(chunk)
                written += len(chunk)
        os.replace(temp_path, upload_path)
    except Exception:
        _remove_quietly(temp_path)
        raise

    return StoredFile(
        filename=filename,
        path=upload_path,
        size=written,
        content_type=content_type,
    )


def delete_stored_file(settings: Settings, name: str) -> str:
    """Delete *name* from the storage directory, treating "missing" as success.

    Only the final path component of *name* is honored. Hidden names belong
    to in-flight uploads and are never touched; they report success like a
    missing file. Returns the basename that was targeted.
    """

    basename = _basename(name)
    if basename in {"", ".", ".."}:
        raise FileValidationError("Invalid file name", reason="invalid_name")
    if basename.startswith("."):
        logger.info("file_delete_skipped_hidden name=%s", basename)
        return basename

    file_path = settings.upload_dir / basename
    try:
        file_path.unlink()
    except FileNotFoundError:
        logger.info("file_delete_missing name=%s", basename)
        return basename
    logger.info("file_deleted name=%s", basename)
    return basename


def _sweep_entry(entry: Path, now: float, ttl_minutes: float) -> bool:
    try:
        info = entry.stat()
    except OSError:
        # Vanished between listing and stat.
        return False

    if not stat.S_ISREG(info.st_mode):
        return False

    age_minutes = (now - info.st_mtime) / 60
    if age_minutes <= ttl_minutes:
        return False

    try:
        entry.unlink()
    except FileNotFoundError:
        pass
    except OSError as error:
        sweeper_logger.error(
            "sweep_delete_failed path=%s error=%s", entry, error
        )
        return False

    sweeper_logger.info(
        "sweep_deleted name=%s age_minutes=%.1f", entry.name, age_minutes
    )
    return True


def sweep_expired_files(settings: Settings, now: Optional[float] = None) -> int:
    """Run one retention tick over the storage directory.

    Every regular file whose modification time is more than
    ``settings.max_age_minutes`` older than *now* is removed. Failures are
    logged and contained to the entry (or, for listing, the tick).
    """

    if now is None:
        now = time.time()
    ttl_minutes = settings.max_age_minutes

    try:
        entries = list(settings.upload_dir.iterdir())
    except OSError as error:
        sweeper_logger.error(
            "sweep_list_failed dir=%s error=%s", settings.upload_dir, error
        )
        return 0

    if not entries:
        return 0

    workers = max(1, min(settings.sweep_workers, len(entries)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sweep") as pool:
        results = list(pool.map(lambda entry: _sweep_entry(entry, now, ttl_minutes), entries))

    removed = sum(1 for deleted in results if deleted)
    if removed:
        sweeper_logger.info("sweep_completed removed=%d scanned=%d", removed, len(entries))
    return removed
