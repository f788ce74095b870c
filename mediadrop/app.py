import atexit
import logging
import re
import uuid
from contextlib import contextmanager
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from secrets import compare_digest
from typing import Any, Callable, Iterator, Optional
from urllib.parse import quote

from apscheduler.schedulers.background import BackgroundScheduler
from flask import (
    Blueprint,
    Flask,
    Response,
    abort,
    current_app,
    g,
    has_request_context,
    jsonify,
    request,
    send_from_directory,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage

from .settings import Settings, load_settings
from .storage import (
    FileValidationError,
    delete_stored_file,
    ensure_directories,
    save_upload,
    sweep_expired_files,
)

BEARER_PREFIX = "Bearer "
SETTINGS_CONFIG_KEY = "MEDIADROP_SETTINGS"
SCHEDULER_EXTENSION_KEY = "mediadrop.scheduler"
SWEEP_JOB_ID = "sweep_expired_files"
STATIC_MAX_AGE_SECONDS = 3600
# Room for multipart boundaries and the ``name`` field on top of the file limit.
MULTIPART_OVERHEAD_BYTES = 64 * 1024
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")

bp = Blueprint("media", __name__)
limiter = Limiter(key_func=get_remote_address)


def sanitize_log_value(value: Any) -> Any:
    """Escape control characters in client-supplied text before it is logged.

    Filenames, MIME types and request paths come straight from the client, so
    a newline in any of them could forge a log line.
    """

    if not isinstance(value, str):
        return value
    return _CONTROL_CHAR_PATTERN.sub(lambda match: repr(match.group())[1:-1], value)


class RequestAwareLogger(logging.LoggerAdapter):
    """Prefixes lifecycle messages with ``request_id=`` inside a request."""

    def process(self, msg, kwargs):
        request_id = getattr(g, "request_id", None) if has_request_context() else None
        if request_id:
            msg = f"request_id={request_id} {msg}"
        return msg, kwargs


lifecycle_logger = RequestAwareLogger(logging.getLogger("mediadrop.lifecycle"), {})
sweeper_logger = logging.getLogger("mediadrop.sweeper")


def configure_logging(settings: Settings) -> Optional[Path]:
    """Configure root logging and, when a log directory is set, a rotating file."""

    numeric_level = getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    if settings.log_dir is None:
        return None

    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_path = settings.log_dir / "application.log"
    formatter = logging.Formatter(LOG_FORMAT)

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


def current_settings() -> Settings:
    return current_app.config[SETTINGS_CONFIG_KEY]


def bearer_matches(header: Optional[str], secret: str) -> bool:
    """Return True when *header* is exactly ``"Bearer " + secret``.

    WSGI hands header values over as latin-1 decoded text, so the raw bytes
    are recovered before comparing against the UTF-8 encoded secret.
    """

    if not secret or not header or not header.startswith(BEARER_PREFIX):
        return False
    try:
        provided = header[len(BEARER_PREFIX):].encode("latin-1")
    except UnicodeEncodeError:
        return False
    return compare_digest(provided, secret.encode("utf-8"))


def require_bearer(view: Callable):
    @wraps(view)
    def wrapped(*args, **kwargs):
        settings = current_settings()
        if not settings.upload_token:
            lifecycle_logger.error(
                "auth_misconfigured reason=upload_token_unset endpoint=%s",
                request.endpoint,
            )
            return jsonify({"error": "UPLOAD_TOKEN not set"}), 500

        if not bearer_matches(request.headers.get("Authorization"), settings.upload_token):
            lifecycle_logger.warning(
                "auth_failed endpoint=%s method=%s", request.endpoint, request.method
            )
            return jsonify({"error": "Unauthorized"}), 401

        return view(*args, **kwargs)

    return wrapped


def upload_rate_limit_string() -> str:
    return f"{current_settings().upload_rate_limit_per_hour} per hour"


def build_public_url(settings: Settings, filename: str) -> str:
    base = settings.public_base.rstrip("/") or request.host_url.rstrip("/")
    return f"{base}/files/{quote(filename, safe='')}"


@contextmanager
def open_upload_part(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Yield the multipart ``file`` part and close its spooled body afterwards."""

    try:
        yield file_storage
    finally:
        try:
            file_storage.close()
        except OSError as error:
            lifecycle_logger.warning(
                "upload_part_close_failed filename=%s error=%s",
                sanitize_log_value(file_storage.filename or ""),
                error,
            )


@bp.before_app_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@bp.after_app_request
def log_request_completion(response: Response):
    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@bp.after_app_request
def add_response_headers(response: Response):
    """Attach security headers and expose the request identifier."""

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@bp.app_errorhandler(413)
def handle_file_too_large(error):
    lifecycle_logger.warning(
        "upload_rejected reason=too_large content_length=%s", request.content_length
    )
    return jsonify({"error": "File too large"}), 400


@bp.app_errorhandler(429)
def handle_rate_limit(error):
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429


@bp.app_errorhandler(404)
def not_found(error):
    return jsonify({"error": "Not found"}), 404


@bp.route("/health")
def health_check():
    return jsonify({"ok": True})


@bp.route("/upload", methods=["POST"])
@require_bearer
@limiter.limit(upload_rate_limit_string)
def upload():
    settings = current_settings()

    upload_storage = request.files.get("file")
    if upload_storage is None:
        lifecycle_logger.warning("upload_failed reason=no_file_part")
        return jsonify({"error": "No file uploaded"}), 400

    suggested_name = request.form.get("name", "")
    with open_upload_part(upload_storage) as upload_file:
        try:
            stored = save_upload(
                upload_file.stream,
                settings,
                original_name=upload_file.filename,
                mimetype=upload_file.mimetype,
                suggested_name=suggested_name,
            )
        except FileValidationError as error:
            lifecycle_logger.warning(
                "upload_rejected reason=%s filename=%s mimetype=%s",
                error.reason,
                sanitize_log_value(upload_file.filename or ""),
                sanitize_log_value(upload_file.mimetype or ""),
            )
            return jsonify(error.to_payload()), 400
        except OSError:
            lifecycle_logger.exception(
                "file_upload_failed filename=%s",
                sanitize_log_value(upload_file.filename or ""),
            )
            return jsonify({"error": "Failed to store file"}), 500

    lifecycle_logger.info(
        "file_uploaded filename=%s size=%d mimetype=%s",
        stored.filename,
        stored.size,
        stored.content_type,
    )
    return jsonify(
        {
            "url": build_public_url(settings, stored.filename),
            "filename": stored.filename,
            "size": stored.size,
            "mimetype": stored.content_type,
        }
    )


@bp.route("/files/<name>", methods=["GET"])
def serve_file(name: str):
    if name.startswith("."):
        abort(404)
    return send_from_directory(
        current_settings().upload_dir,
        name,
        max_age=STATIC_MAX_AGE_SECONDS,
        etag=False,
    )


@bp.route("/files/<name>", methods=["DELETE"])
@require_bearer
def delete_file(name: str):
    try:
        deleted_name = delete_stored_file(current_settings(), name)
    except FileValidationError as error:
        lifecycle_logger.warning(
            "file_delete_rejected name=%s", sanitize_log_value(name)
        )
        return jsonify(error.to_payload()), 400
    except OSError as error:
        lifecycle_logger.error(
            "file_delete_failed name=%s error=%s",
            sanitize_log_value(name),
            error,
        )
        return jsonify({"error": str(error)}), 500

    return jsonify({"deleted": True, "name": deleted_name})


def _shutdown_scheduler(scheduler: BackgroundScheduler) -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)


def start_sweeper(app: Flask, settings: Settings) -> Optional[BackgroundScheduler]:
    """Schedule the retention sweep, or log once that it is disabled."""

    if not settings.sweeper_enabled:
        sweeper_logger.warning(
            "auto_clean_disabled max_age_minutes=%s", settings.max_age_minutes
        )
        return None

    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=sweep_expired_files,
        trigger="interval",
        minutes=settings.sweep_interval_minutes,
        args=[settings],
        id=SWEEP_JOB_ID,
        name="Sweep expired uploads",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    scheduler.start()
    app.extensions[SCHEDULER_EXTENSION_KEY] = scheduler
    atexit.register(_shutdown_scheduler, scheduler)
    sweeper_logger.info(
        "auto_clean_enabled max_age_minutes=%s interval_minutes=%.1f",
        settings.max_age_minutes,
        settings.sweep_interval_minutes,
    )
    return scheduler


def stop_sweeper(app: Flask) -> None:
    scheduler = app.extensions.pop(SCHEDULER_EXTENSION_KEY, None)
    if scheduler is not None:
        _shutdown_scheduler(scheduler)


def create_app(settings: Optional[Settings] = None, *, start_scheduler: bool = True) -> Flask:
    if settings is None:
        settings = load_settings()

    configure_logging(settings)
    ensure_directories(settings)

    app = Flask(__name__)
    app.config[SETTINGS_CONFIG_KEY] = settings
    app.config["MAX_CONTENT_LENGTH"] = settings.max_upload_bytes + MULTIPART_OVERHEAD_BYTES
    app.config["RATELIMIT_ENABLED"] = settings.upload_rate_limit_per_hour > 0
    app.config["RATELIMIT_STORAGE_URI"] = settings.rate_limit_storage_uri
    limiter.init_app(app)
    app.register_blueprint(bp)

    if not settings.upload_token:
        logging.getLogger("mediadrop.config").warning(
            "UPLOAD_TOKEN is not set; upload and delete requests will be refused"
        )

    if start_scheduler:
        start_sweeper(app, settings)
    return app


def main() -> None:
    settings = load_settings()
    app = create_app(settings)
    lifecycle_logger.info("server_listening port=%d", settings.port)
    app.run(host="0.0.0.0", port=settings.port, debug=False)


if __name__ == "__main__":
    main()
