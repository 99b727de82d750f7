import locale
import logging
import os
import secrets
import shutil
import time
import uuid
from contextlib import contextmanager
from datetime import timedelta
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from secrets import compare_digest
from typing import Any, Dict, Iterator, Optional

from flask import (
    Flask,
    Response,
    g,
    has_request_context,
    jsonify,
    request,
    session,
    stream_with_context,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage

from .naming import content_disposition, sanitize_log_value
from .storage import (
    BYTES_PER_MB,
    CHUNK_SIZE_BYTES,
    LOGS_DIR,
    MAX_ALLOCATION_ATTEMPTS,
    MAX_UPLOAD_SIZE_MB,
    METADATA_DIR_NAME,
    UPLOADS_DIR,
    AllocationExhaustedError,
    EntryExistsError,
    EntryNotFoundError,
    PathTraversalError,
    UploadBatch,
    ValidationError,
    _safe_int_env,
    delete_entry,
    ensure_upload_root,
    get_entry_info,
    list_tree,
    open_for_download,
    rename_entry,
)

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

config_logger = logging.getLogger("filedrop.config")
security_logger = logging.getLogger("filedrop.security")


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


def _configure_file_logging(logs_dir: Path) -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

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


def _configure_collation() -> None:
    """Sort listings with the collation rules of the configured locale."""

    try:
        locale.setlocale(locale.LC_COLLATE, "")
    except locale.Error as error:
        config_logger.warning("collation_locale_unavailable error=%s", error)


def _get_optional_bool_env(env_key: str) -> Optional[bool]:
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


def _load_secret_key(metadata_dir: Path) -> str:
    env_secret = os.environ.get("SECRET_KEY")
    if env_secret:
        return env_secret

    secret_path = metadata_dir / ".secret_key"
    try:
        # Exclusive creation so that concurrent workers agree on one key
        try:
            fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            existing = secret_path.read_text(encoding="utf-8").strip()
            if existing:
                return existing
            config_logger.warning("Secret key file exists but is empty, using in-memory key")
            return secrets.token_hex(32)

        generated = secrets.token_hex(32)
        with os.fdopen(fd, "w", encoding="utf-8") as secret_file:
            secret_file.write(generated)
            secret_file.flush()
            os.fsync(secret_file.fileno())
        config_logger.warning("Generated new secret key - stored in %s", secret_path)
        return generated
    except OSError as error:
        config_logger.critical(
            "SECURITY WARNING: Using in-memory secret key. Sessions will not persist across restarts. "
            "Set SECRET_KEY environment variable for production use. Error: %s",
            error,
        )
        return secrets.token_hex(32)


_configure_collation()
UPLOAD_ROOT = ensure_upload_root(UPLOADS_DIR)
APP_LOG_PATH = _configure_file_logging(LOGS_DIR)

app = Flask(__name__)
app.config["UPLOAD_ROOT"] = UPLOAD_ROOT
app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_SIZE_MB * BYTES_PER_MB
app.config["SECRET_KEY"] = _load_secret_key(UPLOAD_ROOT / METADATA_DIR_NAME)
app.config["FILEDROP_PIN"] = os.environ.get("FILEDROP_PIN", "").strip() or None

_session_cookie_secure_override = _get_optional_bool_env("SESSION_COOKIE_SECURE")
if _session_cookie_secure_override is None:
    app.config["SESSION_COOKIE_SECURE"] = not app.config.get("TESTING", False)
else:
    app.config["SESSION_COOKIE_SECURE"] = _session_cookie_secure_override
app.config["SESSION_COOKIE_HTTPONLY"] = True
app.config["SESSION_COOKIE_SAMESITE"] = "Strict"
app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=24)
app.logger.setLevel(numeric_level)

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    storage_uri=os.environ.get("FILEDROP_RATE_LIMIT_STORAGE", "memory://"),
)

_base_lifecycle_logger = logging.getLogger("filedrop.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)


def upload_rate_limit_string() -> str:
    value = _safe_int_env("FILEDROP_RATE_LIMIT_UPLOADS_PER_HOUR", 100)
    return f"{value} per hour"


def download_rate_limit_string() -> str:
    value = _safe_int_env("FILEDROP_RATE_LIMIT_DOWNLOADS_PER_MINUTE", 120)
    return f"{value} per minute"


def pin_rate_limit_string() -> str:
    value = _safe_int_env("FILEDROP_RATE_LIMIT_PIN_PER_MINUTE", 10)
    return f"{value} per minute"


def upload_root() -> Path:
    return app.config["UPLOAD_ROOT"]


def pin_required() -> bool:
    return bool(app.config.get("FILEDROP_PIN"))


def _pin_matches(provided: Optional[str]) -> bool:
    expected = app.config.get("FILEDROP_PIN") or ""
    if not provided or not expected:
        return False
    return compare_digest(provided.strip().encode("utf-8"), expected.encode("utf-8"))


def require_pin(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not pin_required() or session.get("pin_verified"):
            return view(*args, **kwargs)

        if _pin_matches(request.headers.get("X-Pin")):
            return view(*args, **kwargs)

        lifecycle_logger.warning(
            "pin_auth_failed endpoint=%s method=%s ip=%s",
            request.endpoint,
            request.method,
            request.remote_addr or "unknown",
        )
        return jsonify({"error": "Authentication required"}), 401

    return wrapped


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload/input stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        _close_stream_safely(
            getattr(file_storage, "stream", None),
            f"upload_stream_handler filename={sanitize_log_value(file_storage.filename or 'unknown')}",
        )


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    """Attach security-focused response headers."""

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(PathTraversalError)
def handle_access_denied(error: PathTraversalError):
    return jsonify({"error": "Access denied"}), 403


@app.errorhandler(EntryNotFoundError)
def handle_missing_entry(error: EntryNotFoundError):
    lifecycle_logger.info("entry_missing path=%s", sanitize_log_value(error.raw_path))
    return jsonify({"error": "File or directory not found"}), 404


@app.errorhandler(EntryExistsError)
def handle_entry_conflict(error: EntryExistsError):
    return jsonify({"error": "A file or directory with that name already exists"}), 409


@app.errorhandler(ValidationError)
def handle_validation_error(error: ValidationError):
    return jsonify({"error": str(error)}), 400


@app.errorhandler(AllocationExhaustedError)
def handle_allocation_exhausted(error: AllocationExhaustedError):
    lifecycle_logger.error(
        "allocation_exhausted name=%s attempts=%d",
        sanitize_log_value(error.desired_path.name),
        error.attempts,
    )
    return jsonify({"error": "Could not find a free file name"}), 500


@app.errorhandler(413)
def handle_file_too_large(error):  # pragma: no cover - framework hook
    return jsonify({"error": "File too large"}), 413


@app.errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True
    root = upload_root()

    try:
        usage = shutil.disk_usage(root)
        disk_free_gb = usage.free / (1024 ** 3)
        checks["disk_space_gb"] = round(disk_free_gb, 2)
        if disk_free_gb < 1:
            checks["disk_space_status"] = "critical"
            healthy = False
        elif disk_free_gb < 5:
            checks["disk_space_status"] = "warning"
        else:
            checks["disk_space_status"] = "ok"
    except OSError as error:
        checks["disk_space_gb"] = 0
        checks["disk_space_status"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        probe_file = root / METADATA_DIR_NAME / f".health_check_{uuid.uuid4().hex}"
        probe_file.write_text("health_check", encoding="utf-8")
        probe_file.unlink(missing_ok=True)
        checks["uploads_writable"] = "ok"
    except OSError as error:
        checks["uploads_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    status = "healthy" if healthy else "unhealthy"
    code = 200 if healthy else 503
    return jsonify({"status": status, "timestamp": time.time(), "checks": checks}), code


@app.route("/api/auth/pin-required")
def pin_status():
    pin = app.config.get("FILEDROP_PIN") or ""
    return jsonify({"required": bool(pin), "length": len(pin)})


@app.route("/api/auth/verify-pin", methods=["POST"])
@limiter.limit(lambda: pin_rate_limit_string())
def verify_pin():
    if not pin_required():
        return jsonify({"success": True, "error": None})

    payload = request.get_json(silent=True) or {}
    provided = payload.get("pin") if isinstance(payload, dict) else None
    if not isinstance(provided, str) or not provided.strip():
        return jsonify({"error": "PIN is required"}), 400

    if not _pin_matches(provided):
        security_logger.warning(
            "pin_verification_failed ip=%s", request.remote_addr or "unknown"
        )
        return jsonify({"error": "Invalid PIN"}), 401

    session.clear()
    session.permanent = True
    session["pin_verified"] = True
    lifecycle_logger.info("pin_verified ip=%s", request.remote_addr or "unknown")
    return jsonify({"success": True})


@app.route("/api/auth/logout", methods=["POST"])
def logout():
    session.pop("pin_verified", None)
    return jsonify({"success": True})


@app.route("/api/upload", methods=["POST"])
@require_pin
@limiter.limit(lambda: upload_rate_limit_string())
def upload_files():
    uploads = request.files.getlist("file")
    relative_paths = request.form.getlist("relativePath")
    batch = UploadBatch(upload_root(), max_attempts=MAX_ALLOCATION_ATTEMPTS)

    stored = []
    for index, upload in enumerate(uploads):
        with upload_stream_handler(upload):
            raw_path = relative_paths[index] if index < len(relative_paths) else ""
            raw_path = raw_path or upload.filename
            if not raw_path:
                continue
            try:
                stored.append(batch.save(raw_path, upload.stream))
            except OSError as error:
                lifecycle_logger.exception(
                    "upload_failed filename=%s error=%s",
                    sanitize_log_value(raw_path),
                    error,
                )
                return jsonify({"error": "Failed to store uploaded file"}), 500

    if not stored:
        return jsonify({"error": "No files provided"}), 400

    lifecycle_logger.info("upload_completed count=%d", len(stored))
    return jsonify({"message": "Upload complete", "files": stored}), 201


@app.route("/api/files/")
@require_pin
def list_files():
    listing = list_tree(upload_root())
    return jsonify(listing.to_dict())


@app.route("/api/files/info/<path:file_path>")
@require_pin
def file_info(file_path: str):
    try:
        info = get_entry_info(upload_root(), file_path)
    except OSError as error:
        lifecycle_logger.error(
            "file_info_failed path=%s error=%s", sanitize_log_value(file_path), error
        )
        return jsonify({"error": "Failed to read file information"}), 500
    return jsonify(info)


@app.route("/api/files/download/<path:file_path>")
@require_pin
@limiter.limit(lambda: download_rate_limit_string())
def download_file(file_path: str):
    try:
        target, handle, size = open_for_download(upload_root(), file_path)
    except OSError as error:
        lifecycle_logger.error(
            "file_download_failed path=%s error=%s", sanitize_log_value(file_path), error
        )
        return jsonify({"error": "Failed to download file"}), 500

    def generate() -> Iterator[bytes]:
        try:
            for chunk in iter(lambda: handle.read(CHUNK_SIZE_BYTES), b""):
                yield chunk
        except OSError as error:
            # Headers are already sent; ending early leaves a short body.
            lifecycle_logger.error(
                "file_download_stream_failed path=%s error=%s",
                sanitize_log_value(file_path),
                error,
            )
        finally:
            handle.close()

    lifecycle_logger.info("file_download_started path=%s", sanitize_log_value(file_path))
    response = Response(
        stream_with_context(generate()), mimetype="application/octet-stream"
    )
    response.headers["Content-Disposition"] = content_disposition(target.name)
    response.headers["Content-Length"] = str(size)
    return response


@app.route("/api/files/<path:file_path>", methods=["DELETE"])
@require_pin
def delete_file(file_path: str):
    try:
        kind = delete_entry(upload_root(), file_path)
    except OSError as error:
        lifecycle_logger.error(
            "delete_failed path=%s error=%s", sanitize_log_value(file_path), error
        )
        return jsonify({"error": "Failed to delete item"}), 500

    if kind == "directory":
        return jsonify({"message": "Directory deleted successfully"})
    return jsonify({"message": "File deleted successfully"})


@app.route("/api/files/rename/<path:file_path>", methods=["PUT"])
@require_pin
def rename_file(file_path: str):
    payload = request.get_json(silent=True) or {}
    new_name = payload.get("newName") if isinstance(payload, dict) else None
    try:
        result = rename_entry(upload_root(), file_path, new_name)
    except OSError as error:
        lifecycle_logger.error(
            "rename_failed path=%s error=%s", sanitize_log_value(file_path), error
        )
        return jsonify({"error": "Failed to rename item"}), 500
    return jsonify(result)


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "3000")), debug=False)
