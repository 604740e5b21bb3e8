import atexit
import base64
import io
import logging
import os
import re
import threading
import time
import uuid
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, Response, g, has_request_context, jsonify, request, send_file
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import HTTPException

from .errors import BadRequestError, CloudShareError, NotFoundError, UnauthorizedError
from .lifecycle import (
    RECORD_TYPES,
    batch_delete_records,
    cleanup_expired_records,
    coerce_bool,
    consume_record,
    create_record,
    decode_content,
    delete_record,
    get_record_statistics,
    list_records,
    load_record,
    record_kind,
    record_url,
    verify_admin,
)
from .storage import (
    ADMIN_LIST_CACHE_TTL,
    BYTES_PER_MB,
    LOGS_DIR,
    build_store,
    content_key,
    ensure_directories,
    load_config,
)
from .subscription import DISPOSITION_HEADER, build_subscription_headers, resolve_subscription
from .units import human_filesize

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 3
MAX_ADMIN_LIST_LIMIT = 500
DEFAULT_ADMIN_LIST_LIMIT = 100

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS, DELETE",
}

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f]")


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


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


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    ensure_directories()
    log_path = LOGS_DIR / "application.log"
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


APP_LOG_PATH = _configure_file_logging()

_base_lifecycle_logger = logging.getLogger("cloudshare.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)
scheduler_logger = logging.getLogger("cloudshare.scheduler")

_CONFIG_CACHE: Dict[str, Any] = load_config()
_config_lock = threading.RLock()


def get_config(refresh: bool = False) -> Dict[str, Any]:
    global _CONFIG_CACHE
    with _config_lock:
        if refresh:
            _CONFIG_CACHE = load_config()
        return _CONFIG_CACHE.copy()


def _coerce_positive_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(float(value))
    except (TypeError, ValueError):
        return max(1, fallback)
    return max(1, parsed)


def max_upload_bytes() -> int:
    return int(get_config()["max_upload_size_mb"] * BYTES_PER_MB)


def upload_rate_limit_string() -> str:
    value = _coerce_positive_int(get_config().get("upload_rate_limit_per_hour"), 100)
    return f"{value} per hour"


def download_rate_limit_string() -> str:
    value = _coerce_positive_int(get_config().get("download_rate_limit_per_minute"), 120)
    return f"{value} per minute"


def login_rate_limit_string() -> str:
    value = _coerce_positive_int(get_config().get("login_rate_limit_per_minute"), 10)
    return f"{value} per minute"


store = build_store(_CONFIG_CACHE)

app = Flask(__name__)
# Room for multipart framing around a payload at the ceiling.
app.config["MAX_CONTENT_LENGTH"] = max_upload_bytes() + BYTES_PER_MB
app.json.ensure_ascii = False
app.logger.setLevel(numeric_level)

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    storage_uri=os.environ.get("CLOUDSHARE_RATE_LIMIT_STORAGE", "memory://"),
)

ADMIN_PREFIX = f"/api/{_CONFIG_CACHE['admin_path']}"


def _extract_bearer_token() -> Optional[str]:
    authorization = request.headers.get("Authorization", "").strip()
    if authorization.startswith("Bearer "):
        return authorization[7:]
    return None


def require_admin(view: Callable):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not verify_admin(_extract_bearer_token(), get_config()["admin_password"]):
            lifecycle_logger.warning(
                "admin_auth_failed endpoint=%s method=%s ip=%s",
                request.endpoint,
                request.method,
                request.remote_addr or "unknown",
            )
            raise UnauthorizedError("Unauthorized")
        return view(*args, **kwargs)

    return wrapped


def _access_entry() -> Dict[str, str]:
    return {
        "ip": request.headers.get("X-Forwarded-For", request.remote_addr or "").split(",")[0].strip(),
        "userAgent": request.headers.get("User-Agent", ""),
    }


def _content_response(record: Dict[str, Any], body: bytes, *, as_attachment: bool) -> Response:
    mimetype = (record.get("contentType") or "").split(";")[0].strip()
    response = send_file(
        io.BytesIO(body),
        mimetype=mimetype or "application/octet-stream",
        as_attachment=as_attachment,
        download_name=record.get("filename") or "file",
        conditional=False,
        etag=False,
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@app.before_request
def add_request_id() -> Optional[Response]:
    """Assign a request identifier and answer CORS preflight requests."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    if request.method == "OPTIONS":
        return Response(status=200)
    return None


@app.after_request
def log_request_completion(response: Response):
    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_cors_headers(response: Response):
    for key, value in CORS_HEADERS.items():
        response.headers[key] = value
    return response


@app.after_request
def add_request_id_header(response: Response):
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(CloudShareError)
def handle_cloudshare_error(error: CloudShareError):
    if error.status_code >= 500:
        lifecycle_logger.error(
            "request_failed path=%s error=%s detail=%s",
            sanitize_log_value(request.path),
            error,
            sanitize_log_value(error.detail),
        )
    return jsonify(error.to_payload()), error.status_code


@app.errorhandler(413)
def handle_payload_too_large(error):  # pragma: no cover - framework hook
    return jsonify({"error": "Too large"}), 400


@app.errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429


@app.errorhandler(HTTPException)
def handle_http_exception(error: HTTPException):
    return jsonify({"error": error.name}), error.code or 500


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        store.ping()
        checks["store"] = "ok"
    except CloudShareError as error:
        checks["store"] = f"error: {str(error)[:100]}"
        healthy = False

    if scheduler is not None:
        job = scheduler.get_job("cleanup_expired_records")
        checks["cleanup"] = "scheduled" if job and job.next_run_time else "not_scheduled"
        if job and job.next_run_time:
            checks["cleanup_next_run"] = job.next_run_time.isoformat()
        checks["scheduler_running"] = bool(scheduler.running)
    else:
        checks["cleanup"] = "not_scheduled"
        checks["scheduler_running"] = False

    status = "healthy" if healthy else "unhealthy"
    return jsonify({"status": status, "timestamp": time.time(), "checks": checks}), (
        200 if healthy else 503
    )


@app.route("/api/config")
def site_config():
    config = get_config()
    return jsonify(
        {
            "siteName": config["site_name"],
            "telegramBot": config["telegram_bot"],
            "footerText": config["footer_text"],
        }
    )


@app.route("/api/upload", methods=["POST"])
@limiter.limit(lambda: upload_rate_limit_string())
def upload():
    limit = max_upload_bytes()
    if request.mimetype == "multipart/form-data":
        upload_file = request.files.get("file")
        if not isinstance(upload_file, FileStorage) or not upload_file.filename:
            lifecycle_logger.warning("upload_failed reason=no_file")
            raise BadRequestError("No file")
        data = upload_file.read()
        form = request.form
        record = create_record(
            store,
            base64.b64encode(data).decode("ascii"),
            filename=upload_file.filename,
            content_type=upload_file.content_type or "application/octet-stream",
            kind="file",
            raw_size=len(data),
            burn_after_read=coerce_bool(form.get("burnAfterRead")),
            expires_in=form.get("expiresIn"),
            max_downloads=form.get("maxDownloads"),
            custom_slug=form.get("customSlug"),
            subscription_info=form.get("subscriptionInfo"),
            max_upload_bytes=limit,
        )
    else:
        payload = request.get_json(force=True, silent=True)
        if not isinstance(payload, dict):
            lifecycle_logger.warning("upload_failed reason=invalid_json")
            raise BadRequestError("Invalid JSON body")
        content = payload.get("content") or ""
        if not isinstance(content, str):
            raise BadRequestError("Invalid content")
        kind = payload.get("type") or "text"
        if kind == "file":
            raise BadRequestError("Use multipart/form-data for file uploads")
        record = create_record(
            store,
            content,
            filename=payload.get("filename") or "text.txt",
            content_type=payload.get("contentType") or "text/plain",
            kind=kind,
            burn_after_read=coerce_bool(payload.get("burnAfterRead")),
            expires_in=payload.get("expiresIn"),
            max_downloads=payload.get("maxDownloads"),
            custom_slug=payload.get("customSlug"),
            subscription_info=payload.get("subscriptionInfo"),
            max_upload_bytes=limit,
        )

    lifecycle_logger.info(
        "record_uploaded record_id=%s type=%s filename=%s size=%d",
        record["id"],
        record["type"],
        sanitize_log_value(record["filename"]),
        record["size"],
    )
    return jsonify({"id": record["id"], "url": record_url(record)})


@app.route("/raw/<record_id>")
@limiter.limit(lambda: download_rate_limit_string())
def raw(record_id: str):
    record, content = consume_record(store, record_id, access=_access_entry())
    body = decode_content(record, content)
    overlay = build_subscription_headers(record.get("subscriptionInfo"))
    response = _content_response(
        record, body, as_attachment=DISPOSITION_HEADER not in overlay
    )
    for key, value in overlay.items():
        response.headers[key] = value
    lifecycle_logger.info("record_raw_served record_id=%s bytes=%d", record_id, len(body))
    return response


@app.route("/sub/<record_id>")
@limiter.limit(lambda: download_rate_limit_string())
def sub(record_id: str):
    record, content = consume_record(store, record_id, access=_access_entry())
    headers: Dict[str, str] = {}
    proxied = record_kind(record) == "subscription" and content.startswith("http")
    if proxied:
        config = get_config()
        body, headers = resolve_subscription(
            content,
            record.get("subscriptionInfo"),
            timeout=config["upstream_timeout"],
            user_agent=config["upstream_user_agent"],
            check_url=config["upstream_ssrf_protection"],
        )
    else:
        body = content

    response = Response(body, content_type="text/plain; charset=utf-8")
    response.headers["Cache-Control"] = "no-store"
    for key, value in headers.items():
        response.headers[key] = value
    lifecycle_logger.info("record_sub_served record_id=%s proxied=%s", record_id, proxied)
    return response


@app.route("/api/file/<record_id>")
def file_metadata(record_id: str):
    record = load_record(store, record_id)
    if record is None:
        raise NotFoundError("Not found")
    record.pop("accessLogs", None)
    return jsonify(record)


@app.route(f"{ADMIN_PREFIX}/login", methods=["POST"])
@limiter.limit(lambda: login_rate_limit_string())
def admin_login():
    payload = request.get_json(force=True, silent=True)
    if not isinstance(payload, dict):
        raise BadRequestError("Invalid request")
    password = payload.get("password")
    if not isinstance(password, str) or not verify_admin(password, get_config()["admin_password"]):
        lifecycle_logger.warning("admin_login_failed ip=%s", request.remote_addr or "unknown")
        raise UnauthorizedError("Invalid password")
    lifecycle_logger.info("admin_login_succeeded ip=%s", request.remote_addr or "unknown")
    return jsonify({"success": True})


@app.route(f"{ADMIN_PREFIX}/records")
@require_admin
def admin_records():
    kind = request.args.get("type") or None
    if kind and kind != "all" and kind not in RECORD_TYPES:
        raise BadRequestError("Invalid type filter")
    status = request.args.get("status") or None
    if status and status not in {"all", "active", "expired", "burnAfterRead"}:
        raise BadRequestError("Invalid status filter")
    limit = request.args.get("limit", DEFAULT_ADMIN_LIST_LIMIT, type=int)
    limit = max(1, min(limit, MAX_ADMIN_LIST_LIMIT))

    records, total = list_records(
        store,
        search=request.args.get("q"),
        kind=kind,
        status=status,
        limit=limit,
        cache_ttl=ADMIN_LIST_CACHE_TTL,
    )
    return jsonify({"records": records, "total": total})


@app.route(f"{ADMIN_PREFIX}/delete/<record_id>", methods=["DELETE"])
@require_admin
def admin_delete(record_id: str):
    existed = delete_record(store, record_id)
    lifecycle_logger.info(
        "record_deleted_manual record_id=%s existed=%s ip=%s",
        sanitize_log_value(record_id),
        existed,
        request.remote_addr or "unknown",
    )
    return jsonify({"success": True})


@app.route(f"{ADMIN_PREFIX}/batch-delete", methods=["POST"])
@require_admin
def admin_batch_delete():
    payload = request.get_json(force=True, silent=True)
    ids = payload.get("ids") if isinstance(payload, dict) else None
    if not isinstance(ids, list):
        raise BadRequestError("Invalid request", detail="Expected {\"ids\": [...]}")
    return jsonify(batch_delete_records(store, ids))


@app.route(f"{ADMIN_PREFIX}/download/<record_id>")
@require_admin
def admin_download(record_id: str):
    record = load_record(store, record_id)
    if record is None:
        raise NotFoundError("Not found")
    content = store.get(content_key(record_id))
    if content is None:
        raise NotFoundError("No content")
    return _content_response(record, decode_content(record, content), as_attachment=True)


@app.route(f"{ADMIN_PREFIX}/stats")
@require_admin
def admin_stats():
    stats = get_record_statistics(store, cache_ttl=ADMIN_LIST_CACHE_TTL)
    stats["totalSizeHuman"] = human_filesize(stats["totalSize"])
    return jsonify(stats)


@app.route(f"{ADMIN_PREFIX}/cleanup", methods=["POST"])
@require_admin
def admin_cleanup():
    result = cleanup_expired_records(store)
    lifecycle_logger.info(
        "cleanup_manual deleted=%d errors=%d", result["deleted"], result["errors"]
    )
    return jsonify(result)


def run_scheduled_cleanup() -> Dict[str, int]:
    try:
        result = cleanup_expired_records(store)
    except CloudShareError:
        scheduler_logger.exception("scheduled_cleanup_failed")
        return {"deleted": 0, "errors": 1}
    scheduler_logger.info(
        "scheduled_cleanup_completed deleted=%d errors=%d", result["deleted"], result["errors"]
    )
    return result


# Periodic sweep so expired records are removed even if nobody reads them.
cleanup_interval_minutes_setting = _coerce_positive_int(
    _CONFIG_CACHE.get("cleanup_interval_minutes"), 30
)
scheduler = BackgroundScheduler(daemon=True)
scheduler.add_job(
    func=run_scheduled_cleanup,
    trigger="interval",
    minutes=cleanup_interval_minutes_setting,
    id="cleanup_expired_records",
    name="Clean up expired records",
    replace_existing=True,
)
scheduler.start()


def _shutdown_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)


atexit.register(_shutdown_scheduler)

run_scheduled_cleanup()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")), debug=False)
