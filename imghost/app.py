import atexit
import logging
import os
import shutil
import time
import uuid
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, Response, g, has_request_context, jsonify, request, send_file
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix

from . import storage
from .errors import (
    AuthError,
    ImageHostError,
    InternalError,
    NotFound,
    QuotaExceeded,
    ValidationError,
)
from .identity import (
    authenticate,
    can_use_subdomain,
    delete_owner,
    find_owner_by_handle,
    get_owner,
    list_owners,
    list_subdomain_overrides,
    register_owner,
    reset_token,
    resolve_identity,
    set_subdomain_override,
    update_owner,
    update_watermark,
)
from .ratelimit import (
    DAILY_WINDOW_SECONDS,
    HOURLY_WINDOW_SECONDS,
    apply_headers,
    get_counter,
    purge_expired_counters,
)
from .resolver import extract_tenant, list_tenant_images, resolve_request
from .security import (
    get_secret_key_value,
    issue_admin_token,
    sanitize_log_value,
    verify_admin_token,
)
from .uploads import delete_asset, handle_upload, list_owner_assets, public_base_url
from .watermark import watermark_queue


LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5MB per log file
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
CACHE_MAX_AGE_SECONDS = 86400
APP_VERSION = "1.0.0"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


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

    storage.ensure_directories()
    log_path = storage.LOGS_DIR / "application.log"
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

_base_lifecycle_logger = logging.getLogger("imghost.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)


class AmbiguousAPIKeyError(ValidationError):
    pass


_CONFIG_CACHE = storage.get_config()

app = Flask(__name__)

_proxy_hops = storage._safe_int_env("IMGHOST_PROXY_HOPS", 0, min_value=0)
if _proxy_hops:
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=_proxy_hops, x_proto=_proxy_hops, x_host=_proxy_hops)

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    storage_uri=os.environ.get("IMGHOST_RATE_LIMIT_STORAGE", "memory://"),
)


def download_rate_limit_string() -> str:
    value = storage.config_int(storage.get_config(), "download_rate_limit_per_minute")
    return f"{value} per minute"


def auth_rate_limit_string() -> str:
    value = storage.config_int(storage.get_config(), "auth_rate_limit_per_minute")
    return f"{value} per minute"


def _apply_upload_limit(config: Dict[str, Any]) -> None:
    # One extra megabyte of headroom for the multipart envelope; the exact
    # per-file limit is enforced while streaming.
    max_mb = storage.config_int(config, "max_upload_size_mb")
    app.config["MAX_CONTENT_LENGTH"] = (max_mb + 1) * storage.BYTES_PER_MB
    app.config["MAX_UPLOAD_SIZE_MB"] = max_mb


_apply_upload_limit(_CONFIG_CACHE)
app.config["SECRET_KEY"] = get_secret_key_value()
app.logger.setLevel(numeric_level)


@app.before_request
def refresh_upload_limit() -> None:
    """Track ``max_upload_size_mb`` edits made to config.json at runtime."""

    _apply_upload_limit(storage.get_config())


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s host=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.host),
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
    response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
    response.headers["Content-Security-Policy"] = (
        "default-src 'none'; img-src 'self' data:; style-src 'unsafe-inline'; sandbox"
    )
    return response


@app.after_request
def add_request_id_header(response: Response):
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(ImageHostError)
def handle_image_host_error(error: ImageHostError):
    if error.status_code >= 500:
        lifecycle_logger.error(
            "request_failed path=%s status=%d error=%s",
            sanitize_log_value(request.path),
            error.status_code,
            error.message,
        )
    response = jsonify(error.to_payload())
    response.status_code = error.status_code
    if isinstance(error, QuotaExceeded):
        apply_headers(response, error.decision)
    return response


@app.errorhandler(413)
def handle_file_too_large(error):  # pragma: no cover - framework hook
    max_mb = app.config.get("MAX_UPLOAD_SIZE_MB")
    return jsonify(
        {
            "success": False,
            "error": "File too large",
            "message": f"Maximum size is {max_mb} MB",
        }
    ), 413


@app.errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Too many requests")
    return jsonify(
        {"success": False, "error": "Rate limit exceeded", "message": str(description)}
    ), 429


@app.errorhandler(404)
def not_found(error):
    return jsonify({"success": False, "error": "Not found"}), 404


@app.errorhandler(405)
def method_not_allowed(error):
    return jsonify({"success": False, "error": "Method not allowed"}), 405


def _client_ip() -> str:
    return request.remote_addr or "unknown"


def _extract_api_key_from_request() -> Optional[str]:
    candidates: List[str] = []

    header_key = request.headers.get("X-API-Key")
    if header_key:
        candidates.append(header_key.strip())

    authorization = request.headers.get("Authorization", "").strip()
    if authorization.lower().startswith("bearer "):
        candidates.append(authorization[7:].strip())

    query_key = request.args.get("apiKey")
    if query_key:
        candidates.append(query_key.strip())

    unique = {candidate for candidate in candidates if candidate}
    if len(unique) > 1:
        raise AmbiguousAPIKeyError("Multiple API keys provided")
    return next(iter(unique)) if unique else None


def _json_payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None and request.form:
        payload = request.form.to_dict()
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _require_owner():
    token = _extract_api_key_from_request()
    if not token:
        raise AuthError("API key required")
    owner = resolve_identity(token, _client_ip(), strict=True).owner
    if owner.suspended:
        raise AuthError("Account suspended", status_code=403, error="Forbidden")
    return owner


def require_admin(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        authorization = request.headers.get("Authorization", "").strip()
        if not authorization.lower().startswith("bearer "):
            raise AuthError("Admin token required")
        claims = verify_admin_token(authorization[7:].strip())
        if claims is None:
            lifecycle_logger.warning(
                "admin_token_rejected ip=%s", sanitize_log_value(_client_ip())
            )
            raise AuthError("Invalid admin token", status_code=403, error="Forbidden")
        g.admin_subject = claims.get("sub", "admin")
        return view(*args, **kwargs)

    return wrapped


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        with storage.get_db() as conn:
            conn.execute("SELECT 1").fetchone()
            conn.execute("SELECT COUNT(*) FROM owners").fetchone()
        checks["database"] = "ok"
    except Exception as error:
        checks["database"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        usage = shutil.disk_usage(storage.UPLOADS_DIR)
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
        storage.ensure_directories()
        probe_file = storage.UPLOADS_DIR / f".health_check_{uuid.uuid4().hex}"
        probe_file.write_text("health_check", encoding="utf-8")
        probe_file.unlink(missing_ok=True)
        checks["uploads_writable"] = "ok"
    except OSError as error:
        checks["uploads_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    checks["scheduler_running"] = bool(scheduler.running)
    checks["watermark_workers"] = "running" if watermark_queue.running else "stopped"

    status = "healthy" if healthy else "unhealthy"
    code = 200 if healthy else 503

    return jsonify(
        {
            "status": status,
            "timestamp": time.time(),
            "checks": checks,
            "version": APP_VERSION,
        }
    ), code


@app.route("/api/upload", methods=["POST"])
def api_upload():
    token = _extract_api_key_from_request()
    try:
        result = handle_upload(request.files.get("image"), token, _client_ip())
    except ImageHostError:
        raise
    except Exception as error:
        lifecycle_logger.exception("upload_failed ip=%s", sanitize_log_value(_client_ip()))
        raise InternalError("Upload failed") from error

    response = Response(result.url, status=200, mimetype="text/plain")
    return apply_headers(response, result.decision)


@app.route("/i/<path:filename>", methods=["GET"])
@limiter.limit(lambda: download_rate_limit_string())
def serve_image(filename: str):
    resolved = resolve_request(request.host, filename)
    response = send_file(
        resolved.path,
        mimetype=resolved.content_type,
        conditional=True,
        max_age=CACHE_MAX_AGE_SECONDS,
    )
    response.headers["Cache-Control"] = f"public, max-age={CACHE_MAX_AGE_SECONDS}"
    return response


@app.route("/i/<path:filename>", methods=["DELETE"])
def delete_image(filename: str):
    identity = resolve_identity(_extract_api_key_from_request(), _client_ip())
    url = delete_asset(filename, identity)
    return jsonify({"success": True, "message": "Image deleted", "url": url})


@app.route("/i", methods=["GET"], strict_slashes=False)
@limiter.limit(lambda: download_rate_limit_string())
def tenant_index():
    if extract_tenant(request.host) is None:
        raise NotFound("Not found")
    return jsonify({"success": True, "data": list_tenant_images(request.host)})


@app.route("/api/auth/register", methods=["POST"])
@limiter.limit(lambda: auth_rate_limit_string())
def register():
    payload = _json_payload()
    owner, token = register_owner(payload.get("username"), payload.get("password"), _client_ip())
    return jsonify(
        {
            "success": True,
            "message": "User registered successfully",
            "data": {
                "user": owner.to_public_dict(),
                "apiKey": token,
                "baseUrl": public_base_url(owner),
            },
        }
    ), 201


@app.route("/api/auth/login", methods=["POST"])
@limiter.limit(lambda: auth_rate_limit_string())
def login():
    payload = _json_payload()
    owner, token = authenticate(payload.get("username"), payload.get("password"))
    lifecycle_logger.info("login_succeeded owner_id=%s", owner.id)
    return jsonify({"success": True, "data": {"user": owner.to_public_dict(), "apiKey": token}})


def _quota_usage(key: str, limit: int) -> Dict[str, Any]:
    counter = get_counter(key)
    used = 0
    reset_at = None
    if counter is not None and counter["reset_at"] > time.time():
        used = counter["count"]
        reset_at = counter["reset_at"]
    return {"limit": limit, "used": used, "remaining": max(0, limit - used), "resetAt": reset_at}


@app.route("/api/user/dashboard", methods=["GET"])
def user_dashboard():
    owner = _require_owner()
    return jsonify(
        {
            "success": True,
            "data": {
                "user": owner.to_public_dict(),
                "quota": {
                    "daily": _quota_usage(f"auth-daily:{owner.id}", owner.daily_limit),
                    "hourly": _quota_usage(f"auth-hourly:{owner.id}", owner.hourly_limit),
                    "windows": {"daily": DAILY_WINDOW_SECONDS, "hourly": HOURLY_WINDOW_SECONDS},
                },
                "subdomainEnabled": can_use_subdomain(owner),
                "uploads": list_owner_assets(owner, limit=50),
            },
        }
    )


@app.route("/api/user/watermark/settings", methods=["GET", "POST"])
def watermark_settings():
    owner = _require_owner()
    if request.method == "POST":
        owner = update_watermark(owner.id, _json_payload())
        lifecycle_logger.info("watermark_settings_updated owner_id=%s", owner.id)
    return jsonify({"success": True, "data": owner.watermark.to_dict()})


@app.route("/api/admin/users", methods=["GET"])
@require_admin
def admin_list_users():
    overrides = list_subdomain_overrides()
    users = []
    for owner in list_owners():
        entry = owner.to_public_dict()
        entry["subdomainOverride"] = overrides.get(owner.id)
        entry["subdomainEnabled"] = can_use_subdomain(owner)
        users.append(entry)
    return jsonify({"success": True, "data": {"users": users, "count": len(users)}})


@app.route("/api/admin/users/<owner_id>", methods=["PATCH"])
@require_admin
def admin_update_user(owner_id: str):
    payload = _json_payload()
    owner = update_owner(
        owner_id,
        daily_limit=payload.get("dailyLimit"),
        hourly_limit=payload.get("hourlyLimit"),
        suspended=payload.get("suspended"),
    )
    lifecycle_logger.info("admin_user_updated admin=%s owner_id=%s", g.admin_subject, owner_id)
    return jsonify({"success": True, "data": owner.to_public_dict()})


@app.route("/api/admin/users/<owner_id>/reset-api", methods=["POST"])
@require_admin
def admin_reset_api_key(owner_id: str):
    token = reset_token(owner_id)
    lifecycle_logger.info("admin_token_reset admin=%s owner_id=%s", g.admin_subject, owner_id)
    return jsonify({"success": True, "data": {"apiKey": token}})


@app.route("/api/admin/users/<owner_id>", methods=["DELETE"])
@require_admin
def admin_delete_user(owner_id: str):
    owner = delete_owner(owner_id)
    lifecycle_logger.info("admin_user_deleted admin=%s owner_id=%s", g.admin_subject, owner_id)
    return jsonify({"success": True, "message": f"User {owner.handle} deleted"})


@app.route("/api/admin/subdomain-settings", methods=["GET", "POST"])
@require_admin
def admin_subdomain_settings():
    if request.method == "POST":
        payload = _json_payload()
        enabled = payload.get("enabled")
        if not isinstance(enabled, bool):
            raise ValidationError("enabled must be a boolean")
        owner = None
        if payload.get("userId"):
            owner = get_owner(str(payload["userId"]))
        elif payload.get("username"):
            owner = find_owner_by_handle(str(payload["username"]))
        if owner is None:
            raise NotFound("User not found")
        set_subdomain_override(owner.id, enabled)

    config = storage.get_config()
    overrides = list_subdomain_overrides()
    entries = []
    for owner in list_owners():
        if owner.id in overrides:
            entries.append(
                {"userId": owner.id, "username": owner.handle, "enabled": overrides[owner.id]}
            )
    return jsonify(
        {"success": True, "data": {"mode": config["subdomain_mode"], "overrides": entries}}
    )


@app.route("/api/admin/subdomain-mode", methods=["GET", "POST"])
@require_admin
def admin_subdomain_mode():
    if request.method == "POST":
        mode = _json_payload().get("mode")
        if mode not in storage.SUBDOMAIN_MODES:
            raise ValidationError("mode must be 'enabled' or 'disabled'")
        storage.update_config({"subdomain_mode": mode})
        lifecycle_logger.info("subdomain_mode_changed admin=%s mode=%s", g.admin_subject, mode)
    return jsonify({"success": True, "data": {"mode": storage.get_config()["subdomain_mode"]}})


@app.route("/api/admin/analytics", methods=["GET"])
@require_admin
def admin_analytics():
    days = request.args.get("days", "30")
    try:
        days_value = max(1, min(int(days), 365))
    except ValueError:
        raise ValidationError("days must be an integer") from None
    summary = storage.get_analytics_summary(days_value)
    summary["storage"] = storage.get_storage_statistics()
    return jsonify({"success": True, "data": summary})


@app.cli.command("issue-admin-token")
@click.option("--subject", default="admin", show_default=True, help="Name recorded in the token.")
def issue_admin_token_command(subject: str) -> None:
    """Print a signed admin bearer token."""

    click.echo(issue_admin_token(subject))


scheduler = BackgroundScheduler(daemon=True)
scheduler.add_job(
    func=purge_expired_counters,
    trigger="interval",
    minutes=15,
    id="purge_expired_counters",
    name="Purge expired rate limit counters",
    replace_existing=True,
)
scheduler.add_job(
    func=storage.cleanup_temp_files,
    trigger="interval",
    hours=1,
    id="cleanup_temp_files",
    name="Clean up temporary files",
    replace_existing=True,
)
scheduler.start()
atexit.register(lambda: scheduler.shutdown(wait=False))

watermark_queue.start()
atexit.register(watermark_queue.shutdown)


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")), debug=False)
