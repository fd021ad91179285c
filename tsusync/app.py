import logging
import os
import shutil
import threading
import time
import uuid
from functools import wraps
from secrets import compare_digest
from typing import Any, Callable, Dict, Optional

from flask import Flask, Response, g, jsonify, make_response, request
from werkzeug.security import check_password_hash, generate_password_hash

from .index import ContentReadError, EntryNotFoundError, FileIndex
from .logs import configure_logging, get_logger, sanitize_log_value
from .multipart import MultipartError, MultipartStream
from .storage import (
    DATA_DIR,
    LOGS_DIR,
    SNAPSHOT_PATH,
    TMP_DIR,
    ContentStore,
    check_same_volume,
    cleanup_temp_files,
    ensure_directories,
    load_snapshot,
    save_snapshot,
)
from .upload import (
    UPLOAD_IDLE_TIMEOUT_SECONDS,
    ConnectionControl,
    UploadAborted,
    UploadError,
    UploadSession,
)

DEFAULT_MAX_UPLOAD_BYTES = 1 << 31
AUTH_REALM = "tsusync"


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logging.getLogger("tsusync.config").warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


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


ensure_directories()
APP_LOG_PATH = configure_logging(LOGS_DIR)
lifecycle_logger = get_logger("tsusync.lifecycle")

MAX_UPLOAD_BYTES = _safe_int_env("TSUSYNC_MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES)
UPLOAD_IDLE_TIMEOUT = _safe_int_env("TSUSYNC_UPLOAD_IDLE_TIMEOUT", UPLOAD_IDLE_TIMEOUT_SECONDS)
REQUIRE_AUTH = bool(_get_optional_bool_env("TSUSYNC_REQUIRE_AUTH"))
AUTH_USERNAME = os.environ.get("TSUSYNC_AUTH_USERNAME", "tsu")
AUTH_PASSWORD_HASH = os.environ.get("TSUSYNC_AUTH_PASSWORD_HASH") or generate_password_hash(
    os.environ.get("TSUSYNC_AUTH_PASSWORD", "tsu")
)
_restore_override = _get_optional_bool_env("TSUSYNC_RESTORE_SNAPSHOT")
RESTORE_SNAPSHOT = True if _restore_override is None else _restore_override

check_same_volume(DATA_DIR, TMP_DIR)
cleanup_temp_files(TMP_DIR)

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_BYTES

content_store = ContentStore(DATA_DIR, TMP_DIR)
if RESTORE_SNAPSHOT:
    file_index = FileIndex.from_snapshot(load_snapshot(SNAPSHOT_PATH), store=content_store)
    lifecycle_logger.info("index_restored entries=%d path=%s", len(file_index), SNAPSHOT_PATH)
else:
    file_index = FileIndex(store=content_store)
app.extensions["tsusync.index"] = file_index
app.extensions["tsusync.store"] = content_store

_snapshot_lock = threading.Lock()


def get_index() -> FileIndex:
    return app.extensions["tsusync.index"]


def get_store() -> ContentStore:
    return app.extensions["tsusync.store"]


def persist_index() -> None:
    """Rewrite the on-disk snapshot of the index; failures are only logged."""

    try:
        with _snapshot_lock:
            save_snapshot(get_index().snapshot(), SNAPSHOT_PATH)
    except (OSError, TypeError, ValueError) as error:
        lifecycle_logger.error("snapshot_save_failed path=%s error=%s", SNAPSHOT_PATH, error)


def _credentials_match(auth: Any) -> bool:
    if auth is None or (getattr(auth, "type", "") or "").lower() != "basic":
        return False
    username = auth.username or ""
    password = auth.password or ""
    user_ok = compare_digest(username.encode("utf-8"), AUTH_USERNAME.encode("utf-8"))
    password_ok = check_password_hash(AUTH_PASSWORD_HASH, password)
    return user_ok and password_ok


def require_basic_auth(view: Callable):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if REQUIRE_AUTH and not _credentials_match(request.authorization):
            lifecycle_logger.warning(
                "auth_failed endpoint=%s method=%s", request.endpoint, request.method
            )
            response = make_response(jsonify({"error": "401 unauthorized"}), 401)
            response.headers["WWW-Authenticate"] = f'Basic realm="{AUTH_REALM}"'
            return response

        try:
            return view(*args, **kwargs)
        finally:
            persist_index()

    return wrapped


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.before_request
def answer_preflight() -> Optional[Response]:
    if request.method == "OPTIONS":
        return Response(status=204)
    return None


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
def add_cors_headers(response: Response):
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, PATCH, DELETE, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    return response


@app.after_request
def add_request_id_header(response: Response):
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(UploadAborted)
def handle_upload_aborted(error: UploadAborted):
    connection = getattr(g, "connection", None)
    dropped = connection.abort() if connection is not None else False
    lifecycle_logger.warning(
        "upload_connection_aborted dropped=%s reason=%s",
        dropped,
        sanitize_log_value(str(error)),
    )
    response = Response(status=400)
    response.headers["Connection"] = "close"
    return response


@app.errorhandler(413)
def handle_body_too_large(error):  # pragma: no cover - framework hook
    return jsonify({"error": "request body too large"}), 413


@app.errorhandler(404)
def not_found(error):
    return jsonify({"error": "404 not found"}), 404


@app.errorhandler(405)
def method_not_allowed(error):
    return jsonify({"error": "method not allowed"}), 405


def _json_payload() -> Optional[Dict[str, Any]]:
    payload = request.get_json(silent=True, force=True)
    return payload if isinstance(payload, dict) else None


def _string_field(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key, "")
    if value is None:
        return ""
    return value if isinstance(value, str) else None


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    checks["entries"] = len(get_index())

    try:
        ensure_directories()
        usage = shutil.disk_usage(DATA_DIR)
        checks["disk_space_gb"] = round(usage.free / (1024 ** 3), 2)
    except OSError as error:
        checks["disk_space_gb"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        probe_file = DATA_DIR / f".health_check_{uuid.uuid4().hex}"
        probe_file.write_text("health_check", encoding="utf-8")
        probe_file.unlink(missing_ok=True)
        checks["data_writable"] = "ok"
    except OSError as error:
        checks["data_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    return jsonify(
        {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": time.time(),
            "checks": checks,
        }
    ), 200 if healthy else 503


@app.route("/folder", methods=["POST"])
@app.route("/ensureTitle", methods=["POST"])
@require_basic_auth
def ensure_folder():
    payload = _json_payload()
    if payload is None:
        lifecycle_logger.debug("ensure_folder_failed reason=invalid_json")
        return jsonify({"error": "failed to decode json"}), 400

    name = _string_field(payload, "name")
    parent = _string_field(payload, "parent")
    if name is None or parent is None:
        return jsonify({"error": "name and parent must be strings"}), 400

    folder_id = get_index().ensure_folder(parent, name)
    lifecycle_logger.info(
        "folder_ensured id=%s parent=%s name=%s",
        folder_id,
        sanitize_log_value(parent),
        sanitize_log_value(name),
    )
    return jsonify({"id": folder_id})


@app.route("/file", methods=["POST", "PATCH"])
@app.route("/upload", methods=["POST", "PATCH"])
@require_basic_auth
def upload_file():
    try:
        content_length = int(request.headers.get("Content-Length", ""))
    except ValueError:
        content_length = -1

    if content_length <= 0 or content_length >= MAX_UPLOAD_BYTES:
        lifecycle_logger.warning(
            "upload_rejected reason=content_length value=%s",
            sanitize_log_value(request.headers.get("Content-Length", "")),
        )
        return jsonify(
            {"error": "content length is invalid, or larger than the allowed max upload size"}
        ), 400

    lifecycle_logger.info(
        "upload_started method=%s content_length=%d", request.method, content_length
    )

    boundary = request.mimetype_params.get("boundary", "")
    if request.mimetype != "multipart/form-data" or not boundary:
        return jsonify({"error": "failed to get a multipart reader"}), 400

    try:
        parts = MultipartStream(request.stream, boundary)
    except MultipartError:
        return jsonify({"error": "failed to get a multipart reader"}), 400

    g.connection = ConnectionControl(request.environ, UPLOAD_IDLE_TIMEOUT)
    session = UploadSession(
        get_index(),
        get_store(),
        request.method,
        keepalive=g.connection.keepalive,
    )
    try:
        entry = session.run(parts)
    except UploadError as error:
        return jsonify(error.to_payload()), error.status_code

    lifecycle_logger.info(
        "file_stored id=%s parent=%s name=%s",
        entry.id,
        sanitize_log_value(entry.parent_id),
        sanitize_log_value(entry.name),
    )
    return jsonify(entry.to_dict())


def _file_content_response(file_id: str):
    try:
        data = get_index().read(file_id)
    except EntryNotFoundError:
        lifecycle_logger.warning("file_read_missing file_id=%s", sanitize_log_value(file_id))
        return jsonify({"error": "404 not found"}), 404
    except ContentReadError as error:
        lifecycle_logger.error(
            "file_read_failed file_id=%s error=%s", sanitize_log_value(file_id), error
        )
        return jsonify({"error": "unknown error reading file"}), 500
    return Response(data, mimetype="application/octet-stream")


@app.route("/file/<file_id>", methods=["GET"])
@require_basic_auth
def read_file(file_id: str):
    return _file_content_response(file_id)


@app.route("/list", defaults={"folder_id": ""}, methods=["GET"])
@app.route("/list/<folder_id>", methods=["GET"])
@require_basic_auth
def list_folder(folder_id: str):
    return _children_response(folder_id)


def _children_response(folder_id: str):
    children = get_index().list_children(folder_id)
    return jsonify([entry.to_dict() for entry in children])


@app.route("/delete/<entry_id>", methods=["DELETE"])
@require_basic_auth
def delete_entry(entry_id: str):
    get_index().delete(entry_id)
    return Response(status=200)


@app.route("/listFiles", methods=["POST"])
@require_basic_auth
def legacy_list_files():
    payload = _json_payload()
    parent = _string_field(payload, "parent") if payload is not None else None
    if parent is None:
        return jsonify({"error": "could not decode json"}), 400
    return _children_response(parent)


@app.route("/readFileData", methods=["POST"])
@require_basic_auth
def legacy_read_file():
    payload = _json_payload()
    file_id = _string_field(payload, "file") if payload is not None else None
    if file_id is None:
        return jsonify({"error": "404 not found"}), 404
    return _file_content_response(file_id)


@app.route("/executeDelete", methods=["POST"])
@require_basic_auth
def legacy_delete():
    payload = _json_payload()
    entry_id = _string_field(payload, "id") if payload is not None else None
    if entry_id is None:
        return jsonify({"error": "could not decode json"}), 400
    get_index().delete(entry_id)
    return Response(status=200)


@app.route("/setRootFiles", methods=["POST"])
@require_basic_auth
def legacy_set_root_files():
    """Accepted for older clients; the root listing needs no registration."""

    return jsonify({"status": "ok"})


if __name__ == "__main__":
    port = int(os.environ.get("PORT", "8080"))
    lifecycle_logger.info("server_starting port=%d", port)
    app.run(host="0.0.0.0", port=port, debug=False, threaded=True)
