from flask import Flask, request, jsonify, g, has_request_context, make_response, render_template_string
import json
import logging
import os
import re
import secrets
import time
from collections import OrderedDict
from functools import wraps

from dotenv import load_dotenv
from werkzeug.exceptions import ClientDisconnected
from werkzeug.middleware.proxy_fix import ProxyFix

from auth_gate import AuthGate
from markdown_render import guess_content_type, is_markdown_title
from note_store import NoteStore, NoteStoreError
from page_templates import HOME_TEMPLATE, NOTE_TEMPLATE
from rate_limit import FailureRateLimiter


# Values already present in the environment win over the .env file.
load_dotenv(os.getenv('APP_DOTENV_FILE') or None)

APP_ENV = os.getenv('APP_ENV', 'dev').strip().lower()
APP_START_TS = time.time()


def get_env(name, default=None, required=False):
    value = os.getenv(name)
    if value is None or str(value).strip() == "":
        if required:
            raise RuntimeError(f"environment variable {name} must be set")
        return default
    return value


def get_env_bool(name, default=False):
    raw = str(get_env(name, '1' if default else '0')).strip().lower()
    return raw in {'1', 'true', 'yes', 'on'}


def get_env_int(name, default):
    raw = str(get_env(name, str(default))).strip()
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


def get_env_float(name, default):
    raw = str(get_env(name, str(default))).strip()
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}")


REQUEST_ID_HEADER = 'X-Request-ID'
REQUEST_ID_MAX_LEN = 64
REQUEST_ID_PATTERN = re.compile(r'^[A-Za-z0-9._:-]+$')


def generate_request_id():
    return secrets.token_hex(8)


def normalize_request_id(raw_value):
    candidate = str(raw_value or '').strip()
    if not candidate:
        return generate_request_id()
    if len(candidate) > REQUEST_ID_MAX_LEN:
        candidate = candidate[:REQUEST_ID_MAX_LEN]
    if not REQUEST_ID_PATTERN.match(candidate):
        return generate_request_id()
    return candidate


def get_request_id():
    if not has_request_context():
        return '-'
    value = getattr(g, 'request_id', '')
    return str(value) if value else '-'


def get_request_actor():
    if not has_request_context():
        return 'system'
    return getattr(g, 'auth_user', None) or 'anonymous'


def get_client_ip():
    # X-Forwarded-For is only honoured through ProxyFix when APP_TRUST_PROXY=1.
    return request.remote_addr or 'unknown'


def audit_log(level, event, **fields):
    record = OrderedDict()
    record["event"] = event
    if has_request_context():
        record["request_id"] = get_request_id()
        record["ip"] = get_client_ip()
        record["actor"] = get_request_actor()
        record["method"] = request.method
        record["path"] = request.path
    for key, value in fields.items():
        if value is None:
            continue
        record[key] = value

    kv_pairs = []
    for key, value in record.items():
        text = str(value).replace('\n', ' ').replace('\r', ' ')
        if len(text) > 256:
            text = text[:256] + '...'
        kv_pairs.append(f"{key}={text}")
    app.logger.log(level, "audit %s", " ".join(kv_pairs))


def setup_logging():
    level_name = str(get_env('APP_LOG_LEVEL', 'INFO')).strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s"
    )

    root_logger = logging.getLogger()
    if root_logger.handlers:
        for handler in root_logger.handlers:
            handler.setFormatter(formatter)
    else:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        root_logger.addHandler(stream_handler)

    root_logger.setLevel(level)
    app.logger.setLevel(level)


app = Flask(__name__)
setup_logging()

APP_TRUST_PROXY = get_env_bool('APP_TRUST_PROXY', default=False)
if APP_TRUST_PROXY:
    # Exactly one reverse proxy in front; its X-Forwarded-* headers set remote_addr.
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

APP_NOTES_FILE = str(get_env('APP_NOTES_FILE', '/var/notes/notes.json')).strip()
APP_STORAGE_QUOTA_KB = get_env_int('APP_STORAGE_QUOTA_KB', 2 * 1024 * 1024)
APP_BCRYPT_ROUNDS = get_env_int('APP_BCRYPT_ROUNDS', 12)
APP_AUTH_RATE_LIMIT_BACKEND = str(get_env('APP_AUTH_RATE_LIMIT_BACKEND', 'memory')).strip().lower()
APP_AUTH_RATE_LIMIT_WINDOW_SEC = get_env_int('APP_AUTH_RATE_LIMIT_WINDOW_SEC', 300)
APP_AUTH_RATE_LIMIT_MAX_ATTEMPTS = get_env_int('APP_AUTH_RATE_LIMIT_MAX_ATTEMPTS', 8)
APP_AUTH_RATE_LIMIT_BLOCK_SEC = get_env_int('APP_AUTH_RATE_LIMIT_BLOCK_SEC', 600)
APP_AUTH_RATE_LIMIT_KEY_PREFIX = str(
    get_env('APP_AUTH_RATE_LIMIT_KEY_PREFIX', 'livenote:auth_rl')
).strip()
APP_REDIS_URL = str(get_env('APP_REDIS_URL', 'redis://127.0.0.1:6379/0')).strip()
APP_REDIS_SOCKET_TIMEOUT_SEC = get_env_float('APP_REDIS_SOCKET_TIMEOUT_SEC', 1.0)

if not APP_NOTES_FILE:
    raise RuntimeError("APP_NOTES_FILE must not be empty")
if APP_STORAGE_QUOTA_KB <= 0:
    raise RuntimeError("APP_STORAGE_QUOTA_KB must be greater than 0")
if not 4 <= APP_BCRYPT_ROUNDS <= 31:
    raise RuntimeError("APP_BCRYPT_ROUNDS must be between 4 and 31")

# The account password is read once and only its hash is kept.
APP_USERNAME = get_env('USERNAME', required=True)
try:
    AUTH_GATE = AuthGate.from_plaintext(
        APP_USERNAME,
        get_env('PASSWORD', required=True),
        rounds=APP_BCRYPT_ROUNDS
    )
except ValueError as exc:
    raise RuntimeError(f"cannot hash PASSWORD: {exc}") from exc

AUTH_RATE_LIMITER = FailureRateLimiter(
    backend=APP_AUTH_RATE_LIMIT_BACKEND,
    window_sec=APP_AUTH_RATE_LIMIT_WINDOW_SEC,
    max_attempts=APP_AUTH_RATE_LIMIT_MAX_ATTEMPTS,
    block_sec=APP_AUTH_RATE_LIMIT_BLOCK_SEC,
    redis_url=APP_REDIS_URL,
    redis_socket_timeout_sec=APP_REDIS_SOCKET_TIMEOUT_SEC,
    key_prefix=APP_AUTH_RATE_LIMIT_KEY_PREFIX,
)
AUTH_RATE_LIMITER.ping()

NOTE_STORE = NoteStore(APP_NOTES_FILE)
try:
    NOTE_STORE.load()
except NoteStoreError as exc:
    raise RuntimeError(f"cannot load notes: {exc}") from exc

app.logger.info(
    "app_boot env=%s notes_file=%s notes=%s username=%s bcrypt_rounds=%s storage_quota_kb=%s auth_rate_limit=%s/%ss block=%ss backend=%s trust_proxy=%s",
    APP_ENV,
    APP_NOTES_FILE,
    NOTE_STORE.count(),
    APP_USERNAME,
    APP_BCRYPT_ROUNDS,
    APP_STORAGE_QUOTA_KB,
    APP_AUTH_RATE_LIMIT_MAX_ATTEMPTS,
    APP_AUTH_RATE_LIMIT_WINDOW_SEC,
    APP_AUTH_RATE_LIMIT_BLOCK_SEC,
    APP_AUTH_RATE_LIMIT_BACKEND,
    APP_TRUST_PROXY
)


def text_response(message, status=200):
    response = make_response(message, status)
    response.mimetype = 'text/plain'
    return response


def auth_unavailable_response():
    return text_response("Authentication temporarily unavailable", 503)


def rate_limited_response(retry_after):
    response = text_response("Too many failed attempts, try again later", 429)
    response.headers['Retry-After'] = str(int(retry_after))
    return response


def check_request_auth():
    """Return an error response for unauthenticated requests, else None."""
    client_ip = get_client_ip()
    try:
        retry_after = AUTH_RATE_LIMITER.retry_after(client_ip)
    except Exception as exc:
        app.logger.exception(
            "auth_rate_backend_error request_id=%s stage=check backend=%s ip=%s err=%s",
            get_request_id(),
            APP_AUTH_RATE_LIMIT_BACKEND,
            client_ip,
            exc,
        )
        return auth_unavailable_response()

    if retry_after > 0:
        audit_log(logging.WARNING, "auth_rate_limited", retry_after=retry_after)
        return rate_limited_response(retry_after)

    username, password = AuthGate.credentials_from_request()
    if AUTH_GATE.authenticate(username, password):
        g.auth_user = AUTH_GATE.username
        try:
            AUTH_RATE_LIMITER.clear(client_ip)
        except Exception as exc:
            app.logger.exception(
                "auth_rate_backend_error request_id=%s stage=clear backend=%s ip=%s err=%s",
                get_request_id(),
                APP_AUTH_RATE_LIMIT_BACKEND,
                client_ip,
                exc,
            )
        return None

    # No credentials at all is the browser asking for the login prompt.
    if username is None:
        return AUTH_GATE.challenge()

    try:
        failed = AUTH_RATE_LIMITER.register_failure(client_ip)
    except Exception as exc:
        app.logger.exception(
            "auth_rate_backend_error request_id=%s stage=register backend=%s ip=%s err=%s",
            get_request_id(),
            APP_AUTH_RATE_LIMIT_BACKEND,
            client_ip,
            exc,
        )
        return auth_unavailable_response()

    if failed["blocked"]:
        audit_log(
            logging.WARNING,
            "auth_blocked",
            attempts=failed["attempts"],
            retry_after=failed["retry_after"]
        )
        return rate_limited_response(failed["retry_after"])

    audit_log(logging.WARNING, "auth_failed", attempts=failed["attempts"])
    return AUTH_GATE.challenge()


def require_auth(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        failure = check_request_auth()
        if failure is not None:
            return failure
        return view(*args, **kwargs)
    return wrapper


def persist_failed_response(event, title, exc):
    app.logger.exception(
        "%s request_id=%s title=%s err=%s",
        event,
        get_request_id(),
        title,
        exc,
    )
    return text_response("Failed to persist notes", 500)


@app.before_request
def start_request():
    g.request_start = time.time()
    g.request_id = normalize_request_id(request.headers.get(REQUEST_ID_HEADER, ''))


# ------------------- endpoints: status -------------------
@app.route('/', methods=['GET'])
def home():
    used_bytes = NOTE_STORE.storage_size()
    return render_template_string(
        HOME_TEMPLATE,
        host=request.host,
        notes_count=NOTE_STORE.count(),
        used_kb=None if used_bytes is None else used_bytes // 1024,
        quota_kb=APP_STORAGE_QUOTA_KB,
    )


@app.route('/healthz', methods=['GET'])
def healthz():
    try:
        NOTE_STORE.health_check()
    except Exception as exc:
        app.logger.exception("healthz_failed reason=%s", exc)
        return jsonify({"status": "degraded"}), 503

    return jsonify({"status": "ok"}), 200


# ------------------- endpoints: sync -------------------
def parse_sync_payload(raw_body):
    try:
        data = json.loads(raw_body)
    except ValueError as exc:
        raise ValueError(f"Invalid JSON: {exc}")
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")

    title = data.get('title', '')
    body = data.get('body', '')
    if body is None:
        body = ''
    if not isinstance(title, str) or not isinstance(body, str):
        raise ValueError("Fields title and body must be strings")
    if not title:
        raise ValueError("Missing note title")
    return title, body


def handle_sync(render):
    try:
        raw_body = request.get_data(cache=False)
    except (OSError, ClientDisconnected) as exc:
        app.logger.exception("note_sync_read_failed request_id=%s err=%s", get_request_id(), exc)
        return text_response(f"Failed to read request body: {exc}", 500)

    try:
        title, body = parse_sync_payload(raw_body)
    except ValueError as exc:
        audit_log(logging.WARNING, "note_sync_invalid_payload", reason=exc)
        return text_response(str(exc), 400)

    try:
        created = NOTE_STORE.upsert(title, body, render=render)
    except NoteStoreError as exc:
        return persist_failed_response("note_sync_persist_failed", title, exc)

    audit_log(
        logging.INFO,
        "note_sync_success",
        title=title,
        created=created,
        rendered=bool(render and is_markdown_title(title)),
        body_len=len(body)
    )
    return text_response(f"Note synced: {title}")


@app.route('/sync', methods=['POST'])
@require_auth
def sync_note():
    return handle_sync(render=True)


@app.route('/sync-raw', methods=['POST'])
@require_auth
def sync_note_raw():
    return handle_sync(render=False)


# ------------------- endpoints: share / delete -------------------
@app.route('/share', methods=['POST'])
@require_auth
def share_note():
    title = request.args.get('title', '')
    if not title:
        return text_response("Missing title query parameter", 400)

    try:
        shared = NOTE_STORE.mark_shared(title)
    except NoteStoreError as exc:
        return persist_failed_response("note_share_persist_failed", title, exc)

    if not shared:
        audit_log(logging.WARNING, "note_share_not_found", title=title)
        return text_response("Note not found", 404)

    audit_log(logging.INFO, "note_share_success", title=title)
    return text_response(f"Note shared: {title}")


@app.route('/delete', methods=['POST'])
@require_auth
def delete_note():
    title = request.args.get('title', '')
    if not title:
        return text_response("Missing title query parameter", 400)

    try:
        deleted = NOTE_STORE.delete(title)
    except NoteStoreError as exc:
        return persist_failed_response("note_delete_persist_failed", title, exc)

    if not deleted:
        audit_log(logging.WARNING, "note_delete_not_found", title=title)
        return text_response("Note not found", 404)

    audit_log(logging.INFO, "note_delete_success", title=title)
    return text_response(f"Note deleted: {title}")


# ------------------- endpoints: publish -------------------
def render_note(note):
    if is_markdown_title(note['title']):
        return render_template_string(NOTE_TEMPLATE, note=note)

    response = make_response(note['body'], 200)
    response.headers['Content-Type'] = guess_content_type(note['title'])
    return response


@app.route('/x/', defaults={'title': ''}, methods=['GET'])
@app.route('/x/<path:title>', methods=['GET'])
def read_note(title):
    if not title:
        return text_response("Missing note title", 400)

    note = NOTE_STORE.get(title)
    if note is None:
        return text_response("Note not found", 404)

    if not note['shared']:
        failure = check_request_auth()
        if failure is not None:
            return failure

    audit_log(logging.INFO, "note_read", title=title, shared=note['shared'])
    return render_note(note)


@app.after_request
def log_request(response):
    response.headers[REQUEST_ID_HEADER] = get_request_id()

    start = getattr(g, 'request_start', None)
    duration_ms = int((time.time() - start) * 1000) if start else -1
    app.logger.info(
        "request request_id=%s method=%s path=%s status=%s duration_ms=%s ip=%s actor=%s",
        get_request_id(),
        request.method,
        request.path,
        response.status_code,
        duration_ms,
        get_client_ip(),
        get_request_actor()
    )
    return response


if __name__ == '__main__':
    # Debug stays off unless FLASK_DEBUG=1 is set explicitly.
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '8080'))
    app.run(host='0.0.0.0', port=port, debug=debug, threaded=True)
