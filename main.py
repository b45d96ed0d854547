# main.py: app wiring, BASE_PATH-aware (psycopg3 + pooling)
# Storage backend: STUDY_STORE=postgres|memory (defaults to postgres when a DB is configured).

import os
from contextlib import contextmanager
from urllib.parse import urlparse, parse_qs, unquote
from typing import Optional

from flask import Flask, jsonify

# Database (psycopg 3)
from psycopg import conninfo
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

# Blueprints / services
from analytics import create_analytics_blueprint
from exam import ControllerRegistry, create_exam_blueprint
from study import create_study_blueprint
from generation import GenerationService
from materials import MaterialExtractor
from rendering import render_rich
from stores import (
    AttemptStore, MemoryKVStore, NoteStore, PostgresKVStore, QuizStore, SubjectStore,
)

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"},
    MAX_CONTENT_LENGTH=int(float(os.getenv("UPLOAD_MAX_MB") or 10) * 1024 * 1024) + 64 * 1024,
)
app.jinja_env.filters["rich"] = render_rich

# =============================================================================
# Database settings
# =============================================================================
INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")

DATABASE_URL = os.getenv("DATABASE_URL")
DB_HOST_OVERRIDE = os.getenv("DB_HOST")
DB_PORT_OVERRIDE = os.getenv("DB_PORT")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}

_DB_CONFIGURED = bool(DATABASE_URL or DB_NAME or INSTANCE_CONNECTION_NAME)
STUDY_STORE = (os.getenv("STUDY_STORE") or ("postgres" if _DB_CONFIGURED else "memory")).strip().lower()

def _on_managed_runtime() -> bool:
    # GAE or Cloud Run, etc.
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))

def _log_choice(kwargs: dict, origin: str):
    if "host" in kwargs and isinstance(kwargs["host"], str) and kwargs["host"].startswith("/cloudsql/"):
        print(f"[DB] {origin}: Unix socket -> {kwargs['host']}")
    else:
        host = kwargs.get("host", "localhost")
        port = kwargs.get("port", 5432)
        print(f"[DB] {origin}: TCP -> {host}:{port}")

def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    for pref in ("postgresql+psycopg://", "postgres+psycopg://", "postgresql+psycopg2://", "postgres+psycopg2://"):
        if url.startswith(pref):
            url = "postgresql://" + url.split("://", 1)[1]
            break

    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    host = qs["host"][0] if qs.get("host") else p.hostname
    dbname = (p.path or "").lstrip("/") or (qs["dbname"][0] if qs.get("dbname") else "")
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }
    if host:
        kwargs["host"] = host
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs

def _tcp_kwargs() -> dict:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set for TCP mode.")
    return {
        "host": DB_HOST_OVERRIDE or "127.0.0.1",
        "port": int(DB_PORT_OVERRIDE or "5432"),
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "sslmode": "disable",
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _socket_kwargs() -> dict:
    if not all([INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS must be set for socket mode.")
    return {
        "host": f"/cloudsql/{INSTANCE_CONNECTION_NAME}",
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _connection_kwargs() -> dict:
    managed = _on_managed_runtime()

    if FORCE_TCP and not managed:
        kwargs = _tcp_kwargs(); _log_choice(kwargs, "FORCE_TCP"); return kwargs

    if DATABASE_URL:
        try:
            parsed = _parse_database_url(DATABASE_URL)
            host = parsed.get("host")
            if (not managed) and isinstance(host, str) and host.startswith("/cloudsql/"):
                print("[DB] DATABASE_URL targets /cloudsql/ but we are local; ignoring and using TCP.")
            else:
                _log_choice(parsed, "Using DATABASE_URL (parsed)")
                return parsed
        except ValueError as e:
            print(f"[DB] Ignoring DATABASE_URL: {e}")

    if managed:
        kwargs = _socket_kwargs(); _log_choice(kwargs, "Managed runtime"); return kwargs

    kwargs = _tcp_kwargs(); _log_choice(kwargs, "Local dev"); return kwargs

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(conninfo=conninfo.make_conninfo(**_connection_kwargs()), min_size=1, max_size=6)

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn

def fetch_one(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchone()

def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()

# =============================================================================
# Stores + services
# =============================================================================
if STUDY_STORE == "postgres":
    kv_store = PostgresKVStore(fetch_one, execute)
elif STUDY_STORE == "memory":
    kv_store = MemoryKVStore()
else:
    raise RuntimeError(f"Unknown STUDY_STORE '{STUDY_STORE}' (expected 'postgres' or 'memory').")
print(f"[store] backend={STUDY_STORE}")

attempt_store = AttemptStore(kv_store)
subject_store = SubjectStore(kv_store)
note_store = NoteStore(kv_store)
quiz_store = QuizStore(kv_store)

generation_service = GenerationService.from_env()
if not generation_service.api_key:
    print("[generation] OPENAI_API_KEY not set; requests need an X-Api-Key header.")
material_extractor = MaterialExtractor.from_env()
exam_registry = ControllerRegistry.from_env()

# =============================================================================
# Routes (health)
# =============================================================================
@app.get("/healthz")
def healthz():
    if STUDY_STORE != "postgres":
        return ("ok", 200)
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

@app.errorhandler(413)
def too_large(_e):
    return jsonify({"ok": False, "error": "Upload too large.", "kind": "validation"}), 413

# =============================================================================
# Blueprints
# =============================================================================
app.register_blueprint(create_study_blueprint(BASE_PATH, {
    "generation": generation_service,
    "subject_store": subject_store,
    "note_store": note_store,
    "quiz_store": quiz_store,
    "attempt_store": attempt_store,
    "extractor": material_extractor,
    "exam_registry": exam_registry,
}))

app.register_blueprint(create_exam_blueprint(BASE_PATH, {
    "generation": generation_service,
    "attempt_store": attempt_store,
    "subject_store": subject_store,
    "exam_registry": exam_registry,
}))

app.register_blueprint(create_analytics_blueprint(BASE_PATH, {
    "attempt_store": attempt_store,
}))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
