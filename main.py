# main.py — exam attempt + proctoring API, BASE_PATH-aware (psycopg3 + pooling)
# Identity comes from the upstream proxy (IAP) headers; roles from public.users.

import os
from contextlib import contextmanager
from typing import Any, Dict, Optional

from flask import Flask, request, jsonify, g

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.conninfo import make_conninfo
from psycopg.rows import dict_row

# Core + blueprints
from attempt_engine import AttemptEngine
from attempt_store import PgAttemptStore
from keyed_locks import KeyedLocks
from proctoring_tracker import ProctoringTracker
from ranking import RankingAggregator
from violation_classifier import ProctoringPolicy
from exam import create_exam_blueprint
from proctor import create_proctoring_blueprint

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")
API_PREFIX = "/" + (os.getenv("API_PREFIX", "/api") or "/api").strip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False

# =============================================================================
# Auth mode
# =============================================================================
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in {"1", "true", "yes"}
SUPERADMIN_EMAIL = os.getenv("SUPERADMIN_EMAIL", "")
ADMIN_ROLES = {"admin", "instructor"}

# =============================================================================
# DB configuration
# =============================================================================
# Either DATABASE_URL, or the discrete DB_* settings. INSTANCE_CONNECTION_NAME
# switches the discrete settings to the Cloud SQL unix socket.
DATABASE_URL = os.getenv("DATABASE_URL")
INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")
DB_HOST = os.getenv("DB_HOST") or "127.0.0.1"
DB_PORT = int(os.getenv("DB_PORT") or 5432)
DB_SSLMODE = os.getenv("DB_SSLMODE")
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or 6)

def _conninfo() -> str:
    if DATABASE_URL:
        print("[DB] using DATABASE_URL")
        return make_conninfo(DATABASE_URL, connect_timeout=10)
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("Set DATABASE_URL, or DB_NAME, DB_USER and DB_PASS.")
    if INSTANCE_CONNECTION_NAME:
        host, port = f"/cloudsql/{INSTANCE_CONNECTION_NAME}", None
        print(f"[DB] Unix socket -> {host}")
    else:
        host, port = DB_HOST, DB_PORT
        print(f"[DB] TCP -> {host}:{port}")
    return make_conninfo(
        host=host,
        port=port,
        dbname=DB_NAME,
        user=DB_USER,
        password=DB_PASS,
        sslmode=DB_SSLMODE,
        connect_timeout=10,
        options="-c search_path=public",
    )

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(conninfo=_conninfo(), min_size=1, max_size=max(1, DB_POOL_MAX))

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn

def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()

def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows

_db_deps = {
    "fetch_one": fetch_one,
    "fetch_all": fetch_all,
    "execute": execute,
    "execute_returning": execute_returning,
}

# =============================================================================
# Identity helpers
# =============================================================================
def _iap_email() -> Optional[str]:
    h = (
        request.headers.get("X-Goog-Authenticated-User-Email")
        or request.headers.get("X-Appengine-User-Email")
    )
    if not h:
        return None
    return h.split(":", 1)[-1].strip().lower()

def ensure_user_row(email: str) -> Dict[str, Any]:
    row = fetch_one("SELECT id, role FROM users WHERE email = %s;", (email,))
    if row:
        return row
    display = email.split("@", 1)[0].replace(".", " ").title()
    rows = execute_returning("""
        INSERT INTO users (email, full_name, role)
        VALUES (%s, %s, 'learner')
        ON CONFLICT (email) DO UPDATE SET full_name = EXCLUDED.full_name
        RETURNING id, role;
    """, (email, display))
    return rows[0]

def _is_superadmin(email: Optional[str]) -> bool:
    return bool(email) and bool(SUPERADMIN_EMAIL) and email.strip().lower() == SUPERADMIN_EMAIL.strip().lower()

def is_admin() -> bool:
    if _is_superadmin(getattr(g, "user_email", None)):
        return True
    return (getattr(g, "user_role", None) or "").lower() in ADMIN_ROLES

# =============================================================================
# Core services (one per process)
# =============================================================================
attempt_store = PgAttemptStore(_db_deps)
ranking = RankingAggregator(attempt_store)
engine = AttemptEngine(
    store=attempt_store,
    load_exam=attempt_store.load_exam,
    can_access=attempt_store.can_access,
    ranking=ranking,
    locks=KeyedLocks(),
)

def _proctor_alert(alert: Dict[str, Any]):
    # Hook for reviewer notifications; the flagged line is already logged by the tracker.
    print(f"[proctor] review requested: exam={alert.get('exam_id')} user={alert.get('user_id')} "
          f"score={alert.get('suspicion_score')}", flush=True)

tracker = ProctoringTracker(
    policy=ProctoringPolicy.from_env(),
    alert=_proctor_alert,
    audit=attempt_store.record_proctoring_event,
)

_schema_checked = False

def _ensure_schema_once():
    global _schema_checked
    if _schema_checked:
        return
    try:
        attempt_store.ensure_schema()
        _schema_checked = True
    except Exception as e:
        print(f"[DB] schema check failed (will retry): {e}", flush=True)

# =============================================================================
# Request hooks + health
# =============================================================================
def _is_public_path(path: str) -> bool:
    return path in ("/healthz", BASE_PATH + "/healthz", "/favicon.ico")

@app.before_request
def enforce_or_attach_identity():
    if _is_public_path(request.path):
        return
    _ensure_schema_once()
    email = _iap_email()
    if email:
        g.user_email = email
        try:
            row = ensure_user_row(email)
            g.user_id = row["id"]
            g.user_role = row.get("role")
        except Exception as e:
            print(f"[auth] ensure_user_row failed for {email}: {e}", flush=True)
            return jsonify({"ok": False, "error": "identity_unavailable"}), 503
        return
    if AUTH_REQUIRED:
        return jsonify({"ok": False, "error": "unauthorized"}), 401

@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

@app.get("/favicon.ico")
def favicon():
    return ("", 204)

# =============================================================================
# Blueprints
# =============================================================================
_api_deps = {
    "engine": engine,
    "ranking": ranking,
    "tracker": tracker,
    "api_prefix": API_PREFIX,
    "is_admin": is_admin,
}
app.register_blueprint(create_exam_blueprint(BASE_PATH, _api_deps))
app.register_blueprint(create_proctoring_blueprint(BASE_PATH, _api_deps))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
