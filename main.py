# main.py: exam attempt service, BASE_PATH-aware (psycopg3 + pooling)
# Identity comes from the platform's session or from the IAP header; login
# itself is handled by the platform in front of this service.

import os
from typing import Optional

from flask import Flask, request, g, session, jsonify

import db
from attempt_ledger import MemoryAttemptLedger, ensure_attempt_tables
from exam import create_exam_blueprint
from exam_content_loader import load_exam_content
from exam_store import MemoryExamStore, ensure_exam_tables

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=True,  # HTTPS on Render/production
)

AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in {"1", "true", "yes"}
EXAM_STORAGE = (os.getenv("EXAM_STORAGE") or "postgres").strip().lower()
USE_MEMORY = EXAM_STORAGE == "memory"

if USE_MEMORY:
    print("[exam] EXAM_STORAGE=memory: exams from JSON content, attempts kept in process.", flush=True)

# =============================================================================
# Identity helpers
# =============================================================================
def _session_email() -> Optional[str]:
    u = session.get("user") or {}
    e = (u.get("email") or "").strip().lower()
    return e or None

def _iap_email() -> Optional[str]:
    h = (
        request.headers.get("X-Goog-Authenticated-User-Email")
        or request.headers.get("X-Appengine-User-Email")
    )
    if not h:
        return None
    return h.split(":", 1)[-1].strip().lower()

def current_user_email() -> Optional[str]:
    return _session_email() or _iap_email()

def ensure_user_row(email: str) -> int:
    row = db.fetch_one("SELECT id FROM users WHERE email = %s;", (email,))
    if row:
        return row["id"]
    display = email.split("@", 1)[0].replace(".", " ").title()
    rows = db.execute_returning("""
        INSERT INTO users (email, full_name, role)
        VALUES (%s, %s, 'learner')
        ON CONFLICT (email) DO UPDATE SET full_name = EXCLUDED.full_name
        RETURNING id;
    """, (email, display))
    return rows[0]["id"]

def _is_public_path(path: str) -> bool:
    return path in {"/healthz", f"{BASE_PATH}/healthz"}

@app.before_request
def attach_identity():
    if _is_public_path(request.path):
        return
    email = current_user_email()
    if email:
        g.user_email = email
        if USE_MEMORY:
            g.user_id = email
            return
        try:
            g.user_id = ensure_user_row(email)
        except Exception as e:
            print(f"[auth] ensure_user_row failed for {email}: {e}")
        return
    if not AUTH_REQUIRED:
        # local dev without a login front: trust an explicit student header
        dev_id = (request.headers.get("X-Student-Id") or "").strip()
        if dev_id:
            g.user_id = dev_id

# =============================================================================
# Health
# =============================================================================
@app.get("/healthz")
def healthz():
    if USE_MEMORY:
        return ("ok", 200)
    try:
        row = db.fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

if BASE_PATH:
    app.add_url_rule(f"{BASE_PATH}/healthz", endpoint="healthz_bp", view_func=healthz, methods=["GET"])

@app.errorhandler(404)
def not_found(_e):
    return jsonify({"ok": False, "error": "not_found"}), 404

# =============================================================================
# Storage bootstrap
# =============================================================================
def _ensure_tables():
    try:
        ensure_exam_tables(db.execute)
        ensure_attempt_tables(db.execute)
    except Exception as e:
        print(f"[DB] exam table bootstrap failed: {e}")

if USE_MEMORY:
    _exam_deps = {
        "exam_store": MemoryExamStore(load_exam_content()),
        "ledger": MemoryAttemptLedger(),
    }
else:
    _ensure_tables()
    _exam_deps = {
        "fetch_one": db.fetch_one,
        "fetch_all": db.fetch_all,
        "transaction": db.transaction,
    }

app.register_blueprint(create_exam_blueprint(BASE_PATH, _exam_deps))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
