# db.py: PostgreSQL access for the exam service (psycopg3 + pooling)
# Where to connect, in order: FORCE_TCP, DATABASE_URL_LOCAL (off managed
# runtimes only), DATABASE_URL, Cloud SQL unix socket on managed runtimes,
# then discrete DB_* settings over TCP.

import atexit
import os
from contextlib import contextmanager
from typing import Any, Dict, Optional
from urllib.parse import urlparse, parse_qs, unquote

from psycopg.conninfo import make_conninfo
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

# =============================================================================
# DB configuration
# =============================================================================
INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")
DB_NAME = os.getenv("DB_NAME")
DB_HOST = os.getenv("DB_HOST")
DB_PORT = os.getenv("DB_PORT")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}

DB_POOL_MIN = int(os.getenv("DB_POOL_MIN") or 1)
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or 6)

_COMMON = {"connect_timeout": 10, "options": "-c search_path=public"}


def on_managed_runtime() -> bool:
    # App Engine standard or Cloud Run
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))


def _is_socket(kwargs: Dict[str, Any]) -> bool:
    host = kwargs.get("host")
    return isinstance(host, str) and host.startswith("/")


def _announce(kwargs: Dict[str, Any], origin: str):
    if _is_socket(kwargs):
        print(f"[DB] {origin}: unix socket {kwargs['host']}")
    else:
        print(f"[DB] {origin}: tcp {kwargs.get('host', 'localhost')}:{kwargs.get('port', 5432)}")


def parse_database_url(url: str) -> Dict[str, Any]:
    """postgres:// or postgresql:// URL (SQLAlchemy driver suffixes allowed) -> psycopg kwargs."""
    if not url:
        raise ValueError("empty database URL")
    scheme, sep, rest = url.partition("://")
    if not sep:
        raise ValueError("database URL has no scheme")
    scheme = scheme.split("+", 1)[0]
    if scheme not in ("postgresql", "postgres"):
        raise ValueError(f"unsupported scheme '{scheme}'")

    p = urlparse(f"postgresql://{rest}")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    dbname = (p.path or "").lstrip("/") or (qs.get("dbname") or [""])[0]
    if not dbname:
        raise ValueError("database URL names no database")

    kwargs: Dict[str, Any] = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        **_COMMON,
    }
    host = (qs.get("host") or [p.hostname])[0]
    if host:
        kwargs["host"] = host
    if p.port and not _is_socket(kwargs):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs


def discrete_kwargs(socket: bool) -> Dict[str, Any]:
    """Kwargs from the DB_* variables, over the Cloud SQL socket or plain TCP."""
    required = {"DB_NAME": DB_NAME, "DB_USER": DB_USER, "DB_PASS": DB_PASS}
    if socket:
        required["INSTANCE_CONNECTION_NAME"] = INSTANCE_CONNECTION_NAME
    missing = [k for k, v in required.items() if not v]
    if missing:
        raise RuntimeError(f"{', '.join(missing)} must be set for {'socket' if socket else 'TCP'} mode.")

    kwargs: Dict[str, Any] = {"dbname": DB_NAME, "user": DB_USER, "password": DB_PASS, **_COMMON}
    if socket:
        kwargs["host"] = f"/cloudsql/{INSTANCE_CONNECTION_NAME}"
    else:
        kwargs.update(host=DB_HOST or "127.0.0.1", port=int(DB_PORT or 5432), sslmode="disable")
    return kwargs


def connection_kwargs() -> Dict[str, Any]:
    managed = on_managed_runtime()

    if FORCE_TCP and not managed:
        kwargs = discrete_kwargs(socket=False)
        _announce(kwargs, "FORCE_TCP")
        return kwargs

    candidates = [("DATABASE_URL_LOCAL", DATABASE_URL_LOCAL)] if not managed else []
    candidates.append(("DATABASE_URL", DATABASE_URL))
    for name, url in candidates:
        if not url:
            continue
        try:
            kwargs = parse_database_url(url)
        except ValueError as e:
            print(f"[DB] ignoring {name}: {e}")
            continue
        if not managed and _is_socket(kwargs):
            print(f"[DB] {name} points at a unix socket but we are local; skipping it.")
            continue
        _announce(kwargs, name)
        return kwargs

    kwargs = discrete_kwargs(socket=managed)
    _announce(kwargs, "managed runtime" if managed else "local dev")
    return kwargs


# =============================================================================
# Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None


def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(
        conninfo=make_conninfo(**connection_kwargs()),
        min_size=DB_POOL_MIN,
        max_size=DB_POOL_MAX,
        open=True,
    )
    atexit.register(close_pool)


def close_pool():
    global _pg_pool
    if _pg_pool is not None:
        _pg_pool.close()
        _pg_pool = None


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
        with conn.cursor() as cur:
            cur.execute(q, params or ())
        conn.commit()


def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows


@contextmanager
def transaction():
    """Cursor inside one transaction on one pooled connection; commits on clean exit, rolls back on error."""
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor(row_factory=dict_row) as cur:
                yield cur


__all__ = [
    "connection_kwargs",
    "parse_database_url",
    "init_pool",
    "close_pool",
    "fetch_all",
    "fetch_one",
    "execute",
    "execute_returning",
    "transaction",
]
