"""
src/core/db.py — Persistent SQLite Database Layer

All lifecycle records live in one SQLite file at DATA_DIR/quotes.db
(WAL mode, one connection per unit of work, process-wide lock).

TABLES:
  auth_users        — accounts, email is unique (shadow accounts included)
  profiles          — display name, company, phone, role (prospect|client|staff)
  user_credentials  — bcrypt password hash per account
  projects          — owned by one account; a project has at most one quote
  quotes            — the quote ledger (pending | signed | cancelled)
  counters          — named monotonic counters (quote_number)
  notifications     — every lifecycle email dispatched, with delivery result
  files             — document index (signed quotes are filed here)
"""

import os
import json
import sqlite3
import logging
import threading
import uuid
from datetime import datetime, timezone
from contextlib import contextmanager

from src.core.paths import DATA_DIR

log = logging.getLogger("quotes.db")

DB_PATH = os.path.join(DATA_DIR, "quotes.db")

_db_lock = threading.RLock()


# ── Connection factory ────────────────────────────────────────────────────────
@contextmanager
def get_db():
    """Thread-safe SQLite connection with WAL mode for 2-worker gunicorn."""
    with _db_lock:
        conn = sqlite3.connect(DB_PATH, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


# ── Schema ────────────────────────────────────────────────────────────────────
SCHEMA = """
CREATE TABLE IF NOT EXISTS auth_users (
    id              TEXT PRIMARY KEY,
    email           TEXT UNIQUE NOT NULL COLLATE NOCASE,
    name            TEXT,
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS profiles (
    id              TEXT PRIMARY KEY REFERENCES auth_users(id) ON DELETE CASCADE,
    full_name       TEXT,
    company         TEXT,
    phone           TEXT,
    role            TEXT NOT NULL DEFAULT 'prospect',  -- prospect|client|staff
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_credentials (
    user_id         TEXT PRIMARY KEY REFERENCES auth_users(id) ON DELETE CASCADE,
    password_hash   TEXT NOT NULL,
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS projects (
    id              TEXT PRIMARY KEY,
    owner_id        TEXT NOT NULL REFERENCES auth_users(id),
    name            TEXT NOT NULL,
    status          TEXT DEFAULT 'onboarding',
    progress        INTEGER DEFAULT 0,
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_projects_owner ON projects(owner_id);

CREATE TABLE IF NOT EXISTS quotes (
    id              TEXT PRIMARY KEY,
    project_id      TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    number          INTEGER UNIQUE NOT NULL,
    pdf_url         TEXT NOT NULL,
    signed_pdf_url  TEXT,
    status          TEXT NOT NULL DEFAULT 'pending',
    signed_at       TEXT,
    amount          INTEGER,        -- minor units (cents)
    services        TEXT,           -- JSON array, first entry is the headline
    delay           TEXT,
    render_context  TEXT,           -- JSON party data the PDF was rendered with
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    CHECK (
        (status = 'pending' AND signed_pdf_url IS NULL AND signed_at IS NULL) OR
        (status = 'signed' AND signed_pdf_url IS NOT NULL AND signed_at IS NOT NULL) OR
        (status = 'cancelled')
    )
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_quotes_project ON quotes(project_id);
CREATE INDEX IF NOT EXISTS idx_quotes_status ON quotes(status);

CREATE TABLE IF NOT EXISTS counters (
    name            TEXT PRIMARY KEY,
    value           INTEGER NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notifications (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at      TEXT NOT NULL,
    event_type      TEXT NOT NULL,  -- quote_created|quote_signed_prospect|quote_signed_admin
    recipient       TEXT,
    subject         TEXT,
    quote_id        TEXT,
    delivered       INTEGER DEFAULT 0,
    error           TEXT
);

CREATE INDEX IF NOT EXISTS idx_notif_quote ON notifications(quote_id);
CREATE INDEX IF NOT EXISTS idx_notif_type ON notifications(event_type);

CREATE TABLE IF NOT EXISTS files (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    path            TEXT NOT NULL,
    label           TEXT,
    storage_provider TEXT,
    project_id      TEXT REFERENCES projects(id) ON DELETE CASCADE,
    uploader_id     TEXT,
    created_at      TEXT NOT NULL
);
"""


def init_db():
    """Create all tables if they don't exist. Safe to call multiple times."""
    with get_db() as conn:
        conn.executescript(SCHEMA)
    log.info("DB initialized at %s", DB_PATH)
    return True


def _jl(val, default=None):
    """JSON-load a DB column value safely."""
    if val is None:
        return default
    if isinstance(val, (dict, list)):
        return val
    try:
        return json.loads(val)
    except (TypeError, ValueError):
        return default


def _jd(val):
    """JSON-dump a value for DB storage (None stays NULL)."""
    if val is None:
        return None
    return json.dumps(val, default=str)


def _quote_row(row) -> dict | None:
    if not row:
        return None
    d = dict(row)
    d["services"] = _jl(d.get("services"), [])
    d["render_context"] = _jl(d.get("render_context"), {})
    return d


# ── Accounts ──────────────────────────────────────────────────────────────────
def get_user_by_email(email: str) -> dict | None:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM auth_users WHERE LOWER(email)=LOWER(?)",
                           (email,)).fetchone()
    return dict(row) if row else None


def get_user(user_id: str) -> dict | None:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM auth_users WHERE id=?", (user_id,)).fetchone()
    return dict(row) if row else None


def get_profile(user_id: str) -> dict | None:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM profiles WHERE id=?", (user_id,)).fetchone()
    return dict(row) if row else None


def insert_profile(user_id: str, full_name: str, company: str = None,
                   role: str = "prospect", phone: str = None, conn=None):
    sql = ("INSERT INTO profiles (id, full_name, company, phone, role, created_at) "
           "VALUES (?,?,?,?,?,?)")
    params = (user_id, full_name, company, phone, role, now_iso())
    if conn is not None:
        conn.execute(sql, params)
        return
    with get_db() as c:
        c.execute(sql, params)


def insert_account(user_id: str, email: str, name: str, company: str,
                   password_hash: str, role: str = "prospect"):
    """Create account + profile + credential in one transaction.

    Raises sqlite3.IntegrityError when the email is already taken.
    """
    now = now_iso()
    with get_db() as conn:
        conn.execute("INSERT INTO auth_users (id, email, name, created_at) VALUES (?,?,?,?)",
                     (user_id, email, name, now))
        insert_profile(user_id, name, company, role, conn=conn)
        conn.execute("INSERT INTO user_credentials (user_id, password_hash, created_at) "
                     "VALUES (?,?,?)", (user_id, password_hash, now))


def get_password_hash(user_id: str) -> str | None:
    with get_db() as conn:
        row = conn.execute("SELECT password_hash FROM user_credentials WHERE user_id=?",
                           (user_id,)).fetchone()
    return row["password_hash"] if row else None


def count_users(email: str = None) -> int:
    with get_db() as conn:
        if email:
            return conn.execute("SELECT COUNT(*) FROM auth_users WHERE LOWER(email)=LOWER(?)",
                                (email,)).fetchone()[0]
        return conn.execute("SELECT COUNT(*) FROM auth_users").fetchone()[0]


# ── Projects ──────────────────────────────────────────────────────────────────
def insert_project(owner_id: str, name: str, status: str = "onboarding",
                   progress: int = 0) -> dict:
    project = {"id": new_id(), "owner_id": owner_id, "name": name,
               "status": status, "progress": progress, "created_at": now_iso()}
    with get_db() as conn:
        conn.execute("""
            INSERT INTO projects (id, owner_id, name, status, progress, created_at)
            VALUES (:id, :owner_id, :name, :status, :progress, :created_at)
        """, project)
    return project


def get_project(project_id: str) -> dict | None:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM projects WHERE id=?", (project_id,)).fetchone()
    return dict(row) if row else None


def delete_project(project_id: str) -> bool:
    with get_db() as conn:
        cur = conn.execute("DELETE FROM projects WHERE id=?", (project_id,))
    return cur.rowcount > 0


# ── Quotes ────────────────────────────────────────────────────────────────────
def insert_quote(q: dict) -> str:
    """Insert a pending quote row. Returns its id.

    Raises sqlite3.IntegrityError if the project already has a quote.
    """
    now = now_iso()
    quote_id = q.get("id") or new_id()
    with get_db() as conn:
        conn.execute("""
            INSERT INTO quotes
              (id, project_id, number, pdf_url, status, amount, services,
               delay, render_context, created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?,?,?,?)
        """, (
            quote_id, q["project_id"], q["number"], q["pdf_url"],
            q.get("status", "pending"), q.get("amount"),
            _jd(q.get("services")), q.get("delay"),
            _jd(q.get("render_context")),
            q.get("created_at", now), now,
        ))
    return quote_id


def get_quote(quote_id: str) -> dict | None:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM quotes WHERE id=?", (quote_id,)).fetchone()
    return _quote_row(row)


def get_quote_for_project(project_id: str) -> dict | None:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM quotes WHERE project_id=?",
                           (project_id,)).fetchone()
    return _quote_row(row)


def get_quote_with_project(quote_id: str) -> dict | None:
    """Quote joined with its project name and owner id."""
    with get_db() as conn:
        row = conn.execute("""
            SELECT q.*, p.name AS project_name, p.owner_id AS owner_id
            FROM quotes q JOIN projects p ON p.id = q.project_id
            WHERE q.id=?
        """, (quote_id,)).fetchone()
    return _quote_row(row)


def list_quotes(status: str = None, limit: int = 500) -> list:
    """Quotes newest first, joined with project and owner email."""
    sql = """
        SELECT q.*, p.name AS project_name, p.owner_id AS owner_id,
               u.email AS owner_email
        FROM quotes q
        JOIN projects p ON p.id = q.project_id
        LEFT JOIN auth_users u ON u.id = p.owner_id
    """
    params = []
    if status:
        sql += " WHERE q.status=?"
        params.append(status)
    sql += " ORDER BY q.number DESC LIMIT ?"
    params.append(limit)
    with get_db() as conn:
        rows = conn.execute(sql, params).fetchall()
    return [_quote_row(r) for r in rows]


def mark_quote_signed(quote_id: str, signed_pdf_url: str, signed_at: str) -> bool:
    """pending → signed. Returns False if the quote was not pending anymore."""
    with get_db() as conn:
        cur = conn.execute("""
            UPDATE quotes SET status='signed', signed_pdf_url=?, signed_at=?, updated_at=?
            WHERE id=? AND status='pending'
        """, (signed_pdf_url, signed_at, now_iso(), quote_id))
    return cur.rowcount == 1


def delete_quote(quote_id: str) -> bool:
    with get_db() as conn:
        cur = conn.execute("DELETE FROM quotes WHERE id=?", (quote_id,))
    return cur.rowcount > 0


def count_quotes(project_id: str = None) -> int:
    with get_db() as conn:
        if project_id:
            return conn.execute("SELECT COUNT(*) FROM quotes WHERE project_id=?",
                                (project_id,)).fetchone()[0]
        return conn.execute("SELECT COUNT(*) FROM quotes").fetchone()[0]


def max_quote_number(conn=None) -> int:
    sql = "SELECT number FROM quotes ORDER BY number DESC LIMIT 1"
    if conn is not None:
        row = conn.execute(sql).fetchone()
    else:
        with get_db() as c:
            row = c.execute(sql).fetchone()
    return row[0] if row else 0


# ── Files ─────────────────────────────────────────────────────────────────────
def insert_file(path: str, label: str, project_id: str, uploader_id: str,
                storage_provider: str = "blob") -> int:
    with get_db() as conn:
        cur = conn.execute("""
            INSERT INTO files (path, label, storage_provider, project_id, uploader_id, created_at)
            VALUES (?,?,?,?,?,?)
        """, (path, label, storage_provider, project_id, uploader_id, now_iso()))
        return cur.lastrowid


def get_project_files(project_id: str) -> list:
    with get_db() as conn:
        rows = conn.execute("SELECT * FROM files WHERE project_id=? ORDER BY id",
                            (project_id,)).fetchall()
    return [dict(r) for r in rows]


# ── Notifications ─────────────────────────────────────────────────────────────
def log_notification(event_type: str, recipient: str, subject: str,
                     quote_id: str = None, delivered: bool = False,
                     error: str = None) -> int:
    with get_db() as conn:
        cur = conn.execute("""
            INSERT INTO notifications
              (created_at, event_type, recipient, subject, quote_id, delivered, error)
            VALUES (?,?,?,?,?,?,?)
        """, (now_iso(), event_type, recipient, subject, quote_id,
              1 if delivered else 0, (error or "")[:500] or None))
        return cur.lastrowid


def get_notifications(quote_id: str = None, event_type: str = None) -> list:
    conditions, params = [], []
    if quote_id:
        conditions.append("quote_id=?")
        params.append(quote_id)
    if event_type:
        conditions.append("event_type=?")
        params.append(event_type)
    where = "WHERE " + " AND ".join(conditions) if conditions else ""
    with get_db() as conn:
        rows = conn.execute(f"SELECT * FROM notifications {where} ORDER BY id",
                            params).fetchall()
    return [dict(r) for r in rows]


# ── Stats ─────────────────────────────────────────────────────────────────────
def get_db_stats() -> dict:
    """Row counts per table (health endpoint)."""
    stats = {}
    with get_db() as conn:
        for table in ("auth_users", "projects", "quotes", "notifications", "files"):
            stats[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    stats["db_path"] = DB_PATH
    return stats


def startup() -> dict:
    """Initialize DB. Call once at app start."""
    init_db()
    stats = get_db_stats()
    log.info("DB ready: %s", {k: v for k, v in stats.items() if k != "db_path"})
    return {"ok": True, "db_path": DB_PATH, "stats": stats}
