import json
import sqlite3
import threading
from functools import wraps
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .utils import utcnow

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS Tasks(
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  status TEXT NOT NULL,
  user_data TEXT NOT NULL DEFAULT '{}',
  result_log TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tasks_status_id ON Tasks(status,id);
CREATE TABLE IF NOT EXISTS backfill_run_credits(
  user_id TEXT PRIMARY KEY,
  credits INTEGER NOT NULL DEFAULT 0,
  updated_at TEXT NOT NULL
);
"""

_TASK_COLUMNS = ("status", "user_data", "result_log")


def with_conn(fn):
    @wraps(fn)
    def wrapper(self, *args, **kwargs):
        return fn(self, self.get_conn(), *args, **kwargs)
    return wrapper


class SqliteDatabase:
    """Thread-local connections to one SQLite file; the schema is created on first connect."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()

    def get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self.db_path, timeout=30)
            conn.row_factory = sqlite3.Row
            conn.executescript(SCHEMA)
            self._local.conn = conn
        return conn

    def close(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None


def _task_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    data = dict(row)
    try:
        data["user_data"] = json.loads(data["user_data"] or "{}")
    except ValueError:
        # left as text; the worker fails the job instead of the read
        pass
    return data


def _task_assignments(fields: Dict[str, Any]) -> Tuple[str, List[Any]]:
    unknown = set(fields) - set(_TASK_COLUMNS)
    if unknown:
        raise ValueError(f"unknown Tasks columns: {sorted(unknown)}")
    cols, values = [], []
    for key, value in fields.items():
        cols.append(f"{key}=?")
        values.append(json.dumps(value, ensure_ascii=False) if key == "user_data" else value)
    cols.append("updated_at=?")
    values.append(utcnow().isoformat())
    return ",".join(cols), values


class SqliteJobTable(SqliteDatabase):
    @with_conn
    def list_pending(self, conn, status: str, order_by: str = "id", limit: int = 1) -> List[Dict[str, Any]]:
        if order_by not in ("id", "created_at"):
            raise ValueError(f"cannot order by {order_by}")
        cur = conn.execute(
            f"SELECT * FROM Tasks WHERE status=? ORDER BY {order_by} ASC LIMIT ?", (status, limit)
        )
        return [_task_dict(r) for r in cur.fetchall()]

    @with_conn
    def conditional_update(self, conn, job_id: int, expected_status: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """BEGIN IMMEDIATE makes the status check and the write one step across processes."""
        assignments, values = _task_assignments(fields)
        conn.execute("BEGIN IMMEDIATE")
        try:
            cur = conn.execute(
                f"UPDATE Tasks SET {assignments} WHERE id=? AND status=?",
                (*values, job_id, expected_status),
            )
            row = None
            if cur.rowcount == 1:
                row = conn.execute("SELECT * FROM Tasks WHERE id=?", (job_id,)).fetchone()
            conn.execute("COMMIT")
        except sqlite3.Error:
            conn.rollback()
            raise
        return _task_dict(row)

    @with_conn
    def update(self, conn, job_id: int, fields: Dict[str, Any]):
        assignments, values = _task_assignments(fields)
        with conn:
            conn.execute(f"UPDATE Tasks SET {assignments} WHERE id=?", (*values, job_id))

    @with_conn
    def get(self, conn, job_id: int) -> Optional[Dict[str, Any]]:
        return _task_dict(conn.execute("SELECT * FROM Tasks WHERE id=?", (job_id,)).fetchone())

    @with_conn
    def insert(self, conn, fields: Dict[str, Any]) -> Dict[str, Any]:
        now = utcnow().isoformat()
        with conn:
            cur = conn.execute(
                "INSERT INTO Tasks(status,user_data,result_log,created_at,updated_at) VALUES(?,?,?,?,?)",
                (
                    fields.get("status", "PENDING"),
                    json.dumps(fields.get("user_data") or {}, ensure_ascii=False),
                    fields.get("result_log"),
                    now,
                    now,
                ),
            )
        return self.get(cur.lastrowid)

    @with_conn
    def list_jobs(self, conn, status: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        if status:
            cur = conn.execute("SELECT * FROM Tasks WHERE status=? ORDER BY id LIMIT ?", (status, limit))
        else:
            cur = conn.execute("SELECT * FROM Tasks ORDER BY id LIMIT ?", (limit,))
        return [_task_dict(r) for r in cur.fetchall()]

    @with_conn
    def counts_by_status(self, conn) -> List[Tuple[str, int]]:
        cur = conn.execute("SELECT status, COUNT(*) FROM Tasks GROUP BY status ORDER BY status")
        return [(r[0], r[1]) for r in cur.fetchall()]


class SqliteCreditTable(SqliteDatabase):
    @with_conn
    def get(self, conn, user_id: str) -> Optional[Dict[str, Any]]:
        row = conn.execute("SELECT * FROM backfill_run_credits WHERE user_id=?", (user_id,)).fetchone()
        return dict(row) if row else None

    @with_conn
    def insert(self, conn, user_id: str, credits: int):
        with conn:
            conn.execute(
                "INSERT INTO backfill_run_credits(user_id,credits,updated_at) VALUES(?,?,?)",
                (user_id, credits, utcnow().isoformat()),
            )

    @with_conn
    def update(self, conn, user_id: str, credits: int):
        with conn:
            conn.execute(
                "UPDATE backfill_run_credits SET credits=?, updated_at=? WHERE user_id=?",
                (credits, utcnow().isoformat(), user_id),
            )

    @with_conn
    def upsert(self, conn, user_id: str, credits: int):
        with conn:
            conn.execute(
                """INSERT INTO backfill_run_credits(user_id,credits,updated_at) VALUES(?,?,?)
                   ON CONFLICT(user_id) DO UPDATE SET credits=excluded.credits, updated_at=excluded.updated_at""",
                (user_id, credits, utcnow().isoformat()),
            )
