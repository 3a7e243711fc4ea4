"""
SQLite persistence for the Content Coordinator.

All durable state lives in one SQLite database:

- resource_pools / resource_usage_samples: pool counters and snapshots
- execution_records: dispatched batches handed to the workflow executor
- coordinator_states: append-only state machine transitions
- queue_items: the shared work queue
- alerts / recommendations: monitoring output
- error_log: one row per failure path

Every read-modify-write goes through ``Database.transaction()``, which
opens ``BEGIN IMMEDIATE`` so the statements inside run as one indivisible
step, even across processes sharing the database file.
"""
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

import structlog

logger = structlog.get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS resource_pools (
    resource_type TEXT PRIMARY KEY,
    used_amount REAL NOT NULL DEFAULT 0 CHECK (used_amount >= 0),
    total_capacity REAL NOT NULL CHECK (total_capacity > 0),
    soft_limit REAL,
    hard_limit REAL,
    burst_allowance REAL NOT NULL DEFAULT 0,
    consecutive_errors INTEGER NOT NULL DEFAULT 0,
    last_error_at TEXT,
    is_available INTEGER NOT NULL DEFAULT 1,
    version INTEGER NOT NULL DEFAULT 0,
    window_seconds INTEGER,
    window_started_at TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS resource_usage_samples (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    used_amount REAL NOT NULL,
    total_capacity REAL NOT NULL,
    utilization REAL NOT NULL,
    execution_id TEXT,
    category TEXT,
    metadata TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_usage_type_time
    ON resource_usage_samples(resource_type, timestamp DESC);

CREATE TABLE IF NOT EXISTS execution_records (
    execution_id TEXT PRIMARY KEY,
    category TEXT NOT NULL,
    status TEXT NOT NULL,
    priority INTEGER NOT NULL,
    plan_id TEXT,
    parent_execution_id TEXT,
    scheduled_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    timeout_at TEXT NOT NULL,
    batch_size INTEGER NOT NULL CHECK (batch_size > 0),
    estimated_cost REAL NOT NULL DEFAULT 0,
    actual_cost REAL,
    actual_duration_ms INTEGER,
    resource_allocation TEXT NOT NULL DEFAULT '{}',
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    worker_id TEXT NOT NULL,
    error_details TEXT,
    input_context TEXT NOT NULL DEFAULT '{}',
    output_result TEXT,
    archived INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_records_status ON execution_records(status, scheduled_at);
CREATE INDEX IF NOT EXISTS idx_records_category ON execution_records(category, status);

CREATE TABLE IF NOT EXISTS coordinator_states (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    state TEXT NOT NULL,
    previous_state TEXT,
    reason TEXT,
    worker_id TEXT,
    entered_at TEXT NOT NULL,
    previous_duration_ms INTEGER,
    payload TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS queue_items (
    item_id TEXT PRIMARY KEY,
    task_type TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'queued',
    priority_tier INTEGER NOT NULL DEFAULT 2,
    lock_owner TEXT,
    locked_at TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    next_eligible_at TEXT,
    error_detail TEXT,
    result_ref TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_queue_claim ON queue_items(status, priority_tier, created_at);
CREATE INDEX IF NOT EXISTS idx_queue_type ON queue_items(task_type, status);

CREATE TABLE IF NOT EXISTS alerts (
    alert_id TEXT PRIMARY KEY,
    alert_type TEXT NOT NULL,
    category TEXT,
    severity TEXT NOT NULL,
    message TEXT NOT NULL,
    metric_value REAL,
    threshold REAL,
    status TEXT NOT NULL DEFAULT 'open',
    created_at TEXT NOT NULL,
    resolved_at TEXT,
    metadata TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_alerts_open ON alerts(status, alert_type, category);

CREATE TABLE IF NOT EXISTS recommendations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    rec_type TEXT NOT NULL,
    priority TEXT NOT NULL,
    category TEXT,
    resource_type TEXT,
    message TEXT NOT NULL,
    action TEXT NOT NULL,
    metric_value REAL,
    target_value REAL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS error_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    message TEXT NOT NULL,
    context TEXT NOT NULL DEFAULT '{}',
    worker_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_error_log_kind ON error_log(kind, created_at DESC);
"""


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width ISO timestamp so string order equals time order."""
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def to_json(value: Any) -> str:
    return json.dumps(value if value is not None else {}, default=str, sort_keys=True)


def from_json(value: Optional[str], default: Any = None) -> Any:
    if not value:
        return {} if default is None else default
    return json.loads(value)


class Database:
    """
    Thin wrapper around a SQLite database.

    ``:memory:`` databases keep one persistent connection shared by every
    thread and guarded by a lock. File databases open one connection per
    thread in WAL mode, so separate workers contend through SQLite's own
    locking rather than through Python.
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize the database and create the schema.

        Args:
            db_path: Path to SQLite database. If None, uses in-memory.
        """
        self.db_path = str(db_path) if db_path else ":memory:"
        self._lock = threading.RLock()
        self._local = threading.local()
        self._conn: Optional[sqlite3.Connection] = None
        # Per-thread connections, closed together by close()
        self._thread_conns: list[sqlite3.Connection] = []
        if self.db_path == ":memory:":
            self._conn = self._connect(":memory:")
        else:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self, path: str) -> sqlite3.Connection:
        conn = sqlite3.connect(
            path,
            check_same_thread=False,
            timeout=30,
            isolation_level=None,  # explicit BEGIN/COMMIT only
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout=30000")
        if path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection, using persistent connection for in-memory."""
        if self._conn is not None:
            return self._conn
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect(self.db_path)
            self._local.conn = conn
            with self._lock:
                self._thread_conns.append(conn)
        return conn

    def _init_db(self) -> None:
        with self._lock:
            self._get_connection().executescript(SCHEMA)
        logger.debug("database_initialized", db_path=self.db_path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run the enclosed statements as one write transaction.

        Nested use joins the outer transaction instead of opening a new one.
        """
        with self._lock:
            conn = self._get_connection()
            if conn.in_transaction:
                yield conn
                return
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def fetch_all(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._get_connection().execute(sql, params).fetchall()

    def fetch_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._get_connection().execute(sql, params).fetchone()

    def execute(self, sql: str, params: tuple = ()) -> int:
        """Execute one write statement in its own transaction; returns rowcount."""
        with self.transaction() as conn:
            return conn.execute(sql, params).rowcount

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            for conn in self._thread_conns:
                conn.close()
            self._thread_conns.clear()
            self._local = threading.local()
