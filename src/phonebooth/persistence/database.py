"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema
creation. Queries are written with '?' placeholders and adapted for
PostgreSQL. Driver operational failures surface as StorageUnavailable.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

from ..core.errors import StorageUnavailable

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    caller_id TEXT NOT NULL,
    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
    currency TEXT NOT NULL DEFAULT 'USD',
    display_currency TEXT NOT NULL DEFAULT 'USD',
    frozen INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rates (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    country TEXT NOT NULL,
    code INTEGER NOT NULL,
    price INTEGER NOT NULL CHECK (price >= 0),
    updated_at TEXT NOT NULL,
    UNIQUE (country, code)
);

-- Rate columns are the snapshot taken at connect, not a live reference
CREATE TABLE IF NOT EXISTS calls (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner INTEGER NOT NULL,
    callee_id TEXT NOT NULL,
    country_code INTEGER NOT NULL,
    country TEXT,
    status TEXT NOT NULL,
    start_time TEXT NOT NULL,
    connect_time TEXT,
    last_billing_check TEXT,
    hangup_time TEXT,
    rate_id INTEGER,
    rate_country TEXT,
    rate_code INTEGER,
    rate_price INTEGER,
    billed_units INTEGER NOT NULL DEFAULT 0,
    charged INTEGER NOT NULL DEFAULT 0,
    price INTEGER,
    end_time TEXT,
    failure_reason TEXT,
    FOREIGN KEY (owner) REFERENCES users(id)
);

CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner INTEGER NOT NULL,
    transaction_type TEXT NOT NULL,
    display_currency TEXT NOT NULL,
    value INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    call_id INTEGER,
    note TEXT,
    FOREIGN KEY (owner) REFERENCES users(id),
    FOREIGN KEY (call_id) REFERENCES calls(id)
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_calls_owner ON calls(owner);
CREATE INDEX IF NOT EXISTS idx_calls_status ON calls(status);
CREATE INDEX IF NOT EXISTS idx_transactions_owner_ts ON transactions(owner, timestamp, id);
CREATE INDEX IF NOT EXISTS idx_transactions_call ON transactions(call_id);
CREATE INDEX IF NOT EXISTS idx_rates_code ON rates(code);
"""

POSTGRES_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id BIGSERIAL PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    caller_id TEXT NOT NULL,
    balance BIGINT NOT NULL DEFAULT 0 CHECK (balance >= 0),
    currency TEXT NOT NULL DEFAULT 'USD',
    display_currency TEXT NOT NULL DEFAULT 'USD',
    frozen BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rates (
    id BIGSERIAL PRIMARY KEY,
    country TEXT NOT NULL,
    code INTEGER NOT NULL,
    price BIGINT NOT NULL CHECK (price >= 0),
    updated_at TEXT NOT NULL,
    UNIQUE (country, code)
);

CREATE TABLE IF NOT EXISTS calls (
    id BIGSERIAL PRIMARY KEY,
    owner BIGINT NOT NULL REFERENCES users(id),
    callee_id TEXT NOT NULL,
    country_code INTEGER NOT NULL,
    country TEXT,
    status TEXT NOT NULL,
    start_time TEXT NOT NULL,
    connect_time TEXT,
    last_billing_check TEXT,
    hangup_time TEXT,
    rate_id BIGINT,
    rate_country TEXT,
    rate_code INTEGER,
    rate_price BIGINT,
    billed_units INTEGER NOT NULL DEFAULT 0,
    charged BIGINT NOT NULL DEFAULT 0,
    price BIGINT,
    end_time TEXT,
    failure_reason TEXT
);

CREATE TABLE IF NOT EXISTS transactions (
    id BIGSERIAL PRIMARY KEY,
    owner BIGINT NOT NULL REFERENCES users(id),
    transaction_type TEXT NOT NULL,
    display_currency TEXT NOT NULL,
    value BIGINT NOT NULL,
    timestamp TEXT NOT NULL,
    call_id BIGINT REFERENCES calls(id),
    note TEXT
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_calls_owner ON calls(owner);
CREATE INDEX IF NOT EXISTS idx_calls_status ON calls(status);
CREATE INDEX IF NOT EXISTS idx_transactions_owner_ts ON transactions(owner, timestamp, id);
CREATE INDEX IF NOT EXISTS idx_transactions_call ON transactions(call_id);
CREATE INDEX IF NOT EXISTS idx_rates_code ON rates(code);
"""


def _driver_errors() -> tuple:
    """(operational errors, integrity errors) of the installed drivers."""
    operational = [sqlite3.OperationalError]
    integrity = [sqlite3.IntegrityError]
    try:
        import psycopg2
        operational.extend([psycopg2.OperationalError, psycopg2.InterfaceError])
        integrity.append(psycopg2.IntegrityError)
    except ImportError:
        pass
    return tuple(operational), tuple(integrity)


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.transaction() as conn:
            db.execute("SELECT * FROM calls", conn=conn)
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///phonebooth.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._initialized = False
        self._storage_errors, self.integrity_errors = _driver_errors()

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "phonebooth.db"

    def _sqlite_conn(self) -> sqlite3.Connection:
        """Thread-local SQLite connection with WAL mode for concurrency."""
        if getattr(self._local, "conn", None) is None:
            conn = sqlite3.connect(
                self._get_sqlite_path(),
                check_same_thread=False,
                timeout=30.0,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return self._local.conn

    def _postgres_conn(self) -> Any:
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install phonebooth[postgres]")

        return psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)

    @contextmanager
    def transaction(self, write: bool = True) -> Generator[Any, None, None]:
        """
        One storage transaction: commits on success, rolls back on any error.

        For writes SQLite takes the write lock up front (BEGIN IMMEDIATE) so
        a read-modify-write inside the block cannot interleave with another
        writer.
        """
        try:
            if self.is_postgres:
                conn = self._postgres_conn()
            else:
                conn = self._sqlite_conn()
                if write and not conn.in_transaction:
                    conn.execute("BEGIN IMMEDIATE")
        except self._storage_errors as e:
            logger.error("storage_unavailable", error=str(e))
            raise StorageUnavailable(f"Cannot open storage transaction: {e}") from e

        try:
            yield conn
            conn.commit()
        except self._storage_errors as e:
            conn.rollback()
            logger.error("storage_unavailable", error=str(e))
            raise StorageUnavailable(f"Storage operation failed: {e}") from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            if self.is_postgres:
                conn.close()

    def _adapt(self, query: str) -> str:
        return query.replace("?", "%s") if self.is_postgres else query

    def _run(self, conn: Any, query: str, params: tuple) -> Any:
        if self.is_postgres:
            cursor = conn.cursor()
            cursor.execute(self._adapt(query), params)
            return cursor
        return conn.execute(query, params)

    def execute(self, query: str, params: tuple = (), conn: Any = None) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        if conn is None:
            with self.transaction(write=False) as own:
                return self.execute(query, params, conn=own)

        cursor = self._run(conn, query, params)
        if cursor.description:
            return [dict(row) for row in cursor.fetchall()]
        return []

    def insert(self, query: str, params: tuple = (), conn: Any = None) -> int:
        """Execute an INSERT and return the new row id."""
        if conn is None:
            with self.transaction() as own:
                return self.insert(query, params, conn=own)

        if self.is_postgres:
            cursor = self._run(conn, query + " RETURNING id", params)
            return cursor.fetchone()["id"]
        return self._run(conn, query, params).lastrowid

    def update(self, query: str, params: tuple = (), conn: Any = None) -> int:
        """Execute an UPDATE/DELETE and return the affected row count."""
        if conn is None:
            with self.transaction() as own:
                return self.update(query, params, conn=own)
        return self._run(conn, query, params).rowcount

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            now = datetime.now(timezone.utc).isoformat()
            if self.is_postgres:
                with self.transaction() as conn:
                    conn.cursor().execute(POSTGRES_SCHEMA_SQL)
                    conn.cursor().execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
            else:
                conn = self._sqlite_conn()
                try:
                    conn.executescript(SCHEMA_SQL)
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )
                    conn.commit()
                except self._storage_errors as e:
                    conn.rollback()
                    raise StorageUnavailable(f"Cannot initialize schema: {e}") from e

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def close(self) -> None:
        """Close the calling thread's SQLite connection."""
        if getattr(self._local, "conn", None) is not None:
            self._local.conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
