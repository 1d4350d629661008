"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema creation.

Ledger mutations run inside `Database.transaction()`. On SQLite the
transaction is opened with BEGIN IMMEDIATE so writers are serialized; on
PostgreSQL the repositories lock the rows they read with SELECT ... FOR UPDATE.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Partner accounts (prepaid, billed per GB)
CREATE TABLE IF NOT EXISTS partners (
    partner_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE,
    api_key TEXT NOT NULL UNIQUE,
    api_secret_hash TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    pricing_tier TEXT NOT NULL DEFAULT 'tier1',
    price_per_gb REAL NOT NULL DEFAULT 0.10,
    balance REAL NOT NULL DEFAULT 0.0 CHECK (balance >= 0),
    total_usage_gb REAL NOT NULL DEFAULT 0.0,
    total_spent REAL NOT NULL DEFAULT 0.0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- One earnings account per contributor
CREATE TABLE IF NOT EXISTS contributor_earnings (
    contributor_id TEXT PRIMARY KEY,
    today_earned REAL NOT NULL DEFAULT 0.0,
    total_earned REAL NOT NULL DEFAULT 0.0,
    earnings_day TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Relay sessions ("start sharing" windows)
CREATE TABLE IF NOT EXISTS relay_sessions (
    session_id TEXT PRIMARY KEY,
    contributor_id TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    bandwidth_limit_gb REAL NOT NULL,
    bytes_relayed_mb REAL NOT NULL DEFAULT 0.0,
    started_at TEXT NOT NULL,
    stopped_at TEXT,
    updated_at TEXT NOT NULL
);

-- Usage records (append-only audit log)
CREATE TABLE IF NOT EXISTS usage_records (
    record_id TEXT PRIMARY KEY,
    partner_id TEXT NOT NULL,
    contributor_id TEXT NOT NULL,
    session_id TEXT,
    target_url TEXT NOT NULL,
    method TEXT NOT NULL,
    request_bytes INTEGER NOT NULL DEFAULT 0,
    response_bytes INTEGER NOT NULL DEFAULT 0,
    response_status INTEGER,
    response_size INTEGER NOT NULL DEFAULT 0,
    billed_volume_mb REAL NOT NULL,
    billed_volume_gb REAL NOT NULL,
    cost REAL NOT NULL,
    contributor_earnings REAL NOT NULL,
    platform_fee REAL NOT NULL,
    outcome TEXT NOT NULL DEFAULT 'settled',
    reject_reason TEXT,
    timestamp TEXT NOT NULL
);

-- Payout attempts
CREATE TABLE IF NOT EXISTS payouts (
    payout_id TEXT PRIMARY KEY,
    contributor_id TEXT NOT NULL,
    amount REAL NOT NULL,
    credits INTEGER NOT NULL,
    payment_method TEXT NOT NULL,
    payment_details TEXT NOT NULL,  -- Fernet token
    status TEXT NOT NULL,
    transaction_id TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    processed_at TEXT
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- At most one active session per contributor
CREATE UNIQUE INDEX IF NOT EXISTS uq_sessions_one_active
    ON relay_sessions(contributor_id) WHERE is_active = 1;

-- Usage records are never updated or deleted
CREATE TRIGGER IF NOT EXISTS trg_usage_records_no_update
BEFORE UPDATE ON usage_records
BEGIN
    SELECT RAISE(ABORT, 'usage_records is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_usage_records_no_delete
BEFORE DELETE ON usage_records
BEGIN
    SELECT RAISE(ABORT, 'usage_records is append-only');
END;

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_partners_status ON partners(status);
CREATE INDEX IF NOT EXISTS idx_sessions_contributor ON relay_sessions(contributor_id, is_active);
CREATE INDEX IF NOT EXISTS idx_sessions_active ON relay_sessions(is_active);
CREATE INDEX IF NOT EXISTS idx_usage_partner ON usage_records(partner_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_usage_contributor ON usage_records(contributor_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_payouts_contributor ON payouts(contributor_id, status);
CREATE INDEX IF NOT EXISTS idx_payouts_created ON payouts(created_at);
"""

POSTGRES_SCHEMA_SQL = """
-- Partner accounts
CREATE TABLE IF NOT EXISTS partners (
    partner_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE,
    api_key TEXT NOT NULL UNIQUE,
    api_secret_hash TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    pricing_tier TEXT NOT NULL DEFAULT 'tier1',
    price_per_gb DOUBLE PRECISION NOT NULL DEFAULT 0.10,
    balance DOUBLE PRECISION NOT NULL DEFAULT 0.0 CHECK (balance >= 0),
    total_usage_gb DOUBLE PRECISION NOT NULL DEFAULT 0.0,
    total_spent DOUBLE PRECISION NOT NULL DEFAULT 0.0,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Contributor earnings
CREATE TABLE IF NOT EXISTS contributor_earnings (
    contributor_id TEXT PRIMARY KEY,
    today_earned DOUBLE PRECISION NOT NULL DEFAULT 0.0,
    total_earned DOUBLE PRECISION NOT NULL DEFAULT 0.0,
    earnings_day TEXT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Relay sessions
CREATE TABLE IF NOT EXISTS relay_sessions (
    session_id TEXT PRIMARY KEY,
    contributor_id TEXT NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    bandwidth_limit_gb DOUBLE PRECISION NOT NULL,
    bytes_relayed_mb DOUBLE PRECISION NOT NULL DEFAULT 0.0,
    started_at TIMESTAMPTZ NOT NULL,
    stopped_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Usage records
CREATE TABLE IF NOT EXISTS usage_records (
    record_id TEXT PRIMARY KEY,
    partner_id TEXT NOT NULL REFERENCES partners(partner_id),
    contributor_id TEXT NOT NULL,
    session_id TEXT,
    target_url TEXT NOT NULL,
    method TEXT NOT NULL,
    request_bytes BIGINT NOT NULL DEFAULT 0,
    response_bytes BIGINT NOT NULL DEFAULT 0,
    response_status INTEGER,
    response_size BIGINT NOT NULL DEFAULT 0,
    billed_volume_mb DOUBLE PRECISION NOT NULL,
    billed_volume_gb DOUBLE PRECISION NOT NULL,
    cost DOUBLE PRECISION NOT NULL,
    contributor_earnings DOUBLE PRECISION NOT NULL,
    platform_fee DOUBLE PRECISION NOT NULL,
    outcome TEXT NOT NULL DEFAULT 'settled',
    reject_reason TEXT,
    timestamp TIMESTAMPTZ NOT NULL
);

-- Payouts
CREATE TABLE IF NOT EXISTS payouts (
    payout_id TEXT PRIMARY KEY,
    contributor_id TEXT NOT NULL,
    amount DOUBLE PRECISION NOT NULL,
    credits BIGINT NOT NULL,
    payment_method TEXT NOT NULL,
    payment_details TEXT NOT NULL,
    status TEXT NOT NULL,
    transaction_id TEXT,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    processed_at TIMESTAMPTZ
);

-- Schema version
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_sessions_one_active
    ON relay_sessions(contributor_id) WHERE is_active;

CREATE OR REPLACE FUNCTION usage_records_append_only() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'usage_records is append-only';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS trg_usage_records_append_only ON usage_records;
CREATE TRIGGER trg_usage_records_append_only
    BEFORE UPDATE OR DELETE ON usage_records
    FOR EACH ROW EXECUTE FUNCTION usage_records_append_only();

-- Indexes
CREATE INDEX IF NOT EXISTS idx_partners_status ON partners(status);
CREATE INDEX IF NOT EXISTS idx_sessions_contributor ON relay_sessions(contributor_id, is_active);
CREATE INDEX IF NOT EXISTS idx_sessions_active ON relay_sessions(is_active);
CREATE INDEX IF NOT EXISTS idx_usage_partner ON usage_records(partner_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_usage_contributor ON usage_records(contributor_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_payouts_contributor ON payouts(contributor_id, status);
CREATE INDEX IF NOT EXISTS idx_payouts_created ON payouts(created_at);
"""


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.transaction() as tx:
            tx.execute("SELECT * FROM partners WHERE partner_id = ?", (pid,))

    Queries are written with `?` placeholders; they are rewritten to `%s`
    for PostgreSQL.
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///bandwidth_rail.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._init_lock = threading.Lock()
        self._initialized = False

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
        return "bandwidth_rail.db"

    def _sql(self, query: str) -> str:
        return query.replace("?", "%s") if self.is_postgres else query

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "tx_conn", None) is not None

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Get a database connection (thread-safe).

        Inside `transaction()` the open transaction's connection is reused
        and commit/rollback is left to the transaction.
        """
        tx_conn = getattr(self._local, "tx_conn", None)
        if tx_conn is not None:
            yield tx_conn
            return

        if self.is_postgres:
            with self._postgres_connection() as conn:
                yield conn
        else:
            with self._sqlite_connection() as conn:
                yield conn

    def _open_sqlite(self) -> sqlite3.Connection:
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            db_path = self._get_sqlite_path()
            self._local.conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                timeout=30.0,
            )
            self._local.conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn.execute("PRAGMA foreign_keys=ON")
        return self._local.conn

    @contextmanager
    def _sqlite_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """SQLite connection with WAL mode for concurrency."""
        conn = self._open_sqlite()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def _open_postgres(self) -> Any:
        import psycopg2
        from psycopg2.extras import RealDictCursor

        return psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)

    @contextmanager
    def _postgres_connection(self) -> Generator[Any, None, None]:
        """PostgreSQL connection, one per unit of work."""
        conn = self._open_postgres()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator["Database", None, None]:
        """
        Run a unit of work atomically.

        Everything executed through this database on the current thread
        until the block exits is committed together or rolled back together.
        Nested calls join the outer transaction.
        """
        if self.in_transaction:
            yield self
            return

        if self.is_postgres:
            conn = self._open_postgres()
        else:
            conn = self._open_sqlite()
            conn.execute("BEGIN IMMEDIATE")

        self._local.tx_conn = conn
        try:
            yield self
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._local.tx_conn = None
            if self.is_postgres:
                conn.close()

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._init_lock:
            if self._initialized:
                return

            schema = POSTGRES_SCHEMA_SQL if self.is_postgres else SCHEMA_SQL

            with self.connection() as conn:
                now = datetime.now(timezone.utc).isoformat()
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(schema)
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
                else:
                    conn.executescript(schema)
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        with self.connection() as conn:
            if self.is_postgres:
                cursor = conn.cursor()
                cursor.execute(self._sql(query), params)
                if cursor.description:
                    return [dict(row) for row in cursor.fetchall()]
                return []
            else:
                cursor = conn.execute(query, params)
                if cursor.description:
                    return [dict(row) for row in cursor.fetchall()]
                return []

    def execute_rowcount(self, query: str, params: tuple = ()) -> int:
        """Execute a write and return the number of affected rows."""
        with self.connection() as conn:
            if self.is_postgres:
                cursor = conn.cursor()
                cursor.execute(self._sql(query), params)
                return cursor.rowcount
            cursor = conn.execute(query, params)
            return cursor.rowcount

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self._local, 'conn') and self._local.conn:
            self._local.conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
