import os
import sqlite3
from contextlib import contextmanager
from typing import Optional

from common.config import config
from common.logging.logger import get_logger

logger = get_logger("database")


class Database:
    """
    SQLite store backing the shard checkpoint and the run log.

    Every call opens its own connection, so one instance can be shared by
    all worker threads. Writes go through `connection()`, which commits on
    success and rolls back on error; with WAL and synchronous=FULL a
    committed state change survives a crash.
    """

    def __init__(self, db_path: Optional[str] = None, busy_timeout: Optional[float] = None):
        if db_path is None:
            # Absolute path so worker threads resolve the same file
            raw_path = config.get("checkpoint.sqlite_path")
            self.db_path = os.path.abspath(raw_path)
        else:
            self.db_path = os.path.abspath(db_path)
        self.busy_timeout = busy_timeout or config.get("checkpoint.busy_timeout_seconds")

        parent = os.path.dirname(self.db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self._init_db()

    def get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        conn.execute("PRAGMA synchronous=FULL")
        return conn

    @contextmanager
    def connection(self):
        """Context manager that provides a connection with automatic commit/rollback."""
        conn = self.get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        """Initialize the database schema."""
        schema = """
        -- One row per shard known to any run
        CREATE TABLE IF NOT EXISTS shard_state (
            shard_id TEXT PRIMARY KEY,
            state TEXT NOT NULL DEFAULT 'pending',
            reason TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            documents JSON,
            worker TEXT,
            run_id TEXT,
            registered_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            started_at TIMESTAMP,
            completed_at TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );

        CREATE INDEX IF NOT EXISTS idx_shard_state_state ON shard_state(state);

        -- One row per orchestrator run
        CREATE TABLE IF NOT EXISTS pipeline_runs (
            id TEXT PRIMARY KEY,
            shard_count INTEGER,
            worker_count INTEGER,
            status TEXT,
            done_count INTEGER,
            failed_count INTEGER,
            skipped_count INTEGER,
            summary JSON,
            started_at TIMESTAMP,
            completed_at TIMESTAMP,
            error_message TEXT
        );
        """
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(schema)
            conn.commit()
        finally:
            conn.close()
        logger.debug(f"Checkpoint database ready at {self.db_path}")
