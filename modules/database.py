"""
Database module for cl-autoloop

Handles SQLite persistence for:
- The active autoloop parameters (single versioned row)
- The dispatch log of swaps the autolooper requested

Swap history itself lives in the swap service and is never stored here.
"""

import sqlite3
import os
import time
import json
from typing import Dict, List, Optional, Any


class Database:
    """SQLite database manager for the autoloop plugin."""

    def __init__(self, db_path: str, plugin):
        """
        Initialize the database connection.

        Args:
            db_path: Path to SQLite database file
            plugin: Reference to the pyln Plugin for logging
        """
        self.db_path = os.path.expanduser(db_path)
        self.plugin = plugin
        self._conn: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)

            self._conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                isolation_level=None  # Autocommit mode
            )
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def initialize(self):
        """Create database tables if they don't exist."""
        conn = self._get_connection()

        # Active parameters - always the row with id = 1
        conn.execute("""
            CREATE TABLE IF NOT EXISTS autoloop_parameters (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                params_json TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                updated_at INTEGER NOT NULL
            )
        """)

        # Dispatch log
        conn.execute("""
            CREATE TABLE IF NOT EXISTS autoloop_dispatches (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                swap_id TEXT,
                amount_sats INTEGER NOT NULL,
                scope TEXT NOT NULL,  -- 'channel' or 'peer'
                target TEXT NOT NULL,
                outgoing_chan_set TEXT NOT NULL,  -- JSON list of scids
                worst_case_fee_sats INTEGER NOT NULL,
                status TEXT NOT NULL,  -- 'dispatched', 'failed'
                error_message TEXT,
                timestamp INTEGER NOT NULL
            )
        """)

        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_dispatches_time ON autoloop_dispatches(timestamp)"
        )

        self.plugin.log("Database initialized successfully")

    # =========================================================================
    # Parameter Methods
    # =========================================================================

    def save_parameters(self, params: Dict[str, Any]) -> int:
        """Persist the parameter dict and return the new version."""
        conn = self._get_connection()
        now = int(time.time())
        new_version = self.get_parameters_version() + 1

        conn.execute("""
            INSERT OR REPLACE INTO autoloop_parameters (id, params_json, version, updated_at)
            VALUES (1, ?, ?, ?)
        """, (json.dumps(params, sort_keys=True), new_version, now))

        return new_version

    def load_parameters(self) -> Optional[Dict[str, Any]]:
        """Return the persisted parameter dict, or None if never saved."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT params_json FROM autoloop_parameters WHERE id = 1"
        ).fetchone()
        if not row:
            return None
        try:
            return json.loads(row["params_json"])
        except json.JSONDecodeError as e:
            self.plugin.log(f"Stored parameters are corrupt, ignoring: {e}", level='warn')
            return None

    def get_parameters_version(self) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT version FROM autoloop_parameters WHERE id = 1"
        ).fetchone()
        return row["version"] if row else 0

    # =========================================================================
    # Dispatch Log Methods
    # =========================================================================

    def record_dispatch(self, amount_sats: int, scope: str, target: str,
                        outgoing_chan_set: List[str], worst_case_fee_sats: int,
                        swap_id: Optional[str] = None, status: str = 'dispatched',
                        error_message: Optional[str] = None,
                        timestamp: Optional[int] = None) -> int:
        """Record a dispatch attempt and return its row id."""
        conn = self._get_connection()
        now = timestamp if timestamp is not None else int(time.time())

        cursor = conn.execute("""
            INSERT INTO autoloop_dispatches
            (swap_id, amount_sats, scope, target, outgoing_chan_set,
             worst_case_fee_sats, status, error_message, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (swap_id, amount_sats, scope, target, json.dumps(list(outgoing_chan_set)),
              worst_case_fee_sats, status, error_message, now))

        return cursor.lastrowid

    def get_recent_dispatches(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent dispatch attempts, newest first."""
        conn = self._get_connection()
        rows = conn.execute("""
            SELECT * FROM autoloop_dispatches
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
        """, (limit,)).fetchall()

        dispatches = []
        for row in rows:
            entry = dict(row)
            entry["outgoing_chan_set"] = json.loads(entry["outgoing_chan_set"])
            dispatches.append(entry)
        return dispatches

    def cleanup_old_dispatches(self, days_to_keep: int = 90) -> int:
        """Remove dispatch log rows older than days_to_keep. Returns rows deleted."""
        conn = self._get_connection()
        cutoff = int(time.time()) - (days_to_keep * 86400)

        cursor = conn.execute(
            "DELETE FROM autoloop_dispatches WHERE timestamp < ?", (cutoff,)
        )
        deleted = cursor.rowcount
        if deleted > 0:
            self.plugin.log(
                f"Cleaned up {deleted} dispatch log rows older than {days_to_keep} days"
            )
        return deleted

    def close(self):
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
