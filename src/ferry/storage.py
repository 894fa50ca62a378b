import sqlite3
import threading
from typing import Dict, List, Optional, Any

from .storage_api import StorageAPI


class SQLiteStorage(StorageAPI):
    """
    SQLite-backed history of finished transfers, one row per session.

    Sessions finish on worker threads, so all DB access is guarded by an RLock.
    """

    def __init__(self, db_path: str = "ferry.db"):
        self.db_path = db_path
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        with self._lock:
            self.conn.execute("PRAGMA journal_mode=WAL;")
            self.conn.execute("PRAGMA synchronous=NORMAL;")

        self._init_tables()

    def _init_tables(self) -> None:
        """Initialize database tables."""
        with self._lock:
            cursor = self.conn.cursor()

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS transfers (
                    transfer_id TEXT PRIMARY KEY,
                    role TEXT NOT NULL,
                    peer TEXT NOT NULL,
                    state TEXT NOT NULL,
                    file_name TEXT,
                    file_size INTEGER DEFAULT 0,
                    packet_count INTEGER DEFAULT 0,
                    digest TEXT DEFAULT '',
                    attempts INTEGER DEFAULT 0,
                    ack_failures INTEGER DEFAULT 0,
                    bytes_sent INTEGER DEFAULT 0,
                    error TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

            self.conn.commit()

    def save_transfer(self, transfer_dict: Dict[str, Any]) -> None:
        """Insert or update a transfer row."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT OR REPLACE INTO transfers
                (transfer_id, role, peer, state, file_name, file_size, packet_count,
                 digest, attempts, ack_failures, bytes_sent, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    transfer_dict["transfer_id"],
                    transfer_dict["role"],
                    transfer_dict["peer"],
                    transfer_dict["state"],
                    transfer_dict.get("file_name"),
                    transfer_dict.get("file_size", 0),
                    transfer_dict.get("packet_count", 0),
                    transfer_dict.get("digest", ""),
                    transfer_dict.get("attempts", 0),
                    transfer_dict.get("ack_failures", 0),
                    transfer_dict.get("bytes_sent", 0),
                    transfer_dict.get("error"),
                ),
            )
            self.conn.commit()

    def load_transfer(self, transfer_id: str) -> Optional[Dict[str, Any]]:
        """Load transfer by id, or None."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT * FROM transfers WHERE transfer_id = ?", (transfer_id,)
            )
            row = cursor.fetchone()
            return dict(row) if row else None

    def list_transfers(self) -> List[Dict[str, Any]]:
        """Return all transfers newest-first."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM transfers ORDER BY created_at DESC, rowid DESC")
            return [dict(row) for row in cursor.fetchall()]

    def list_transfers_by_state(self, state: str) -> List[Dict[str, Any]]:
        """Return transfers in a given state newest-first."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT * FROM transfers WHERE state = ? "
                "ORDER BY created_at DESC, rowid DESC",
                (state,),
            )
            return [dict(row) for row in cursor.fetchall()]

    def close(self) -> None:
        """Close the DB connection."""
        with self._lock:
            self.conn.close()
