import sqlite3
from datetime import datetime, timezone
from typing import Optional

class SQLiteSessionRepository:
    """Local key/value persistence for the serialized session blob."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _conn(self):
        return sqlite3.connect(self.db_path)

    def _get_current_version(self, conn) -> int:
        version_row = conn.execute("SELECT version FROM schema_info").fetchone()
        if version_row:
            return version_row[0]

        # Legacy store created before schema_info existed
        kv_table = conn.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='kv_store'").fetchone()
        if kv_table:
            cols = {c[1] for c in conn.execute("PRAGMA table_info(kv_store)").fetchall()}
            if {"key", "value"}.issubset(cols) and "updated_at" not in cols:
                return 1
        return 0

    def _migrate_v1(self, conn):
        """Baseline schema (v1)."""
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

    def _migrate_v2(self, conn):
        """Track when a blob was last written."""
        cols = {c[1] for c in conn.execute("PRAGMA table_info(kv_store)").fetchall()}
        if "updated_at" not in cols:
            conn.execute("ALTER TABLE kv_store ADD COLUMN updated_at TEXT")

    def init_session_db(self):
        MIGRATIONS = [self._migrate_v1, self._migrate_v2]

        with self._conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_info (
                    version INTEGER NOT NULL
                )
            """)

            current_version = self._get_current_version(conn)

            has_version_row = conn.execute("SELECT COUNT(*) FROM schema_info").fetchone()[0] > 0
            if not has_version_row:
                conn.execute("INSERT INTO schema_info (version) VALUES (?)", (current_version,))

            for i in range(current_version, len(MIGRATIONS)):
                target_version = i + 1
                try:
                    MIGRATIONS[i](conn)
                    conn.execute("UPDATE schema_info SET version = ?", (target_version,))
                except Exception as e:
                    # Leaving the with-block by exception rolls back every step of this run
                    raise RuntimeError(f"Session store migration to v{target_version} failed: {e}") from e

            conn.commit()

    def get_blob(self, key: str) -> Optional[str]:
        with self._conn() as conn:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None

    def set_blob(self, key: str, value: str):
        now_iso = datetime.now(timezone.utc).isoformat()
        with self._conn() as conn:
            conn.execute("""
                INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """, (key, value, now_iso))
            conn.commit()

    def delete_blob(self, key: str):
        with self._conn() as conn:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
