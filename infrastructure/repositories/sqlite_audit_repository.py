import sqlite3
import json
from typing import Optional, Dict, Any, List, Tuple
from datetime import datetime, timezone
import logging
from enum import Enum

log = logging.getLogger(__name__)

class AuditAction(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAIL = "LOGIN_FAIL"
    LOGIN_PENDING_VERIFICATION = "LOGIN_PENDING_VERIFICATION"
    OTP_REQUESTED = "OTP_REQUESTED"
    OTP_VERIFIED = "OTP_VERIFIED"
    OTP_FAIL = "OTP_FAIL"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    SESSION_RESTORED = "SESSION_RESTORED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    LOGOUT = "LOGOUT"
    RBAC_DENIED = "RBAC_DENIED"
    STAFF_PROVISIONED = "STAFF_PROVISIONED"

ALLOWED_METADATA_KEYS = {
    "reason", "method", "error_code", "role", "target_action", "required_role",
}

class SQLiteAuditRepository:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._ready = False

    def _conn(self):
        return sqlite3.connect(self.db_path)

    def init_audit_db(self):
        with self._conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ts TEXT NOT NULL,
                    actor_id TEXT,
                    actor_role TEXT,
                    action TEXT NOT NULL,
                    target_email TEXT,
                    metadata_json TEXT,
                    result TEXT NOT NULL
                )
            """)
            conn.commit()
        self._ready = True

    def log_action(
        self,
        action: Any,
        actor_id: Optional[str] = None,
        actor_role: Optional[str] = None,
        target_email: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        result: str = "success"
    ):
        """Appends an auth event. Metadata is filtered to a known key set and never carries secrets."""
        try:
            if not self._ready:
                self.init_audit_db()

            meta_str = None
            if metadata is not None:
                safe_meta = {}
                for k, v in metadata.items():
                    # Allowed keys only carry codes and enum values
                    if k in ALLOWED_METADATA_KEYS:
                        safe_meta[k] = v
                try:
                    meta_str = json.dumps(safe_meta)[:2000]
                except (TypeError, ValueError):
                    meta_str = "{\"error\": \"unserializable\"}"

            ts = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
            action_val = action.value if hasattr(action, "value") else str(action)[:50]
            actor_id = str(actor_id)[:64] if actor_id is not None else None
            actor_role = str(actor_role)[:20] if actor_role is not None else None
            target_email = str(target_email)[:254] if target_email is not None else None
            result = str(result)[:20] if result else "unknown"

            with self._conn() as conn:
                conn.execute("""
                    INSERT INTO audit_log
                    (ts, actor_id, actor_role, action, target_email, metadata_json, result)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (ts, actor_id, actor_role, action_val, target_email, meta_str, result))
                conn.commit()
        except Exception as e:
            # Audit failures must not break the auth flow
            log.error(f"Audit log failed for action {action}: {e}", exc_info=True)

    def get_logs(self, limit: int = 100, action_filter: Optional[str] = None) -> List[Tuple]:
        """Most recent auth events first."""
        try:
            with self._conn() as conn:
                query = """
                    SELECT id, ts, actor_id, actor_role, action, target_email, metadata_json, result
                    FROM audit_log
                    WHERE 1=1
                """
                params = []
                if action_filter:
                    query += " AND action = ?"
                    params.append(action_filter)
                query += " ORDER BY id DESC LIMIT ?"
                params.append(limit)
                return conn.execute(query, tuple(params)).fetchall()
        except Exception as e:
            log.error(f"Failed to fetch audit logs: {e}", exc_info=True)
            return []
