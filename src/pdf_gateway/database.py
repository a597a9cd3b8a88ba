"""
SQLite persistence for users, daily usage counters and the operation log.

Every public method opens its own connection, so the class can be used from
Starlette's threadpool without sharing connections across threads. Counter
updates are a single upsert statement; concurrent first operations of the day
for the same subject cannot lose increments.
"""

import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .models import OperationLogEntry, OperationRecord, OperationStatus, Subject, SubjectKind, UserRecord
from .utils import ensure_directory


DEFAULT_DB_PATH = Path("data/pdf_gateway.db")


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


class UsageDatabase:
    """
    SQLite database for metering state.

    Thread-safe: one connection per call, WAL journal, 30s busy timeout.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        ensure_directory(self.db_path.parent)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    plan TEXT NOT NULL DEFAULT 'free',
                    plan_expires_at TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS pdf_usage (
                    subject_kind TEXT NOT NULL,
                    subject_id TEXT NOT NULL,
                    usage_date TEXT NOT NULL,
                    count INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (subject_kind, subject_id, usage_date)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS pdf_operations (
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    user_email TEXT,
                    ip_address TEXT,
                    operation TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'success',
                    file_size INTEGER,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_pdf_operations_created_at
                ON pdf_operations(created_at DESC)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_pdf_operations_user
                ON pdf_operations(user_id, created_at DESC)
            """)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def upsert_user(self, user: UserRecord) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO users (id, email, plan, plan_expires_at, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email = excluded.email,
                    plan = excluded.plan,
                    plan_expires_at = excluded.plan_expires_at,
                    is_active = excluded.is_active
            """, (
                user.id,
                user.email,
                user.plan,
                _serialize_datetime(user.plan_expires_at),
                int(user.is_active),
                _serialize_datetime(user.created_at),
            ))

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id = ?", (user_id,)
            ).fetchone()

            if not row:
                return None

            return UserRecord(
                id=row["id"],
                email=row["email"],
                plan=row["plan"],
                plan_expires_at=_deserialize_datetime(row["plan_expires_at"]),
                is_active=bool(row["is_active"]),
                created_at=_deserialize_datetime(row["created_at"]),
            )

    def delete_user(self, user_id: str) -> bool:
        """
        Delete a user together with its usage counters.

        Operation log rows are kept; they are an audit trail.

        Returns:
            True if the user existed
        """
        with self._get_connection() as conn:
            conn.execute(
                "DELETE FROM pdf_usage WHERE subject_kind = ? AND subject_id = ?",
                (SubjectKind.USER.value, user_id),
            )
            cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Usage counters
    # ------------------------------------------------------------------

    def get_count(self, subject: Subject, usage_date: date) -> int:
        with self._get_connection() as conn:
            row = conn.execute("""
                SELECT count FROM pdf_usage
                WHERE subject_kind = ? AND subject_id = ? AND usage_date = ?
            """, (subject.kind.value, subject.id, usage_date.isoformat())).fetchone()

            return row["count"] if row else 0

    def increment(self, subject: Subject, usage_date: date) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO pdf_usage (subject_kind, subject_id, usage_date, count)
                VALUES (?, ?, ?, 1)
                ON CONFLICT(subject_kind, subject_id, usage_date)
                DO UPDATE SET count = count + 1
            """, (subject.kind.value, subject.id, usage_date.isoformat()))

    # ------------------------------------------------------------------
    # Operation log
    # ------------------------------------------------------------------

    def append_operation(self, entry: OperationLogEntry) -> str:
        operation_id = str(uuid4())
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO pdf_operations (
                    id, user_id, user_email, ip_address, operation,
                    status, file_size, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                operation_id,
                entry.subject_id,
                entry.subject_email,
                entry.ip_address,
                entry.operation,
                entry.status.value,
                entry.file_size_bytes,
                _serialize_datetime(entry.created_at),
            ))
        return operation_id

    def recent_operations(self, limit: int = 50) -> List[OperationRecord]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM pdf_operations ORDER BY created_at DESC LIMIT ?",
                (limit,),
            ).fetchall()

            return [self._row_to_operation(row) for row in rows]

    def user_operations(self, user_id: str, limit: int = 20) -> List[OperationRecord]:
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM pdf_operations
                WHERE user_id = ?
                ORDER BY created_at DESC
                LIMIT ?
            """, (user_id, limit)).fetchall()

            return [self._row_to_operation(row) for row in rows]

    def operation_counts(self, since: Dict[str, datetime]) -> Dict[str, Any]:
        """
        Count logged operations.

        Args:
            since: Mapping of label -> lower bound (inclusive) on created_at

        Returns:
            Dict with one count per label, ``total`` and ``by_operation``
            (list of (operation, count) pairs, most frequent first)
        """
        with self._get_connection() as conn:
            counts: Dict[str, Any] = {}
            for label, lower_bound in since.items():
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM pdf_operations WHERE created_at >= ?",
                    (_serialize_datetime(lower_bound),),
                ).fetchone()
                counts[label] = row["n"]

            counts["total"] = conn.execute(
                "SELECT COUNT(*) AS n FROM pdf_operations"
            ).fetchone()["n"]

            rows = conn.execute("""
                SELECT operation, COUNT(*) AS n FROM pdf_operations
                GROUP BY operation
                ORDER BY n DESC, operation ASC
            """).fetchall()
            counts["by_operation"] = [(row["operation"], row["n"]) for row in rows]
            return counts

    def ping(self) -> bool:
        with self._get_connection() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def _row_to_operation(self, row: sqlite3.Row) -> OperationRecord:
        return OperationRecord(
            id=row["id"],
            subject_id=row["user_id"],
            subject_email=row["user_email"],
            ip_address=row["ip_address"] or "unknown",
            operation=row["operation"],
            status=OperationStatus(row["status"]),
            file_size_bytes=row["file_size"],
            created_at=_deserialize_datetime(row["created_at"]),
        )
