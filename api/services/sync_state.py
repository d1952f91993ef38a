"""
SyncState and SyncLog - scheduling and audit records for external syncs.

There is one SyncState per (source, account). It carries the scheduling
fields (next_sync_at, status), the provider's resume cursor and error
bookkeeping. Each run of a provider appends one SyncLog row.

State machine:
    idle/error --claim--> syncing --success--> idle
                                  --failure--> error
    any --disable--> disabled --enable--> idle
"""
import sqlite3
import json
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from api.services.errors import NotFoundError
from api.utils.datetime_utils import from_db, to_db
from api.utils.db_paths import get_crm_db_path

logger = logging.getLogger(__name__)


# Sync statuses
STATUS_IDLE = "idle"
STATUS_SYNCING = "syncing"
STATUS_ERROR = "error"
STATUS_DISABLED = "disabled"

# Sync strategies
STRATEGY_CONTACT_DRIVEN = "contact_driven"  # Query the source per known contact
STRATEGY_FETCH_ALL = "fetch_all"            # Pull everything and match

# Log statuses
LOG_RUNNING = "running"
LOG_SUCCESS = "success"
LOG_ERROR = "error"


@dataclass
class SyncState:
    """Schedule and progress of one (source, account) sync."""

    source: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    account_id: Optional[str] = None
    enabled: bool = True
    status: str = STATUS_IDLE
    strategy: str = STRATEGY_FETCH_ALL
    last_sync_at: Optional[datetime] = None
    last_successful_sync_at: Optional[datetime] = None
    next_sync_at: Optional[datetime] = None
    sync_cursor: Optional[str] = None
    error_message: Optional[str] = None
    error_count: int = 0
    metadata: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source": self.source,
            "account_id": self.account_id,
            "enabled": self.enabled,
            "status": self.status,
            "strategy": self.strategy,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_successful_sync_at": (
                self.last_successful_sync_at.isoformat() if self.last_successful_sync_at else None
            ),
            "next_sync_at": self.next_sync_at.isoformat() if self.next_sync_at else None,
            "has_cursor": bool(self.sync_cursor),
            "error_message": self.error_message,
            "error_count": self.error_count,
            "metadata": self.metadata,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SyncState":
        return cls(
            id=row["id"],
            source=row["source"],
            account_id=row["account_id"] or None,
            enabled=bool(row["enabled"]),
            status=row["status"],
            strategy=row["strategy"],
            last_sync_at=from_db(row["last_sync_at"]),
            last_successful_sync_at=from_db(row["last_successful_sync_at"]),
            next_sync_at=from_db(row["next_sync_at"]),
            sync_cursor=row["sync_cursor"],
            error_message=row["error_message"],
            error_count=row["error_count"] or 0,
            metadata=json.loads(row["metadata"] or "{}"),
            created_at=from_db(row["created_at"]),
            updated_at=from_db(row["updated_at"]),
        )


@dataclass
class SyncLog:
    """Audit record of one provider run."""

    sync_state_id: str
    source: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    account_id: Optional[str] = None
    status: str = LOG_RUNNING
    items_processed: int = 0
    items_matched: int = 0
    items_created: int = 0
    error_message: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sync_state_id": self.sync_state_id,
            "source": self.source,
            "account_id": self.account_id,
            "status": self.status,
            "items_processed": self.items_processed,
            "items_matched": self.items_matched,
            "items_created": self.items_created,
            "error_message": self.error_message,
            "metadata": self.metadata,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SyncLog":
        return cls(
            id=row["id"],
            sync_state_id=row["sync_state_id"],
            source=row["source"],
            account_id=row["account_id"] or None,
            status=row["status"],
            items_processed=row["items_processed"] or 0,
            items_matched=row["items_matched"] or 0,
            items_created=row["items_created"] or 0,
            error_message=row["error_message"],
            metadata=json.loads(row["metadata"] or "{}"),
            started_at=from_db(row["started_at"]),
            completed_at=from_db(row["completed_at"]),
        )


class SyncStateStore:
    """
    SQLite storage for sync states and sync logs.

    All time-dependent methods take `now` explicitly so the orchestrator's
    injected clock is the only source of time.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or get_crm_db_path()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Create database tables if they don't exist."""
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_states (
                    id TEXT PRIMARY KEY,
                    source TEXT NOT NULL,
                    account_id TEXT NOT NULL DEFAULT '',
                    enabled INTEGER NOT NULL DEFAULT 1,
                    status TEXT NOT NULL DEFAULT 'idle',
                    strategy TEXT NOT NULL,
                    last_sync_at TIMESTAMP,
                    last_successful_sync_at TIMESTAMP,
                    next_sync_at TIMESTAMP,
                    sync_cursor TEXT,
                    error_message TEXT,
                    error_count INTEGER NOT NULL DEFAULT 0,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    UNIQUE(source, account_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_logs (
                    id TEXT PRIMARY KEY,
                    sync_state_id TEXT NOT NULL REFERENCES sync_states(id) ON DELETE CASCADE,
                    source TEXT NOT NULL,
                    account_id TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'running',
                    items_processed INTEGER NOT NULL DEFAULT 0,
                    items_matched INTEGER NOT NULL DEFAULT 0,
                    items_created INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    started_at TIMESTAMP NOT NULL,
                    completed_at TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_sync_logs_state
                ON sync_logs(sync_state_id, started_at DESC)
            """)
            conn.commit()
        finally:
            conn.close()

    # ----- states -----

    def create(
        self,
        source: str,
        account_id: Optional[str] = None,
        strategy: str = STRATEGY_FETCH_ALL,
        enabled: bool = True,
        next_sync_at: Optional[datetime] = None,
        metadata: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> SyncState:
        """Create a sync state, or return the existing one for (source, account)."""
        stamp = to_db(now or datetime.now(timezone.utc))
        conn = self._get_connection()
        try:
            conn.execute(
                """
                INSERT INTO sync_states (
                    id, source, account_id, enabled, status, strategy,
                    next_sync_at, metadata, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(source, account_id) DO NOTHING
                """,
                (
                    str(uuid.uuid4()), source, account_id or "",
                    1 if enabled else 0,
                    STATUS_IDLE if enabled else STATUS_DISABLED,
                    strategy, to_db(next_sync_at), json.dumps(metadata or {}),
                    stamp, stamp,
                ),
            )
            row = conn.execute(
                "SELECT * FROM sync_states WHERE source = ? AND account_id = ?",
                (source, account_id or ""),
            ).fetchone()
            conn.commit()
            return SyncState.from_row(row)
        finally:
            conn.close()

    def get(self, state_id: str) -> Optional[SyncState]:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM sync_states WHERE id = ?", (state_id,)).fetchone()
            return SyncState.from_row(row) if row else None
        finally:
            conn.close()

    def get_by_source(self, source: str, account_id: Optional[str] = None) -> Optional[SyncState]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM sync_states WHERE source = ? AND account_id = ?",
                (source, account_id or ""),
            ).fetchone()
            return SyncState.from_row(row) if row else None
        finally:
            conn.close()

    def list_all(self) -> list[SyncState]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM sync_states ORDER BY source, account_id"
            ).fetchall()
            return [SyncState.from_row(r) for r in rows]
        finally:
            conn.close()

    def list_due(self, now: datetime) -> list[SyncState]:
        """Enabled states that are not running or disabled and whose next run has come."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM sync_states
                WHERE enabled = 1
                  AND status NOT IN ('syncing', 'disabled')
                  AND (next_sync_at IS NULL OR next_sync_at <= ?)
                ORDER BY next_sync_at ASC NULLS FIRST
                """,
                (to_db(now),),
            ).fetchall()
            return [SyncState.from_row(r) for r in rows]
        finally:
            conn.close()

    def claim(self, state_id: str, now: datetime) -> bool:
        """
        Atomically move a state to 'syncing'.

        Returns:
            True if this caller owns the run; False if the state is already
            syncing, disabled, or gone
        """
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                UPDATE sync_states SET status = 'syncing', updated_at = ?
                WHERE id = ? AND enabled = 1 AND status NOT IN ('syncing', 'disabled')
                """,
                (to_db(now), state_id),
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def _update_returning(self, state_id: str, sql: str, params: tuple) -> SyncState:
        conn = self._get_connection()
        try:
            cursor = conn.execute(sql, params)
            if cursor.rowcount == 0:
                raise NotFoundError(f"Sync state {state_id} not found")
            row = conn.execute("SELECT * FROM sync_states WHERE id = ?", (state_id,)).fetchone()
            conn.commit()
            return SyncState.from_row(row)
        finally:
            conn.close()

    def mark_success(
        self,
        state_id: str,
        now: datetime,
        next_sync_at: datetime,
        cursor: Optional[str],
    ) -> SyncState:
        """Record a successful run. An empty cursor keeps the stored one."""
        stamp = to_db(now)
        return self._update_returning(
            state_id,
            """
            UPDATE sync_states SET
                status = CASE WHEN enabled = 0 THEN 'disabled' ELSE 'idle' END,
                last_sync_at = ?,
                last_successful_sync_at = ?,
                next_sync_at = ?,
                sync_cursor = COALESCE(?, sync_cursor),
                error_message = NULL,
                error_count = 0,
                updated_at = ?
            WHERE id = ?
            """,
            (stamp, stamp, to_db(next_sync_at), cursor or None, stamp, state_id),
        )

    def mark_error(self, state_id: str, now: datetime, message: str, next_sync_at: datetime) -> SyncState:
        """Record a failed run; the cursor and last success are untouched."""
        stamp = to_db(now)
        return self._update_returning(
            state_id,
            """
            UPDATE sync_states SET
                status = CASE WHEN enabled = 0 THEN 'disabled' ELSE 'error' END,
                last_sync_at = ?,
                next_sync_at = ?,
                error_message = ?,
                error_count = error_count + 1,
                updated_at = ?
            WHERE id = ?
            """,
            (stamp, to_db(next_sync_at), message, stamp, state_id),
        )

    def release(self, state_id: str, now: datetime) -> SyncState:
        """Return a cancelled run to idle without touching cursor or schedule."""
        return self._update_returning(
            state_id,
            """
            UPDATE sync_states SET
                status = CASE WHEN enabled = 0 THEN 'disabled' ELSE 'idle' END,
                updated_at = ?
            WHERE id = ? AND status = 'syncing'
            """,
            (to_db(now), state_id),
        )

    def set_enabled(self, state_id: str, enabled: bool, now: Optional[datetime] = None) -> SyncState:
        """
        Enable (-> idle) or disable (-> disabled) a state.

        A running state keeps 'syncing' so it cannot be claimed twice; the
        run settles on 'disabled' when it finishes if it was disabled meanwhile.
        """
        return self._update_returning(
            state_id,
            """
            UPDATE sync_states SET
                enabled = ?,
                status = CASE WHEN status = 'syncing' THEN status ELSE ? END,
                updated_at = ?
            WHERE id = ?
            """,
            (
                1 if enabled else 0,
                STATUS_IDLE if enabled else STATUS_DISABLED,
                to_db(now or datetime.now(timezone.utc)),
                state_id,
            ),
        )

    def set_next_sync(self, state_id: str, next_sync_at: Optional[datetime]) -> SyncState:
        return self._update_returning(
            state_id,
            "UPDATE sync_states SET next_sync_at = ?, updated_at = ? WHERE id = ?",
            (to_db(next_sync_at), to_db(datetime.now(timezone.utc)), state_id),
        )

    # ----- logs -----

    def create_log(self, state: SyncState, now: datetime) -> SyncLog:
        """Open a 'running' log for a claimed state."""
        log = SyncLog(
            sync_state_id=state.id,
            source=state.source,
            account_id=state.account_id,
            started_at=now,
        )
        conn = self._get_connection()
        try:
            conn.execute(
                """
                INSERT INTO sync_logs (id, sync_state_id, source, account_id, status, metadata, started_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (log.id, log.sync_state_id, log.source, log.account_id or "",
                 LOG_RUNNING, json.dumps(log.metadata), to_db(now)),
            )
            conn.commit()
        finally:
            conn.close()
        return log

    def complete_log(
        self,
        log_id: str,
        status: str,
        now: datetime,
        items_processed: int = 0,
        items_matched: int = 0,
        items_created: int = 0,
        error_message: Optional[str] = None,
    ) -> SyncLog:
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                UPDATE sync_logs SET
                    status = ?, completed_at = ?,
                    items_processed = ?, items_matched = ?, items_created = ?,
                    error_message = ?
                WHERE id = ? AND completed_at IS NULL
                """,
                (status, to_db(now), items_processed, items_matched, items_created,
                 error_message, log_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Open sync log {log_id} not found")
            row = conn.execute("SELECT * FROM sync_logs WHERE id = ?", (log_id,)).fetchone()
            conn.commit()
            return SyncLog.from_row(row)
        finally:
            conn.close()

    def get_log(self, log_id: str) -> Optional[SyncLog]:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM sync_logs WHERE id = ?", (log_id,)).fetchone()
            return SyncLog.from_row(row) if row else None
        finally:
            conn.close()

    def list_logs(self, state_id: str, limit: int = 20, offset: int = 0) -> list[SyncLog]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM sync_logs WHERE sync_state_id = ?
                ORDER BY started_at DESC LIMIT ? OFFSET ?
                """,
                (state_id, limit, offset),
            ).fetchall()
            return [SyncLog.from_row(r) for r in rows]
        finally:
            conn.close()

    def list_recent_logs(self, limit: int = 20) -> list[SyncLog]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM sync_logs ORDER BY started_at DESC LIMIT ?", (limit,)
            ).fetchall()
            return [SyncLog.from_row(r) for r in rows]
        finally:
            conn.close()

    def count_logs(self, state_id: str) -> int:
        conn = self._get_connection()
        try:
            return conn.execute(
                "SELECT COUNT(*) FROM sync_logs WHERE sync_state_id = ?", (state_id,)
            ).fetchone()[0]
        finally:
            conn.close()

    def delete_old_logs(self, before: datetime) -> int:
        """Delete completed logs that started before `before`."""
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                "DELETE FROM sync_logs WHERE started_at < ? AND completed_at IS NOT NULL",
                (to_db(before),),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()


# Singleton instance
_sync_state_store: Optional[SyncStateStore] = None


def get_sync_state_store(db_path: Optional[str] = None) -> SyncStateStore:
    """Get or create the singleton SyncStateStore."""
    global _sync_state_store
    if _sync_state_store is None:
        _sync_state_store = SyncStateStore(db_path)
    return _sync_state_store
