"""
ExternalIdentity - cached identifier-to-contact links.

Every identifier seen on an external platform (a calendar attendee email,
a messaging phone number) gets one row keyed by
(normalized identifier, identifier type, source). The row remembers which
CRM contact it resolved to, how, and how often it has been seen, so the
resolver only searches contact methods the first time.
"""
import sqlite3
import uuid
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional

from api.services.errors import NotFoundError
from api.utils.datetime_utils import from_db, to_db
from api.utils.db_paths import get_crm_db_path

logger = logging.getLogger(__name__)


# Match types
MATCH_EXACT = "exact"        # Normalized identifier equals a contact method
MATCH_FUZZY = "fuzzy"        # Accepted by name+method scoring
MATCH_MANUAL = "manual"      # Linked by the user
MATCH_UNMATCHED = "unmatched"

MATCH_TYPES = {MATCH_EXACT, MATCH_FUZZY, MATCH_MANUAL, MATCH_UNMATCHED}


@dataclass
class ExternalIdentity:
    """A normalized external identifier and its (optional) CRM contact link."""

    identifier: str
    identifier_type: str
    source: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    raw_identifier: Optional[str] = None
    source_id: Optional[str] = None
    contact_id: Optional[str] = None
    match_type: str = MATCH_UNMATCHED
    match_confidence: Optional[float] = None
    display_name: Optional[str] = None
    message_count: int = 0
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_matched(self) -> bool:
        return self.contact_id is not None

    def to_dict(self) -> dict:
        """Convert to dict for JSON serialization."""
        data = asdict(self)
        for key in ("first_seen_at", "last_seen_at", "created_at", "updated_at"):
            if data.get(key):
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ExternalIdentity":
        """Create ExternalIdentity from SQLite row."""
        return cls(
            id=row["id"],
            identifier=row["identifier"],
            identifier_type=row["identifier_type"],
            raw_identifier=row["raw_identifier"],
            source=row["source"],
            source_id=row["source_id"],
            contact_id=row["contact_id"],
            match_type=row["match_type"] or MATCH_UNMATCHED,
            match_confidence=row["match_confidence"],
            display_name=row["display_name"],
            message_count=row["message_count"] or 0,
            first_seen_at=from_db(row["first_seen_at"]),
            last_seen_at=from_db(row["last_seen_at"]),
            created_at=from_db(row["created_at"]),
            updated_at=from_db(row["updated_at"]),
        )


@dataclass
class IdentityUpsert:
    """Fields supplied when recording an observation of an identifier."""

    identifier: str
    identifier_type: str
    source: str
    raw_identifier: Optional[str] = None
    source_id: Optional[str] = None
    contact_id: Optional[str] = None
    match_type: str = MATCH_UNMATCHED
    match_confidence: Optional[float] = None
    display_name: Optional[str] = None
    message_count_delta: int = 0


class IdentityStore:
    """
    SQLite-backed store for external identities.

    Upserts are a single INSERT ... ON CONFLICT statement so concurrent
    observers of the same identifier converge on one row and their
    message-count increments add up.
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize the identity store.

        Args:
            db_path: Path to SQLite database (default: CRM database)
        """
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
                CREATE TABLE IF NOT EXISTS external_identities (
                    id TEXT PRIMARY KEY,
                    identifier TEXT NOT NULL,
                    identifier_type TEXT NOT NULL,
                    raw_identifier TEXT,
                    source TEXT NOT NULL,
                    source_id TEXT,
                    contact_id TEXT,
                    match_type TEXT NOT NULL DEFAULT 'unmatched',
                    match_confidence REAL,
                    display_name TEXT,
                    message_count INTEGER NOT NULL DEFAULT 0,
                    first_seen_at TIMESTAMP,
                    last_seen_at TIMESTAMP,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    UNIQUE(identifier, identifier_type, source)
                )
            """)

            # Index for listing identities linked to a contact
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_external_identities_contact
                ON external_identities(contact_id)
            """)

            # Index for the unmatched review queue
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_external_identities_unmatched
                ON external_identities(message_count DESC) WHERE contact_id IS NULL
            """)

            conn.commit()
        finally:
            conn.close()

    def upsert(self, req: IdentityUpsert, seen_at: Optional[datetime] = None) -> ExternalIdentity:
        """
        Insert or merge an observation of an identifier.

        Merge rules on conflict:
        - raw_identifier, source_id, contact_id, display_name: incoming wins
          only when non-null
        - match_type / match_confidence: replaced when the incoming row
          carries a contact, or the stored row has none
        - last_seen_at: always overwritten
        - message_count: incremented by message_count_delta
        - first_seen_at, created_at: preserved

        Args:
            req: Identity fields to record
            seen_at: Observation time (default: now)

        Returns:
            The stored row after the merge
        """
        now = seen_at or datetime.now(timezone.utc)
        stamp = to_db(now)
        conn = self._get_connection()
        try:
            conn.execute(
                """
                INSERT INTO external_identities (
                    id, identifier, identifier_type, raw_identifier, source, source_id,
                    contact_id, match_type, match_confidence, display_name,
                    message_count, first_seen_at, last_seen_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(identifier, identifier_type, source) DO UPDATE SET
                    raw_identifier = COALESCE(excluded.raw_identifier, external_identities.raw_identifier),
                    source_id = COALESCE(excluded.source_id, external_identities.source_id),
                    match_type = CASE
                        WHEN excluded.contact_id IS NOT NULL OR external_identities.contact_id IS NULL
                        THEN excluded.match_type
                        ELSE external_identities.match_type END,
                    match_confidence = CASE
                        WHEN excluded.contact_id IS NOT NULL OR external_identities.contact_id IS NULL
                        THEN COALESCE(excluded.match_confidence, external_identities.match_confidence)
                        ELSE external_identities.match_confidence END,
                    contact_id = COALESCE(excluded.contact_id, external_identities.contact_id),
                    display_name = COALESCE(excluded.display_name, external_identities.display_name),
                    message_count = external_identities.message_count + excluded.message_count,
                    last_seen_at = excluded.last_seen_at,
                    updated_at = excluded.updated_at
                """,
                (
                    str(uuid.uuid4()),
                    req.identifier,
                    req.identifier_type,
                    req.raw_identifier,
                    req.source,
                    req.source_id,
                    req.contact_id,
                    req.match_type,
                    req.match_confidence,
                    req.display_name,
                    req.message_count_delta,
                    stamp,
                    stamp,
                    stamp,
                    stamp,
                ),
            )
            row = conn.execute(
                """
                SELECT * FROM external_identities
                WHERE identifier = ? AND identifier_type = ? AND source = ?
                """,
                (req.identifier, req.identifier_type, req.source),
            ).fetchone()
            conn.commit()
            return ExternalIdentity.from_row(row)
        finally:
            conn.close()

    def get(self, identity_id: str) -> Optional[ExternalIdentity]:
        """Get identity by ID."""
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM external_identities WHERE id = ?", (identity_id,)
            ).fetchone()
            return ExternalIdentity.from_row(row) if row else None
        finally:
            conn.close()

    def get_by_identifier(self, identifier: str, identifier_type: str, source: str) -> Optional[ExternalIdentity]:
        """Get identity by its natural key (identifier must already be normalized)."""
        conn = self._get_connection()
        try:
            row = conn.execute(
                """
                SELECT * FROM external_identities
                WHERE identifier = ? AND identifier_type = ? AND source = ?
                """,
                (identifier, identifier_type, source),
            ).fetchone()
            return ExternalIdentity.from_row(row) if row else None
        finally:
            conn.close()

    def find_by_identifier(self, identifier: str, identifier_type: str) -> list[ExternalIdentity]:
        """Get every source's row for one normalized identifier."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM external_identities
                WHERE identifier = ? AND identifier_type = ?
                ORDER BY source
                """,
                (identifier, identifier_type),
            ).fetchall()
            return [ExternalIdentity.from_row(r) for r in rows]
        finally:
            conn.close()

    def record_sighting(self, identity_id: str, delta: int = 1, seen_at: Optional[datetime] = None) -> ExternalIdentity:
        """
        Bump message_count and last_seen_at on an existing identity.

        Raises:
            NotFoundError: identity does not exist
        """
        stamp = to_db(seen_at or datetime.now(timezone.utc))
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                UPDATE external_identities
                SET message_count = message_count + ?, last_seen_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (delta, stamp, stamp, identity_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"External identity {identity_id} not found")
            row = conn.execute(
                "SELECT * FROM external_identities WHERE id = ?", (identity_id,)
            ).fetchone()
            conn.commit()
            return ExternalIdentity.from_row(row)
        finally:
            conn.close()

    def link_to_contact(
        self,
        identity_id: str,
        contact_id: str,
        match_type: str = MATCH_MANUAL,
        confidence: Optional[float] = 1.0,
    ) -> ExternalIdentity:
        """
        Point an identity at a contact.

        Raises:
            NotFoundError: identity does not exist
        """
        stamp = to_db(datetime.now(timezone.utc))
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                UPDATE external_identities
                SET contact_id = ?, match_type = ?, match_confidence = ?, updated_at = ?
                WHERE id = ?
                """,
                (contact_id, match_type, confidence, stamp, identity_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"External identity {identity_id} not found")
            row = conn.execute(
                "SELECT * FROM external_identities WHERE id = ?", (identity_id,)
            ).fetchone()
            conn.commit()
            return ExternalIdentity.from_row(row)
        finally:
            conn.close()

    def unlink(self, identity_id: str) -> ExternalIdentity:
        """
        Clear an identity's contact link and mark it unmatched.

        Raises:
            NotFoundError: identity does not exist
        """
        stamp = to_db(datetime.now(timezone.utc))
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                UPDATE external_identities
                SET contact_id = NULL, match_type = ?, match_confidence = NULL, updated_at = ?
                WHERE id = ?
                """,
                (MATCH_UNMATCHED, stamp, identity_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"External identity {identity_id} not found")
            row = conn.execute(
                "SELECT * FROM external_identities WHERE id = ?", (identity_id,)
            ).fetchone()
            conn.commit()
            return ExternalIdentity.from_row(row)
        finally:
            conn.close()

    def bulk_link(
        self,
        identity_ids: list[str],
        contact_id: str,
        match_type: str = MATCH_MANUAL,
        confidence: Optional[float] = 1.0,
    ) -> int:
        """
        Link several identities to one contact in a single transaction.

        Raises:
            NotFoundError: any identity is missing (nothing is linked)
        """
        if not identity_ids:
            return 0
        stamp = to_db(datetime.now(timezone.utc))
        conn = self._get_connection()
        try:
            for identity_id in identity_ids:
                cursor = conn.execute(
                    """
                    UPDATE external_identities
                    SET contact_id = ?, match_type = ?, match_confidence = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (contact_id, match_type, confidence, stamp, identity_id),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    raise NotFoundError(f"External identity {identity_id} not found")
            conn.commit()
            return len(identity_ids)
        finally:
            conn.close()

    def list_unmatched(self, limit: int = 50, offset: int = 0) -> list[ExternalIdentity]:
        """List unlinked identities, most frequently seen first."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM external_identities
                WHERE contact_id IS NULL
                ORDER BY message_count DESC, last_seen_at DESC NULLS LAST
                LIMIT ? OFFSET ?
                """,
                (limit, offset),
            ).fetchall()
            return [ExternalIdentity.from_row(r) for r in rows]
        finally:
            conn.close()

    def count_unmatched(self) -> int:
        """Count unlinked identities."""
        conn = self._get_connection()
        try:
            return conn.execute(
                "SELECT COUNT(*) FROM external_identities WHERE contact_id IS NULL"
            ).fetchone()[0]
        finally:
            conn.close()

    def list_for_contact(self, contact_id: str) -> list[ExternalIdentity]:
        """List all identities linked to a contact."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM external_identities
                WHERE contact_id = ?
                ORDER BY source, identifier_type, identifier
                """,
                (contact_id,),
            ).fetchall()
            return [ExternalIdentity.from_row(r) for r in rows]
        finally:
            conn.close()

    def list_by_source(self, source: str, limit: int = 100, offset: int = 0) -> list[ExternalIdentity]:
        """List identities seen on one source, most recently seen first."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM external_identities
                WHERE source = ?
                ORDER BY last_seen_at DESC NULLS LAST
                LIMIT ? OFFSET ?
                """,
                (source, limit, offset),
            ).fetchall()
            return [ExternalIdentity.from_row(r) for r in rows]
        finally:
            conn.close()

    def delete(self, identity_id: str) -> bool:
        """Delete an identity. Returns True if a row was removed."""
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                "DELETE FROM external_identities WHERE id = ?", (identity_id,)
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()


# Singleton instance
_identity_store: Optional[IdentityStore] = None


def get_identity_store(db_path: Optional[str] = None) -> IdentityStore:
    """Get or create the singleton IdentityStore."""
    global _identity_store
    if _identity_store is None:
        _identity_store = IdentityStore(db_path)
    return _identity_store
