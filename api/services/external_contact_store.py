"""
ExternalContact - records pulled from external sources awaiting review.

One row per external record: a contact-directory person, or a unique
calendar attendee address. Rows are keyed by (source, source_id, account)
and upserted on every sync. Unmatched rows form the import-candidate
queue; rows that repeat an email already held by an older record of the
same source are marked as duplicates of it.
"""
import sqlite3
import json
import uuid
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional

from api.services.errors import NotFoundError
from api.utils.datetime_utils import from_db, to_db
from api.utils.db_paths import get_crm_db_path

logger = logging.getLogger(__name__)


# Match statuses
STATUS_UNMATCHED = "unmatched"
STATUS_MATCHED = "matched"
STATUS_IGNORED = "ignored"

MATCH_STATUSES = {STATUS_UNMATCHED, STATUS_MATCHED, STATUS_IGNORED}


@dataclass
class MethodEntry:
    """An email or phone on an external record."""

    value: str
    type: str = ""
    primary: bool = False

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"value": self.value}
        if self.type:
            data["type"] = self.type
        if self.primary:
            data["primary"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "MethodEntry":
        return cls(value=data.get("value", ""), type=data.get("type", ""), primary=bool(data.get("primary")))


@dataclass
class AddressEntry:
    formatted: str
    type: str = ""

    def to_dict(self) -> dict:
        data = {"formatted": self.formatted}
        if self.type:
            data["type"] = self.type
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AddressEntry":
        return cls(formatted=data.get("formatted", ""), type=data.get("type", ""))


@dataclass
class ExternalContact:
    """A record from an external source, and where it stands in review."""

    source: str
    source_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    account_id: Optional[str] = None
    display_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    emails: list[MethodEntry] = field(default_factory=list)
    phones: list[MethodEntry] = field(default_factory=list)
    addresses: list[AddressEntry] = field(default_factory=list)
    organization: Optional[str] = None
    job_title: Optional[str] = None
    birthday: Optional[date] = None
    photo_url: Optional[str] = None
    crm_contact_id: Optional[str] = None
    match_status: str = STATUS_UNMATCHED
    duplicate_of_id: Optional[str] = None
    etag: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    synced_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate_of_id is not None

    @property
    def is_matched(self) -> bool:
        return self.match_status == STATUS_MATCHED and self.crm_contact_id is not None

    def to_dict(self) -> dict:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "source": self.source,
            "source_id": self.source_id,
            "account_id": self.account_id,
            "display_name": self.display_name,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "emails": [e.to_dict() for e in self.emails],
            "phones": [p.to_dict() for p in self.phones],
            "addresses": [a.to_dict() for a in self.addresses],
            "organization": self.organization,
            "job_title": self.job_title,
            "birthday": self.birthday.isoformat() if self.birthday else None,
            "photo_url": self.photo_url,
            "crm_contact_id": self.crm_contact_id,
            "match_status": self.match_status,
            "duplicate_of_id": self.duplicate_of_id,
            "etag": self.etag,
            "metadata": self.metadata,
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ExternalContact":
        """Create ExternalContact from SQLite row."""
        return cls(
            id=row["id"],
            source=row["source"],
            source_id=row["source_id"],
            account_id=row["account_id"] or None,
            display_name=row["display_name"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            emails=[MethodEntry.from_dict(e) for e in json.loads(row["emails"] or "[]")],
            phones=[MethodEntry.from_dict(p) for p in json.loads(row["phones"] or "[]")],
            addresses=[AddressEntry.from_dict(a) for a in json.loads(row["addresses"] or "[]")],
            organization=row["organization"],
            job_title=row["job_title"],
            birthday=date.fromisoformat(row["birthday"]) if row["birthday"] else None,
            photo_url=row["photo_url"],
            crm_contact_id=row["crm_contact_id"],
            match_status=row["match_status"] or STATUS_UNMATCHED,
            duplicate_of_id=row["duplicate_of_id"],
            etag=row["etag"],
            metadata=json.loads(row["metadata"] or "{}"),
            synced_at=from_db(row["synced_at"]),
            created_at=from_db(row["created_at"]),
            updated_at=from_db(row["updated_at"]),
        )


class ExternalContactStore:
    """SQLite storage for external records and import candidates."""

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize the external contact store.

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
            # account_id is '' for sources without accounts so the unique key holds
            conn.execute("""
                CREATE TABLE IF NOT EXISTS external_contacts (
                    id TEXT PRIMARY KEY,
                    source TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    account_id TEXT NOT NULL DEFAULT '',
                    display_name TEXT,
                    first_name TEXT,
                    last_name TEXT,
                    emails TEXT NOT NULL DEFAULT '[]',
                    phones TEXT NOT NULL DEFAULT '[]',
                    addresses TEXT NOT NULL DEFAULT '[]',
                    organization TEXT,
                    job_title TEXT,
                    birthday TEXT,
                    photo_url TEXT,
                    crm_contact_id TEXT,
                    match_status TEXT NOT NULL DEFAULT 'unmatched',
                    duplicate_of_id TEXT REFERENCES external_contacts(id),
                    etag TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    synced_at TIMESTAMP,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    UNIQUE(source, source_id, account_id)
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_external_contacts_review
                ON external_contacts(source, match_status) WHERE duplicate_of_id IS NULL
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_external_contacts_crm
                ON external_contacts(crm_contact_id)
            """)
            conn.commit()
        finally:
            conn.close()

    def upsert(self, record: ExternalContact) -> tuple[ExternalContact, bool]:
        """
        Insert a record, or refresh the data fields of the existing one.

        Match status, CRM link, duplicate marker and created_at survive
        updates; everything the source owns is overwritten.

        Returns:
            (stored record, True if it was newly created)
        """
        now = to_db(datetime.now(timezone.utc))
        values = {
            "display_name": record.display_name,
            "first_name": record.first_name,
            "last_name": record.last_name,
            "emails": json.dumps([e.to_dict() for e in record.emails]),
            "phones": json.dumps([p.to_dict() for p in record.phones]),
            "addresses": json.dumps([a.to_dict() for a in record.addresses]),
            "organization": record.organization,
            "job_title": record.job_title,
            "birthday": record.birthday.isoformat() if record.birthday else None,
            "photo_url": record.photo_url,
            "etag": record.etag,
            "metadata": json.dumps(record.metadata or {}),
            "synced_at": to_db(record.synced_at) if record.synced_at else now,
        }
        account = record.account_id or ""

        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                INSERT INTO external_contacts (
                    id, source, source_id, account_id, display_name, first_name, last_name,
                    emails, phones, addresses, organization, job_title, birthday, photo_url,
                    crm_contact_id, match_status, duplicate_of_id, etag, metadata, synced_at,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(source, source_id, account_id) DO NOTHING
                """,
                (
                    record.id, record.source, record.source_id, account,
                    values["display_name"], values["first_name"], values["last_name"],
                    values["emails"], values["phones"], values["addresses"],
                    values["organization"], values["job_title"], values["birthday"],
                    values["photo_url"], record.crm_contact_id, record.match_status,
                    record.duplicate_of_id, values["etag"], values["metadata"],
                    values["synced_at"], now, now,
                ),
            )
            created = cursor.rowcount == 1

            if not created:
                assignments = ", ".join(f"{column} = ?" for column in values)
                conn.execute(
                    f"""
                    UPDATE external_contacts SET {assignments}, updated_at = ?
                    WHERE source = ? AND source_id = ? AND account_id = ?
                    """,
                    (*values.values(), now, record.source, record.source_id, account),
                )

            row = conn.execute(
                """
                SELECT * FROM external_contacts
                WHERE source = ? AND source_id = ? AND account_id = ?
                """,
                (record.source, record.source_id, account),
            ).fetchone()
            conn.commit()
            return ExternalContact.from_row(row), created
        finally:
            conn.close()

    def get(self, record_id: str) -> Optional[ExternalContact]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM external_contacts WHERE id = ?", (record_id,)
            ).fetchone()
            return ExternalContact.from_row(row) if row else None
        finally:
            conn.close()

    def get_by_source(self, source: str, source_id: str, account_id: Optional[str] = None) -> Optional[ExternalContact]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                """
                SELECT * FROM external_contacts
                WHERE source = ? AND source_id = ? AND account_id = ?
                """,
                (source, source_id, account_id or ""),
            ).fetchone()
            return ExternalContact.from_row(row) if row else None
        finally:
            conn.close()

    def list_unmatched(self, source: Optional[str] = None, limit: int = 50, offset: int = 0) -> list[ExternalContact]:
        """List unmatched, non-duplicate records for review."""
        conn = self._get_connection()
        try:
            if source:
                rows = conn.execute(
                    """
                    SELECT * FROM external_contacts
                    WHERE source = ? AND match_status = 'unmatched' AND duplicate_of_id IS NULL
                    ORDER BY display_name
                    LIMIT ? OFFSET ?
                    """,
                    (source, limit, offset),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM external_contacts
                    WHERE match_status = 'unmatched' AND duplicate_of_id IS NULL
                    ORDER BY source, display_name
                    LIMIT ? OFFSET ?
                    """,
                    (limit, offset),
                ).fetchall()
            return [ExternalContact.from_row(r) for r in rows]
        finally:
            conn.close()

    def count_unmatched(self, source: Optional[str] = None) -> int:
        conn = self._get_connection()
        try:
            if source:
                return conn.execute(
                    """
                    SELECT COUNT(*) FROM external_contacts
                    WHERE source = ? AND match_status = 'unmatched' AND duplicate_of_id IS NULL
                    """,
                    (source,),
                ).fetchone()[0]
            return conn.execute(
                """
                SELECT COUNT(*) FROM external_contacts
                WHERE match_status = 'unmatched' AND duplicate_of_id IS NULL
                """
            ).fetchone()[0]
        finally:
            conn.close()

    def _update(self, record_id: str, assignments: str, params: tuple) -> ExternalContact:
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                f"UPDATE external_contacts SET {assignments}, updated_at = ? WHERE id = ?",
                (*params, to_db(datetime.now(timezone.utc)), record_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"External contact {record_id} not found")
            row = conn.execute(
                "SELECT * FROM external_contacts WHERE id = ?", (record_id,)
            ).fetchone()
            conn.commit()
            return ExternalContact.from_row(row)
        finally:
            conn.close()

    def update_match(self, record_id: str, crm_contact_id: Optional[str], status: str) -> ExternalContact:
        """Set the CRM link and match status."""
        if status not in MATCH_STATUSES:
            raise ValueError(f"Invalid match status: {status}")
        return self._update(record_id, "crm_contact_id = ?, match_status = ?", (crm_contact_id, status))

    def mark_duplicate(self, record_id: str, duplicate_of_id: str) -> ExternalContact:
        return self._update(record_id, "duplicate_of_id = ?", (duplicate_of_id,))

    def ignore(self, record_id: str) -> ExternalContact:
        return self._update(record_id, "match_status = ?", (STATUS_IGNORED,))

    def find_by_normalized_email(self, email: str, source: Optional[str] = None) -> list[ExternalContact]:
        """
        Find non-duplicate records holding an email, oldest first.

        Args:
            email: Normalized (lowercase) email
            source: Restrict to one source
        """
        query = """
            SELECT * FROM external_contacts
            WHERE EXISTS (
                SELECT 1 FROM json_each(external_contacts.emails) AS e
                WHERE LOWER(TRIM(json_extract(e.value, '$.value'))) = ?
            )
            AND duplicate_of_id IS NULL
        """
        params: list = [email.strip().lower()]
        if source:
            query += " AND source = ?"
            params.append(source)
        query += " ORDER BY created_at, rowid"

        conn = self._get_connection()
        try:
            rows = conn.execute(query, params).fetchall()
            return [ExternalContact.from_row(r) for r in rows]
        finally:
            conn.close()

    def list_for_crm_contact(self, crm_contact_id: str) -> list[ExternalContact]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM external_contacts
                WHERE crm_contact_id = ?
                ORDER BY source, account_id
                """,
                (crm_contact_id,),
            ).fetchall()
            return [ExternalContact.from_row(r) for r in rows]
        finally:
            conn.close()

    def delete(self, record_id: str) -> bool:
        conn = self._get_connection()
        try:
            cursor = conn.execute("DELETE FROM external_contacts WHERE id = ?", (record_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()


# Singleton instance
_external_contact_store: Optional[ExternalContactStore] = None


def get_external_contact_store(db_path: Optional[str] = None) -> ExternalContactStore:
    """Get or create the singleton ExternalContactStore."""
    global _external_contact_store
    if _external_contact_store is None:
        _external_contact_store = ExternalContactStore(db_path)
    return _external_contact_store
