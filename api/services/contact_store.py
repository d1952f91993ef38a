"""
ContactStore - CRM contacts and their contact methods.

Contacts are the canonical people in the CRM. Each contact owns any number
of contact methods (emails, phones, handles); every method is stored with
its normalized value so exact identity matching is a single indexed lookup.
"""
import sqlite3
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from rapidfuzz import fuzz

from api.services.identifiers import (
    EMAIL_METHOD_TYPES,
    METHOD_PHONE,
    METHOD_TELEGRAM,
    METHOD_WHATSAPP,
    normalize_email,
    normalize_phone,
    normalize_telegram,
)
from api.utils.datetime_utils import from_db, to_db
from api.utils.db_paths import get_crm_db_path

logger = logging.getLogger(__name__)


def normalize_method_value(method_type: str, value: str) -> str:
    """Normalize a contact method value the same way identifiers are normalized."""
    if method_type in EMAIL_METHOD_TYPES:
        return normalize_email(value)
    if method_type in (METHOD_PHONE, METHOD_WHATSAPP):
        return normalize_phone(value)
    if method_type == METHOD_TELEGRAM:
        return normalize_telegram(value)
    return value.strip()


@dataclass
class ContactMethod:
    """A single way of reaching a contact."""

    contact_id: str
    type: str
    value: str
    normalized_value: str = ""
    is_primary: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "contact_id": self.contact_id,
            "type": self.type,
            "value": self.value,
            "normalized_value": self.normalized_value,
            "is_primary": self.is_primary,
        }


@dataclass
class Contact:
    """A canonical person in the CRM."""

    full_name: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    last_contacted: Optional[datetime] = None
    methods: list[ContactMethod] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    deleted_at: Optional[datetime] = None

    @property
    def emails(self) -> list[str]:
        return [m.normalized_value for m in self.methods if m.type in EMAIL_METHOD_TYPES]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "last_contacted": self.last_contacted.isoformat() if self.last_contacted else None,
            "methods": [m.to_dict() for m in self.methods],
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class SimilarContact:
    """A contact whose name resembles a search name, with its methods."""

    contact_id: str
    full_name: str
    similarity: float  # 0.0-1.0
    methods: list[ContactMethod] = field(default_factory=list)

    @property
    def email_values(self) -> list[str]:
        return [m.normalized_value for m in self.methods if m.type in EMAIL_METHOD_TYPES]


def name_similarity(a: str, b: str) -> float:
    """
    Case-insensitive name similarity in [0, 1].

    Word order is ignored but every token counts, so a first name alone
    scores well below the full name it is part of.
    """
    if not a or not b:
        return 0.0
    return fuzz.token_sort_ratio(a.lower().strip(), b.lower().strip()) / 100.0


class ContactStore:
    """SQLite storage for contacts and contact methods."""

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize the contact store.

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
                CREATE TABLE IF NOT EXISTS contacts (
                    id TEXT PRIMARY KEY,
                    full_name TEXT NOT NULL,
                    last_contacted TIMESTAMP,
                    created_at TIMESTAMP NOT NULL,
                    deleted_at TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS contact_methods (
                    id TEXT PRIMARY KEY,
                    contact_id TEXT NOT NULL REFERENCES contacts(id),
                    type TEXT NOT NULL,
                    value TEXT NOT NULL,
                    normalized_value TEXT NOT NULL,
                    is_primary INTEGER DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_contact_methods_normalized
                ON contact_methods(normalized_value, type)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_contact_methods_contact
                ON contact_methods(contact_id)
            """)
            conn.commit()
        finally:
            conn.close()

    def create_contact(
        self,
        full_name: str,
        methods: Optional[list[tuple[str, str]]] = None,
        created_at: Optional[datetime] = None,
    ) -> Contact:
        """
        Create a contact with optional (type, value) methods.

        The first method of each type is marked primary.
        """
        contact = Contact(full_name=full_name)
        if created_at:
            contact.created_at = created_at
        seen_types = set()
        for method_type, value in methods or []:
            contact.methods.append(ContactMethod(
                contact_id=contact.id,
                type=method_type,
                value=value,
                normalized_value=normalize_method_value(method_type, value),
                is_primary=method_type not in seen_types,
            ))
            seen_types.add(method_type)

        conn = self._get_connection()
        try:
            conn.execute(
                "INSERT INTO contacts (id, full_name, last_contacted, created_at) VALUES (?, ?, ?, ?)",
                (contact.id, contact.full_name, None, to_db(contact.created_at)),
            )
            for method in contact.methods:
                self._insert_method(conn, method)
            conn.commit()
        finally:
            conn.close()
        return contact

    def _insert_method(self, conn: sqlite3.Connection, method: ContactMethod):
        conn.execute(
            """
            INSERT INTO contact_methods (id, contact_id, type, value, normalized_value, is_primary)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (method.id, method.contact_id, method.type, method.value,
             method.normalized_value, 1 if method.is_primary else 0),
        )

    def add_method(self, contact_id: str, method_type: str, value: str, is_primary: bool = False) -> ContactMethod:
        """Attach a new contact method to an existing contact."""
        method = ContactMethod(
            contact_id=contact_id,
            type=method_type,
            value=value,
            normalized_value=normalize_method_value(method_type, value),
            is_primary=is_primary,
        )
        conn = self._get_connection()
        try:
            self._insert_method(conn, method)
            conn.commit()
        finally:
            conn.close()
        return method

    def _load_methods(self, conn: sqlite3.Connection, contact_ids: list[str]) -> dict[str, list[ContactMethod]]:
        if not contact_ids:
            return {}
        placeholders = ",".join("?" * len(contact_ids))
        rows = conn.execute(
            f"""
            SELECT id, contact_id, type, value, normalized_value, is_primary
            FROM contact_methods WHERE contact_id IN ({placeholders})
            ORDER BY is_primary DESC, type
            """,
            contact_ids,
        ).fetchall()
        by_contact: dict[str, list[ContactMethod]] = {}
        for row in rows:
            by_contact.setdefault(row["contact_id"], []).append(ContactMethod(
                id=row["id"],
                contact_id=row["contact_id"],
                type=row["type"],
                value=row["value"],
                normalized_value=row["normalized_value"],
                is_primary=bool(row["is_primary"]),
            ))
        return by_contact

    def _contact_from_row(self, row: sqlite3.Row, methods: list[ContactMethod]) -> Contact:
        return Contact(
            id=row["id"],
            full_name=row["full_name"],
            last_contacted=from_db(row["last_contacted"]),
            created_at=from_db(row["created_at"]),
            deleted_at=from_db(row["deleted_at"]),
            methods=methods,
        )

    def get_contact(self, contact_id: str) -> Optional[Contact]:
        """Get a non-deleted contact by ID."""
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM contacts WHERE id = ? AND deleted_at IS NULL",
                (contact_id,),
            ).fetchone()
            if not row:
                return None
            methods = self._load_methods(conn, [contact_id]).get(contact_id, [])
            return self._contact_from_row(row, methods)
        finally:
            conn.close()

    def list_contacts(self) -> list[Contact]:
        """List all non-deleted contacts with their methods."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM contacts WHERE deleted_at IS NULL ORDER BY full_name"
            ).fetchall()
            methods = self._load_methods(conn, [r["id"] for r in rows])
            return [self._contact_from_row(r, methods.get(r["id"], [])) for r in rows]
        finally:
            conn.close()

    def delete_contact(self, contact_id: str) -> bool:
        """Soft-delete a contact."""
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                "UPDATE contacts SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (to_db(datetime.now(timezone.utc)), contact_id),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def find_contact_ids_by_method(self, normalized_value: str, method_types: tuple[str, ...]) -> list[str]:
        """
        Find contacts owning a method with this exact normalized value.

        Args:
            normalized_value: Already-normalized identifier
            method_types: Contact method types to search

        Returns:
            Distinct contact IDs (usually zero or one)
        """
        if not normalized_value or not method_types:
            return []
        placeholders = ",".join("?" * len(method_types))
        conn = self._get_connection()
        try:
            rows = conn.execute(
                f"""
                SELECT DISTINCT m.contact_id
                FROM contact_methods m
                JOIN contacts c ON c.id = m.contact_id
                WHERE m.normalized_value = ?
                  AND m.type IN ({placeholders})
                  AND c.deleted_at IS NULL
                ORDER BY m.contact_id
                """,
                (normalized_value, *method_types),
            ).fetchall()
            return [r["contact_id"] for r in rows]
        finally:
            conn.close()

    def find_similar_contacts(self, name: str, threshold: float, limit: int = 5) -> list[SimilarContact]:
        """
        Find contacts whose full name resembles `name`.

        Args:
            name: Name to compare against
            threshold: Similarity (0-1) a candidate must exceed
            limit: Maximum candidates to return

        Returns:
            Candidates ordered by similarity, highest first
        """
        if not name or not name.strip():
            return []

        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT id, full_name FROM contacts WHERE deleted_at IS NULL"
            ).fetchall()

            scored = []
            for row in rows:
                similarity = name_similarity(name, row["full_name"])
                if similarity > threshold:
                    scored.append((similarity, row["full_name"], row["id"]))

            # Stable tie-break on name then id so candidate order is deterministic
            scored.sort(key=lambda s: (-s[0], s[1], s[2]))
            scored = scored[:limit]

            methods = self._load_methods(conn, [s[2] for s in scored])
            return [
                SimilarContact(
                    contact_id=contact_id,
                    full_name=full_name,
                    similarity=similarity,
                    methods=methods.get(contact_id, []),
                )
                for similarity, full_name, contact_id in scored
            ]
        finally:
            conn.close()

    def update_last_contacted(self, contact_id: str, when: datetime) -> bool:
        """
        Move a contact's last_contacted forward to `when`.

        Never moves it backwards; returns True if the row changed.
        """
        stamp = to_db(when)
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                UPDATE contacts SET last_contacted = ?
                WHERE id = ? AND deleted_at IS NULL
                  AND (last_contacted IS NULL OR last_contacted < ?)
                """,
                (stamp, contact_id, stamp),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()


# Singleton instance
_contact_store: Optional[ContactStore] = None


def get_contact_store(db_path: Optional[str] = None) -> ContactStore:
    """Get or create the singleton ContactStore."""
    global _contact_store
    if _contact_store is None:
        _contact_store = ContactStore(db_path)
    return _contact_store
