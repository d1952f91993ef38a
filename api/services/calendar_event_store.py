"""
CalendarEventStore - snapshots of synced calendar events.

Each event remembers which CRM contacts attended it. After an event ends,
the calendar provider bumps those contacts' last_contacted once and flags
the event as processed; re-syncing the event never clears that flag.
"""
import sqlite3
import json
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from api.utils.datetime_utils import from_db, to_db
from api.utils.db_paths import get_crm_db_path

logger = logging.getLogger(__name__)


@dataclass
class Attendee:
    email: str
    display_name: Optional[str] = None
    response_status: Optional[str] = None
    is_self: bool = False
    is_organizer: bool = False

    def to_dict(self) -> dict:
        return {
            "email": self.email,
            "display_name": self.display_name,
            "response_status": self.response_status,
            "is_self": self.is_self,
            "is_organizer": self.is_organizer,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Attendee":
        return cls(
            email=data.get("email", ""),
            display_name=data.get("display_name"),
            response_status=data.get("response_status"),
            is_self=bool(data.get("is_self")),
            is_organizer=bool(data.get("is_organizer")),
        )


@dataclass
class CalendarEvent:
    """A synced calendar event and the contacts matched to its attendees."""

    event_id: str
    calendar_id: str
    account_id: str
    start_time: datetime
    end_time: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    html_link: Optional[str] = None
    all_day: bool = False
    status: str = "confirmed"
    user_response: Optional[str] = None
    organizer_email: Optional[str] = None
    attendees: list[Attendee] = field(default_factory=list)
    matched_contact_ids: list[str] = field(default_factory=list)
    last_contacted_updated: bool = False
    synced_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "calendar_id": self.calendar_id,
            "account_id": self.account_id,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "html_link": self.html_link,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "all_day": self.all_day,
            "status": self.status,
            "user_response": self.user_response,
            "organizer_email": self.organizer_email,
            "attendees": [a.to_dict() for a in self.attendees],
            "matched_contact_ids": self.matched_contact_ids,
            "last_contacted_updated": self.last_contacted_updated,
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CalendarEvent":
        return cls(
            id=row["id"],
            event_id=row["event_id"],
            calendar_id=row["calendar_id"],
            account_id=row["account_id"],
            title=row["title"],
            description=row["description"],
            location=row["location"],
            html_link=row["html_link"],
            start_time=from_db(row["start_time"]),
            end_time=from_db(row["end_time"]),
            all_day=bool(row["all_day"]),
            status=row["status"],
            user_response=row["user_response"],
            organizer_email=row["organizer_email"],
            attendees=[Attendee.from_dict(a) for a in json.loads(row["attendees"] or "[]")],
            matched_contact_ids=json.loads(row["matched_contact_ids"] or "[]"),
            last_contacted_updated=bool(row["last_contacted_updated"]),
            synced_at=from_db(row["synced_at"]),
        )


class CalendarEventStore:
    """SQLite storage for calendar event snapshots."""

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
                CREATE TABLE IF NOT EXISTS calendar_events (
                    id TEXT PRIMARY KEY,
                    event_id TEXT NOT NULL,
                    calendar_id TEXT NOT NULL,
                    account_id TEXT NOT NULL,
                    title TEXT,
                    description TEXT,
                    location TEXT,
                    html_link TEXT,
                    start_time TIMESTAMP NOT NULL,
                    end_time TIMESTAMP NOT NULL,
                    all_day INTEGER DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'confirmed',
                    user_response TEXT,
                    organizer_email TEXT,
                    attendees TEXT NOT NULL DEFAULT '[]',
                    matched_contact_ids TEXT NOT NULL DEFAULT '[]',
                    last_contacted_updated INTEGER NOT NULL DEFAULT 0,
                    synced_at TIMESTAMP,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    UNIQUE(event_id, calendar_id, account_id)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_calendar_events_pending
                ON calendar_events(end_time) WHERE last_contacted_updated = 0
            """)
            conn.commit()
        finally:
            conn.close()

    def upsert(self, event: CalendarEvent) -> CalendarEvent:
        """
        Insert or refresh an event.

        last_contacted_updated is only ever set on insert, never on update.
        """
        now = to_db(datetime.now(timezone.utc))
        conn = self._get_connection()
        try:
            conn.execute(
                """
                INSERT INTO calendar_events (
                    id, event_id, calendar_id, account_id, title, description, location,
                    html_link, start_time, end_time, all_day, status, user_response,
                    organizer_email, attendees, matched_contact_ids, last_contacted_updated,
                    synced_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(event_id, calendar_id, account_id) DO UPDATE SET
                    title = excluded.title,
                    description = excluded.description,
                    location = excluded.location,
                    html_link = excluded.html_link,
                    start_time = excluded.start_time,
                    end_time = excluded.end_time,
                    all_day = excluded.all_day,
                    status = excluded.status,
                    user_response = excluded.user_response,
                    organizer_email = excluded.organizer_email,
                    attendees = excluded.attendees,
                    matched_contact_ids = excluded.matched_contact_ids,
                    synced_at = excluded.synced_at,
                    updated_at = excluded.updated_at
                """,
                (
                    event.id, event.event_id, event.calendar_id, event.account_id,
                    event.title, event.description, event.location, event.html_link,
                    to_db(event.start_time), to_db(event.end_time),
                    1 if event.all_day else 0, event.status, event.user_response,
                    event.organizer_email,
                    json.dumps([a.to_dict() for a in event.attendees]),
                    json.dumps(event.matched_contact_ids),
                    1 if event.last_contacted_updated else 0,
                    to_db(event.synced_at) if event.synced_at else now,
                    now, now,
                ),
            )
            row = conn.execute(
                """
                SELECT * FROM calendar_events
                WHERE event_id = ? AND calendar_id = ? AND account_id = ?
                """,
                (event.event_id, event.calendar_id, event.account_id),
            ).fetchone()
            conn.commit()
            return CalendarEvent.from_row(row)
        finally:
            conn.close()

    def get(self, event_id: str, calendar_id: str, account_id: str) -> Optional[CalendarEvent]:
        """Look up an event by its provider identifiers."""
        conn = self._get_connection()
        try:
            row = conn.execute(
                """
                SELECT * FROM calendar_events
                WHERE event_id = ? AND calendar_id = ? AND account_id = ?
                """,
                (event_id, calendar_id, account_id),
            ).fetchone()
            return CalendarEvent.from_row(row) if row else None
        finally:
            conn.close()

    def list_past_events_needing_update(self, before: datetime, limit: int = 100) -> list[CalendarEvent]:
        """Confirmed events that ended before `before`, have contacts, and are unprocessed."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM calendar_events
                WHERE last_contacted_updated = 0
                  AND status = 'confirmed'
                  AND end_time < ?
                  AND json_array_length(matched_contact_ids) > 0
                ORDER BY end_time ASC
                LIMIT ?
                """,
                (to_db(before), limit),
            ).fetchall()
            return [CalendarEvent.from_row(r) for r in rows]
        finally:
            conn.close()

    def mark_last_contacted_updated(self, event_row_id: str):
        conn = self._get_connection()
        try:
            conn.execute(
                """
                UPDATE calendar_events SET last_contacted_updated = 1, updated_at = ?
                WHERE id = ?
                """,
                (to_db(datetime.now(timezone.utc)), event_row_id),
            )
            conn.commit()
        finally:
            conn.close()

    def set_status(self, event_id: str, calendar_id: str, account_id: str, status: str) -> bool:
        """
        Update the status of a stored event.

        Returns:
            True if the event was known
        """
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                UPDATE calendar_events SET status = ?, updated_at = ?
                WHERE event_id = ? AND calendar_id = ? AND account_id = ?
                """,
                (status, to_db(datetime.now(timezone.utc)), event_id, calendar_id, account_id),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()


# Singleton instance
_calendar_event_store: Optional[CalendarEventStore] = None


def get_calendar_event_store(db_path: Optional[str] = None) -> CalendarEventStore:
    """Get or create the singleton CalendarEventStore."""
    global _calendar_event_store
    if _calendar_event_store is None:
        _calendar_event_store = CalendarEventStore(db_path)
    return _calendar_event_store
