"""
Google Calendar sync provider.

Pulls the primary calendar of a connected Google account, matches meeting
attendees to CRM contacts and stores a snapshot of each accepted meeting.
Attendees that match nobody become import candidates (source
"gcal_attendee"), one per email address, carrying the context of the most
recent meeting they were seen in.

First run fetches a bounded window (365 days back, 30 forward); later runs
resume from the Calendar API sync token. An expired token falls back to a
full window fetch.
"""
import logging
import threading
from datetime import timedelta
from typing import Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from api.services.calendar_event_store import (
    Attendee,
    CalendarEvent,
    CalendarEventStore,
    get_calendar_event_store,
)
from api.services.clock import Clock, get_clock
from api.services.contact_store import Contact, ContactStore, get_contact_store
from api.services.external_contact_store import (
    ExternalContact,
    ExternalContactStore,
    MethodEntry,
    get_external_contact_store,
)
from api.services.fuzzy_matcher import FuzzyMatcher
from api.services.google_auth import get_google_auth
from api.services.identifiers import IDENTIFIER_EMAIL, infer_name_from_email, normalize_email
from api.services.identity_service import IdentityService, MatchRequest, get_identity_service
from api.services.sync_provider import (
    CursorExpiredError,
    SourceConfig,
    SyncProvider,
    SyncResult,
)
from api.services.sync_state import STRATEGY_FETCH_ALL, SyncState
from api.utils.datetime_utils import parse_rfc3339
from config.matching_config import CALENDAR_CONFIG, CalendarSyncConfig, is_blocked_calendar_address

logger = logging.getLogger(__name__)

PRIMARY_CALENDAR = "primary"


def is_cursor_expired(error: HttpError) -> bool:
    """410 Gone, or a 'fullSyncRequired' reason, means the sync token is no longer valid."""
    status = getattr(error.resp, "status", None)
    if status is not None and int(status) == 410:
        return True
    return b"fullSyncRequired" in (error.content or b"") or "fullSyncRequired" in str(error)


class GoogleCalendarClient:
    """Thin wrapper over the Calendar v3 events.list endpoint."""

    def __init__(self):
        self._services: dict[str, object] = {}
        self._lock = threading.Lock()

    def _service(self, account_id: str):
        """Get or create the Calendar API service for an account."""
        with self._lock:
            if account_id not in self._services:
                credentials = get_google_auth().get_credentials(account_id)
                self._services[account_id] = build(
                    "calendar", "v3", credentials=credentials, cache_discovery=False
                )
            return self._services[account_id]

    def list_events(
        self,
        account_id: str,
        sync_token: Optional[str] = None,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
        page_token: Optional[str] = None,
        max_results: int = CalendarSyncConfig.PAGE_SIZE,
    ) -> dict:
        """
        Fetch one page of events.

        Pass either sync_token (incremental) or time_min/time_max (window).

        Returns:
            Raw response with "items", "nextPageToken", "nextSyncToken"

        Raises:
            CursorExpiredError: the sync token was rejected
        """
        params = {"calendarId": PRIMARY_CALENDAR, "maxResults": max_results}
        if sync_token:
            params["syncToken"] = sync_token
        else:
            params.update({
                "timeMin": time_min,
                "timeMax": time_max,
                "singleEvents": True,
                "orderBy": "startTime",
            })
        if page_token:
            params["pageToken"] = page_token

        try:
            return self._service(account_id).events().list(**params).execute()
        except HttpError as e:
            if sync_token and is_cursor_expired(e):
                raise CursorExpiredError(str(e)) from e
            raise


def get_user_response(event: dict, account_id: str) -> Optional[str]:
    """The account owner's response to an event; organizers count as accepted."""
    account = account_id.lower()
    for attendee in event.get("attendees", []):
        if attendee.get("self") or attendee.get("email", "").lower() == account:
            return attendee.get("responseStatus")
    organizer = event.get("organizer") or {}
    if organizer.get("email", "").lower() == account:
        return "accepted"
    return None


def build_attendee_list(event: dict, account_id: str) -> list[Attendee]:
    account = account_id.lower()
    organizer_email = (event.get("organizer") or {}).get("email", "").lower()
    attendees = []
    for a in event.get("attendees", []):
        email = a.get("email", "")
        attendees.append(Attendee(
            email=email,
            display_name=a.get("displayName") or None,
            response_status=a.get("responseStatus"),
            is_self=bool(a.get("self")) or email.lower() == account,
            is_organizer=bool(organizer_email) and email.lower() == organizer_email,
        ))
    return attendees


class CalendarSyncProvider(SyncProvider):
    """SyncProvider for Google Calendar."""

    def __init__(
        self,
        client: Optional[GoogleCalendarClient] = None,
        identity_service: Optional[IdentityService] = None,
        fuzzy_matcher: Optional[FuzzyMatcher] = None,
        contact_store: Optional[ContactStore] = None,
        event_store: Optional[CalendarEventStore] = None,
        external_store: Optional[ExternalContactStore] = None,
        clock: Optional[Clock] = None,
    ):
        self.client = client or GoogleCalendarClient()
        self.identity_service = identity_service or get_identity_service()
        self.contact_store = contact_store or get_contact_store()
        self.fuzzy_matcher = fuzzy_matcher or FuzzyMatcher(self.contact_store)
        self.event_store = event_store or get_calendar_event_store()
        self.external_store = external_store or get_external_contact_store()
        self.clock = clock or get_clock()

    def config(self) -> SourceConfig:
        return SourceConfig(
            name=CalendarSyncConfig.SOURCE,
            display_name=CalendarSyncConfig.DISPLAY_NAME,
            strategy=STRATEGY_FETCH_ALL,
            supports_multi_account=True,
            supports_discovery=True,
            default_interval=CalendarSyncConfig.INTERVAL,
        )

    def sync(
        self,
        state: SyncState,
        contacts: list[Contact],
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncResult:
        if not state.account_id:
            raise ValueError("Google Calendar sync requires an account_id")
        account_id = state.account_id

        logger.info(f"Starting Google Calendar sync for {account_id}")
        result = SyncResult()

        if state.sync_cursor:
            try:
                self._fetch_all_pages(account_id, result, cancel_event, sync_token=state.sync_cursor)
                mode = "incremental"
            except CursorExpiredError:
                logger.warning(f"Calendar sync token expired for {account_id}, falling back to full sync")
                self._full_sync(account_id, result, cancel_event)
                mode = "full_after_expiry"
        else:
            self._full_sync(account_id, result, cancel_event)
            mode = "full"

        result.metadata["mode"] = mode
        result.metadata["past_events_updated"] = self.update_last_contacted_for_past_events()

        logger.info(
            f"Google Calendar sync ({mode}) for {account_id} complete: "
            f"{result.items_processed} processed, {result.items_matched} matched, "
            f"{result.items_created} new candidates"
        )
        return result

    def _full_sync(self, account_id: str, result: SyncResult, cancel_event: Optional[threading.Event]):
        now = self.clock.now()
        time_min = (now - timedelta(days=CalendarSyncConfig.DAYS_BACK)).isoformat()
        time_max = (now + timedelta(days=CalendarSyncConfig.DAYS_FORWARD)).isoformat()
        self._fetch_all_pages(account_id, result, cancel_event, time_min=time_min, time_max=time_max)

    def _fetch_all_pages(
        self,
        account_id: str,
        result: SyncResult,
        cancel_event: Optional[threading.Event],
        sync_token: Optional[str] = None,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
    ):
        page_token = None
        while True:
            self.check_cancelled(cancel_event)
            response = self.client.list_events(
                account_id,
                sync_token=sync_token,
                time_min=time_min,
                time_max=time_max,
                page_token=page_token,
            )

            for event in response.get("items", []):
                try:
                    self.process_event(event, account_id, result)
                except Exception as e:
                    logger.warning(f"Failed to process calendar event {event.get('id')}: {e}")
                    continue
                result.items_processed += 1

            page_token = response.get("nextPageToken")
            if not page_token:
                if response.get("nextSyncToken"):
                    result.new_cursor = response["nextSyncToken"]
                break

    def process_event(self, event: dict, account_id: str, result: SyncResult):
        """Match attendees of one event and store its snapshot."""
        event_id = event["id"]
        start = event.get("start") or {}
        end = event.get("end") or {}

        # Cancelled instances arrive from incremental sync without times
        if event.get("status") == "cancelled" and not start:
            self.event_store.set_status(event_id, PRIMARY_CALENDAR, account_id, "cancelled")
            return

        # All-day entries are holidays and birthdays, not meetings
        if start.get("date"):
            logger.debug(f"Skipping all-day event {event_id}")
            return

        start_time = parse_rfc3339(start.get("dateTime"))
        end_time = parse_rfc3339(end.get("dateTime"))
        if start_time is None or end_time is None:
            raise ValueError(f"Event {event_id} has no start/end time")

        user_response = get_user_response(event, account_id)
        if user_response != "accepted":
            logger.debug(f"Skipping event {event_id} with response {user_response}")
            return

        attendees = build_attendee_list(event, account_id)
        matched_ids = self.match_attendees(attendees, account_id, event, start_time, result)

        self.event_store.upsert(CalendarEvent(
            event_id=event_id,
            calendar_id=PRIMARY_CALENDAR,
            account_id=account_id,
            title=event.get("summary"),
            description=event.get("description") or None,
            location=event.get("location") or None,
            html_link=event.get("htmlLink") or None,
            start_time=start_time,
            end_time=end_time,
            all_day=False,
            status=event.get("status") or "confirmed",
            user_response=user_response,
            organizer_email=(event.get("organizer") or {}).get("email") or None,
            attendees=attendees,
            matched_contact_ids=matched_ids,
            synced_at=self.clock.now(),
        ))

    def match_attendees(
        self,
        attendees: list[Attendee],
        account_id: str,
        event: dict,
        start_time,
        result: SyncResult,
    ) -> list[str]:
        """
        Resolve attendees to contact IDs.

        Exact identity match first, then fuzzy by display name; attendees
        that match neither are stored as import candidates.
        """
        matched: list[str] = []
        for attendee in attendees:
            if attendee.is_self or not attendee.email:
                continue
            email = normalize_email(attendee.email)
            if is_blocked_calendar_address(email):
                logger.debug(f"Skipping calendar resource {email}")
                continue

            contact_id = None
            identity = None
            try:
                match = self.identity_service.match_or_create(
                    MatchRequest(
                        identifier=attendee.email,
                        identifier_type=IDENTIFIER_EMAIL,
                        source=CalendarSyncConfig.SOURCE,
                        display_name=attendee.display_name,
                    ),
                    seen_at=self.clock.now(),
                )
                identity = match.identity
                contact_id = match.contact_id
            except Exception as e:
                logger.warning(f"Identity match failed for {email}: {e}")

            if contact_id is None and attendee.display_name:
                fuzzy = self.fuzzy_matcher.match_attendee(attendee.display_name, email, CALENDAR_CONFIG)
                if fuzzy:
                    contact_id = fuzzy.contact_id
                    if identity is not None:
                        self.identity_service.record_fuzzy_match(identity.id, fuzzy.contact_id, fuzzy.score)

            if contact_id is not None:
                if contact_id not in matched:
                    matched.append(contact_id)
                    result.items_matched += 1
                continue

            try:
                if self.store_unmatched_attendee(attendee, account_id, event, start_time):
                    result.items_created += 1
            except Exception as e:
                logger.warning(f"Failed to store import candidate for {email}: {e}")

        return matched

    def store_unmatched_attendee(self, attendee: Attendee, account_id: str, event: dict, start_time) -> bool:
        """
        Upsert an import candidate for an attendee nobody matched.

        Returns:
            True if a new candidate was created
        """
        email = normalize_email(attendee.email)
        now = self.clock.now()
        record, created = self.external_store.upsert(ExternalContact(
            source=CalendarSyncConfig.ATTENDEE_SOURCE,
            source_id=email,
            account_id=account_id,
            display_name=attendee.display_name or infer_name_from_email(email),
            emails=[MethodEntry(value=attendee.email)],
            metadata={
                "meeting_title": event.get("summary", ""),
                "meeting_date": start_time.isoformat(),
                "meeting_link": event.get("htmlLink", ""),
                "discovered_at": now.isoformat(),
            },
            synced_at=now,
        ))
        if created:
            self.check_duplicates(record, self.external_store)
        return created

    def update_last_contacted_for_past_events(self) -> int:
        """
        Bump last_contacted for contacts of ended meetings, once per meeting.

        Returns:
            Number of events processed
        """
        events = self.event_store.list_past_events_needing_update(
            self.clock.now(), CalendarSyncConfig.PAST_EVENT_BATCH_SIZE
        )
        for event in events:
            for contact_id in event.matched_contact_ids:
                try:
                    self.contact_store.update_last_contacted(contact_id, event.end_time)
                except Exception as e:
                    logger.warning(f"Failed to update last_contacted for {contact_id}: {e}")
            self.event_store.mark_last_contacted_updated(event.id)

        if events:
            logger.info(f"Updated last_contacted from {len(events)} past calendar events")
        return len(events)
