"""
Google Contacts sync provider.

Mirrors the account's People API connections into external_contacts, then
tries to tie each new record to a CRM contact: exact identity match on its
emails, then its phones, then a strict fuzzy name match. Records that
only resemble a contact loosely stay unmatched for review.
"""
import logging
import threading
from datetime import date
from typing import Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from api.services.clock import Clock, get_clock
from api.services.contact_store import Contact, ContactStore, get_contact_store
from api.services.external_contact_store import (
    STATUS_MATCHED,
    STATUS_UNMATCHED,
    AddressEntry,
    ExternalContact,
    ExternalContactStore,
    MethodEntry,
    get_external_contact_store,
)
from api.services.fuzzy_matcher import FuzzyMatcher
from api.services.google_auth import get_google_auth
from api.services.identifiers import IDENTIFIER_EMAIL, IDENTIFIER_PHONE, normalize_email
from api.services.identity_service import IdentityService, MatchRequest, get_identity_service
from api.services.sync_provider import (
    CursorExpiredError,
    SourceConfig,
    SyncProvider,
    SyncResult,
)
from api.services.sync_state import STRATEGY_FETCH_ALL, SyncState
from config.matching_config import ContactsSyncConfig

logger = logging.getLogger(__name__)


def is_sync_token_expired(error: HttpError) -> bool:
    status = getattr(error.resp, "status", None)
    if status is not None and int(status) == 410:
        return True
    return b"EXPIRED_SYNC_TOKEN" in (error.content or b"") or "EXPIRED_SYNC_TOKEN" in str(error)


class GoogleContactsClient:
    """Thin wrapper over people.connections.list."""

    def __init__(self):
        self._services: dict[str, object] = {}
        self._lock = threading.Lock()

    def _service(self, account_id: str):
        with self._lock:
            if account_id not in self._services:
                credentials = get_google_auth().get_credentials(account_id)
                self._services[account_id] = build(
                    "people", "v1", credentials=credentials, cache_discovery=False
                )
            return self._services[account_id]

    def list_connections(
        self,
        account_id: str,
        sync_token: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> dict:
        """
        Fetch one page of connections.

        Returns:
            Raw response with "connections", "nextPageToken", "nextSyncToken"

        Raises:
            CursorExpiredError: the sync token was rejected
        """
        params = {
            "resourceName": "people/me",
            "personFields": ContactsSyncConfig.PERSON_FIELDS,
            "pageSize": ContactsSyncConfig.PAGE_SIZE,
            "requestSyncToken": True,
        }
        if sync_token:
            params["syncToken"] = sync_token
        if page_token:
            params["pageToken"] = page_token

        try:
            return self._service(account_id).people().connections().list(**params).execute()
        except HttpError as e:
            if sync_token and is_sync_token_expired(e):
                raise CursorExpiredError(str(e)) from e
            raise


def _is_primary(entry: dict) -> bool:
    return bool((entry.get("metadata") or {}).get("primary"))


def _parse_birthday(person: dict) -> Optional[date]:
    """Full dates only; birthdays without a year are dropped."""
    birthdays = person.get("birthdays") or []
    if not birthdays:
        return None
    d = birthdays[0].get("date") or {}
    year, month, day = d.get("year", 0), d.get("month", 0), d.get("day", 0)
    if year > 0 and month > 0 and day > 0:
        try:
            return date(year, month, day)
        except ValueError:
            return None
    return None


def person_to_external_contact(person: dict, account_id: str, synced_at=None) -> Optional[ExternalContact]:
    """
    Convert a People API person into an ExternalContact.

    Returns None for persons with no name, email or phone.
    """
    names = person.get("names") or []
    email_addresses = person.get("emailAddresses") or []
    phone_numbers = person.get("phoneNumbers") or []
    if not names and not email_addresses and not phone_numbers:
        return None

    record = ExternalContact(
        source=ContactsSyncConfig.SOURCE,
        source_id=person["resourceName"],
        account_id=account_id,
        etag=person.get("etag") or None,
        synced_at=synced_at,
    )

    if names:
        name = names[0]
        record.display_name = name.get("displayName") or None
        record.first_name = name.get("givenName") or None
        record.last_name = name.get("familyName") or None

    record.emails = [
        MethodEntry(value=e.get("value", ""), type=e.get("type", ""), primary=_is_primary(e))
        for e in email_addresses
        if e.get("value")
    ]
    record.phones = [
        MethodEntry(value=p.get("value", ""), type=p.get("type", ""), primary=_is_primary(p))
        for p in phone_numbers
        if p.get("value")
    ]
    record.addresses = [
        AddressEntry(formatted=a.get("formattedValue", ""), type=a.get("type", ""))
        for a in person.get("addresses") or []
    ]

    organizations = person.get("organizations") or []
    if organizations:
        record.organization = organizations[0].get("name") or None
        record.job_title = organizations[0].get("title") or None

    record.birthday = _parse_birthday(person)

    photos = person.get("photos") or []
    if photos and photos[0].get("url"):
        record.photo_url = photos[0]["url"]

    return record


class ContactsSyncProvider(SyncProvider):
    """SyncProvider for Google Contacts."""

    def __init__(
        self,
        client: Optional[GoogleContactsClient] = None,
        identity_service: Optional[IdentityService] = None,
        fuzzy_matcher: Optional[FuzzyMatcher] = None,
        contact_store: Optional[ContactStore] = None,
        external_store: Optional[ExternalContactStore] = None,
        clock: Optional[Clock] = None,
    ):
        self.client = client or GoogleContactsClient()
        self.identity_service = identity_service or get_identity_service()
        contact_store = contact_store or get_contact_store()
        self.fuzzy_matcher = fuzzy_matcher or FuzzyMatcher(contact_store)
        self.external_store = external_store or get_external_contact_store()
        self.clock = clock or get_clock()

    def config(self) -> SourceConfig:
        return SourceConfig(
            name=ContactsSyncConfig.SOURCE,
            display_name=ContactsSyncConfig.DISPLAY_NAME,
            strategy=STRATEGY_FETCH_ALL,
            supports_multi_account=True,
            supports_discovery=True,
            default_interval=ContactsSyncConfig.INTERVAL,
        )

    def sync(
        self,
        state: SyncState,
        contacts: list[Contact],
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncResult:
        if not state.account_id:
            raise ValueError("Google Contacts sync requires an account_id")
        account_id = state.account_id

        logger.info(f"Starting Google Contacts sync for {account_id}")
        result = SyncResult()

        if state.sync_cursor:
            try:
                self._fetch_all_pages(account_id, result, cancel_event, state.sync_cursor)
                result.metadata["mode"] = "incremental"
            except CursorExpiredError:
                logger.warning(f"Contacts sync token expired for {account_id}, falling back to full sync")
                self._fetch_all_pages(account_id, result, cancel_event, None)
                result.metadata["mode"] = "full_after_expiry"
        else:
            self._fetch_all_pages(account_id, result, cancel_event, None)
            result.metadata["mode"] = "full"

        logger.info(
            f"Google Contacts sync for {account_id} complete: "
            f"{result.items_processed} processed, {result.items_matched} matched, "
            f"{result.items_created} new records"
        )
        return result

    def _fetch_all_pages(
        self,
        account_id: str,
        result: SyncResult,
        cancel_event: Optional[threading.Event],
        sync_token: Optional[str],
    ):
        page_token = None
        while True:
            self.check_cancelled(cancel_event)
            response = self.client.list_connections(
                account_id, sync_token=sync_token, page_token=page_token
            )

            for person in response.get("connections", []):
                try:
                    self.process_person(person, account_id, result)
                except Exception as e:
                    logger.warning(f"Failed to process contact {person.get('resourceName')}: {e}")
                    continue
                result.items_processed += 1

            page_token = response.get("nextPageToken")
            if not page_token:
                if response.get("nextSyncToken"):
                    result.new_cursor = response["nextSyncToken"]
                break

    def process_person(self, person: dict, account_id: str, result: SyncResult):
        record = person_to_external_contact(person, account_id, synced_at=self.clock.now())
        if record is None:
            logger.debug(f"Skipping empty contact {person.get('resourceName')}")
            return

        stored, created = self.external_store.upsert(record)
        if created:
            result.items_created += 1

        stored = self.check_duplicates(stored, self.external_store)

        if self.attempt_match(stored):
            result.items_matched += 1

    def attempt_match(self, record: ExternalContact) -> bool:
        """
        Try to tie an external record to a CRM contact.

        Returns:
            True if the record was newly matched
        """
        # Records already reviewed are left alone
        if record.match_status != STATUS_UNMATCHED or record.crm_contact_id or record.is_duplicate:
            return False

        seen_at = self.clock.now()
        candidates = [(e.value, IDENTIFIER_EMAIL) for e in record.emails]
        candidates += [(p.value, IDENTIFIER_PHONE) for p in record.phones]

        for value, identifier_type in candidates:
            try:
                match = self.identity_service.match_or_create(
                    MatchRequest(
                        identifier=value,
                        identifier_type=identifier_type,
                        source=ContactsSyncConfig.SOURCE,
                        display_name=record.display_name,
                        source_id=record.source_id,
                    ),
                    seen_at=seen_at,
                )
            except Exception as e:
                logger.debug(f"Identity match failed for {identifier_type} {value}: {e}")
                continue
            if match.contact_id:
                self.external_store.update_match(record.id, match.contact_id, STATUS_MATCHED)
                logger.debug(f"Matched {record.source_id} to {match.contact_id} by {identifier_type}")
                return True

        # Only strong name matches are linked here; weaker ones wait for review
        fuzzy = self.fuzzy_matcher.match_import_candidate(record)
        if fuzzy:
            self.external_store.update_match(record.id, fuzzy.contact_id, STATUS_MATCHED)
            for entry in record.emails:
                identity = self.identity_service.store.get_by_identifier(
                    normalize_email(entry.value), IDENTIFIER_EMAIL, ContactsSyncConfig.SOURCE
                )
                if identity and not identity.contact_id:
                    self.identity_service.record_fuzzy_match(identity.id, fuzzy.contact_id, fuzzy.score)
            logger.debug(
                f"Fuzzy matched {record.source_id} to {fuzzy.contact_name} ({fuzzy.score:.2f})"
            )
            return True

        return False
