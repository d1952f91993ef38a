"""
Import candidate review.

External records that no provider could tie to a contact wait here. A
reviewer can ask for a suggestion, ignore a record, or link it to a
contact by hand; linking also links the cached identities behind the
record's emails and phones so future sightings resolve from the cache.
"""
import logging
from typing import Optional

from api.services.contact_store import ContactStore, get_contact_store
from api.services.errors import NotFoundError
from api.services.external_contact_store import (
    STATUS_MATCHED,
    ExternalContact,
    ExternalContactStore,
    get_external_contact_store,
)
from api.services.fuzzy_matcher import FuzzyMatch, FuzzyMatcher, get_fuzzy_matcher
from api.services.identifiers import IDENTIFIER_EMAIL, IDENTIFIER_PHONE, InvalidIdentifierError, normalize_or_raise
from api.services.identity_service import IdentityService, get_identity_service
from config.matching_config import CalendarSyncConfig

logger = logging.getLogger(__name__)


def identity_source_for(record: ExternalContact) -> str:
    """Source under which a record's identifiers were cached."""
    # Attendee candidates come from calendar events, whose identities are keyed by the calendar source
    if record.source == CalendarSyncConfig.ATTENDEE_SOURCE:
        return CalendarSyncConfig.SOURCE
    return record.source


class ImportService:
    """Review actions on unmatched external records."""

    def __init__(
        self,
        store: Optional[ExternalContactStore] = None,
        identity_service: Optional[IdentityService] = None,
        fuzzy_matcher: Optional[FuzzyMatcher] = None,
        contacts: Optional[ContactStore] = None,
    ):
        self.store = store or get_external_contact_store()
        self.identity_service = identity_service or get_identity_service()
        self.fuzzy_matcher = fuzzy_matcher or get_fuzzy_matcher()
        self.contacts = contacts or get_contact_store()

    def get_candidate(self, record_id: str) -> ExternalContact:
        record = self.store.get(record_id)
        if record is None:
            raise NotFoundError(f"Import candidate {record_id} not found")
        return record

    def list_candidates(self, source: Optional[str] = None, limit: int = 50, offset: int = 0) -> list[ExternalContact]:
        return self.store.list_unmatched(source=source, limit=limit, offset=offset)

    def count_candidates(self, source: Optional[str] = None) -> int:
        return self.store.count_unmatched(source=source)

    def suggest(self, record_id: str) -> Optional[FuzzyMatch]:
        """Best contact for a candidate by name and method overlap, if any."""
        return self.fuzzy_matcher.suggest_for_import(self.get_candidate(record_id))

    def ignore(self, record_id: str) -> ExternalContact:
        record = self.store.ignore(record_id)
        logger.info(f"Ignored import candidate {record_id}")
        return record

    def link(self, record_id: str, contact_id: str) -> ExternalContact:
        """
        Link a candidate to an existing contact.

        Cached identities for the record's emails and phones are linked
        manually to the same contact. Identifiers that were never cached
        or do not normalize are skipped.

        Raises:
            NotFoundError: candidate or contact does not exist
        """
        record = self.get_candidate(record_id)
        if self.contacts.get_contact(contact_id) is None:
            raise NotFoundError(f"Contact {contact_id} not found")

        record = self.store.update_match(record.id, contact_id, STATUS_MATCHED)

        source = identity_source_for(record)
        identifiers = [(e.value, IDENTIFIER_EMAIL) for e in record.emails]
        identifiers += [(p.value, IDENTIFIER_PHONE) for p in record.phones]
        linked = 0
        for value, identifier_type in identifiers:
            try:
                normalized = normalize_or_raise(value, identifier_type)
            except InvalidIdentifierError:
                logger.debug(f"Skipping unusable {identifier_type} {value!r} on candidate {record_id}")
                continue
            identity = self.identity_service.store.get_by_identifier(normalized, identifier_type, source)
            if identity is None or identity.contact_id == contact_id:
                continue
            self.identity_service.link_identity(identity.id, contact_id)
            linked += 1

        logger.info(f"Linked import candidate {record_id} to contact {contact_id} ({linked} identities)")
        return record

    def list_for_contact(self, contact_id: str) -> list[ExternalContact]:
        """External records already tied to a contact, across sources."""
        return self.store.list_for_crm_contact(contact_id)

    def delete(self, record_id: str):
        if not self.store.delete(record_id):
            raise NotFoundError(f"Import candidate {record_id} not found")
        logger.info(f"Deleted import candidate {record_id}")


# Singleton instance
_import_service: Optional[ImportService] = None


def get_import_service() -> ImportService:
    """Get or create the singleton ImportService."""
    global _import_service
    if _import_service is None:
        _import_service = ImportService()
    return _import_service
