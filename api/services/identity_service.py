"""
Identity Resolver for the CRM.

Resolves an external identifier to a CRM contact in tiers:
1. Cache - an existing ExternalIdentity row for (identifier, type, source)
   is authoritative until it is unlinked
2. Exact - the normalized identifier equals exactly one contact method
3. Unmatched - cached with no contact so it can be reviewed later

Fuzzy matching is not done here; sync providers call the fuzzy matcher
themselves when a display name is available and record the outcome with
record_fuzzy_match().
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from api.services.contact_store import ContactStore, get_contact_store
from api.services.errors import NotFoundError
from api.services.identifiers import method_types_for, normalize_or_raise
from api.services.identity_store import (
    ExternalIdentity,
    IdentityStore,
    IdentityUpsert,
    MATCH_EXACT,
    MATCH_FUZZY,
    MATCH_MANUAL,
    MATCH_UNMATCHED,
    get_identity_store,
)

logger = logging.getLogger(__name__)


@dataclass
class MatchRequest:
    """An observation of an identifier on an external source."""

    identifier: str
    identifier_type: str
    source: str
    display_name: Optional[str] = None
    source_id: Optional[str] = None
    known_contact_id: Optional[str] = None  # Set when the source was queried for this contact


@dataclass
class MatchResult:
    """Outcome of match_or_create."""

    identity: ExternalIdentity
    contact_id: Optional[str]
    match_type: str
    confidence: Optional[float]
    cached: bool

    @property
    def is_matched(self) -> bool:
        return self.contact_id is not None

    def to_dict(self) -> dict:
        return {
            "identity": self.identity.to_dict(),
            "contact_id": self.contact_id,
            "match_type": self.match_type,
            "confidence": self.confidence,
            "cached": self.cached,
        }


class IdentityService:
    """Matches external identifiers to contacts and manages the identity cache."""

    def __init__(
        self,
        store: Optional[IdentityStore] = None,
        contacts: Optional[ContactStore] = None,
    ):
        """
        Initialize the resolver.

        Args:
            store: Identity cache (default singleton)
            contacts: Contact persistence used for exact method lookups (default singleton)
        """
        self.store = store or get_identity_store()
        self.contacts = contacts or get_contact_store()

    def match_or_create(self, req: MatchRequest, seen_at: Optional[datetime] = None) -> MatchResult:
        """
        Resolve an identifier and record the sighting.

        Every call increments the identity's message_count by one and
        refreshes last_seen_at, whether or not it matched.

        Args:
            req: The observed identifier
            seen_at: Observation time (default: now)

        Returns:
            MatchResult with the stored identity

        Raises:
            InvalidIdentifierError: unknown type or empty identifier
            NotFoundError: known_contact_id does not exist
        """
        normalized = normalize_or_raise(req.identifier, req.identifier_type)

        if req.known_contact_id:
            return self._match_known_contact(req, normalized, seen_at)

        cached = self.store.get_by_identifier(normalized, req.identifier_type, req.source)
        if cached:
            identity = self.store.record_sighting(cached.id, delta=1, seen_at=seen_at)
            logger.debug(f"Identity cache hit for {req.identifier_type}:{normalized} ({req.source})")
            return MatchResult(
                identity=identity,
                contact_id=identity.contact_id,
                match_type=identity.match_type,
                confidence=identity.match_confidence,
                cached=True,
            )

        contact_id = None
        match_type = MATCH_UNMATCHED
        confidence = None

        contact_ids = self.contacts.find_contact_ids_by_method(
            normalized, method_types_for(req.identifier_type)
        )
        if len(contact_ids) == 1:
            contact_id = contact_ids[0]
            match_type = MATCH_EXACT
            confidence = 1.0
        elif len(contact_ids) > 1:
            logger.warning(
                f"Ambiguous identifier {req.identifier_type}:{normalized} belongs to "
                f"{len(contact_ids)} contacts, leaving unmatched"
            )

        identity = self.store.upsert(
            IdentityUpsert(
                identifier=normalized,
                identifier_type=req.identifier_type,
                source=req.source,
                raw_identifier=req.identifier,
                source_id=req.source_id,
                contact_id=contact_id,
                match_type=match_type,
                match_confidence=confidence,
                display_name=req.display_name,
                message_count_delta=1,
            ),
            seen_at=seen_at,
        )
        return MatchResult(
            identity=identity,
            contact_id=identity.contact_id,
            match_type=identity.match_type,
            confidence=identity.match_confidence,
            cached=False,
        )

    def _match_known_contact(self, req: MatchRequest, normalized: str, seen_at: Optional[datetime]) -> MatchResult:
        """Link straight to the caller's contact without searching contact methods."""
        if self.contacts.get_contact(req.known_contact_id) is None:
            raise NotFoundError(f"Contact {req.known_contact_id} not found")

        identity = self.store.upsert(
            IdentityUpsert(
                identifier=normalized,
                identifier_type=req.identifier_type,
                source=req.source,
                raw_identifier=req.identifier,
                source_id=req.source_id,
                contact_id=req.known_contact_id,
                match_type=MATCH_EXACT,
                match_confidence=1.0,
                display_name=req.display_name,
                message_count_delta=1,
            ),
            seen_at=seen_at,
        )
        return MatchResult(
            identity=identity,
            contact_id=req.known_contact_id,
            match_type=MATCH_EXACT,
            confidence=1.0,
            cached=False,
        )

    def record_fuzzy_match(self, identity_id: str, contact_id: str, confidence: float) -> ExternalIdentity:
        """Link an identity to the contact accepted by fuzzy scoring."""
        return self.store.link_to_contact(identity_id, contact_id, MATCH_FUZZY, confidence)

    def link_identity(self, identity_id: str, contact_id: str) -> ExternalIdentity:
        """
        Manually link an identity to a contact.

        Raises:
            NotFoundError: identity or contact does not exist
        """
        if self.contacts.get_contact(contact_id) is None:
            raise NotFoundError(f"Contact {contact_id} not found")
        identity = self.store.link_to_contact(identity_id, contact_id, MATCH_MANUAL, 1.0)
        logger.info(f"Linked identity {identity_id} to contact {contact_id}")
        return identity

    def unlink_identity(self, identity_id: str) -> ExternalIdentity:
        """Revert an identity to unmatched."""
        identity = self.store.unlink(identity_id)
        logger.info(f"Unlinked identity {identity_id}")
        return identity

    def bulk_link_identities(self, identity_ids: list[str], contact_id: str) -> int:
        """Manually link a batch of identities to one contact, all or nothing."""
        if self.contacts.get_contact(contact_id) is None:
            raise NotFoundError(f"Contact {contact_id} not found")
        return self.store.bulk_link(identity_ids, contact_id, MATCH_MANUAL, 1.0)

    def get_identity(self, identity_id: str) -> ExternalIdentity:
        identity = self.store.get(identity_id)
        if identity is None:
            raise NotFoundError(f"External identity {identity_id} not found")
        return identity

    def list_unmatched(self, limit: int = 50, offset: int = 0) -> list[ExternalIdentity]:
        return self.store.list_unmatched(limit=limit, offset=offset)

    def count_unmatched(self) -> int:
        return self.store.count_unmatched()

    def list_identities_for_contact(self, contact_id: str) -> list[ExternalIdentity]:
        return self.store.list_for_contact(contact_id)

    def list_identities_by_source(self, source: str, limit: int = 100, offset: int = 0) -> list[ExternalIdentity]:
        return self.store.list_by_source(source, limit=limit, offset=offset)

    def find_across_sources(self, identifier: str, identifier_type: str) -> list[ExternalIdentity]:
        """All cached rows for an identifier, one per source."""
        normalized = normalize_or_raise(identifier, identifier_type)
        return self.store.find_by_identifier(normalized, identifier_type)

    def increment_message_count(self, identity_id: str, delta: int = 1) -> ExternalIdentity:
        return self.store.record_sighting(identity_id, delta=delta)

    def delete_identity(self, identity_id: str):
        """Hard-delete an identity (admin action)."""
        if not self.store.delete(identity_id):
            raise NotFoundError(f"External identity {identity_id} not found")
        logger.info(f"Deleted identity {identity_id}")


# Singleton instance
_identity_service: Optional[IdentityService] = None


def get_identity_service() -> IdentityService:
    """Get or create the singleton IdentityService."""
    global _identity_service
    if _identity_service is None:
        _identity_service = IdentityService()
    return _identity_service
