"""
Fuzzy contact matching by name similarity and contact-method overlap.

The scoring itself is pure (select_best_match works on a candidate list
and does no I/O). FuzzyMatcher wraps it with the candidate lookup against
the contact store for the two callers: calendar attendee matching and
import-candidate suggestions.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from api.services.contact_store import ContactStore, SimilarContact, get_contact_store
from api.services.external_contact_store import ExternalContact
from api.services.identifiers import (
    EMAIL_METHOD_TYPES,
    METHOD_PHONE,
    normalize_email,
    normalize_phone_loose,
)
from config.matching_config import (
    CALENDAR_CONFIG,
    FUZZY_CANDIDATE_LIMIT,
    IMPORT_CONFIG,
    FuzzyConfig,
)

logger = logging.getLogger(__name__)


@dataclass
class FuzzyMatch:
    """An accepted fuzzy match."""

    contact_id: str
    contact_name: str
    score: float

    def to_dict(self) -> dict:
        return {
            "contact_id": self.contact_id,
            "contact_name": self.contact_name,
            "confidence": round(self.score, 4),
        }


def composite_score(
    name_similarity: float,
    method_matches: int,
    total_methods: int,
    config: FuzzyConfig,
) -> float:
    """
    Weighted match score.

    With no comparable methods on the candidate the method term is absent
    and the score is the name similarity alone.
    """
    if total_methods <= 0:
        return name_similarity
    return (
        name_similarity * config.name_weight
        + (method_matches / total_methods) * config.method_weight
    )


def select_best_match(
    candidates: Iterable[SimilarContact],
    external_email: Optional[str],
    config: FuzzyConfig,
) -> Optional[FuzzyMatch]:
    """
    Pick the highest-scoring candidate at or above the confidence threshold.

    Method overlap counts the candidate's email methods equal to the
    external email. On equal scores the earlier candidate wins, so order
    candidates by name similarity before calling.

    Args:
        candidates: Contacts returned by a similarity search
        external_email: Normalized email of the external participant, if any
        config: Weights and threshold

    Returns:
        FuzzyMatch or None
    """
    email = normalize_email(external_email) if external_email else None
    best: Optional[FuzzyMatch] = None

    for candidate in candidates:
        emails = candidate.email_values
        matches = sum(1 for e in emails if email and e == email)
        score = composite_score(candidate.similarity, matches, len(emails), config)

        if score < config.confidence_threshold:
            continue
        if best is None or score > best.score:
            best = FuzzyMatch(
                contact_id=candidate.contact_id,
                contact_name=candidate.full_name,
                score=score,
            )

    return best


def count_method_overlap(
    candidate: SimilarContact,
    emails: set[str],
    phones: set[str],
) -> tuple[int, int]:
    """
    Count a candidate's email and phone methods that appear in the external record.

    Returns:
        (matching methods, total comparable methods)
    """
    matches = 0
    total = 0
    for method in candidate.methods:
        if method.type in EMAIL_METHOD_TYPES:
            total += 1
            if normalize_email(method.value) in emails:
                matches += 1
        elif method.type == METHOD_PHONE:
            total += 1
            if normalize_phone_loose(method.value) in phones:
                matches += 1
    return matches, total


def candidate_name(external: ExternalContact) -> str:
    """Name used to search for an external record: display name, else first + last."""
    if external.display_name:
        return external.display_name
    if external.first_name and external.last_name:
        return f"{external.first_name} {external.last_name}"
    return external.first_name or ""


class FuzzyMatcher:
    """Looks up similar contacts and scores them."""

    def __init__(self, contacts: Optional[ContactStore] = None):
        self.contacts = contacts or get_contact_store()

    def match_attendee(
        self,
        display_name: Optional[str],
        email: Optional[str],
        config: FuzzyConfig = CALENDAR_CONFIG,
    ) -> Optional[FuzzyMatch]:
        """Fuzzy-match a calendar attendee by name, boosted by email overlap."""
        if not display_name or not display_name.strip():
            return None
        candidates = self.contacts.find_similar_contacts(
            display_name, config.min_similarity_threshold, FUZZY_CANDIDATE_LIMIT
        )
        match = select_best_match(candidates, email, config)
        if match:
            logger.debug(f"Fuzzy matched '{display_name}' to {match.contact_name} ({match.score:.2f})")
        return match

    def suggest_for_import(
        self,
        external: ExternalContact,
        config: FuzzyConfig = IMPORT_CONFIG,
    ) -> Optional[FuzzyMatch]:
        """
        Suggest a CRM contact for an import candidate, for review.

        Overlap counts both emails and phones (loosely normalized) against
        the candidate's email and phone methods.
        """
        return self._best_for_import(external, config, reject_conflicts=False)

    def match_import_candidate(
        self,
        external: ExternalContact,
        config: FuzzyConfig = CALENDAR_CONFIG,
    ) -> Optional[FuzzyMatch]:
        """
        Match an import candidate strongly enough to link it without review.

        Uses the stricter calendar thresholds and skips any contact whose
        comparable methods all differ from the record's.
        """
        return self._best_for_import(external, config, reject_conflicts=True)

    def _best_for_import(
        self,
        external: ExternalContact,
        config: FuzzyConfig,
        reject_conflicts: bool,
    ) -> Optional[FuzzyMatch]:
        name = candidate_name(external)
        if not name:
            return None

        candidates = self.contacts.find_similar_contacts(
            name, config.min_similarity_threshold, FUZZY_CANDIDATE_LIMIT
        )

        emails = {normalize_email(e.value) for e in external.emails if e.value}
        phones = {normalize_phone_loose(p.value) for p in external.phones if p.value}

        best: Optional[FuzzyMatch] = None
        for candidate in candidates:
            matches, total = count_method_overlap(candidate, emails, phones)
            if reject_conflicts and total and not matches and (emails or phones):
                logger.debug(f"Skipping {candidate.full_name}: no contact method agrees with {name}")
                continue
            score = composite_score(candidate.similarity, matches, total, config)
            if score >= config.confidence_threshold and (best is None or score > best.score):
                best = FuzzyMatch(
                    contact_id=candidate.contact_id,
                    contact_name=candidate.full_name,
                    score=score,
                )
        return best


# Singleton instance
_fuzzy_matcher: Optional[FuzzyMatcher] = None


def get_fuzzy_matcher() -> FuzzyMatcher:
    """Get or create the singleton FuzzyMatcher."""
    global _fuzzy_matcher
    if _fuzzy_matcher is None:
        _fuzzy_matcher = FuzzyMatcher()
    return _fuzzy_matcher
