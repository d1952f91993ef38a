"""Tests for fuzzy contact matching."""
import pytest

from api.services.contact_store import ContactMethod, SimilarContact, name_similarity
from api.services.external_contact_store import ExternalContact, MethodEntry
from api.services.fuzzy_matcher import (
    FuzzyMatcher,
    candidate_name,
    composite_score,
    count_method_overlap,
    select_best_match,
)
from api.services.identifiers import METHOD_EMAIL_PERSONAL, METHOD_EMAIL_WORK, METHOD_PHONE
from config.matching_config import CALENDAR_CONFIG, IMPORT_CONFIG, FuzzyConfig

pytestmark = pytest.mark.unit


def candidate(contact_id, similarity, emails=(), name=None):
    return SimilarContact(
        contact_id=contact_id,
        full_name=name or contact_id,
        similarity=similarity,
        methods=[
            ContactMethod(contact_id=contact_id, type=METHOD_EMAIL_PERSONAL, value=e, normalized_value=e)
            for e in emails
        ],
    )


def threshold_config(threshold):
    return FuzzyConfig(
        min_similarity_threshold=0.3,
        confidence_threshold=threshold,
        name_weight=0.6,
        method_weight=0.4,
    )


class TestCompositeScore:
    """Weighted score arithmetic."""

    def test_name_only_when_no_methods(self):
        assert composite_score(0.85, 0, 0, CALENDAR_CONFIG) == 0.85

    def test_weighted(self):
        assert composite_score(0.5, 1, 2, CALENDAR_CONFIG) == pytest.approx(0.5 * 0.6 + 0.5 * 0.4)

    def test_full_overlap(self):
        assert composite_score(1.0, 2, 2, CALENDAR_CONFIG) == pytest.approx(1.0)


class TestSelectBestMatch:
    """Threshold and tie-breaking."""

    def test_picks_highest_above_threshold(self):
        candidates = [candidate("a", 0.9), candidate("b", 0.75), candidate("c", 0.4)]

        match = select_best_match(candidates, None, threshold_config(0.8))

        assert match.contact_id == "a"
        assert match.score == pytest.approx(0.9)

    def test_nothing_above_threshold(self):
        candidates = [candidate("a", 0.9), candidate("b", 0.75), candidate("c", 0.4)]
        assert select_best_match(candidates, None, threshold_config(0.95)) is None

    def test_threshold_is_inclusive(self):
        assert select_best_match([candidate("a", 0.7)], None, threshold_config(0.7)).contact_id == "a"

    def test_tie_goes_to_first(self):
        match = select_best_match([candidate("a", 0.8), candidate("b", 0.8)], None, threshold_config(0.5))
        assert match.contact_id == "a"

    def test_email_overlap_lifts_score(self):
        # Name alone (0.6) misses 0.7; with its only email matching: 0.6*0.6 + 1*0.4 = 0.76
        with_email = candidate("a", 0.6, emails=["jane@example.com"])
        match = select_best_match([with_email], "Jane@Example.com", CALENDAR_CONFIG)
        assert match is not None
        assert match.score == pytest.approx(0.76)

    def test_email_mismatch_lowers_score(self):
        # Having emails that don't match counts against the candidate: 0.9*0.6 = 0.54
        other_email = candidate("a", 0.9, emails=["someone.else@example.com"])
        assert select_best_match([other_email], "jane@example.com", CALENDAR_CONFIG) is None

    def test_empty_candidates(self):
        assert select_best_match([], "x@example.com", CALENDAR_CONFIG) is None

    def test_to_dict(self):
        match = select_best_match([candidate("a", 0.91234, name="Alice")], None, threshold_config(0.5))
        assert match.to_dict() == {"contact_id": "a", "contact_name": "Alice", "confidence": 0.9123}


class TestImportHelpers:
    """Method overlap and names for import candidates."""

    def test_count_method_overlap(self):
        similar = SimilarContact(
            contact_id="c1",
            full_name="Jane Doe",
            similarity=0.9,
            methods=[
                ContactMethod(contact_id="c1", type=METHOD_EMAIL_WORK, value="Jane@Work.com",
                              normalized_value="jane@work.com"),
                ContactMethod(contact_id="c1", type=METHOD_PHONE, value="+1 555-123-4567",
                              normalized_value="+15551234567"),
                ContactMethod(contact_id="c1", type="telegram", value="jane", normalized_value="jane"),
            ],
        )
        matches, total = count_method_overlap(similar, {"jane@work.com"}, {"+15559999999"})
        assert (matches, total) == (1, 2)

    def test_candidate_name(self):
        assert candidate_name(ExternalContact(source="s", source_id="1", display_name="Jane D")) == "Jane D"
        assert candidate_name(ExternalContact(source="s", source_id="1", first_name="Jane",
                                              last_name="Doe")) == "Jane Doe"
        assert candidate_name(ExternalContact(source="s", source_id="1", first_name="Jane")) == "Jane"
        assert candidate_name(ExternalContact(source="s", source_id="1")) == ""


class TestNameSimilarity:
    """rapidfuzz-backed similarity."""

    def test_identical(self):
        assert name_similarity("Jane Doe", "jane doe") == 1.0

    def test_word_order_ignored(self):
        assert name_similarity("Doe Jane", "Jane Doe") == 1.0

    def test_token_subset_is_partial(self):
        score = name_similarity("Jane Doe", "Jane Alexandra Doe")
        assert 0.5 < score < 1.0

    def test_first_name_alone_stays_below_auto_link(self):
        assert name_similarity("Alex", "Alex Johnson") == pytest.approx(0.5)
        assert name_similarity("Alex", "Alex Johnson") < CALENDAR_CONFIG.confidence_threshold

    def test_empty(self):
        assert name_similarity("", "Jane") == 0.0


class TestFindSimilarContacts:
    """Name candidate search in the contact store."""

    def test_threshold_is_exclusive(self, contact_store):
        alex = contact_store.create_contact("Alex Johnson")

        assert contact_store.find_similar_contacts("Alex", 0.5) == []
        assert [c.contact_id for c in contact_store.find_similar_contacts("Alex", 0.49)] == [alex.id]

    def test_ordered_and_limited(self, contact_store):
        contact_store.create_contact("Jane Doe")
        contact_store.create_contact("Jane Does")
        contact_store.create_contact("Bob Smith")

        similar = contact_store.find_similar_contacts("Jane Doe", 0.3, limit=2)

        assert [c.full_name for c in similar] == ["Jane Doe", "Jane Does"]
        assert similar[0].similarity == 1.0


class TestFuzzyMatcher:
    """Candidate lookup against the contact store."""

    def test_match_attendee(self, contact_store):
        jane = contact_store.create_contact("Jane Doe", [(METHOD_EMAIL_PERSONAL, "jane@example.com")])
        contact_store.create_contact("Bob Smith")

        match = FuzzyMatcher(contact_store).match_attendee("Jane Doe", "jane@example.com")

        assert match.contact_id == jane.id
        assert match.score == pytest.approx(1.0)

    def test_match_attendee_without_name(self, contact_store):
        contact_store.create_contact("Jane Doe")
        assert FuzzyMatcher(contact_store).match_attendee(None, "jane@example.com") is None
        assert FuzzyMatcher(contact_store).match_attendee("  ", "jane@example.com") is None

    def test_match_attendee_unrelated_name(self, contact_store):
        contact_store.create_contact("Jane Doe")
        assert FuzzyMatcher(contact_store).match_attendee("Xavier Quint", None) is None

    def test_first_name_attendee_not_linked_to_full_name(self, contact_store):
        contact_store.create_contact("Alex Johnson")
        assert FuzzyMatcher(contact_store).match_attendee("Alex", "alex@other.com", CALENDAR_CONFIG) is None

    def test_conflicting_methods_only_suggested(self, contact_store):
        john = contact_store.create_contact("John Smith", [(METHOD_EMAIL_PERSONAL, "john@x.com")])
        external = ExternalContact(
            source="gcontacts",
            source_id="people/1",
            display_name="John Smith",
            emails=[MethodEntry(value="other@y.com")],
        )
        matcher = FuzzyMatcher(contact_store)

        assert matcher.match_import_candidate(external) is None
        suggestion = matcher.suggest_for_import(external)
        assert suggestion.contact_id == john.id
        assert suggestion.score == pytest.approx(0.6)

    def test_strict_import_match_without_methods(self, contact_store):
        jane = contact_store.create_contact("Jane Doe")
        external = ExternalContact(source="gcontacts", source_id="people/1", display_name="Jane Doe",
                                   emails=[MethodEntry(value="jd@corp.example.com")])

        assert FuzzyMatcher(contact_store).match_import_candidate(external).contact_id == jane.id

    def test_suggest_for_import_uses_phones(self, contact_store):
        jane = contact_store.create_contact(
            "Jane Doe",
            [(METHOD_EMAIL_PERSONAL, "jane@example.com"), (METHOD_PHONE, "+1 555 123 4567")],
        )
        external = ExternalContact(
            source="gcontacts",
            source_id="people/1",
            first_name="Jane",
            last_name="Doe",
            phones=[MethodEntry(value="+1 (555) 123-4567")],
        )

        match = FuzzyMatcher(contact_store).suggest_for_import(external, IMPORT_CONFIG)

        # Name 1.0 * 0.6 + 1 of 2 methods * 0.4
        assert match.contact_id == jane.id
        assert match.score == pytest.approx(0.8)

    def test_suggest_for_import_without_name(self, contact_store):
        contact_store.create_contact("Jane Doe")
        external = ExternalContact(source="gcontacts", source_id="people/2",
                                   emails=[MethodEntry(value="jane@example.com")])
        assert FuzzyMatcher(contact_store).suggest_for_import(external) is None
