"""
Matching and Sync Configuration for the CRM.

Thresholds for fuzzy contact matching and constants that shape the
calendar and contact-directory sync providers.
"""
from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True)
class FuzzyConfig:
    """Weights and thresholds for name+method fuzzy matching."""

    min_similarity_threshold: float  # Minimum name similarity for a candidate (0-1)
    confidence_threshold: float      # Minimum composite score to accept a match (0-1)
    name_weight: float               # Weight for name similarity
    method_weight: float             # Weight for contact-method overlap


# Importing candidates from a contact directory: lenient, a human reviews.
IMPORT_CONFIG = FuzzyConfig(
    min_similarity_threshold=0.3,
    confidence_threshold=0.5,
    name_weight=0.6,
    method_weight=0.4,
)

# Calendar attendees: stricter, matches are applied automatically.
CALENDAR_CONFIG = FuzzyConfig(
    min_similarity_threshold=0.3,
    confidence_threshold=0.7,
    name_weight=0.6,
    method_weight=0.4,
)

# Maximum candidates returned by find_similar_contacts
FUZZY_CANDIDATE_LIMIT: int = 5


class CalendarSyncConfig:
    """Configuration for the calendar sync provider."""

    SOURCE = "gcal"
    ATTENDEE_SOURCE = "gcal_attendee"  # Import candidates discovered from attendees
    DISPLAY_NAME = "Google Calendar"
    INTERVAL = timedelta(hours=24)

    # Initial sync window
    DAYS_BACK: int = 365
    DAYS_FORWARD: int = 30

    PAGE_SIZE: int = 250
    PAST_EVENT_BATCH_SIZE: int = 100

    # Calendar resource addresses (rooms, group calendars) are never people
    BLOCKED_DOMAINS: frozenset[str] = frozenset({
        "group.calendar.google.com",
        "resource.calendar.google.com",
        "calendar.google.com",
        "group.v.calendar.google.com",
    })


class ContactsSyncConfig:
    """Configuration for the contact-directory sync provider."""

    SOURCE = "gcontacts"
    DISPLAY_NAME = "Google Contacts"
    INTERVAL = timedelta(hours=1)

    PAGE_SIZE: int = 1000
    PERSON_FIELDS = "names,emailAddresses,phoneNumbers,addresses,organizations,birthdays,photos"


def is_blocked_calendar_address(email: str) -> bool:
    """
    Check if an attendee address belongs to a calendar resource domain.

    Args:
        email: Normalized (lowercase) email address

    Returns:
        True if the domain is on the blocklist
    """
    if "@" not in email:
        return False
    domain = email.rsplit("@", 1)[1]
    return domain in CalendarSyncConfig.BLOCKED_DOMAINS
