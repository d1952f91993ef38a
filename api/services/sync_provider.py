"""
Sync provider contract and registry.

A provider pulls records from one external source for one account,
resolves the people in them against CRM contacts, and reports counts plus
a cursor to resume from next time. The orchestrator owns scheduling and
state transitions; providers only fetch and reconcile.
"""
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from api.services.contact_store import Contact
from api.services.external_contact_store import ExternalContact, ExternalContactStore
from api.services.identifiers import normalize_email
from api.services.sync_state import SyncState

logger = logging.getLogger(__name__)


class CursorExpiredError(Exception):
    """The source rejected the incremental cursor; a full resync is needed."""


class SyncCancelledError(Exception):
    """The run was cancelled between pages; nothing past the last page was committed."""


@dataclass(frozen=True)
class SourceConfig:
    """Static description of a provider."""

    name: str
    display_name: str
    strategy: str
    supports_multi_account: bool
    supports_discovery: bool
    default_interval: timedelta

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "strategy": self.strategy,
            "supports_multi_account": self.supports_multi_account,
            "supports_discovery": self.supports_discovery,
            "default_interval_seconds": int(self.default_interval.total_seconds()),
        }


@dataclass
class SyncResult:
    """Outcome of a provider run."""

    items_processed: int = 0
    items_matched: int = 0
    items_created: int = 0
    new_cursor: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "items_processed": self.items_processed,
            "items_matched": self.items_matched,
            "items_created": self.items_created,
            "new_cursor": self.new_cursor,
            "metadata": self.metadata,
        }


class SyncProvider(ABC):
    """
    Base class for external sync providers.

    Subclasses must implement:
    - config(): the provider's SourceConfig
    - sync(): fetch, reconcile and return a SyncResult
    """

    @abstractmethod
    def config(self) -> SourceConfig:
        pass

    @abstractmethod
    def sync(
        self,
        state: SyncState,
        contacts: list[Contact],
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncResult:
        """
        Run one sync pass.

        Args:
            state: Current sync state (cursor, account)
            contacts: Contacts to query for (contact_driven strategy only)
            cancel_event: Set to abort between pages

        Returns:
            SyncResult with counts and the cursor to resume from

        Raises:
            SyncCancelledError: cancel_event was set mid-run
        """
        pass

    @staticmethod
    def check_cancelled(cancel_event: Optional[threading.Event]):
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelledError("Sync cancelled")

    @staticmethod
    def check_duplicates(record: ExternalContact, store: ExternalContactStore) -> ExternalContact:
        """
        Mark a record as a duplicate of an older record sharing an email.

        Only records of the same source are compared, so the same person
        seen through two accounts collapses onto the earliest record.
        """
        if record.is_duplicate:
            return record

        for entry in record.emails:
            email = normalize_email(entry.value)
            if not email:
                continue
            # Oldest first, so anything ahead of this record predates it
            for other in store.find_by_normalized_email(email, source=record.source):
                if other.id == record.id:
                    break
                logger.debug(f"External record {record.id} duplicates {other.id} ({email})")
                return store.mark_duplicate(record.id, other.id)
        return record


class ProviderRegistry:
    """Thread-safe map of source name to provider."""

    def __init__(self):
        self._lock = threading.RLock()
        self._providers: dict[str, SyncProvider] = {}

    def register(self, provider: SyncProvider):
        """Add a provider, replacing any with the same name."""
        with self._lock:
            self._providers[provider.config().name] = provider

    def unregister(self, name: str):
        with self._lock:
            self._providers.pop(name, None)

    def get(self, name: str) -> Optional[SyncProvider]:
        with self._lock:
            return self._providers.get(name)

    def configs(self) -> list[SourceConfig]:
        with self._lock:
            return [p.config() for p in self._providers.values()]

    def names(self) -> list[str]:
        with self._lock:
            return list(self._providers)

    def count(self) -> int:
        with self._lock:
            return len(self._providers)
