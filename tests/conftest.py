"""
Pytest configuration and shared fixtures for CRM sync tests.

Test Categories:
- unit: Fast tests with no external dependencies (< 100ms each)
- integration: Tests that wire several stores and services together on one database

Run categories:
- pytest -m unit              # Fast unit tests only
- pytest -m "not integration" # Skip integration tests
- pytest                      # All tests

Every store fixture shares one temporary SQLite file, the way the services
share the CRM database in production. Google API clients are never real:
provider tests use the fake paginated clients below.
"""
import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from api.services.calendar_event_store import CalendarEventStore
from api.services.clock import FixedClock
from api.services.contact_store import ContactStore
from api.services.external_contact_store import ExternalContactStore
from api.services.fuzzy_matcher import FuzzyMatcher
from api.services.identity_service import IdentityService
from api.services.import_service import ImportService
from api.services.identity_store import IdentityStore
from api.services.sync_provider import SourceConfig, SyncProvider, SyncResult
from api.services.sync_state import STRATEGY_FETCH_ALL, SyncStateStore


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "integration: Multi-service tests on a shared database")


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    yield path
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def clock():
    """A clock frozen at 2024-06-01 12:00 UTC."""
    return FixedClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def contact_store(temp_db):
    return ContactStore(db_path=temp_db)


@pytest.fixture
def identity_store(temp_db):
    return IdentityStore(db_path=temp_db)


@pytest.fixture
def external_store(temp_db):
    return ExternalContactStore(db_path=temp_db)


@pytest.fixture
def event_store(temp_db):
    return CalendarEventStore(db_path=temp_db)


@pytest.fixture
def state_store(temp_db):
    return SyncStateStore(db_path=temp_db)


@pytest.fixture
def identity_service(identity_store, contact_store):
    return IdentityService(store=identity_store, contacts=contact_store)


@pytest.fixture
def fuzzy_matcher(contact_store):
    return FuzzyMatcher(contact_store)


@pytest.fixture
def import_service(external_store, identity_service, fuzzy_matcher, contact_store):
    return ImportService(
        store=external_store,
        identity_service=identity_service,
        fuzzy_matcher=fuzzy_matcher,
        contacts=contact_store,
    )


class FakePagedClient:
    """
    Stand-in for a Google API client.

    `full_pages` and `incremental_pages` are response dicts indexed by page
    token, served for calls without or with a sync token. Setting
    `expired_error` makes every call with a sync token raise it.
    """

    def __init__(self, full_pages=None, incremental_pages=None, expired_error=None):
        self.full_pages = full_pages or [{}]
        self.incremental_pages = incremental_pages or [{}]
        self.expired_error = expired_error
        self.calls = []

    def _page(self, sync_token, page_token):
        pages = self.incremental_pages if sync_token else self.full_pages
        if sync_token and self.expired_error is not None:
            raise self.expired_error
        index = int(page_token) if page_token else 0
        return pages[index]

    def list_events(self, account_id, sync_token=None, time_min=None, time_max=None,
                    page_token=None, max_results=250):
        self.calls.append({
            "account_id": account_id,
            "sync_token": sync_token,
            "time_min": time_min,
            "time_max": time_max,
            "page_token": page_token,
        })
        return self._page(sync_token, page_token)

    def list_connections(self, account_id, sync_token=None, page_token=None):
        self.calls.append({
            "account_id": account_id,
            "sync_token": sync_token,
            "page_token": page_token,
        })
        return self._page(sync_token, page_token)


@pytest.fixture
def fake_client_factory():
    """Build FakePagedClient instances."""
    return FakePagedClient


class FakeProvider(SyncProvider):
    """
    Scriptable in-memory provider.

    Returns fixed counts and `cursor`, raises `error` if set, and calls
    `before_return(cancel_event)` mid-run so tests can block or rendezvous.
    """

    def __init__(self, name="fake", strategy=STRATEGY_FETCH_ALL, interval=timedelta(hours=1),
                 cursor="cursor-1", error=None, multi_account=True, before_return=None):
        self.name = name
        self.strategy = strategy
        self.interval = interval
        self.cursor = cursor
        self.error = error
        self.multi_account = multi_account
        self.before_return = before_return
        self.calls = []

    def config(self):
        return SourceConfig(
            name=self.name,
            display_name=self.name.title(),
            strategy=self.strategy,
            supports_multi_account=self.multi_account,
            supports_discovery=True,
            default_interval=self.interval,
        )

    def sync(self, state, contacts, cancel_event=None):
        self.calls.append({"state": state, "contacts": contacts})
        self.check_cancelled(cancel_event)
        if self.before_return is not None:
            self.before_return(cancel_event)
        self.check_cancelled(cancel_event)
        if self.error is not None:
            raise self.error
        return SyncResult(items_processed=3, items_matched=2, items_created=1, new_cursor=self.cursor)


@pytest.fixture
def fake_provider():
    """Build FakeProvider instances."""
    return FakeProvider
