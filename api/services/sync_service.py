"""
Sync orchestrator.

Finds due sync states, claims each one atomically, runs its provider and
records the outcome on the state and in the sync log. Independent
(source, account) pairs run concurrently on a thread pool; a single state
never has more than one run in flight because the claim is a conditional
UPDATE in the state store.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from api.services.clock import Clock, get_clock
from api.services.contact_store import ContactStore, get_contact_store
from api.services.errors import NotFoundError, SyncInProgressError, UnknownSourceError
from api.services.sync_provider import (
    ProviderRegistry,
    SourceConfig,
    SyncCancelledError,
    SyncProvider,
    SyncResult,
)
from api.services.sync_state import (
    LOG_ERROR,
    LOG_SUCCESS,
    STATUS_SYNCING,
    STRATEGY_CONTACT_DRIVEN,
    SyncLog,
    SyncState,
    SyncStateStore,
    get_sync_state_store,
)
from config.settings import settings

logger = logging.getLogger(__name__)

# Run outcomes
OUTCOME_SUCCESS = "success"
OUTCOME_ERROR = "error"
OUTCOME_CANCELLED = "cancelled"


@dataclass
class SyncRun:
    """What happened to one claimed state."""

    state_id: str
    source: str
    account_id: Optional[str]
    outcome: str
    log_id: Optional[str] = None
    result: Optional[SyncResult] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "state_id": self.state_id,
            "source": self.source,
            "account_id": self.account_id,
            "outcome": self.outcome,
            "log_id": self.log_id,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
        }


class SyncService:
    """Schedules and runs provider syncs."""

    def __init__(
        self,
        registry: ProviderRegistry,
        state_store: Optional[SyncStateStore] = None,
        contact_store: Optional[ContactStore] = None,
        clock: Optional[Clock] = None,
        backoff_minutes: Optional[list[int]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            registry: Providers by source name
            state_store: Sync state persistence (default singleton)
            contact_store: Source of contacts for contact-driven providers (default singleton)
            clock: Time source (default: process clock)
            backoff_minutes: Retry delays after failure, indexed by error count.
                Empty list reschedules failures at the provider interval.
        """
        self.registry = registry
        self.state_store = state_store or get_sync_state_store()
        self.contact_store = contact_store or get_contact_store()
        self.clock = clock or get_clock()
        self.backoff_minutes = (
            settings.sync_error_backoff_minutes if backoff_minutes is None else list(backoff_minutes)
        )

    # ----- scheduling -----

    def list_due(self) -> list[SyncState]:
        """States whose next run has come, in schedule order."""
        return self.state_store.list_due(self.clock.now())

    def run_due_syncs(
        self,
        max_workers: int = 4,
        cancel_event: Optional[threading.Event] = None,
        deadline_seconds: Optional[float] = None,
        source: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> list[SyncRun]:
        """
        Claim and run every due state.

        Args:
            max_workers: Concurrent provider runs
            cancel_event: Set to abort in-flight runs between pages
            deadline_seconds: Set cancel_event after this long
            source: Only run states of this source
            account_id: Only run states of this account

        Returns:
            One SyncRun per claimed state
        """
        cancel_event = cancel_event or threading.Event()
        claimed: list[tuple[SyncState, SyncProvider]] = []

        for state in self.list_due():
            if source and state.source != source:
                continue
            if account_id and state.account_id != account_id:
                continue
            provider = self.registry.get(state.source)
            if provider is None:
                logger.warning(f"No provider registered for source '{state.source}', skipping state {state.id}")
                continue
            if not self.state_store.claim(state.id, self.clock.now()):
                logger.debug(f"State {state.id} was claimed elsewhere, skipping")
                continue
            claimed.append((state, provider))

        if not claimed:
            return []

        logger.info(f"Running {len(claimed)} due sync(s) with {max_workers} worker(s)")

        timer = None
        if deadline_seconds:
            timer = threading.Timer(deadline_seconds, cancel_event.set)
            timer.daemon = True
            timer.start()

        runs: list[SyncRun] = []
        executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="crm-sync")
        try:
            futures = {
                executor.submit(self._perform_sync, state, provider, cancel_event): state
                for state, provider in claimed
            }
            for future in as_completed(futures):
                state = futures[future]
                try:
                    runs.append(future.result())
                except Exception as e:
                    logger.error(f"Sync state {state.id} could not be run: {e}")
                    runs.append(SyncRun(
                        state_id=state.id,
                        source=state.source,
                        account_id=state.account_id,
                        outcome=OUTCOME_ERROR,
                        error=str(e) or e.__class__.__name__,
                    ))
        finally:
            executor.shutdown(wait=True)
            if timer is not None:
                timer.cancel()

        return runs

    def trigger_sync(
        self,
        source: str,
        account_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncRun:
        """
        Run one (source, account) now, regardless of schedule.

        Creates the sync state on first use.

        Raises:
            UnknownSourceError: no provider for the source
            ValueError: the state is disabled
            SyncInProgressError: the state is already syncing
        """
        provider = self.registry.get(source)
        if provider is None:
            raise UnknownSourceError(f"No provider registered for source '{source}'")

        state = self.ensure_state(source, account_id)

        if not state.enabled:
            raise ValueError(f"Sync for {source} ({account_id or 'default'}) is disabled")
        if state.status == STATUS_SYNCING or not self.state_store.claim(state.id, self.clock.now()):
            raise SyncInProgressError(f"Sync already running for {source} ({account_id or 'default'})")

        return self._perform_sync(state, provider, cancel_event)

    def _perform_sync(
        self,
        state: SyncState,
        provider: SyncProvider,
        cancel_event: Optional[threading.Event],
    ) -> SyncRun:
        """
        Run a claimed state and record the outcome.

        Provider failures become an error outcome. If the outcome itself
        cannot be written, the state is released so it is not left syncing.
        """
        config = provider.config()
        try:
            log = self.state_store.create_log(state, self.clock.now())
        except Exception:
            self.state_store.release(state.id, self.clock.now())
            raise

        run = SyncRun(
            state_id=state.id,
            source=state.source,
            account_id=state.account_id,
            outcome=OUTCOME_SUCCESS,
            log_id=log.id,
        )

        try:
            contacts = []
            if state.strategy == STRATEGY_CONTACT_DRIVEN:
                contacts = self.contact_store.list_contacts()
            run.result = provider.sync(state, contacts, cancel_event)
        except SyncCancelledError:
            logger.warning(f"Sync {state.source} ({state.account_id or 'default'}) cancelled")
            run.outcome = OUTCOME_CANCELLED
            run.error = "cancelled"
        except Exception as e:
            run.error = str(e) or e.__class__.__name__
            logger.error(f"Sync {state.source} ({state.account_id or 'default'}) failed: {run.error}")
            run.outcome = OUTCOME_ERROR

        try:
            self._record_outcome(state, log, run, config)
        except Exception as e:
            logger.error(f"Failed to record outcome of sync state {state.id}: {e}")
            run.outcome = OUTCOME_ERROR
            run.error = f"failed to record outcome: {e}"
            run.result = None
            self._recover(state, log, run.error)
        return run

    def _record_outcome(self, state: SyncState, log: SyncLog, run: SyncRun, config: SourceConfig):
        now = self.clock.now()
        if run.outcome == OUTCOME_CANCELLED:
            self.state_store.release(state.id, now)
            self.state_store.complete_log(log.id, LOG_ERROR, now, error_message="cancelled")
            return

        if run.outcome == OUTCOME_ERROR:
            next_sync_at = now + self._error_delay(state.error_count, config)
            self.state_store.mark_error(state.id, now, run.error, next_sync_at)
            self.state_store.complete_log(log.id, LOG_ERROR, now, error_message=run.error)
            return

        result = run.result
        self.state_store.mark_success(state.id, now, now + config.default_interval, result.new_cursor)
        self.state_store.complete_log(
            log.id,
            LOG_SUCCESS,
            now,
            items_processed=result.items_processed,
            items_matched=result.items_matched,
            items_created=result.items_created,
        )
        logger.info(
            f"Sync {state.source} ({state.account_id or 'default'}) succeeded: "
            f"{result.items_processed} processed, {result.items_matched} matched, "
            f"{result.items_created} created"
        )

    def _recover(self, state: SyncState, log: SyncLog, message: str):
        """Best effort: release a state whose outcome could not be written."""
        now = self.clock.now()
        try:
            self.state_store.release(state.id, now)
        except NotFoundError:
            # Already settled before the failure
            pass
        except Exception as e:
            logger.error(f"Could not release sync state {state.id}: {e}")
        try:
            self.state_store.complete_log(log.id, LOG_ERROR, now, error_message=message)
        except NotFoundError:
            pass
        except Exception as e:
            logger.error(f"Could not complete sync log {log.id}: {e}")

    def _error_delay(self, previous_errors: int, config: SourceConfig) -> timedelta:
        """Retry delay after a failure, given the error count before it."""
        if not self.backoff_minutes:
            return config.default_interval
        index = min(previous_errors, len(self.backoff_minutes) - 1)
        return timedelta(minutes=self.backoff_minutes[index])

    # ----- management -----

    def ensure_state(self, source: str, account_id: Optional[str] = None) -> SyncState:
        """
        Get the sync state for a source account, creating it (due now) if missing.

        Raises:
            UnknownSourceError: no provider for the source
        """
        provider = self.registry.get(source)
        if provider is None:
            raise UnknownSourceError(f"No provider registered for source '{source}'")
        state = self.state_store.get_by_source(source, account_id)
        if state is None:
            state = self.state_store.create(
                source, account_id, strategy=provider.config().strategy, now=self.clock.now()
            )
            logger.info(f"Created sync state {state.id} for {source} ({account_id or 'default'})")
        return state

    def register_accounts(self, account_ids: list[str]) -> list[SyncState]:
        """Ensure a state exists for every multi-account provider and account."""
        states = []
        for config in self.available_providers():
            if not config.supports_multi_account:
                continue
            for account_id in account_ids:
                states.append(self.ensure_state(config.name, account_id))
        return states

    def available_providers(self) -> list[SourceConfig]:
        return sorted(self.registry.configs(), key=lambda c: c.name)

    def list_states(self) -> list[SyncState]:
        return self.state_store.list_all()

    def get_state(self, state_id: str) -> SyncState:
        state = self.state_store.get(state_id)
        if state is None:
            raise NotFoundError(f"Sync state {state_id} not found")
        return state

    def enable_sync(self, state_id: str, enabled: bool) -> SyncState:
        """Enable or disable a state. Re-enabling makes it due immediately."""
        state = self.state_store.set_enabled(state_id, enabled, self.clock.now())
        if enabled:
            state = self.state_store.set_next_sync(state_id, None)
        logger.info(f"Sync state {state_id} {'enabled' if enabled else 'disabled'}")
        return state

    def get_logs(self, state_id: str, limit: int = 20, offset: int = 0) -> list[SyncLog]:
        self.get_state(state_id)
        return self.state_store.list_logs(state_id, limit, offset)

    def recent_logs(self, limit: int = 20) -> list[SyncLog]:
        return self.state_store.list_recent_logs(limit)

    def prune_logs(self, retention_days: Optional[int] = None) -> int:
        """Delete completed logs older than the retention window."""
        days = settings.sync_log_retention_days if retention_days is None else retention_days
        deleted = self.state_store.delete_old_logs(self.clock.now() - timedelta(days=days))
        if deleted:
            logger.info(f"Pruned {deleted} sync logs older than {days} days")
        return deleted


def build_default_registry() -> ProviderRegistry:
    """Registry with the Google Calendar and Google Contacts providers."""
    from api.services.google_calendar_sync import CalendarSyncProvider
    from api.services.google_contacts_sync import ContactsSyncProvider

    registry = ProviderRegistry()
    registry.register(CalendarSyncProvider())
    registry.register(ContactsSyncProvider())
    return registry


# Singleton instance
_sync_service: Optional[SyncService] = None
_sync_service_lock = threading.Lock()


def get_sync_service() -> SyncService:
    """Get or create the singleton SyncService."""
    global _sync_service
    with _sync_service_lock:
        if _sync_service is None:
            _sync_service = SyncService(build_default_registry())
        return _sync_service
