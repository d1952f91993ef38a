"""Tests for SyncStateStore: states, claims and logs."""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from api.services.errors import NotFoundError
from api.services.sync_state import (
    LOG_ERROR,
    LOG_RUNNING,
    LOG_SUCCESS,
    STATUS_DISABLED,
    STATUS_ERROR,
    STATUS_IDLE,
    STATUS_SYNCING,
    STRATEGY_CONTACT_DRIVEN,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestStates:
    """Creating and scheduling states."""

    def test_create_is_idempotent_per_source_account(self, state_store):
        first = state_store.create("gcal", "a@example.com", now=NOW)
        again = state_store.create("gcal", "a@example.com", now=NOW)
        other = state_store.create("gcal", "b@example.com", now=NOW)

        assert first.id == again.id
        assert other.id != first.id
        assert first.status == STATUS_IDLE
        assert first.account_id == "a@example.com"

    def test_create_without_account(self, state_store):
        state = state_store.create("imessage", strategy=STRATEGY_CONTACT_DRIVEN, now=NOW)
        assert state.account_id is None
        assert state_store.get_by_source("imessage").id == state.id

    def test_create_disabled(self, state_store):
        state = state_store.create("gcal", "a@example.com", enabled=False, now=NOW)
        assert state.status == STATUS_DISABLED
        assert not state.enabled

    def test_list_due(self, state_store):
        never = state_store.create("never_run", now=NOW)
        past = state_store.create("past", next_sync_at=NOW - timedelta(minutes=1), now=NOW)
        state_store.create("future", next_sync_at=NOW + timedelta(minutes=1), now=NOW)
        state_store.create("off", enabled=False, now=NOW)
        running = state_store.create("running", now=NOW)
        state_store.claim(running.id, NOW)

        due = state_store.list_due(NOW)

        assert [s.id for s in due] == [never.id, past.id]

    def test_errored_state_is_due_again(self, state_store):
        state = state_store.create("gcal", now=NOW)
        state_store.claim(state.id, NOW)
        state_store.mark_error(state.id, NOW, "boom", NOW + timedelta(minutes=1))

        assert state_store.list_due(NOW) == []
        assert [s.id for s in state_store.list_due(NOW + timedelta(minutes=1))] == [state.id]


class TestClaim:
    """The syncing transition."""

    def test_claim_once(self, state_store):
        state = state_store.create("gcal", now=NOW)

        assert state_store.claim(state.id, NOW)
        assert not state_store.claim(state.id, NOW)
        assert state_store.get(state.id).status == STATUS_SYNCING

    def test_claim_disabled_or_missing(self, state_store):
        state = state_store.create("gcal", enabled=False, now=NOW)
        assert not state_store.claim(state.id, NOW)
        assert not state_store.claim("missing", NOW)

    def test_concurrent_claims_have_one_winner(self, state_store):
        state = state_store.create("gcal", now=NOW)
        wins = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            wins.append(state_store.claim(state.id, NOW))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert wins.count(True) == 1


class TestTransitions:
    """Success, error, release, enable."""

    def test_mark_success(self, state_store):
        state = state_store.create("gcal", now=NOW)
        state_store.claim(state.id, NOW)

        updated = state_store.mark_success(state.id, NOW, NOW + timedelta(hours=24), "cursor-1")

        assert updated.status == STATUS_IDLE
        assert updated.sync_cursor == "cursor-1"
        assert updated.last_sync_at == NOW
        assert updated.last_successful_sync_at == NOW
        assert updated.next_sync_at == NOW + timedelta(hours=24)
        assert updated.error_count == 0

    def test_empty_cursor_keeps_previous(self, state_store):
        state = state_store.create("gcal", now=NOW)
        state_store.mark_success(state.id, NOW, NOW, "cursor-1")

        assert state_store.mark_success(state.id, NOW, NOW, None).sync_cursor == "cursor-1"
        assert state_store.mark_success(state.id, NOW, NOW, "").sync_cursor == "cursor-1"

    def test_mark_error_keeps_cursor_and_success_time(self, state_store):
        state = state_store.create("gcal", now=NOW)
        state_store.mark_success(state.id, NOW, NOW, "cursor-1")
        later = NOW + timedelta(hours=1)

        first = state_store.mark_error(state.id, later, "boom", later + timedelta(minutes=1))
        second = state_store.mark_error(state.id, later, "boom again", later + timedelta(minutes=5))

        assert second.status == STATUS_ERROR
        assert first.error_count == 1
        assert second.error_count == 2
        assert second.error_message == "boom again"
        assert second.sync_cursor == "cursor-1"
        assert second.last_successful_sync_at == NOW
        assert second.last_sync_at == later

    def test_success_clears_error(self, state_store):
        state = state_store.create("gcal", now=NOW)
        state_store.mark_error(state.id, NOW, "boom", NOW)
        recovered = state_store.mark_success(state.id, NOW, NOW, None)

        assert recovered.error_count == 0
        assert recovered.error_message is None

    def test_release(self, state_store):
        state = state_store.create("gcal", now=NOW)
        state_store.claim(state.id, NOW)

        released = state_store.release(state.id, NOW)

        assert released.status == STATUS_IDLE
        assert released.last_sync_at is None

    def test_set_enabled(self, state_store):
        state = state_store.create("gcal", now=NOW)

        disabled = state_store.set_enabled(state.id, False, NOW)
        assert disabled.status == STATUS_DISABLED
        assert state_store.list_due(NOW) == []

        enabled = state_store.set_enabled(state.id, True, NOW)
        assert enabled.status == STATUS_IDLE
        assert enabled.enabled

    def test_enable_while_syncing_keeps_claim(self, state_store):
        state = state_store.create("gcal", now=NOW)
        assert state_store.claim(state.id, NOW)

        assert state_store.set_enabled(state.id, True, NOW).status == STATUS_SYNCING
        assert not state_store.claim(state.id, NOW)

    def test_disable_while_syncing_settles_disabled(self, state_store):
        first = state_store.create("gcal", "a@example.com", now=NOW)
        second = state_store.create("gcal", "b@example.com", now=NOW)
        third = state_store.create("gcal", "c@example.com", now=NOW)
        for state in (first, second, third):
            state_store.claim(state.id, NOW)
            assert state_store.set_enabled(state.id, False, NOW).status == STATUS_SYNCING

        assert state_store.mark_success(first.id, NOW, NOW, None).status == STATUS_DISABLED
        assert state_store.mark_error(second.id, NOW, "boom", NOW).status == STATUS_DISABLED
        assert state_store.release(third.id, NOW).status == STATUS_DISABLED
        assert state_store.list_due(NOW) == []

    def test_missing_state_raises(self, state_store):
        with pytest.raises(NotFoundError):
            state_store.mark_success("missing", NOW, NOW, None)
        with pytest.raises(NotFoundError):
            state_store.set_enabled("missing", True)


class TestLogs:
    """Sync log lifecycle."""

    def test_log_lifecycle(self, state_store):
        state = state_store.create("gcal", "a@example.com", now=NOW)
        log = state_store.create_log(state, NOW)

        stored = state_store.get_log(log.id)
        assert stored.status == LOG_RUNNING
        assert stored.completed_at is None

        done = state_store.complete_log(log.id, LOG_SUCCESS, NOW + timedelta(seconds=5),
                                        items_processed=10, items_matched=4, items_created=2)

        assert done.status == LOG_SUCCESS
        assert (done.items_processed, done.items_matched, done.items_created) == (10, 4, 2)
        assert done.account_id == "a@example.com"

    def test_log_completes_once(self, state_store):
        state = state_store.create("gcal", now=NOW)
        log = state_store.create_log(state, NOW)
        state_store.complete_log(log.id, LOG_ERROR, NOW, error_message="boom")

        with pytest.raises(NotFoundError):
            state_store.complete_log(log.id, LOG_SUCCESS, NOW)

    def test_list_logs_newest_first(self, state_store):
        state = state_store.create("gcal", now=NOW)
        ids = [state_store.create_log(state, NOW + timedelta(minutes=n)).id for n in range(3)]

        assert [log.id for log in state_store.list_logs(state.id)] == list(reversed(ids))
        assert state_store.count_logs(state.id) == 3
        assert len(state_store.list_recent_logs(limit=2)) == 2

    def test_delete_old_logs_skips_running(self, state_store):
        state = state_store.create("gcal", now=NOW)
        old_done = state_store.create_log(state, NOW - timedelta(days=60))
        state_store.complete_log(old_done.id, LOG_SUCCESS, NOW - timedelta(days=60))
        old_running = state_store.create_log(state, NOW - timedelta(days=60))
        state_store.create_log(state, NOW)

        assert state_store.delete_old_logs(NOW - timedelta(days=30)) == 1
        assert state_store.get_log(old_running.id) is not None
