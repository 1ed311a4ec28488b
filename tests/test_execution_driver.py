"""Tests for the execution driver.

Source: core/executor.py - ExecutionDriver.execute.
Covers ordering of transfer removal and item deletion, per-item failure
isolation, idempotent re-runs and dry-run behavior.
"""

import threading
import time

from conftest import FakeClient, FakeManager, make_movie
from core.models import HistoryEvent, ItemStatus, Outcome, Reason, TransferHandle, Verdict
from core.ownership import OwnershipResolver
from core.executor import ExecutionDriver

MUTATING_CALLS = {"delete_item", "remove_transfer", "unmonitor"}


def delete_verdict(item):
    return Verdict(item, Outcome.DELETE, Reason.ELIGIBLE)


def keep_verdict(item):
    return Verdict(item, Outcome.KEEP, Reason.NOT_WATCHED)


def make_driver(clients, max_concurrent=4):
    return ExecutionDriver(OwnershipResolver(clients), max_concurrent=max_concurrent, show_progress=False)


# ============================================================================
# TestExecute
# ============================================================================

class TestExecute:
    """Force-delete runs."""

    def test_transfer_removed_before_item_deleted(self, now, call_log):
        """Movie B downloaded by qbit-1: transfer goes first, then the movie."""
        movie = make_movie(2, "B")
        manager = FakeManager(history={2: [HistoryEvent("HASHB", "qbit-1", "qBittorrent", now)]},
                              call_log=call_log)
        client = FakeClient("qbit-1", transfers={"hashb": "B"}, call_log=call_log)
        driver = make_driver([client])

        outcomes = driver.execute(manager, [delete_verdict(movie)], dry_run=False)

        assert outcomes[0].status is ItemStatus.DELETED
        assert outcomes[0].transfer == TransferHandle("qbit-1", "HASHB")
        mutating = [call for call in call_log if call[0] in MUTATING_CALLS]
        assert mutating == [("remove_transfer", "qbit-1", "HASHB"), ("delete_item", 2)]

    def test_keep_verdicts_are_not_executed(self, call_log):
        manager = FakeManager(call_log=call_log)
        outcomes = make_driver([]).execute(manager, [keep_verdict(make_movie(1))], dry_run=False)
        assert outcomes == []
        assert call_log == []

    def test_item_without_transfer_is_still_deleted(self):
        manager = FakeManager()
        outcomes = make_driver([FakeClient("qbit-1")]).execute(
            manager, [delete_verdict(make_movie(1))], dry_run=False)
        assert outcomes[0].status is ItemStatus.DELETED
        assert outcomes[0].transfer is None
        assert manager.deleted == [1]

    def test_failure_is_isolated_to_one_item(self):
        """One failing delete does not stop the others."""
        items = [make_movie(i) for i in range(1, 6)]
        manager = FakeManager()
        manager.fail_delete[3] = "database is locked"

        outcomes = make_driver([], max_concurrent=2).execute(
            manager, [delete_verdict(item) for item in items], dry_run=False)

        statuses = {outcome.item.item_id: outcome.status for outcome in outcomes}
        assert statuses == {
            1: ItemStatus.DELETED, 2: ItemStatus.DELETED, 3: ItemStatus.FAILED,
            4: ItemStatus.DELETED, 5: ItemStatus.DELETED,
        }
        failed = [outcome for outcome in outcomes if outcome.status is ItemStatus.FAILED][0]
        assert "delete item failed" in failed.error
        assert sorted(manager.deleted) == [1, 2, 4, 5]

    def test_transfer_failure_skips_item_delete(self, now):
        movie = make_movie(1)
        manager = FakeManager(history={1: [HistoryEvent("H1", "qbit-1", "qBittorrent", now)]})
        client = FakeClient("qbit-1", transfers={"h1": "Movie"})
        client.fail_remove = True

        outcomes = make_driver([client]).execute(manager, [delete_verdict(movie)], dry_run=False)

        assert outcomes[0].status is ItemStatus.FAILED
        assert "remove transfer failed" in outcomes[0].error
        assert manager.deleted == []

    def test_outcomes_keep_verdict_order(self):
        items = [make_movie(i) for i in (5, 3, 9, 1)]
        outcomes = make_driver([], max_concurrent=4).execute(
            FakeManager(), [delete_verdict(item) for item in items], dry_run=False)
        assert [outcome.item.item_id for outcome in outcomes] == [5, 3, 9, 1]

    def test_rerun_is_idempotent(self, now):
        """Executing the same verdicts twice leaves the same end state, without failures."""
        movie = make_movie(1)
        manager = FakeManager(history={1: [HistoryEvent("H1", "qbit-1", "qBittorrent", now)]})
        client = FakeClient("qbit-1", transfers={"h1": "Movie"})
        driver = make_driver([client])

        first = driver.execute(manager, [delete_verdict(movie)], dry_run=False)
        second = driver.execute(manager, [delete_verdict(movie)], dry_run=False)

        assert first[0].status is ItemStatus.DELETED
        assert second[0].status is ItemStatus.DELETED
        assert manager.deleted == [1]
        assert client.removed == ["H1"]
        assert client.transfers == {}


# ============================================================================
# TestDryRun
# ============================================================================

class TestDryRun:
    """Dry-run previews without mutating anything."""

    def test_no_mutating_calls(self, now, call_log):
        items = [make_movie(i) for i in range(1, 4)]
        manager = FakeManager(
            history={i: [HistoryEvent(f"H{i}", "qbit-1", "qBittorrent", now)] for i in range(1, 4)},
            call_log=call_log,
        )
        client = FakeClient("qbit-1", transfers={f"h{i}": f"Movie {i}" for i in range(1, 4)},
                            call_log=call_log)

        outcomes = make_driver([client]).execute(
            manager, [delete_verdict(item) for item in items], dry_run=True)

        assert [outcome.status for outcome in outcomes] == [ItemStatus.WOULD_DELETE] * 3
        assert not [call for call in call_log if call[0] in MUTATING_CALLS]
        assert manager.deleted == []
        assert len(client.transfers) == 3

    def test_dry_run_reports_resolved_transfer(self, now):
        movie = make_movie(1)
        manager = FakeManager(history={1: [HistoryEvent("H1", "qbit-1", "qBittorrent", now)]})
        outcomes = make_driver([FakeClient("qbit-1")]).execute(manager, [delete_verdict(movie)], dry_run=True)
        assert outcomes[0].transfer == TransferHandle("qbit-1", "H1")

    def test_dry_run_without_resolution(self, call_log):
        manager = FakeManager(call_log=call_log)
        driver = ExecutionDriver(OwnershipResolver([]), resolve_in_dry_run=False, show_progress=False)
        outcomes = driver.execute(manager, [delete_verdict(make_movie(1))], dry_run=True)
        assert outcomes[0].status is ItemStatus.WOULD_DELETE
        assert call_log == []


# ============================================================================
# TestConcurrency
# ============================================================================

class SlowManager(FakeManager):
    """Records how many deletions are in flight at once."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._lock = threading.Lock()
        self.in_flight = 0
        self.peak = 0

    def delete_item(self, item_id: int) -> None:
        with self._lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            time.sleep(0.05)
            super().delete_item(item_id)
        finally:
            with self._lock:
                self.in_flight -= 1


class TestConcurrency:
    def test_deletions_respect_max_concurrent(self):
        manager = SlowManager()
        items = [make_movie(i) for i in range(1, 9)]

        outcomes = make_driver([], max_concurrent=2).execute(
            manager, [delete_verdict(item) for item in items], dry_run=False)

        assert all(outcome.status is ItemStatus.DELETED for outcome in outcomes)
        assert sorted(manager.deleted) == list(range(1, 9))
        assert 1 < manager.peak <= 2

    def test_single_worker_is_sequential(self):
        manager = SlowManager()
        make_driver([], max_concurrent=1).execute(
            manager, [delete_verdict(make_movie(i)) for i in range(1, 4)], dry_run=False)
        assert manager.peak == 1


# ============================================================================
# TestManagerWithoutTransfers
# ============================================================================

class TestManagerWithoutTransfers:
    """Managers whose items share transfers never touch the download clients."""

    def test_history_is_not_read(self, now, call_log):
        manager = FakeManager(history={1: [HistoryEvent("H1", "qbit-1", "qBittorrent", now)]},
                              call_log=call_log)
        manager.removes_transfers = False
        client = FakeClient("qbit-1", transfers={"h1": "Season pack"}, call_log=call_log)

        outcomes = make_driver([client]).execute(manager, [delete_verdict(make_movie(1))], dry_run=False)

        assert outcomes[0].status is ItemStatus.DELETED
        assert outcomes[0].transfer is None
        assert [call[0] for call in call_log] == ["delete_item"]
        assert client.transfers == {"h1": "Season pack"}
