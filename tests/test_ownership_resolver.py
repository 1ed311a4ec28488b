"""Tests for download client ownership resolution.

Source: core/ownership.py - OwnershipResolver, latest_transfer_event.
"""

from datetime import timedelta

from conftest import FakeClient, FakeManager, make_movie
from core.download_clients import DELUGE, QBITTORRENT
from core.models import HistoryEvent, TransferHandle
from core.ownership import OwnershipResolver, latest_transfer_event


class TestLatestTransferEvent:
    """Most recent event with a transfer id wins."""

    def test_picks_most_recent(self, now):
        events = [
            HistoryEvent("AAA", "qbit-1", "qBittorrent", now - timedelta(days=5)),
            HistoryEvent("BBB", "qbit-1", "qBittorrent", now - timedelta(days=1)),
        ]
        assert latest_transfer_event(events).transfer_id == "BBB"

    def test_ignores_events_without_transfer(self, now):
        events = [
            HistoryEvent("AAA", "qbit-1", "qBittorrent", now - timedelta(days=5)),
            HistoryEvent(None, "", "", now),
        ]
        assert latest_transfer_event(events).transfer_id == "AAA"

    def test_no_events(self):
        assert latest_transfer_event([]) is None


class TestOwnershipResolver:
    """Mapping history onto configured clients."""

    def test_client_name_is_authoritative(self, now):
        item = make_movie(1)
        manager = FakeManager(history={1: [HistoryEvent("ABC", "qbit-2", "qBittorrent", now)]})
        qbit1 = FakeClient("qbit-1", transfers={"abc": "Movie"})
        qbit2 = FakeClient("qbit-2")
        resolver = OwnershipResolver([qbit1, qbit2])

        assert resolver.resolve(manager, item) == TransferHandle("qbit-2", "ABC")

    def test_client_name_match_ignores_case(self, now):
        item = make_movie(1)
        manager = FakeManager(history={1: [HistoryEvent("ABC", "QBit-1", "qBittorrent", now)]})
        resolver = OwnershipResolver([FakeClient("qbit-1")])
        assert resolver.resolve(manager, item) == TransferHandle("qbit-1", "ABC")

    def test_single_client_of_kind_is_used(self, now):
        """A manager-side client name that is not configured falls back to the kind."""
        item = make_movie(1)
        manager = FakeManager(history={1: [HistoryEvent("ABC", "Torrents", "Deluge", now)]})
        deluge = FakeClient("deluge", kind=DELUGE)
        resolver = OwnershipResolver([FakeClient("qbit-1"), deluge])
        assert resolver.resolve(manager, item) == TransferHandle("deluge", "ABC")

    def test_ambiguous_kind_probes_in_configured_order(self, now):
        item = make_movie(1)
        manager = FakeManager(history={1: [HistoryEvent("ABC", "", "qBittorrent", now)]})
        first = FakeClient("qbit-1", transfers={})
        second = FakeClient("qbit-2", transfers={"abc": "Movie"})
        third = FakeClient("qbit-3", transfers={"abc": "Movie"})
        resolver = OwnershipResolver([first, second, third])

        assert resolver.resolve(manager, item) == TransferHandle("qbit-2", "ABC")

    def test_ambiguous_kind_not_found_anywhere(self, now):
        item = make_movie(1)
        manager = FakeManager(history={1: [HistoryEvent("ABC", "", "qBittorrent", now)]})
        resolver = OwnershipResolver([FakeClient("qbit-1"), FakeClient("qbit-2")])
        assert resolver.resolve(manager, item) is None

    def test_unknown_client_is_no_transfer(self, now):
        item = make_movie(1)
        manager = FakeManager(history={1: [HistoryEvent("ABC", "sab", "SABnzbd", now)]})
        resolver = OwnershipResolver([FakeClient("qbit-1", kind=QBITTORRENT)])
        assert resolver.resolve(manager, item) is None

    def test_no_history_is_no_transfer(self):
        resolver = OwnershipResolver([FakeClient("qbit-1")])
        assert resolver.resolve(FakeManager(), make_movie(1)) is None

    def test_history_failure_is_no_transfer(self, now):
        """A failed history lookup is logged and treated as 'no transfer'."""
        manager = FakeManager(history={1: [HistoryEvent("ABC", "qbit-1", "qBittorrent", now)]})
        manager.fail_history.add(1)
        resolver = OwnershipResolver([FakeClient("qbit-1")])
        assert resolver.resolve(manager, make_movie(1)) is None

    def test_client_lookup_by_name(self):
        client = FakeClient("qbit-1")
        resolver = OwnershipResolver([client])
        assert resolver.client("qbit-1") is client
        assert resolver.client("missing") is None
