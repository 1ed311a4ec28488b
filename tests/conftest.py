"""Shared test fixtures for the ArrSweep test suite."""

import os
import shutil
import sys
import tempfile
from datetime import datetime, timezone
from typing import Dict, List, Optional
from unittest.mock import MagicMock, patch

import pytest

# Mock fcntl for Windows compatibility before any imports
sys.modules.setdefault('fcntl', MagicMock())

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.download_clients import DownloadClient, QBITTORRENT  # noqa: E402
from core.exceptions import ApiError, FetchError, ResolutionError  # noqa: E402
from core.models import HistoryEvent, MediaItem, MediaKind, WatchRecord  # noqa: E402

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

# Minimal valid settings file contents
VALID_SETTINGS = {
    "media_server": {
        "type": "jellyfin",
        "url": "http://localhost:8096",
        "api_key": "jf-key",
        "username": "foo",
    },
    "radarr": {
        "url": "http://localhost:7878",
        "api_key": "radarr-key",
        "retention_period": "2d",
        "tags_to_keep": ["keep"],
    },
    "sonarr": {
        "url": "http://localhost:8989",
        "api_key": "sonarr-key",
        "retention_period": "1w",
        "tags_to_keep": ["keep"],
        "unmonitor_watched": True,
    },
    "download_clients": [
        {"name": "qbit-1", "type": "qbittorrent", "url": "http://localhost:8080",
         "username": "admin", "password": "pw"},
        {"name": "deluge", "type": "Deluge", "url": "http://localhost:8112", "password": "pw"},
    ],
}


# ============================================================================
# Fake collaborators
# ============================================================================

class FakeManager:
    """In-memory collection manager recording every call."""

    removes_transfers = True

    def __init__(self, name: str = "Radarr", kind: MediaKind = MediaKind.MOVIE,
                 items: Optional[List[MediaItem]] = None,
                 history: Optional[Dict[int, List[HistoryEvent]]] = None,
                 call_log: Optional[list] = None):
        self.name = name
        self.log_tag = name.upper()
        self.kind = kind
        self.items = list(items or [])
        self.history = history or {}
        self.call_log = call_log if call_log is not None else []
        self.deleted: List[int] = []
        self.unmonitored: List[int] = []
        self.fail_delete: Dict[int, str] = {}
        self.fail_history: set = set()
        self.fetch_error: Optional[str] = None

    def list_library(self) -> List[MediaItem]:
        self.call_log.append(("list_library", self.name))
        if self.fetch_error:
            raise FetchError(self.name, self.fetch_error)
        return list(self.items)

    def get_history(self, item_id: int) -> List[HistoryEvent]:
        self.call_log.append(("get_history", item_id))
        if item_id in self.fail_history:
            raise ResolutionError(f"history for {item_id} unavailable")
        return list(self.history.get(item_id, []))

    def delete_item(self, item_id: int) -> None:
        self.call_log.append(("delete_item", item_id))
        if item_id in self.fail_delete:
            raise ApiError(self.fail_delete[item_id], status_code=500)
        # Deleting an absent item is a no-op, like a 404 from the real API
        if item_id not in self.deleted:
            self.deleted.append(item_id)

    def unmonitor(self, item_ids) -> None:
        ids = sorted(set(item_ids))
        self.call_log.append(("unmonitor", tuple(ids)))
        self.unmonitored.extend(ids)


class FakeClient(DownloadClient):
    """In-memory download client holding transfers by id."""

    def __init__(self, name: str, kind: str = QBITTORRENT,
                 transfers: Optional[Dict[str, str]] = None,
                 call_log: Optional[list] = None):
        super().__init__(name)
        self.kind = kind
        self.transfers = dict(transfers or {})
        self.call_log = call_log if call_log is not None else []
        self.removed: List[str] = []
        self.fail_remove = False

    def transfer_name(self, transfer_id: str) -> Optional[str]:
        self.call_log.append(("transfer_name", self.name, transfer_id))
        return self.transfers.get(transfer_id.lower())

    def remove_transfer(self, transfer_id: str) -> bool:
        self.call_log.append(("remove_transfer", self.name, transfer_id))
        if self.fail_remove:
            raise ApiError(f"{self.name} refused to remove {transfer_id}")
        if self.transfers.pop(transfer_id.lower(), None) is None:
            return False
        self.removed.append(transfer_id)
        return True


class FakeMediaServer:
    """Media server returning a fixed watch-state snapshot."""

    name = "FakeServer"

    def __init__(self, records: Optional[List[WatchRecord]] = None, error: Optional[str] = None):
        self.records = list(records or [])
        self.error = error

    def list_fully_watched(self) -> List[WatchRecord]:
        if self.error:
            raise FetchError(self.name, self.error)
        return list(self.records)


class FakeFlock:
    """fcntl stand-in: one exclusive holder per path, like the kernel lock."""

    LOCK_EX = 2
    LOCK_NB = 4
    LOCK_UN = 8

    def __init__(self):
        self.held = set()

    def flock(self, fd, operation):
        if operation & self.LOCK_UN:
            self.held.discard(fd.name)
            return
        if fd.name in self.held:
            raise BlockingIOError(11, "Resource temporarily unavailable")
        self.held.add(fd.name)


def make_movie(item_id: int, title: str = "", tmdb_id: Optional[str] = None,
               tags=(), on_disk: bool = True, monitored: bool = True) -> MediaItem:
    """Build a movie MediaItem with sensible defaults."""
    return MediaItem(
        item_id=item_id,
        title=title or f"Movie {item_id}",
        kind=MediaKind.MOVIE,
        external_id=tmdb_id if tmdb_id is not None else str(1000 + item_id),
        tags=frozenset(tags),
        file_refs=(f"/movies/movie{item_id}.mkv",) if on_disk else (),
        monitored=monitored,
    )


def watched(item: MediaItem, watched_at: Optional[datetime]) -> WatchRecord:
    """Watch record correlated with an item."""
    return WatchRecord(kind=item.kind, external_id=item.external_id, title=item.title,
                       fully_watched=True, watched_at=watched_at)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def now():
    """Fixed reference time for decisions."""
    return NOW


@pytest.fixture
def call_log():
    """Shared call log to assert ordering across fakes."""
    return []


@pytest.fixture
def fake_fcntl():
    """Instance lock backed by FakeFlock instead of the real fcntl."""
    fake = FakeFlock()
    with patch("core.system_utils.fcntl", fake):
        yield fake


@pytest.fixture
def temp_dir():
    """Provide a temporary directory, cleaned up after test."""
    d = tempfile.mkdtemp(prefix="arrsweep_test_")
    yield d
    shutil.rmtree(d, ignore_errors=True)
