"""
Data model for ArrSweep.
Plain immutable records shared by the snapshot, decision and execution stages.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple


class MediaKind(Enum):
    """Kind of media a collection manager tracks."""
    MOVIE = "movie"
    SERIES = "series"
    EPISODE = "episode"


class Outcome(Enum):
    DELETE = "delete"
    KEEP = "keep"


class Reason(Enum):
    """Why the decision engine reached its verdict."""
    NOT_WATCHED = "not_watched"
    TAG_EXEMPT = "tag_exempt"
    WITHIN_RETENTION = "within_retention"
    NOT_ON_DISK = "not_on_disk"
    STILL_AIRING = "still_airing"
    ELIGIBLE = "eligible"


class ItemStatus(Enum):
    """Result of executing a Delete verdict."""
    DELETED = "deleted"
    WOULD_DELETE = "would_delete"
    FAILED = "failed"


def episode_key(tvdb_id, season: int, episode: int) -> str:
    """Correlation id of one episode: series TVDB id plus season and episode number."""
    return f"{tvdb_id}:{int(season)}:{int(episode)}"


@dataclass(frozen=True)
class MediaItem:
    """One trackable unit in a collection manager (a movie, a series or an episode).

    Attributes:
        item_id: Manager-scoped identifier (Radarr movie id, Sonarr series or episode id).
        title: Display title.
        kind: Media kind of the owning manager.
        external_id: Correlation id shared with the media server
            (TMDB id for movies, TVDB id for series, episode_key for episodes).
        tags: Tag labels, case-sensitive.
        file_refs: On-disk file references. Empty means nothing on disk.
        watched_at: When the item became fully watched, None if it has not.
        monitored: Whether the manager is still monitoring the item.
        still_airing: Series only. True if a season is incomplete and still airing.
        file_id: Episodes only. Sonarr episode file id backing file_refs.
    """
    item_id: int
    title: str
    kind: MediaKind
    external_id: Optional[str] = None
    tags: FrozenSet[str] = frozenset()
    file_refs: Tuple[str, ...] = ()
    watched_at: Optional[datetime] = None
    monitored: bool = False
    still_airing: bool = False
    file_id: Optional[int] = None

    @property
    def correlation_key(self) -> Optional[Tuple[MediaKind, str]]:
        if not self.external_id:
            return None
        return (self.kind, self.external_id)

    def __str__(self) -> str:
        return f"{self.title} (id {self.item_id})"


@dataclass(frozen=True)
class WatchRecord:
    """One fully-watched entry reported by the media server."""
    kind: MediaKind
    external_id: str
    title: str = ""
    fully_watched: bool = True
    watched_at: Optional[datetime] = None

    @property
    def correlation_key(self) -> Tuple[MediaKind, str]:
        return (self.kind, self.external_id)


@dataclass(frozen=True)
class RetentionPolicy:
    """Deletion policy for one media kind.

    Attributes:
        retention: Minimum time a fully-watched item stays before deletion.
        exempt_tags: Tags that unconditionally protect an item.
    """
    retention: timedelta = timedelta(0)
    exempt_tags: FrozenSet[str] = frozenset()

    def is_exempt(self, tags: FrozenSet[str]) -> bool:
        return not self.exempt_tags.isdisjoint(tags)


@dataclass(frozen=True)
class Verdict:
    """Decision engine output for one MediaItem."""
    item: MediaItem
    outcome: Outcome
    reason: Reason
    detail: str = ""

    @property
    def is_delete(self) -> bool:
        return self.outcome is Outcome.DELETE


@dataclass(frozen=True)
class HistoryEvent:
    """A download event from a collection manager's history.

    Attributes:
        transfer_id: Download id (torrent hash) as recorded by the manager.
        client_name: Download client name as configured in the manager.
        client_kind: Download client implementation (e.g. "qBittorrent").
        timestamp: When the event happened.
    """
    transfer_id: Optional[str]
    client_name: str = ""
    client_kind: str = ""
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class TransferHandle:
    """A specific transfer on a specific configured download client."""
    client_name: str
    transfer_id: str

    def __str__(self) -> str:
        return f"{self.client_name}:{self.transfer_id}"


@dataclass
class ItemOutcome:
    """What happened to one Delete verdict."""
    item: MediaItem
    status: ItemStatus
    transfer: Optional[TransferHandle] = None
    error: str = ""


@dataclass
class ManagerResult:
    """Per collection manager results for one pass."""
    manager: str
    kept: List[Verdict] = field(default_factory=list)
    outcomes: List[ItemOutcome] = field(default_factory=list)
    fetch_error: str = ""

    def _count(self, status: ItemStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)

    @property
    def deleted(self) -> int:
        return self._count(ItemStatus.DELETED)

    @property
    def would_delete(self) -> int:
        return self._count(ItemStatus.WOULD_DELETE)

    @property
    def failed(self) -> int:
        return self._count(ItemStatus.FAILED)

    @property
    def kept_count(self) -> int:
        return len(self.kept)

    def kept_by_reason(self) -> Dict[Reason, int]:
        counts: Dict[Reason, int] = {}
        for verdict in self.kept:
            counts[verdict.reason] = counts.get(verdict.reason, 0) + 1
        return counts


@dataclass
class RunResult:
    """Aggregate of one full pass. Built by the run coordinator, never persisted."""
    dry_run: bool = True
    managers: List[ManagerResult] = field(default_factory=list)
    fatal_error: str = ""

    @property
    def failures(self) -> List[Tuple[str, int, str]]:
        """(manager, item id, reason) for every failed item."""
        return [
            (result.manager, outcome.item.item_id, outcome.error)
            for result in self.managers
            for outcome in result.outcomes
            if outcome.status is ItemStatus.FAILED
        ]

    @property
    def success(self) -> bool:
        return not self.fatal_error and not self.failures

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1
