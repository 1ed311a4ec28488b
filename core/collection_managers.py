"""
Radarr and Sonarr integration for ArrSweep.
Builds library snapshots, reads download history and deletes items.

API Reference Documentation:
- Radarr API v3: https://radarr.video/docs/api/
  - GET /api/v3/movie, GET /api/v3/tag
  - GET /api/v3/history/movie?movieId={id}
  - DELETE /api/v3/movie/{id}?deleteFiles=true
  - PUT /api/v3/movie/editor
- Sonarr API v3: https://sonarr.tv/docs/api/
  - GET /api/v3/series, GET /api/v3/tag
  - GET /api/v3/history/series?seriesId={id}
  - DELETE /api/v3/series/{id}?deleteFiles=true
  - PUT /api/v3/series/editor
  - Episode mode: GET /api/v3/episode?seriesId={id}, GET /api/v3/history?episodeId={id},
    PUT /api/v3/episode/monitor, DELETE /api/v3/episodefile/{id}
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

import requests

from core.exceptions import ApiError, FetchError, ResolutionError
from core.http_client import DEFAULT_TIMEOUT, ApiClient, parse_timestamp
from core.models import HistoryEvent, MediaItem, MediaKind, episode_key


class ServarrClient(ApiClient):
    """Common behavior of the *arr collection managers."""

    kind: MediaKind = MediaKind.MOVIE
    # API resource holding library items ("movie" or "series")
    resource = ""
    # History endpoint and its item query parameter ("movieId", "seriesId", "episodeId")
    history_path = ""
    history_param = ""
    # Field carrying the media server correlation id
    external_id_field = ""
    # Whether deleting an item also removes its transfer from the download client
    removes_transfers = True

    def __init__(self, name: str, url: str, api_key: str,
                 timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None):
        super().__init__(
            url.rstrip("/") + "/api/v3/",
            headers={"X-Api-Key": api_key},
            timeout=timeout,
            session=session,
        )
        self.name = name
        self.log_tag = name.upper()

    def tag_labels(self) -> Dict[int, str]:
        """Map tag ids to labels."""
        return {tag["id"]: tag.get("label", "") for tag in self.get_json("tag")}

    def list_library(self) -> List[MediaItem]:
        """Fetch every tracked item as a MediaItem.

        Raises:
            FetchError: if the manager is unreachable or returns malformed data.
        """
        try:
            labels = self.tag_labels()
            raw_items = self.get_json(self.resource)
            if not isinstance(raw_items, list):
                raise FetchError(self.name, f"unexpected {self.resource} payload: {type(raw_items).__name__}")
            items = self._build_items(raw_items, labels)
        except ApiError as e:
            raise FetchError(self.name, str(e)) from e
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise FetchError(self.name, f"malformed {self.resource} entry: {e!r}") from e

        logging.debug(f"[{self.log_tag}] Library snapshot: {len(items)} items")
        return items

    def get_history(self, item_id: int) -> List[HistoryEvent]:
        """Return the download events recorded for an item.

        Raises:
            ResolutionError: if the history cannot be read.
        """
        try:
            records = self.get_json(self.history_path, params={self.history_param: item_id})
        except ApiError as e:
            raise ResolutionError(f"{self.name} history for item {item_id}: {e}") from e

        # Some versions wrap history in a paging envelope
        if isinstance(records, dict):
            records = records.get("records", [])
        return [parse_history_record(record) for record in records or []]

    def delete_item(self, item_id: int) -> None:
        """Delete an item and its files. An already absent item counts as deleted."""
        try:
            self.request("DELETE", f"{self.resource}/{item_id}", params={"deleteFiles": "true"})
        except ApiError as e:
            if e.is_not_found:
                logging.debug(f"[{self.log_tag}] Item {item_id} already absent, nothing to delete")
                return
            raise

    def unmonitor(self, item_ids: Iterable[int]) -> None:
        ids = sorted(set(item_ids))
        if not ids:
            return
        payload = {f"{self.history_param}s": ids, "monitored": False}
        self.request("PUT", f"{self.resource}/editor", json=payload)
        logging.info(f"[{self.log_tag}] Unmonitored {len(ids)} watched item(s)")

    def _build_items(self, raw_items: List[Dict[str, Any]], labels: Dict[int, str]) -> List[MediaItem]:
        return [self._to_media_item(raw, labels) for raw in raw_items]

    def _to_media_item(self, raw: Dict[str, Any], labels: Dict[int, str]) -> MediaItem:
        raise NotImplementedError

    def _external_id(self, raw: Dict[str, Any]) -> Optional[str]:
        value = raw.get(self.external_id_field)
        if not value:
            return None
        return str(value)

    @staticmethod
    def _tags(raw: Dict[str, Any], labels: Dict[int, str]) -> frozenset:
        return frozenset(labels[tag_id] for tag_id in raw.get("tags") or [] if tag_id in labels)


class RadarrClient(ServarrClient):
    """Radarr: one MediaItem per movie, correlated by TMDB id."""

    kind = MediaKind.MOVIE
    resource = "movie"
    history_path = "history/movie"
    history_param = "movieId"
    external_id_field = "tmdbId"

    def _to_media_item(self, raw: Dict[str, Any], labels: Dict[int, str]) -> MediaItem:
        movie_file = raw.get("movieFile") or {}
        file_refs = ()
        if raw.get("hasFile") and movie_file.get("path"):
            file_refs = (movie_file["path"],)
        return MediaItem(
            item_id=raw["id"],
            title=raw.get("title", f"movie {raw['id']}"),
            kind=self.kind,
            external_id=self._external_id(raw),
            tags=self._tags(raw, labels),
            file_refs=file_refs,
            monitored=bool(raw.get("monitored", False)),
        )


class SonarrClient(ServarrClient):
    """Sonarr: one MediaItem per series, correlated by TVDB id."""

    kind = MediaKind.SERIES
    resource = "series"
    history_path = "history/series"
    history_param = "seriesId"
    external_id_field = "tvdbId"

    def _to_media_item(self, raw: Dict[str, Any], labels: Dict[int, str]) -> MediaItem:
        statistics = raw.get("statistics") or {}
        file_refs = ()
        if statistics.get("sizeOnDisk", 0) > 0 and raw.get("path"):
            file_refs = (raw["path"],)
        return MediaItem(
            item_id=raw["id"],
            title=raw.get("title", f"series {raw['id']}"),
            kind=self.kind,
            external_id=self._external_id(raw),
            tags=self._tags(raw, labels),
            file_refs=file_refs,
            monitored=bool(raw.get("monitored", False)),
            still_airing=series_still_airing(raw.get("seasons")),
        )


class SonarrEpisodeClient(SonarrClient):
    """Sonarr at episode granularity: one MediaItem per episode file.

    Watched episodes are deleted one at a time while the series and its
    unwatched episodes stay. An episode is unmonitored before its file is
    deleted, otherwise Sonarr sees it as missing and downloads it again.
    Transfers are left alone: a season pack torrent is shared by every
    episode in it.
    """

    kind = MediaKind.EPISODE
    history_path = "history"
    history_param = "episodeId"
    removes_transfers = False

    def __init__(self, name: str, url: str, api_key: str,
                 timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None):
        super().__init__(name, url, api_key, timeout=timeout, session=session)
        # episode id -> episode file id, from the last library snapshot
        self._episode_files: Dict[int, int] = {}

    def _build_items(self, raw_items: List[Dict[str, Any]], labels: Dict[int, str]) -> List[MediaItem]:
        items = []
        for series in raw_items:
            statistics = series.get("statistics") or {}
            if not statistics.get("episodeFileCount", 0):
                continue
            episodes = self.get_json("episode", params={"seriesId": series["id"], "includeEpisodeFile": "true"})
            for episode in episodes:
                item = self._episode_item(series, episode, labels)
                if item is not None:
                    items.append(item)
        self._episode_files = {item.item_id: item.file_id for item in items}
        return items

    def _episode_item(self, series: Dict[str, Any], episode: Dict[str, Any],
                      labels: Dict[int, str]) -> Optional[MediaItem]:
        file_id = episode.get("episodeFileId") or None
        if not episode.get("hasFile") or not file_id:
            return None
        season = int(episode["seasonNumber"])
        number = int(episode["episodeNumber"])
        tvdb_id = self._external_id(series)
        episode_file = episode.get("episodeFile") or {}
        series_title = series.get("title") or f"series {series['id']}"
        return MediaItem(
            item_id=episode["id"],
            title=f"{series_title} S{season:02d}E{number:02d}",
            kind=self.kind,
            external_id=episode_key(tvdb_id, season, number) if tvdb_id else None,
            tags=self._tags(series, labels),
            file_refs=(episode_file.get("path") or f"episodefile/{file_id}",),
            monitored=bool(episode.get("monitored", False)),
            file_id=file_id,
        )

    def delete_item(self, item_id: int) -> None:
        """Unmonitor an episode, then delete its file.

        A missing episode or episode file counts as deleted.
        """
        file_id = self._episode_files.get(item_id)
        if file_id is None:
            try:
                episode = self.get_json(f"episode/{item_id}")
            except ApiError as e:
                if e.is_not_found:
                    logging.debug(f"[{self.log_tag}] Episode {item_id} already absent, nothing to delete")
                    return
                raise
            file_id = episode.get("episodeFileId") or None

        self.unmonitor([item_id])
        if not file_id:
            logging.debug(f"[{self.log_tag}] Episode {item_id} has no file, nothing to delete")
            return
        try:
            self.request("DELETE", f"episodefile/{file_id}")
        except ApiError as e:
            if e.is_not_found:
                logging.debug(f"[{self.log_tag}] Episode file {file_id} already absent")
                return
            raise

    def unmonitor(self, item_ids: Iterable[int]) -> None:
        ids = sorted(set(item_ids))
        if not ids:
            return
        self.request("PUT", "episode/monitor", json={"episodeIds": ids, "monitored": False})
        logging.debug(f"[{self.log_tag}] Unmonitored episode(s) {ids}")


def series_still_airing(seasons: Optional[List[Dict[str, Any]]]) -> bool:
    """True unless every season is fully downloaded or has nothing left to air.

    Missing or empty season info is treated as still airing.
    """
    if not seasons:
        return True
    for season in seasons:
        stats = season.get("statistics") or {}
        fully_downloaded = stats.get("episodeFileCount", 0) >= stats.get("totalEpisodeCount", 0)
        wont_air = not stats.get("nextAiring")
        if not (fully_downloaded or wont_air):
            return True
    return False


def parse_history_record(record: Dict[str, Any]) -> HistoryEvent:
    """Normalize one Servarr history record."""
    data = record.get("data") or {}
    return HistoryEvent(
        transfer_id=record.get("downloadId") or None,
        client_name=data.get("downloadClientName") or "",
        client_kind=data.get("downloadClient") or "",
        timestamp=parse_timestamp(record.get("date")),
    )
