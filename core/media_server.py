"""
Media server integration for ArrSweep.
Produces the watch-state snapshot: every movie and series the configured
user has fully watched (and, when asked for, every watched episode), keyed
by the ids Radarr/Sonarr understand.
"""

import logging
from datetime import timezone
from typing import Any, Dict, List, Optional

import requests
from plexapi.server import PlexServer

from core.exceptions import ApiError, FetchError
from core.http_client import DEFAULT_TIMEOUT, ApiClient, parse_timestamp
from core.models import MediaKind, WatchRecord, episode_key

JELLYFIN = "jellyfin"
PLEX = "plex"

MOVIE_ITEM_TYPES = ["Movie", "Video"]


class MediaServer:
    """Source of fully-watched items."""

    name = "media server"
    # Also report single watched episodes (Sonarr episode mode)
    include_episodes = False

    def list_fully_watched(self) -> List[WatchRecord]:
        """Return one WatchRecord per fully watched movie or series, plus one
        per watched episode when include_episodes is set.

        Raises:
            FetchError: if the media server is unreachable or returns malformed data.
        """
        raise NotImplementedError


def _provider_id(provider_ids: Optional[Dict[str, Any]], key: str) -> Optional[str]:
    # Jellyfin spells provider keys "Tmdb"/"Tvdb", some plugins lowercase them
    for name, value in (provider_ids or {}).items():
        if name.lower() == key and value:
            return str(value)
    return None


class JellyfinClient(MediaServer, ApiClient):
    """Jellyfin REST API: https://api.jellyfin.org/"""

    name = "Jellyfin"
    log_tag = "JELLYFIN"

    def __init__(self, url: str, api_key: str, username: str,
                 protect_favorites: bool = True,
                 timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None,
                 include_episodes: bool = False):
        ApiClient.__init__(
            self, url,
            headers={"Authorization": f'MediaBrowser Token="{api_key}"'},
            timeout=timeout,
            session=session,
        )
        self.username = username
        self.protect_favorites = protect_favorites
        self.include_episodes = include_episodes
        self._user_id: Optional[str] = None

    def user_id(self) -> str:
        """Resolve the configured username to a Jellyfin user id."""
        if self._user_id is None:
            users = self.get_json("Users")
            for user in users:
                if user.get("Name") == self.username:
                    self._user_id = user["Id"]
                    break
            else:
                raise ApiError(f"Jellyfin user '{self.username}' not found")
        return self._user_id

    def items(self, item_types: List[str], played: Optional[bool] = True) -> List[Dict[str, Any]]:
        """Query the user's items. played=None returns played and unplayed items."""
        params = {
            "userId": self.user_id(),
            "recursive": "true",
            "includeItemTypes": ",".join(item_types),
            "fields": "ProviderIds",
        }
        if played is not None:
            params["isPlayed"] = "true" if played else "false"
        if self.protect_favorites:
            params["isFavorite"] = "false"
        response = self.get_json("Items", params=params)
        return response.get("Items", [])

    def list_fully_watched(self) -> List[WatchRecord]:
        try:
            episodes = self.items(["Episode"])
            records = self._watched_movies() + self._watched_series(episodes)
            if self.include_episodes:
                records += self._watched_episodes(episodes)
        except ApiError as e:
            raise FetchError(self.name, str(e)) from e
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise FetchError(self.name, f"malformed Items response: {e!r}") from e
        logging.info(f"[JELLYFIN] Found {len(records)} fully watched items for user '{self.username}'")
        return records

    def _watched_movies(self) -> List[WatchRecord]:
        records = []
        for item in self.items(MOVIE_ITEM_TYPES):
            tmdb_id = _provider_id(item.get("ProviderIds"), "tmdb")
            if not tmdb_id:
                logging.warning(f"[JELLYFIN] Movie \"{item.get('Name')}\" has no TMDB id, skipping")
                continue
            user_data = item.get("UserData") or {}
            records.append(WatchRecord(
                kind=MediaKind.MOVIE,
                external_id=tmdb_id,
                title=item.get("Name", ""),
                fully_watched=bool(user_data.get("Played", True)),
                watched_at=parse_timestamp(user_data.get("LastPlayedDate")),
            ))
        return records

    def _watched_series(self, episodes: List[Dict[str, Any]]) -> List[WatchRecord]:
        # A played series has every episode played; its own LastPlayedDate is
        # often empty, so the latest episode play is used instead
        latest_play = {}
        for episode in episodes:
            series_id = episode.get("SeriesId")
            played_at = parse_timestamp((episode.get("UserData") or {}).get("LastPlayedDate"))
            if series_id and played_at and (series_id not in latest_play or played_at > latest_play[series_id]):
                latest_play[series_id] = played_at

        records = []
        for series in self.items(["Series"]):
            tvdb_id = _provider_id(series.get("ProviderIds"), "tvdb")
            if not tvdb_id:
                logging.warning(f"[JELLYFIN] Series \"{series.get('Name')}\" has no TVDB id, skipping")
                continue
            user_data = series.get("UserData") or {}
            candidates = [
                ts for ts in (latest_play.get(series.get("Id")), parse_timestamp(user_data.get("LastPlayedDate")))
                if ts is not None
            ]
            records.append(WatchRecord(
                kind=MediaKind.SERIES,
                external_id=tvdb_id,
                title=series.get("Name", ""),
                fully_watched=bool(user_data.get("Played", True)),
                watched_at=max(candidates) if candidates else None,
            ))
        return records

    def _watched_episodes(self, episodes: List[Dict[str, Any]]) -> List[WatchRecord]:
        # Episodes carry their own TVDB id, Sonarr matches on the series id
        series_tvdb = {}
        for series in self.items(["Series"], played=None):
            tvdb_id = _provider_id(series.get("ProviderIds"), "tvdb")
            if tvdb_id:
                series_tvdb[series.get("Id")] = tvdb_id

        records = []
        for episode in episodes:
            name = episode.get("Name", "")
            tvdb_id = series_tvdb.get(episode.get("SeriesId"))
            season, number = episode.get("ParentIndexNumber"), episode.get("IndexNumber")
            if not tvdb_id:
                logging.warning(f"[JELLYFIN] Episode \"{name}\" has no series TVDB id, skipping")
                continue
            if season is None or number is None:
                logging.warning(f"[JELLYFIN] Episode \"{name}\" is missing its season or episode number, skipping")
                continue
            user_data = episode.get("UserData") or {}
            records.append(WatchRecord(
                kind=MediaKind.EPISODE,
                external_id=episode_key(tvdb_id, season, number),
                title=f"{episode.get('SeriesName', '')} S{int(season):02d}E{int(number):02d}".strip(),
                fully_watched=bool(user_data.get("Played", True)),
                watched_at=parse_timestamp(user_data.get("LastPlayedDate")),
            ))
        return records


def _log_api_error(context: str, error: Exception) -> None:
    """Log Plex API errors with specific detection for common HTTP status codes."""
    error_str = str(error)

    if "401" in error_str or "Unauthorized" in error_str:
        logging.error(f"[PLEX API] Authentication failed ({context}): {error}")
        logging.error("[PLEX API] Your Plex token is invalid or has been revoked.")
    elif "404" in error_str or "Not Found" in error_str:
        logging.warning(f"[PLEX API] Resource not found ({context}): {error}")
    elif "500" in error_str or "502" in error_str or "503" in error_str:
        logging.error(f"[PLEX API] Plex server error ({context}): {error}")
    else:
        logging.error(f"[PLEX API] Error ({context}): {error}")


def _plex_guid(item, scheme: str) -> Optional[str]:
    """Extract e.g. the tmdb id from a Plex item's guids ('tmdb://603')."""
    prefix = f"{scheme}://"
    for guid in getattr(item, "guids", None) or []:
        guid_id = getattr(guid, "id", "")
        if guid_id.startswith(prefix):
            return guid_id[len(prefix):]
    return None


def _to_utc(value):
    # plexapi returns naive local times
    if value is None:
        return None
    return value.astimezone(timezone.utc)


class PlexManager(MediaServer):
    """Plex watch state through plexapi, for the account owning the token."""

    name = "Plex"

    def __init__(self, plex_url: str, plex_token: str, timeout: float = DEFAULT_TIMEOUT,
                 valid_sections: Optional[List[int]] = None, include_episodes: bool = False):
        self.plex_url = plex_url
        self.plex_token = plex_token
        self.timeout = timeout
        self.valid_sections = valid_sections or []
        self.include_episodes = include_episodes
        self.plex = None

    def connect(self) -> None:
        """Connect to the Plex server."""
        logging.debug(f"Connecting to Plex server: {self.plex_url}")
        try:
            self.plex = PlexServer(self.plex_url, self.plex_token, timeout=self.timeout)
            logging.debug(f"Plex server version: {self.plex.version}")
        except Exception as e:
            _log_api_error("connect to Plex server", e)
            raise FetchError(self.name, f"Error connecting to the Plex server: {e}") from e

    def list_fully_watched(self) -> List[WatchRecord]:
        if self.plex is None:
            self.connect()
        records = []
        try:
            for section in self.plex.library.sections():
                if self.valid_sections and int(section.key) not in self.valid_sections:
                    continue
                if section.type == "movie":
                    records.extend(self._section_records(section.all(), MediaKind.MOVIE, "tmdb"))
                elif section.type == "show":
                    shows = section.all()
                    records.extend(self._section_records(shows, MediaKind.SERIES, "tvdb"))
                    if self.include_episodes:
                        records.extend(self._episode_records(section, shows))
        except FetchError:
            raise
        except Exception as e:
            _log_api_error("list watched items", e)
            raise FetchError(self.name, str(e)) from e
        logging.info(f"[PLEX API] Found {len(records)} fully watched items")
        return records

    def _section_records(self, items, kind: MediaKind, scheme: str) -> List[WatchRecord]:
        records = []
        for item in items:
            if not item.isPlayed:
                continue
            external_id = _plex_guid(item, scheme)
            if not external_id:
                logging.warning(f"[PLEX API] \"{item.title}\" has no {scheme.upper()} id, skipping")
                continue
            records.append(WatchRecord(
                kind=kind,
                external_id=external_id,
                title=item.title,
                fully_watched=True,
                watched_at=_to_utc(item.lastViewedAt),
            ))
        return records

    def _episode_records(self, section, shows) -> List[WatchRecord]:
        """Watched episodes of a show section, keyed by their show's TVDB id."""
        show_tvdb = {}
        for show in shows:
            tvdb_id = _plex_guid(show, "tvdb")
            if tvdb_id:
                show_tvdb[str(show.ratingKey)] = tvdb_id

        records = []
        for episode in section.searchEpisodes():
            if not episode.isPlayed:
                continue
            tvdb_id = show_tvdb.get(str(episode.grandparentRatingKey))
            if not tvdb_id or episode.parentIndex is None or episode.index is None:
                logging.debug(f"[PLEX API] Episode \"{episode.title}\" cannot be matched to a TVDB show, skipping")
                continue
            season, number = int(episode.parentIndex), int(episode.index)
            records.append(WatchRecord(
                kind=MediaKind.EPISODE,
                external_id=episode_key(tvdb_id, season, number),
                title=f"{episode.grandparentTitle} S{season:02d}E{number:02d}",
                fully_watched=True,
                watched_at=_to_utc(episode.lastViewedAt),
            ))
        return records
