"""
Download client integration for ArrSweep.

Every client exposes the same capability: find a transfer by its id (torrent
hash) and remove it together with its downloaded data. The ownership
resolver and execution driver only ever see the DownloadClient interface.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

import qbittorrentapi
import requests

from core.exceptions import ApiError
from core.http_client import DEFAULT_TIMEOUT, ApiClient

QBITTORRENT = "qbittorrent"
DELUGE = "deluge"

# Display names used by Radarr/Sonarr for each client implementation
CLIENT_KIND_NAMES = {
    QBITTORRENT: "qBittorrent",
    DELUGE: "Deluge",
}


def normalize_kind(value: str) -> str:
    """Map a client implementation name ("qBittorrent", "Deluge") to its kind key."""
    return value.strip().lower().replace(" ", "")


class DownloadClient:
    """Capability shared by all download clients."""

    kind = ""

    def __init__(self, name: str):
        self.name = name

    @property
    def display_kind(self) -> str:
        return CLIENT_KIND_NAMES.get(self.kind, self.kind)

    def transfer_name(self, transfer_id: str) -> Optional[str]:
        """Name of the transfer if the client holds it, None otherwise."""
        raise NotImplementedError

    def has_transfer(self, transfer_id: str) -> bool:
        return self.transfer_name(transfer_id) is not None

    def remove_transfer(self, transfer_id: str) -> bool:
        """Remove a transfer and its data.

        Returns:
            True if a transfer was removed, False if it was already absent.
        """
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class QbittorrentClient(DownloadClient):
    """qBittorrent through its WebUI API (qbittorrent-api)."""

    kind = QBITTORRENT

    def __init__(self, name: str, url: str, username: str, password: str,
                 timeout: float = DEFAULT_TIMEOUT,
                 client: Optional[qbittorrentapi.Client] = None):
        super().__init__(name)
        self.client = client or qbittorrentapi.Client(
            host=url,
            username=username,
            password=password,
            REQUESTS_ARGS=dict(timeout=timeout),
        )

    def transfer_name(self, transfer_id: str) -> Optional[str]:
        try:
            torrents = self.client.torrents_info(torrent_hashes=transfer_id.lower())
        except qbittorrentapi.APIError as e:
            raise ApiError(f"qBittorrent '{self.name}': listing torrent {transfer_id} failed: {e}")
        for torrent in torrents:
            return torrent.name
        return None

    def remove_transfer(self, transfer_id: str) -> bool:
        name = self.transfer_name(transfer_id)
        if name is None:
            logging.debug(f"[QBITTORRENT:{self.name}] Torrent {transfer_id} already absent")
            return False
        try:
            self.client.torrents_delete(delete_files=True, torrent_hashes=transfer_id.lower())
        except qbittorrentapi.APIError as e:
            raise ApiError(f"qBittorrent '{self.name}': deleting torrent {transfer_id} failed: {e}")
        logging.info(f"[QBITTORRENT:{self.name}] Deleted torrent '{name}' with data")
        return True


class DelugeClient(DownloadClient, ApiClient):
    """Deluge through the Web UI JSON-RPC endpoint (password login)."""

    kind = DELUGE
    log_tag = "DELUGE"
    SESSION_COOKIE = "_session_id"

    def __init__(self, name: str, url: str, password: str,
                 timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None):
        DownloadClient.__init__(self, name)
        ApiClient.__init__(self, url.rstrip("/") + "/", timeout=timeout, session=session)
        self._password = password
        self._logged_in = False
        self._login_lock = threading.Lock()
        self._id_lock = threading.Lock()
        self._request_id = 0

    def _call(self, method: str, params: List[Any]) -> Any:
        with self._id_lock:
            self._request_id += 1
            request_id = self._request_id
        payload = {"method": method, "params": params, "id": request_id}
        response = self.request("POST", "json", json=payload)
        try:
            body = response.json()
        except ValueError as e:
            raise ApiError(f"Deluge '{self.name}': invalid JSON from {method}: {e}")
        return parse_deluge_response(method, body)

    def login(self) -> None:
        with self._login_lock:
            if self._logged_in:
                return
            result = self._call("auth.login", [self._password])
            if not result:
                raise ApiError(f"Deluge '{self.name}': login rejected")
            if self.SESSION_COOKIE not in self.session.cookies:
                raise ApiError(f"Deluge '{self.name}': no {self.SESSION_COOKIE} cookie in login response")
            self._logged_in = True
            logging.debug(f"[DELUGE:{self.name}] Logged in")

    def transfer_name(self, transfer_id: str) -> Optional[str]:
        self.login()
        # Radarr/Sonarr store hashes uppercased, Deluge only knows lowercase
        torrent_id = transfer_id.lower()
        result = self._call("core.get_torrents_status", [{"id": [torrent_id]}, ["name"]])
        torrents: Dict[str, Dict[str, Any]] = result or {}
        torrent = torrents.get(torrent_id)
        if torrent is None:
            return None
        return torrent.get("name", torrent_id)

    def remove_transfer(self, transfer_id: str) -> bool:
        name = self.transfer_name(transfer_id)
        if name is None:
            logging.debug(f"[DELUGE:{self.name}] Torrent {transfer_id} already absent")
            return False
        self._call("core.remove_torrents", [[transfer_id.lower()], True])
        logging.info(f"[DELUGE:{self.name}] Deleted torrent '{name}' with data")
        return True


def parse_deluge_response(method: str, body: Dict[str, Any]) -> Any:
    """Return the `result` of a Deluge JSON-RPC reply.

    Raises:
        ApiError: if the reply carries an error or a literal false result.
    """
    error = body.get("error")
    if error:
        message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
        code = error.get("code") if isinstance(error, dict) else None
        raise ApiError(f"Deluge {method} failed: {message} (error code {code})")
    result = body.get("result")
    if result is False:
        raise ApiError(f"Deluge {method} returned a falsy response")
    return result
