"""
Ownership resolution: which configured download client holds an item's transfer.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from core.collection_managers import ServarrClient
from core.download_clients import DownloadClient, normalize_kind
from core.exceptions import ApiError, ResolutionError
from core.models import HistoryEvent, MediaItem, TransferHandle

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def latest_transfer_event(events: List[HistoryEvent]) -> Optional[HistoryEvent]:
    """Most recent history event that references a transfer id."""
    candidates = [event for event in events if event.transfer_id]
    if not candidates:
        return None
    # Events without a timestamp sort oldest
    return max(candidates, key=lambda event: event.timestamp or _EPOCH)


class OwnershipResolver:
    """Maps a manager's download history onto the configured download clients."""

    def __init__(self, clients: List[DownloadClient]):
        self.clients = list(clients)

    def client(self, name: str) -> Optional[DownloadClient]:
        for client in self.clients:
            if client.name == name:
                return client
        return None

    def resolve(self, manager: ServarrClient, item: MediaItem) -> Optional[TransferHandle]:
        """Find the transfer belonging to an item.

        Returns None when there is no history, no transfer id, or the client
        that downloaded the item is not configured. History lookup failures
        are logged and treated the same way.
        """
        try:
            events = manager.get_history(item.item_id)
        except ResolutionError as e:
            logging.warning(f"[OWNERSHIP] Could not read history of '{item.title}': {e}")
            return None

        event = latest_transfer_event(events)
        if event is None:
            logging.debug(f"[OWNERSHIP] No download history for '{item.title}'")
            return None

        client = self._match_client(event)
        if client is None:
            logging.info(
                f"[OWNERSHIP] '{item.title}' was downloaded by "
                f"'{event.client_name or event.client_kind or 'unknown client'}', which is not configured"
            )
            return None

        logging.debug(f"[OWNERSHIP] '{item.title}' -> {client.name}:{event.transfer_id}")
        return TransferHandle(client.name, event.transfer_id)

    def _match_client(self, event: HistoryEvent) -> Optional[DownloadClient]:
        # A configured client name recorded by the manager is authoritative
        if event.client_name:
            wanted = event.client_name.lower()
            for client in self.clients:
                if client.name.lower() == wanted:
                    return client

        kinds = {normalize_kind(value) for value in (event.client_kind, event.client_name) if value}
        same_kind = [client for client in self.clients if client.kind in kinds]
        if len(same_kind) <= 1:
            return same_kind[0] if same_kind else None

        # Several clients of that kind: the first one holding the transfer wins
        for client in same_kind:
            try:
                if client.has_transfer(event.transfer_id):
                    return client
            except ApiError as e:
                logging.warning(f"[OWNERSHIP] Probing {client.name} for {event.transfer_id} failed: {e}")
        return None
