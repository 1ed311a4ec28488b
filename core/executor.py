"""
Execution driver: applies Delete verdicts for one collection manager.

Each item is handled independently: its transfer (if any) is removed from the
owning download client, then the item and its files are deleted through the
manager. A failure is recorded against that item only.
"""

import logging
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import List, Optional

from tqdm import tqdm

from core.collection_managers import ServarrClient
from core.exceptions import ArrSweepError, DeletionError
from core.logging_config import get_console_lock
from core.models import ItemOutcome, ItemStatus, MediaItem, TransferHandle, Verdict
from core.ownership import OwnershipResolver

DEFAULT_MAX_CONCURRENT_DELETIONS = 4


class ExecutionDriver:
    """Runs deletions with bounded concurrency and per-item isolation."""

    def __init__(self, resolver: OwnershipResolver,
                 max_concurrent: int = DEFAULT_MAX_CONCURRENT_DELETIONS,
                 resolve_in_dry_run: bool = True,
                 show_progress: Optional[bool] = None):
        self.resolver = resolver
        self.max_concurrent = max(1, max_concurrent)
        self.resolve_in_dry_run = resolve_in_dry_run
        # None lets tqdm hide the bar when stdout is not a terminal
        self.show_progress = show_progress

    def execute(self, manager: ServarrClient, verdicts: List[Verdict], dry_run: bool) -> List[ItemOutcome]:
        """Apply every Delete verdict. Keep verdicts are ignored.

        Returns:
            One ItemOutcome per Delete verdict, in verdict order.
        """
        items = [verdict.item for verdict in verdicts if verdict.is_delete]
        if not items:
            return []

        outcomes = {}
        disable = None if self.show_progress is None else not self.show_progress
        desc = f"{'Previewing' if dry_run else 'Deleting'} {manager.name}"
        with tqdm(total=len(items), desc=desc, unit="item", disable=disable,
                  bar_format="{l_bar}{bar:20}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}]",
                  ncols=80, file=sys.stdout) as pbar:
            with ThreadPoolExecutor(max_workers=self.max_concurrent) as executor:
                futures = {
                    executor.submit(self._process_item, manager, item, dry_run): item
                    for item in items
                }
                for future in as_completed(futures):
                    item = futures[future]
                    try:
                        outcomes[item.item_id] = future.result()
                    except Exception as e:
                        logging.error(f"[{manager.log_tag}] Deletion task for {item} crashed: {type(e).__name__}: {e}")
                        outcomes[item.item_id] = ItemOutcome(item, ItemStatus.FAILED, error=f"{type(e).__name__}: {e}")
                    with get_console_lock():
                        pbar.update(1)

        return [outcomes[item.item_id] for item in items]

    def _process_item(self, manager: ServarrClient, item: MediaItem, dry_run: bool) -> ItemOutcome:
        if dry_run:
            return self._preview_item(manager, item)

        transfer = None
        try:
            transfer = self._resolve(manager, item)
            if transfer is not None:
                self._remove_transfer(transfer)
            self._delete_item(manager, item)
        except DeletionError as e:
            logging.error(f"[{manager.log_tag}] Failed to delete '{item.title}': {e}")
            return ItemOutcome(item, ItemStatus.FAILED, transfer=transfer, error=str(e))

        logging.info(f"[{manager.log_tag}] Deleted '{item.title}'" + (f" (transfer {transfer})" if transfer else ""))
        return ItemOutcome(item, ItemStatus.DELETED, transfer=transfer)

    def _preview_item(self, manager: ServarrClient, item: MediaItem) -> ItemOutcome:
        transfer = None
        if self.resolve_in_dry_run:
            transfer = self._resolve(manager, item)
        suffix = f" and transfer {transfer}" if transfer else ""
        logging.info(f"[DRY RUN] Would delete {manager.name} item '{item.title}'{suffix}")
        return ItemOutcome(item, ItemStatus.WOULD_DELETE, transfer=transfer)

    def _resolve(self, manager: ServarrClient, item: MediaItem) -> Optional[TransferHandle]:
        if not manager.removes_transfers:
            return None
        return self.resolver.resolve(manager, item)

    def _remove_transfer(self, transfer: TransferHandle) -> None:
        client = self.resolver.client(transfer.client_name)
        if client is None:
            raise DeletionError("remove transfer", f"download client '{transfer.client_name}' is not configured")
        try:
            if not client.remove_transfer(transfer.transfer_id):
                logging.debug(f"Transfer {transfer} was already gone")
        except ArrSweepError as e:
            raise DeletionError("remove transfer", str(e)) from e

    def _delete_item(self, manager: ServarrClient, item: MediaItem) -> None:
        try:
            manager.delete_item(item.item_id)
        except ArrSweepError as e:
            raise DeletionError("delete item", str(e)) from e
