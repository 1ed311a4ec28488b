"""
Run coordinator: one full reconciliation pass across every configured manager.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from core.collection_managers import ServarrClient
from core.decision import evaluate_all, index_records
from core.exceptions import ArrSweepError, FetchError
from core.executor import ExecutionDriver
from core.media_server import MediaServer
from core.models import ManagerResult, Reason, RetentionPolicy, RunResult, Verdict

DEFAULT_MAX_CONCURRENT_FETCHES = 4


@dataclass
class ManagedLibrary:
    """A collection manager together with the policy that applies to it."""
    manager: ServarrClient
    policy: RetentionPolicy
    unmonitor_watched: bool = False


class RunCoordinator:
    """Fetches snapshots, decides, executes and folds a RunResult."""

    def __init__(self, media_server: MediaServer, libraries: List[ManagedLibrary],
                 driver: ExecutionDriver,
                 max_concurrent_fetches: int = DEFAULT_MAX_CONCURRENT_FETCHES,
                 clock: Optional[Callable[[], datetime]] = None):
        self.media_server = media_server
        self.libraries = libraries
        self.driver = driver
        self.max_concurrent_fetches = max(1, max_concurrent_fetches)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def run_pass(self, dry_run: bool = True) -> RunResult:
        """Run one pass.

        A failed watch-state fetch aborts the pass before anything is executed.
        A failed library fetch only skips that manager.
        """
        result = RunResult(dry_run=dry_run)
        mode = "dry-run" if dry_run else "force delete"
        logging.info(f"Starting pass ({mode}) with {len(self.libraries)} collection manager(s)")

        with ThreadPoolExecutor(max_workers=self.max_concurrent_fetches + 1) as executor:
            watch_future = executor.submit(self.media_server.list_fully_watched)
            library_futures = [
                executor.submit(library.manager.list_library) for library in self.libraries
            ]

            try:
                records = index_records(watch_future.result())
            except FetchError as e:
                logging.error(f"Could not fetch watch state, aborting pass: {e}")
                result.fatal_error = str(e)
                return result
            except Exception as e:
                logging.error(f"Watch state fetch crashed, aborting pass: {type(e).__name__}: {e}", exc_info=True)
                result.fatal_error = f"{self.media_server.name}: {type(e).__name__}: {e}"
                return result

            snapshots = []
            for library, future in zip(self.libraries, library_futures):
                try:
                    snapshots.append((library, future.result(), ""))
                except FetchError as e:
                    logging.error(f"[{library.manager.log_tag}] Skipping {library.manager.name}: {e}")
                    snapshots.append((library, None, str(e)))
                except Exception as e:
                    logging.error(
                        f"[{library.manager.log_tag}] Library fetch crashed, skipping {library.manager.name}: "
                        f"{type(e).__name__}: {e}",
                        exc_info=True,
                    )
                    snapshots.append((library, None, f"{library.manager.name}: {type(e).__name__}: {e}"))

        now = self.clock()
        for library, items, fetch_error in snapshots:
            if items is None:
                result.managers.append(ManagerResult(library.manager.name, fetch_error=fetch_error))
                continue
            result.managers.append(self._process_library(library, items, records, now, dry_run))

        return result

    def _process_library(self, library: ManagedLibrary, items, records, now: datetime,
                         dry_run: bool) -> ManagerResult:
        manager = library.manager
        verdicts = evaluate_all(items, records, library.policy, now)
        manager_result = ManagerResult(manager.name)
        manager_result.kept = [verdict for verdict in verdicts if not verdict.is_delete]

        deletable = len(verdicts) - len(manager_result.kept)
        logging.info(f"[{manager.log_tag}] {len(verdicts)} items, {deletable} eligible for deletion")

        if library.unmonitor_watched:
            self._unmonitor_watched(library, verdicts, dry_run)

        manager_result.outcomes = self.driver.execute(manager, verdicts, dry_run)
        return manager_result

    @staticmethod
    def _unmonitor_watched(library: ManagedLibrary, verdicts: List[Verdict], dry_run: bool) -> None:
        """Stop monitoring watched items that are kept, so they are not downloaded again."""
        manager = library.manager
        watched_kept = [
            verdict.item for verdict in verdicts
            if not verdict.is_delete and verdict.reason is not Reason.NOT_WATCHED and verdict.item.monitored
        ]
        if not watched_kept:
            logging.debug(f"[{manager.log_tag}] No monitored watched items to unmonitor")
            return
        titles = ", ".join(item.title for item in watched_kept)
        if dry_run:
            logging.info(f"[DRY RUN] Would unmonitor {len(watched_kept)} {manager.name} item(s): {titles}")
            return
        try:
            manager.unmonitor(item.item_id for item in watched_kept)
        except ArrSweepError as e:
            logging.warning(f"[{manager.log_tag}] Unmonitoring watched items failed: {e}")
