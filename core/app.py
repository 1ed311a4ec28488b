"""
Main ArrSweep application.
Wires configuration, clients and the run coordinator together for one pass.
"""

import argparse
import logging
import os
import sys
import time
from typing import List, Optional

from core import __version__
from core.collection_managers import RadarrClient, ServarrClient, SonarrClient, SonarrEpisodeClient
from core.config import DEFAULT_CONFIG_FILE, ConfigManager
from core.coordinator import ManagedLibrary, RunCoordinator
from core.download_clients import DELUGE, QBITTORRENT, DelugeClient, DownloadClient, QbittorrentClient
from core.executor import ExecutionDriver
from core.logging_config import LoggingManager
from core.media_server import PLEX, JellyfinClient, MediaServer, PlexManager
from core.models import ManagerResult, RunResult
from core.ownership import OwnershipResolver
from core.system_utils import SingleInstanceLock

MANAGER_CLASSES = {
    ("radarr", "movies"): RadarrClient,
    ("sonarr", "series"): SonarrClient,
    ("sonarr", "episodes"): SonarrEpisodeClient,
}


class ArrSweepApp:
    """Main ArrSweep application class."""

    def __init__(self, config_file: str = DEFAULT_CONFIG_FILE, dry_run: bool = True,
                 verbose: bool = False, quiet: bool = False,
                 log_level: Optional[str] = None):
        self.config_file = config_file
        self.dry_run = dry_run  # Only report what would be deleted
        self.verbose = verbose  # Enable DEBUG level logging
        self.quiet = quiet  # Warnings, errors and the summary only
        self.log_level = log_level  # Explicit level string, wins over the settings file
        self.start_time = time.time()

        self.config_manager = ConfigManager(config_file)

        # Will be initialized after config loading
        self.logging_manager = None
        self.instance_lock = None
        self.media_server: Optional[MediaServer] = None
        self.download_clients: List[DownloadClient] = []
        self.libraries: List[ManagedLibrary] = []
        self.coordinator: Optional[RunCoordinator] = None
        self.result: Optional[RunResult] = None

    def run(self) -> int:
        """Run one pass and return the process exit code."""
        try:
            self._setup_logging()
            if self.dry_run:
                logging.warning("DRY-RUN MODE - Nothing will be deleted (use --force-delete to delete)")

            self.instance_lock = SingleInstanceLock(str(self.config_manager.get_lock_file()))
            if not self.instance_lock.acquire():
                logging.critical("Another instance of ArrSweep is already running. Exiting.")
                return 1

            try:
                logging.debug("Loading configuration...")
                self.config_manager.load_config()
                self._apply_config_logging()

                logging.debug("Initializing components...")
                self._initialize_components()

                self.result = self.coordinator.run_pass(dry_run=self.dry_run)
                self._finish()
                return self.result.exit_code
            finally:
                self.instance_lock.release()

        except Exception as e:
            if self.logging_manager:
                logging.critical(f"Application error: {type(e).__name__}: {e}", exc_info=True)
            else:
                print(f"Application error: {type(e).__name__}: {e}", file=sys.stderr)
            return 1
        finally:
            if self.logging_manager:
                self.logging_manager.shutdown()

    def _effective_log_level(self, configured: str = "") -> str:
        if self.verbose:
            return "debug"
        if self.quiet:
            return "warning"
        return self.log_level or configured or "info"

    def _setup_logging(self) -> None:
        """Set up logging with the defaults until the settings file is loaded."""
        self.logging_manager = LoggingManager(
            logs_folder=self.config_manager.logging.logs_folder,
            log_level=self._effective_log_level(),
            max_log_files=self.config_manager.logging.max_log_files,
        )
        self.logging_manager.setup_logging()
        build_commit = os.environ.get('GIT_COMMIT', 'dev')
        logging.info(f"=== ArrSweep v{__version__} (build: {build_commit}) ===")

    def _apply_config_logging(self) -> None:
        """Apply logging settings that are only known after the config is loaded."""
        self.logging_manager.update_log_level(
            self._effective_log_level(self.config_manager.logging.log_level)
        )
        self.logging_manager.update_settings(
            max_log_files=self.config_manager.logging.max_log_files,
            logs_folder=self.config_manager.logging.logs_folder,
        )
        self.logging_manager.setup_notification_handlers(self.config_manager.notification)

    def _initialize_components(self) -> None:
        timeout = self.config_manager.performance.request_timeout
        self.media_server = self._init_media_server(timeout)
        self.download_clients = self._init_download_clients(timeout)
        self.libraries = self._init_libraries(timeout)

        resolver = OwnershipResolver(self.download_clients)
        driver = ExecutionDriver(
            resolver,
            max_concurrent=self.config_manager.performance.max_concurrent_deletions,
        )
        self.coordinator = RunCoordinator(
            self.media_server,
            self.libraries,
            driver,
            max_concurrent_fetches=self.config_manager.performance.max_concurrent_fetches,
        )

    def _init_media_server(self, timeout: float) -> MediaServer:
        config = self.config_manager.media_server
        include_episodes = any(manager.mode == "episodes" for manager in self.config_manager.managers)
        if config.server_type == PLEX:
            logging.debug(f"Using Plex at {config.url}")
            return PlexManager(config.url, config.token, timeout=timeout,
                               valid_sections=config.valid_sections,
                               include_episodes=include_episodes)
        logging.debug(f"Using Jellyfin at {config.url} for user '{config.username}'")
        return JellyfinClient(config.url, config.api_key, config.username,
                              protect_favorites=config.protect_favorites, timeout=timeout,
                              include_episodes=include_episodes)

    def _init_download_clients(self, timeout: float) -> List[DownloadClient]:
        clients: List[DownloadClient] = []
        for config in self.config_manager.download_clients:
            if config.client_type == QBITTORRENT:
                clients.append(QbittorrentClient(config.name, config.url, config.username,
                                                 config.password, timeout=timeout))
            elif config.client_type == DELUGE:
                clients.append(DelugeClient(config.name, config.url, config.password, timeout=timeout))
            else:
                continue
            logging.debug(f"Configured download client '{config.name}' ({clients[-1].display_kind})")
        return clients

    def _init_libraries(self, timeout: float) -> List[ManagedLibrary]:
        libraries = []
        for config in self.config_manager.managers:
            manager: ServarrClient = MANAGER_CLASSES[(config.name, config.mode)](
                config.name.capitalize(), config.url, config.api_key, timeout=timeout
            )
            libraries.append(ManagedLibrary(manager, config.policy(), config.unmonitor_watched))
        return libraries

    def _finish(self) -> None:
        """Log the per-manager summary."""
        for manager_result in self.result.managers:
            self.logging_manager.add_summary_message(format_manager_summary(manager_result, self.dry_run))
        if self.result.fatal_error:
            self.logging_manager.add_summary_message(f"Pass aborted: {self.result.fatal_error}")
        for manager, item_id, error in self.result.failures:
            logging.error(f"[{manager.upper()}] Item {item_id} failed: {error}")

        execution_time = convert_time(time.time() - self.start_time)
        self.logging_manager.add_summary_message(f"Completed in {execution_time}")
        self.logging_manager.log_summary()


def format_manager_summary(result: ManagerResult, dry_run: bool) -> str:
    """One summary line for a collection manager."""
    if result.fetch_error:
        return f"{result.manager}: skipped ({result.fetch_error})"
    if dry_run:
        parts = [f"would delete {result.would_delete}"]
    else:
        parts = [f"deleted {result.deleted}"]
        if result.failed:
            parts.append(f"failed {result.failed}")
    kept = result.kept_by_reason()
    kept_detail = ", ".join(f"{count} {reason.value.replace('_', ' ')}" for reason, count in kept.items())
    parts.append(f"kept {result.kept_count}" + (f" ({kept_detail})" if kept_detail else ""))
    return f"{result.manager}: " + ", ".join(parts)


def convert_time(execution_time_seconds: float) -> str:
    """Convert execution time to human-readable format."""
    days, remainder = divmod(execution_time_seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, seconds = divmod(remainder, 60)

    result_str = ""
    if days > 0:
        result_str += f"{int(days)} day{'s' if days > 1 else ''}, "
    if hours > 0:
        result_str += f"{int(hours)} hour{'s' if hours > 1 else ''}, "
    if minutes > 0:
        result_str += f"{int(minutes)} minute{'s' if minutes > 1 else ''}, "
    if seconds >= 1:
        result_str += f"{int(seconds)} second{'s' if seconds >= 2 else ''}"

    return result_str.rstrip(", ") or "less than 1 second"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="arrsweep",
        description="Delete watched movies and series from Radarr/Sonarr and their download clients.",
    )
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG_FILE,
                        help="path to the settings file (default: %(default)s)")
    parser.add_argument("-d", "--force-delete", action="store_true",
                        help="actually delete; without it only a dry-run is performed")
    parser.add_argument("--dry-run", action="store_true",
                        help="only report what would be deleted (wins over --force-delete)")
    parser.add_argument("-l", "--log-level", default=os.environ.get("LOG_LEVEL"),
                        help='log level, optionally per logger, e.g. "info,qbittorrentapi=debug" '
                             '(env LOG_LEVEL)')
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="only log warnings, errors and the summary")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    dry_run = args.dry_run or not args.force_delete
    app = ArrSweepApp(args.config, dry_run=dry_run, verbose=args.verbose,
                      quiet=args.quiet, log_level=args.log_level)
    return app.run()
