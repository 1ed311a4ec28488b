"""
Logging configuration for ArrSweep.
Handles log setup, rotation, and notification handlers.
"""

import json
import logging
import os
import threading
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import requests

# Global lock for thread-safe console output (shared with tqdm)
_console_lock = threading.RLock()


def get_console_lock() -> threading.RLock:
    """Get the global console output lock for use with tqdm."""
    return _console_lock


class ThreadSafeStreamHandler(logging.StreamHandler):
    """A StreamHandler that uses a global lock for thread-safe console output.

    This prevents interleaving of log messages with tqdm progress bars
    when multiple deletion workers are logging simultaneously.
    """

    def emit(self, record):
        """Emit a record with thread-safe locking."""
        with _console_lock:
            super().emit(record)


# Define a new level called SUMMARY, above WARNING so it survives --quiet
SUMMARY = logging.WARNING + 1
logging.addLevelName(SUMMARY, 'SUMMARY')

# "off" silences a logger entirely
OFF = logging.CRITICAL + 10

LEVEL_MAPPING = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "summary": SUMMARY,
    "off": OFF,
}

# Libraries whose request chatter is lowered unless asked for explicitly
NOISY_LOGGERS = ["urllib3", "urllib3.connectionpool", "requests", "qbittorrentapi", "plexapi"]


def parse_log_levels(level_string: str, default: int = logging.INFO) -> Tuple[int, Dict[str, int]]:
    """Parse a log level string such as "info,qbittorrentapi=debug,urllib3=off".

    A bare level sets the root level, "name=level" pairs set named loggers.

    Returns:
        Tuple of (root_level, {logger_name: level}).

    Raises:
        ValueError: on an unknown level name or an empty logger name.
    """
    root_level = default
    logger_levels: Dict[str, int] = {}
    for part in (level_string or "").split(","):
        part = part.strip()
        if not part:
            continue
        name, sep, level_name = part.rpartition("=")
        level_name = level_name.strip().lower()
        if level_name not in LEVEL_MAPPING:
            raise ValueError(f"Invalid log level '{level_name}' in '{level_string}'")
        if sep:
            name = name.strip()
            if not name:
                raise ValueError(f"Missing logger name in '{part}'")
            logger_levels[name] = LEVEL_MAPPING[level_name]
        else:
            root_level = LEVEL_MAPPING[level_name]
    return root_level, logger_levels


class VerboseMessageFilter(logging.Filter):
    """Filter to downgrade certain verbose messages to DEBUG level.

    plexapi logs datetime parsing failures for empty strings at INFO level,
    which is noise for a cleanup run.
    """

    # Patterns of messages that should be downgraded to DEBUG
    DOWNGRADE_PATTERNS = [
        "Failed to parse",  # datetime parsing failures
        "to datetime as timestamp",
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        """Return True to allow the record, False to suppress it."""
        if record.levelno == logging.INFO:
            msg = record.getMessage()
            for pattern in self.DOWNGRADE_PATTERNS:
                if pattern in msg:
                    effective_level = logging.getLogger().getEffectiveLevel()
                    if effective_level <= logging.DEBUG:
                        # Verbose mode: show as DEBUG
                        record.levelno = logging.DEBUG
                        record.levelname = 'DEBUG'
                        return True
                    # Normal mode: suppress entirely
                    return False
        return True


class WebhookHandler(logging.Handler):
    """Custom logging handler for webhook notifications (Discord-style payload)."""

    SUMMARY = SUMMARY

    def __init__(self, webhook_url: str, timeout: float = 10):
        super().__init__()
        self.webhook_url = webhook_url
        self.timeout = timeout
        # Errors raised while posting are logged too; never re-enter
        self._sending = threading.local()

    def emit(self, record):
        if getattr(self._sending, "active", False):
            return
        self._sending.active = True
        try:
            if record.levelno == SUMMARY:
                self.send_webhook_message("ArrSweep Summary:\n" + record.getMessage())
            else:
                self.send_webhook_message(f"[{record.levelname}] {record.getMessage()}")
        except requests.exceptions.RequestException:
            self.handleError(record)
        finally:
            self._sending.active = False

    def send_webhook_message(self, content: str) -> None:
        payload = {
            "content": content
        }
        headers = {
            "Content-Type": "application/json"
        }
        response = requests.post(self.webhook_url, data=json.dumps(payload), headers=headers, timeout=self.timeout)
        if response.status_code not in (200, 204):
            logging.error(f"Failed to send webhook message. Error code: {response.status_code}")


class LoggingManager:
    """Manages logging configuration and setup."""

    def __init__(self, logs_folder: str, log_level: str = "", max_log_files: int = 5):
        self.logs_folder = Path(logs_folder)
        self.log_level = log_level
        self.max_log_files = max_log_files
        self.log_file_pattern = "arrsweep_log_*.log"
        self.logger = logging.getLogger()
        self.summary_messages: List[str] = []
        self.handlers: List[logging.Handler] = []
        self.file_handler: Optional[RotatingFileHandler] = None

    def setup_logging(self) -> None:
        """Set up logging configuration."""
        self._ensure_logs_folder()
        self._setup_log_file()
        self._setup_console()
        # Suppress noisy HTTP request logs; explicit per-logger levels below win
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
        self._set_log_level()
        self._clean_old_log_files()

    def _ensure_logs_folder(self) -> None:
        """Ensure the logs folder exists."""
        if not self.logs_folder.exists():
            try:
                self.logs_folder.mkdir(parents=True, exist_ok=True)
            except PermissionError:
                raise PermissionError(f"{self.logs_folder} not writable, please fix the logs_folder setting.")

    def _setup_log_file(self) -> None:
        """Set up the log file with rotation and point the latest symlink at it."""
        current_time = datetime.now().strftime("%Y%m%d_%H%M")
        log_file = self.logs_folder / f"arrsweep_log_{current_time}.log"
        latest_log_file = self.logs_folder / "arrsweep_log_latest.log"
        formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=20*1024*1024,
            backupCount=self.max_log_files
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(VerboseMessageFilter())
        self._add_handler(file_handler)
        self.file_handler = file_handler

        # Create or update the symbolic link to the latest log file
        try:
            if latest_log_file.exists() or latest_log_file.is_symlink():
                latest_log_file.unlink()
            latest_log_file.symlink_to(log_file.name)
        except OSError as e:
            logging.debug(f"Could not update {latest_log_file}: {e}")

    def _setup_console(self) -> None:
        # Thread-safe to prevent tqdm interleaving
        console_handler = ThreadSafeStreamHandler()
        console_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        console_handler.addFilter(VerboseMessageFilter())
        self._add_handler(console_handler)

    def _add_handler(self, handler: logging.Handler) -> None:
        self.logger.addHandler(handler)
        self.handlers.append(handler)

    def update_settings(self, max_log_files: Optional[int] = None,
                        logs_folder: Optional[str] = None) -> None:
        """Apply log file settings that are only known after the config is loaded.

        A different logs folder moves the file handler there; the pass keeps
        logging into a new file in that folder.
        """
        if max_log_files is not None:
            self.max_log_files = max_log_files
            if self.file_handler is not None:
                self.file_handler.backupCount = max_log_files

        if logs_folder and Path(logs_folder) != self.logs_folder:
            previous = self.logs_folder
            self.logs_folder = Path(logs_folder)
            self._ensure_logs_folder()
            if self.file_handler is not None:
                self.logger.removeHandler(self.file_handler)
                self.handlers.remove(self.file_handler)
                self.file_handler.close()
                self._setup_log_file()
            logging.debug(f"Log files moved from {previous} to {self.logs_folder}")

        self._clean_old_log_files()

    def update_log_level(self, log_level: str) -> None:
        """Apply a new level string once the configuration is known."""
        self.log_level = log_level
        self._set_log_level()

    def _set_log_level(self) -> None:
        """Set the root level and any per-logger levels."""
        try:
            root_level, logger_levels = parse_log_levels(self.log_level)
        except ValueError as e:
            logging.warning(f"{e}. Using default level: INFO")
            root_level, logger_levels = logging.INFO, {}

        self.logger.setLevel(root_level)
        for name, level in logger_levels.items():
            logging.getLogger(name).setLevel(level)

    def _clean_old_log_files(self) -> None:
        """Clean old log files to maintain the maximum count."""
        existing_log_files = [
            path for path in self.logs_folder.glob(self.log_file_pattern) if not path.is_symlink()
        ]
        existing_log_files.sort(key=lambda x: x.stat().st_mtime)

        while len(existing_log_files) > self.max_log_files:
            os.remove(existing_log_files.pop(0))

    def setup_notification_handlers(self, notification_config) -> None:
        """Set up the webhook handler when a webhook URL is configured."""
        if not notification_config.webhook_url:
            return
        webhook_handler = WebhookHandler(notification_config.webhook_url)
        self._set_handler_level(webhook_handler, notification_config.webhook_level)
        self._add_handler(webhook_handler)

    def _set_handler_level(self, handler: logging.Handler, level_str: Optional[str]) -> None:
        """Set the level for a logging handler."""
        level_str = (level_str or "").lower()
        if level_str in LEVEL_MAPPING:
            handler.setLevel(LEVEL_MAPPING[level_str])
        else:
            if level_str:
                logging.warning(f"Invalid notification level: {level_str}. Using default level: SUMMARY")
            handler.setLevel(SUMMARY)

    def add_summary_message(self, message: str) -> None:
        """Add a message to the summary."""
        self.summary_messages.append(message)

    def log_summary(self) -> None:
        """Log the summary message.

        Uses newlines for multi-line output when there are multiple messages.
        """
        if self.summary_messages:
            if len(self.summary_messages) == 1:
                summary_message = self.summary_messages[0]
            else:
                summary_message = '\n  ' + '\n  '.join(self.summary_messages)
            self.logger.log(SUMMARY, summary_message)

    def shutdown(self) -> None:
        """Detach and close the handlers added by this manager."""
        for handler in self.handlers:
            self.logger.removeHandler(handler)
            handler.close()
        self.handlers = []
