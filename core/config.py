"""
Configuration management for ArrSweep.
Handles loading, validation, and management of application settings.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from core.download_clients import DELUGE, QBITTORRENT, normalize_kind
from core.media_server import JELLYFIN, PLEX
from core.models import RetentionPolicy

# Relative to the working directory. Logs and the lock file live beside the settings file.
DEFAULT_CONFIG_FILE = "arrsweep_settings.json"

MANAGER_SECTIONS = ("radarr", "sonarr")
# Deletion granularity per manager, the first one is the default
MANAGER_MODES = {
    "radarr": ("movies",),
    "sonarr": ("series", "episodes"),
}
CLIENT_TYPES = (QBITTORRENT, DELUGE)
MEDIA_SERVER_TYPES = (JELLYFIN, PLEX)
NOTIFICATION_LEVELS = ("debug", "info", "warning", "error", "critical", "summary")

_DURATION_UNITS = {
    "s": 1, "sec": 1, "secs": 1, "second": 1, "seconds": 1,
    "m": 60, "min": 60, "mins": 60, "minute": 60, "minutes": 60,
    "h": 3600, "hr": 3600, "hrs": 3600, "hour": 3600, "hours": 3600,
    "d": 86400, "day": 86400, "days": 86400,
    "w": 604800, "week": 604800, "weeks": 604800,
}
_DURATION_TOKEN = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]*)")


def parse_duration(value: str) -> timedelta:
    """Parse a human duration string into a timedelta.

    Supports formats:
    - "2d", "12h", "30m", "1w"
    - "2 days", "1week", "1w 2d 12h"
    - "7" -> defaults to days
    - "" or "0" -> no retention

    Raises:
        ValueError: if the string cannot be parsed.
    """
    text = (value or "").strip().lower()
    if not text or text == "0":
        return timedelta(0)

    total = 0.0
    position = 0
    for match in _DURATION_TOKEN.finditer(text):
        if text[position:match.start()].strip(" ,"):
            raise ValueError(f"Invalid duration '{value}'")
        number, unit = match.groups()
        if unit not in _DURATION_UNITS and unit != "":
            raise ValueError(f"Invalid duration unit '{unit}' in '{value}'")
        total += float(number) * _DURATION_UNITS.get(unit, 86400)
        position = match.end()

    if position == 0 or text[position:].strip(" ,"):
        raise ValueError(f"Invalid duration '{value}'")
    return timedelta(seconds=total)


@dataclass
class MediaServerConfig:
    """Configuration for the media server providing watch state."""
    server_type: str = JELLYFIN
    url: str = ""
    api_key: str = ""  # Jellyfin API key
    token: str = ""  # Plex token
    username: str = ""  # Jellyfin user whose watch state is used
    protect_favorites: bool = True
    valid_sections: List[int] = field(default_factory=list)  # Plex library sections, empty = all


@dataclass
class ManagerConfig:
    """Configuration for one collection manager (Radarr or Sonarr)."""
    name: str = ""
    url: str = ""
    api_key: str = ""
    enabled: bool = True
    retention_period: str = ""
    tags_to_keep: List[str] = field(default_factory=list)
    unmonitor_watched: bool = False
    mode: str = ""  # "movies" for Radarr, "series" or "episodes" for Sonarr
    retention: timedelta = timedelta(0)  # Parsed value (computed from retention_period)

    def policy(self) -> RetentionPolicy:
        return RetentionPolicy(retention=self.retention, exempt_tags=frozenset(self.tags_to_keep))


@dataclass
class DownloadClientConfig:
    """Configuration for one download client."""
    name: str = ""
    client_type: str = QBITTORRENT
    url: str = ""
    username: str = ""
    password: str = ""


@dataclass
class PerformanceConfig:
    """Configuration for performance settings."""
    max_concurrent_deletions: int = 4
    max_concurrent_fetches: int = 4
    request_timeout: int = 30


@dataclass
class LoggingConfig:
    """Configuration for log files."""
    log_level: str = ""
    max_log_files: int = 5
    logs_folder: str = "logs"  # Relative paths resolve against the settings file folder


@dataclass
class NotificationConfig:
    """Configuration for notification settings."""
    webhook_url: str = ""
    webhook_level: str = "summary"


def migrate_legacy_settings(settings: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """Migrate older settings layouts to the current format.

    Handles:
    - top-level "jellyfin" section plus "username" -> "media_server",
      with Sonarr in episode mode as before
    - "base_url" keys -> "url"
    - "unmonitor" -> "unmonitor_watched"
    - "download_clients" as an object keyed by client type
      ({"qbittorrent": {...}, "deluge": {...}}) -> list of named clients

    Returns:
        Tuple of (updated_settings, was_migrated).
    """
    migrated = False

    if "media_server" not in settings and isinstance(settings.get("jellyfin"), dict):
        media_server = dict(settings.pop("jellyfin"))
        media_server["type"] = JELLYFIN
        if "username" in settings:
            media_server.setdefault("username", settings.pop("username"))
        settings["media_server"] = media_server
        # The old layout always cleaned Sonarr episode by episode
        if isinstance(settings.get("sonarr"), dict):
            settings["sonarr"].setdefault("mode", "episodes")
        migrated = True

    for section_name in ("media_server",) + MANAGER_SECTIONS:
        section = settings.get(section_name)
        if isinstance(section, dict):
            if "base_url" in section and "url" not in section:
                section["url"] = section.pop("base_url")
                migrated = True
            if "unmonitor" in section and "unmonitor_watched" not in section:
                section["unmonitor_watched"] = section.pop("unmonitor")
                migrated = True

    clients = settings.get("download_clients")
    if isinstance(clients, dict):
        converted = []
        for client_type, client in clients.items():
            if not client:
                continue
            entry = dict(client)
            entry.setdefault("name", client_type)
            entry.setdefault("type", client_type)
            if "base_url" in entry and "url" not in entry:
                entry["url"] = entry.pop("base_url")
            converted.append(entry)
        settings["download_clients"] = converted
        migrated = True

    if migrated:
        logging.info("Migrated legacy settings layout to the current format")
    return settings, migrated


class ConfigManager:
    """Manages application configuration loading and validation."""

    def __init__(self, config_file: str = DEFAULT_CONFIG_FILE):
        self.config_file = Path(config_file)
        self.settings_data: Dict[str, Any] = {}
        self.media_server = MediaServerConfig()
        self.managers: List[ManagerConfig] = []
        self.download_clients: List[DownloadClientConfig] = []
        self.performance = PerformanceConfig()
        self.logging = LoggingConfig()
        self.notification = NotificationConfig()
        self.data_folder = self.config_file.resolve().parent
        self.logging.logs_folder = str(self.data_folder / "logs")
        self._settings_migrated = False

    def load_config(self) -> None:
        """Load configuration from file and validate."""
        logging.debug(f"Loading configuration from: {self.config_file}")

        if not self.config_file.exists():
            logging.error(f"Settings file not found: {self.config_file}")
            raise FileNotFoundError(f"Settings file not found: {self.config_file}")

        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                self.settings_data = json.load(f)
            logging.debug("Configuration file loaded successfully")
        except json.JSONDecodeError as e:
            logging.error(f"Invalid JSON in settings file: {type(e).__name__}: {e}")
            raise ValueError(f"Invalid JSON in settings file: {e}")

        self.load_settings(self.settings_data)

    def load_settings(self, settings: Dict[str, Any]) -> None:
        """Validate and load an already parsed settings dictionary."""
        if not isinstance(settings, dict):
            raise TypeError(f"Settings must be a JSON object, got {type(settings).__name__}")
        self.settings_data, self._settings_migrated = migrate_legacy_settings(settings)

        logging.debug("Processing configuration...")
        self._validate_required_fields()
        self._validate_types()
        self._load_all_configs()
        self._validate_values()
        logging.debug("Configuration loaded and validated successfully")

    def _load_all_configs(self) -> None:
        """Load all configuration sections."""
        self._load_media_server_config()
        self._load_manager_configs()
        self._load_download_client_configs()
        self._load_performance_config()
        self._load_logging_config()
        self._load_notification_config()

    def _load_media_server_config(self) -> None:
        """Load media server configuration."""
        section = self.settings_data['media_server']
        self.media_server.server_type = section.get('type', JELLYFIN).lower()
        self.media_server.url = section['url']
        self.media_server.api_key = section.get('api_key', '')
        self.media_server.token = section.get('token', '')
        self.media_server.username = section.get('username', '')
        self.media_server.protect_favorites = section.get('protect_favorites', True)
        self.media_server.valid_sections = section.get('valid_sections', [])

    def _load_manager_configs(self) -> None:
        """Load Radarr and Sonarr configuration."""
        self.managers = []
        for name in MANAGER_SECTIONS:
            section = self.settings_data.get(name)
            if not section:
                continue
            manager = ManagerConfig(
                name=name,
                url=section.get('url', ''),
                api_key=section.get('api_key', ''),
                enabled=section.get('enabled', True),
                retention_period=str(section.get('retention_period', '') or ''),
                tags_to_keep=list(section.get('tags_to_keep', [])),
                unmonitor_watched=section.get('unmonitor_watched', False),
                mode=str(section.get('mode') or MANAGER_MODES[name][0]).lower(),
            )
            if not manager.enabled:
                logging.debug(f"{name} is disabled, skipping")
                continue
            self.managers.append(manager)

    def _load_download_client_configs(self) -> None:
        """Load download client configuration."""
        self.download_clients = []
        for index, client in enumerate(self.settings_data.get('download_clients', [])):
            client_type = normalize_kind(client.get('type', ''))
            self.download_clients.append(DownloadClientConfig(
                name=client.get('name') or f"{client_type}-{index + 1}",
                client_type=client_type,
                url=client.get('url', ''),
                username=client.get('username', ''),
                password=client.get('password', ''),
            ))
        if not self.download_clients:
            logging.warning("No download clients configured, transfers will not be removed")

    def _load_performance_config(self) -> None:
        """Load performance-related configuration."""
        section = self.settings_data.get('performance', {})
        self.performance.max_concurrent_deletions = section.get('max_concurrent_deletions', 4)
        self.performance.max_concurrent_fetches = section.get('max_concurrent_fetches', 4)
        self.performance.request_timeout = section.get('request_timeout', 30)

    def _load_logging_config(self) -> None:
        """Load logging configuration."""
        section = self.settings_data.get('logging', {})
        self.logging.log_level = section.get('log_level', '')
        self.logging.max_log_files = section.get('max_log_files', 5)
        logs_folder = section.get('logs_folder')
        if logs_folder:
            self.logging.logs_folder = str(self.data_folder / Path(logs_folder).expanduser())

    def _load_notification_config(self) -> None:
        """Load notification-related configuration."""
        section = self.settings_data.get('notification', {})
        self.notification.webhook_url = section.get('webhook_url', '')
        self.notification.webhook_level = section.get('webhook_level', 'summary')

    def _validate_required_fields(self) -> None:
        """Validate that all required fields exist in the configuration."""
        logging.debug("Validating required fields...")
        missing_fields = []

        media_server = self.settings_data.get('media_server')
        if not isinstance(media_server, dict):
            missing_fields.append('media_server')
        elif 'url' not in media_server:
            missing_fields.append('media_server.url')

        if not any(self.settings_data.get(name) for name in MANAGER_SECTIONS):
            missing_fields.append('radarr or sonarr')
        for name in MANAGER_SECTIONS:
            section = self.settings_data.get(name)
            if isinstance(section, dict) and section.get('enabled', True):
                missing_fields.extend(
                    f"{name}.{key}" for key in ('url', 'api_key') if key not in section
                )

        if missing_fields:
            logging.error(f"Missing required fields in settings: {missing_fields}")
            raise ValueError(f"Missing required fields in settings: {missing_fields}")

        logging.debug("Required fields validation successful")

    def _validate_types(self) -> None:
        """Validate that configuration values have correct types."""
        logging.debug("Validating configuration types...")

        type_checks = {
            'media_server.url': str,
            'media_server.api_key': str,
            'media_server.token': str,
            'media_server.username': str,
            'media_server.protect_favorites': bool,
            'media_server.valid_sections': list,
            'download_clients': list,
            'performance.max_concurrent_deletions': int,
            'performance.max_concurrent_fetches': int,
            'performance.request_timeout': (int, float),
            'logging.max_log_files': int,
            'logging.logs_folder': str,
            'notification.webhook_url': str,
        }
        for name in MANAGER_SECTIONS:
            type_checks.update({
                f'{name}': dict,
                f'{name}.url': str,
                f'{name}.api_key': str,
                f'{name}.enabled': bool,
                f'{name}.retention_period': (str, int),
                f'{name}.tags_to_keep': list,
                f'{name}.unmonitor_watched': bool,
                f'{name}.mode': str,
            })

        type_errors = []
        for field_path, expected_type in type_checks.items():
            found, value = self._lookup(field_path)
            if not found:
                continue
            # bool is an int subclass, never accept it for numeric settings
            is_bool_for_number = isinstance(value, bool) and expected_type is not bool
            if not isinstance(value, expected_type) or is_bool_for_number:
                expected_name = (
                    expected_type.__name__ if isinstance(expected_type, type)
                    else " or ".join(t.__name__ for t in expected_type)
                )
                type_errors.append(f"'{field_path}' expected {expected_name}, got {type(value).__name__}")

        for index, client in enumerate(self.settings_data.get('download_clients', []) or []):
            if not isinstance(client, dict):
                type_errors.append(f"'download_clients[{index}]' expected dict, got {type(client).__name__}")

        if type_errors:
            error_msg = "Type validation errors: " + "; ".join(type_errors)
            logging.error(error_msg)
            raise TypeError(error_msg)

        logging.debug("Type validation successful")

    def _validate_values(self) -> None:
        """Validate configuration value ranges and constraints."""
        logging.debug("Validating configuration values...")
        errors = []

        server = self.media_server
        if server.server_type not in MEDIA_SERVER_TYPES:
            errors.append(f"'media_server.type' must be one of {list(MEDIA_SERVER_TYPES)}, got '{server.server_type}'")
        if not server.url.strip():
            errors.append("'media_server.url' cannot be empty")
        if server.server_type == JELLYFIN:
            if not server.api_key.strip():
                errors.append("'media_server.api_key' cannot be empty for Jellyfin")
            if not server.username.strip():
                errors.append("'media_server.username' cannot be empty for Jellyfin")
        elif server.server_type == PLEX and not server.token.strip():
            errors.append("'media_server.token' cannot be empty for Plex")

        if not self.managers:
            errors.append("at least one of 'radarr' or 'sonarr' must be enabled")
        for manager in self.managers:
            if not manager.url.strip():
                errors.append(f"'{manager.name}.url' cannot be empty")
            if not manager.api_key.strip():
                errors.append(f"'{manager.name}.api_key' cannot be empty")
            if manager.mode not in MANAGER_MODES[manager.name]:
                errors.append(
                    f"'{manager.name}.mode' must be one of {list(MANAGER_MODES[manager.name])}, got '{manager.mode}'"
                )
            try:
                manager.retention = parse_duration(manager.retention_period)
            except ValueError as e:
                errors.append(f"'{manager.name}.retention_period': {e}")
                continue
            if not manager.retention_period:
                logging.warning(
                    f"No retention period configured for {manager.name}, "
                    f"watched items are deleted immediately"
                )

        seen_names = set()
        for client in self.download_clients:
            if client.client_type not in CLIENT_TYPES:
                errors.append(f"download client '{client.name}' has unknown type '{client.client_type}'")
            if not client.url.strip():
                errors.append(f"download client '{client.name}' has no url")
            if client.name.lower() in seen_names:
                errors.append(f"download client name '{client.name}' is used more than once")
            seen_names.add(client.name.lower())

        positive_int_fields = {
            'max_concurrent_deletions': self.performance.max_concurrent_deletions,
            'max_concurrent_fetches': self.performance.max_concurrent_fetches,
            'request_timeout': self.performance.request_timeout,
        }
        for name, value in positive_int_fields.items():
            if value <= 0:
                errors.append(f"'performance.{name}' must be positive, got {value}")

        level = (self.notification.webhook_level or '').lower()
        if self.notification.webhook_url and level not in NOTIFICATION_LEVELS:
            errors.append(f"'notification.webhook_level' must be one of {list(NOTIFICATION_LEVELS)}")

        if errors:
            error_msg = "Configuration validation errors: " + "; ".join(errors)
            logging.error(error_msg)
            raise ValueError(error_msg)

        logging.debug("Value validation successful")

    def _lookup(self, field_path: str) -> Tuple[bool, Any]:
        """Find a dotted setting ('radarr.url'). Returns (found, value)."""
        value: Any = self.settings_data
        for key in field_path.split('.'):
            if not isinstance(value, dict) or key not in value:
                return False, None
            value = value[key]
        return True, value

    def get_manager(self, name: str) -> Optional[ManagerConfig]:
        for manager in self.managers:
            if manager.name == name:
                return manager
        return None

    def get_lock_file(self) -> Path:
        """Get the path for the instance lock file."""
        return self.data_folder / "arrsweep.lock"
