"""
Shared HTTP plumbing for the backend API clients.
Wraps a requests.Session with a base URL, default headers and a timeout,
and converts transport failures and non-2xx responses into ApiError.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import requests

from core.exceptions import ApiError

# Default per-request timeout (seconds)
DEFAULT_TIMEOUT = 30

# Cap on how much of an error body ends up in log messages
MAX_ERROR_BODY = 300


class ApiClient:
    """Base class for JSON HTTP API clients."""

    # Short tag used in log lines, e.g. "RADARR"
    log_tag = "HTTP"

    def __init__(self, base_url: str, headers: Optional[Dict[str, str]] = None,
                 timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None):
        if not base_url.endswith("/"):
            base_url += "/"
        self.base_url = base_url
        self.timeout = timeout
        self.session = session or requests.Session()
        if headers:
            self.session.headers.update(headers)

    def url(self, path: str) -> str:
        return urljoin(self.base_url, path.lstrip("/"))

    def request(self, method: str, path: str, **kwargs) -> requests.Response:
        """Send a request and return the response, raising ApiError on failure."""
        url = self.url(path)
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.exceptions.Timeout as e:
            raise ApiError(f"{method} {url} timed out after {kwargs['timeout']}s: {e}")
        except requests.exceptions.RequestException as e:
            raise ApiError(f"{method} {url} failed: {e}")

        if not response.ok:
            body = (response.text or "")[:MAX_ERROR_BODY]
            raise ApiError(
                f"{method} {url} failed with status {response.status_code}: {body}",
                status_code=response.status_code,
            )
        logging.debug(f"[{self.log_tag}] {method} {url} -> {response.status_code}")
        return response

    def get_json(self, path: str, params: Any = None) -> Any:
        response = self.request("GET", path, params=params)
        try:
            return response.json()
        except ValueError as e:
            raise ApiError(f"GET {self.url(path)} returned invalid JSON: {e}")


_FRACTION_RE = re.compile(r"\.(\d+)")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp from an API into an aware UTC datetime.

    Handles the 'Z' suffix and the 7-digit fractions Jellyfin emits.
    Returns None for empty or unparseable values.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logging.debug(f"Failed to parse timestamp '{value}'")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
