"""
Exception types for ArrSweep.

Errors stay local to the smallest unit that can continue without them:
a DeletionError affects one item, a FetchError one collection manager,
and only a failed watch-state fetch ends the whole pass.
"""

from typing import Optional


class ArrSweepError(Exception):
    """Base class for all ArrSweep errors."""


class ApiError(ArrSweepError):
    """A request to a backend failed (transport error or non-2xx status)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class FetchError(ArrSweepError):
    """A snapshot (watch state or library) could not be built."""

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


class ResolutionError(ArrSweepError):
    """History lookup for an item failed. Treated as 'no transfer found'."""


class DeletionError(ArrSweepError):
    """Removing an item from its manager or its transfer from a client failed."""

    def __init__(self, step: str, message: str):
        super().__init__(f"{step} failed: {message}")
        self.step = step
