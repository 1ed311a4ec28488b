"""
Deletion decision engine.

Joins one library item with its watch record and the retention policy of its
media kind. Pure functions only: no I/O, deterministic for a given `now`.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from core.models import (
    MediaItem, MediaKind, Outcome, Reason, RetentionPolicy, Verdict, WatchRecord
)


def format_remaining(remaining: timedelta) -> str:
    """Render a remaining retention time as 'N days', 'N hours' or 'N minutes'."""
    if remaining <= timedelta(0):
        return "0"

    def plural(value: int, unit: str) -> str:
        return f"{value} {unit}{'s' if value > 1 else ''}"

    days = remaining.days
    if days > 0:
        return plural(days, "day")
    hours = int(remaining.total_seconds() // 3600)
    if hours > 0:
        return plural(hours, "hour")
    minutes = int(remaining.total_seconds() // 60)
    return plural(minutes, "minute")


def evaluate(item: MediaItem, record: Optional[WatchRecord],
             policy: RetentionPolicy, now: datetime) -> Verdict:
    """Produce exactly one Verdict for an item. First matching rule wins.

    The watch record is the only source of the watched timestamp:
    item.watched_at is ignored here. evaluate_all copies the record's
    timestamp onto the item so verdicts report it.

    Args:
        item: Library item from the collection manager snapshot.
        record: Correlated watch record, or None if the media server has none.
        policy: Retention policy for the item's media kind.
        now: Reference time (timezone-aware).

    Returns:
        Verdict with outcome and reason.
    """
    if record is None or not record.fully_watched or record.watched_at is None:
        return Verdict(item, Outcome.KEEP, Reason.NOT_WATCHED)

    if policy.is_exempt(item.tags):
        exempt = sorted(policy.exempt_tags & item.tags)
        return Verdict(item, Outcome.KEEP, Reason.TAG_EXEMPT, f"tags {exempt}")

    elapsed = now - record.watched_at
    if elapsed < policy.retention:
        left = format_remaining(policy.retention - elapsed)
        return Verdict(item, Outcome.KEEP, Reason.WITHIN_RETENTION, f"{left} left")

    if not item.file_refs:
        return Verdict(item, Outcome.KEEP, Reason.NOT_ON_DISK)

    if item.still_airing:
        return Verdict(item, Outcome.KEEP, Reason.STILL_AIRING)

    return Verdict(item, Outcome.DELETE, Reason.ELIGIBLE)


def index_records(records: Iterable[WatchRecord]) -> Dict[Tuple[MediaKind, str], WatchRecord]:
    """Index watch records by correlation key, keeping the latest watch per key."""
    index: Dict[Tuple[MediaKind, str], WatchRecord] = {}
    for record in records:
        key = record.correlation_key
        current = index.get(key)
        if current is None or _later(record, current):
            index[key] = record
    return index


def _later(candidate: WatchRecord, current: WatchRecord) -> bool:
    if candidate.watched_at is None:
        return False
    if current.watched_at is None:
        return True
    return candidate.watched_at > current.watched_at


def evaluate_all(items: Iterable[MediaItem],
                 records: Dict[Tuple[MediaKind, str], WatchRecord],
                 policy: RetentionPolicy,
                 now: Optional[datetime] = None) -> List[Verdict]:
    """Evaluate every item of one library snapshot.

    Items carry the watched timestamp of their record into the verdict.
    """
    now = now or datetime.now(timezone.utc)
    verdicts = []
    for item in items:
        key = item.correlation_key
        record = records.get(key) if key else None
        if record is not None and record.watched_at is not None:
            item = _with_watched_at(item, record.watched_at)
        verdict = evaluate(item, record, policy, now)
        if verdict.reason is Reason.WITHIN_RETENTION:
            logging.debug(f"[DECISION] Retention for '{item.title}' not yet passed ({verdict.detail}), keeping")
        elif verdict.reason is Reason.TAG_EXEMPT:
            logging.debug(f"[DECISION] '{item.title}' has protected {verdict.detail}, keeping")
        verdicts.append(verdict)
    return verdicts


def _with_watched_at(item: MediaItem, watched_at: datetime) -> MediaItem:
    # MediaItem is frozen; the snapshot itself is never touched
    return replace(item, watched_at=watched_at)
