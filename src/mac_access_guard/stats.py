from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable

from .allowlist import AccessType, WhitelistEntry, parse_timestamp, utc_now


def seen_within(entry: WhitelistEntry, window: timedelta, now: datetime) -> bool:
    seen = parse_timestamp(entry.last_seen)
    return seen is not None and now - seen <= window


def compute_statistics(entries: Iterable[WhitelistEntry], now: datetime | None = None) -> dict:
    """Derived from the entry set alone; never read back from storage."""
    now = now or utc_now()
    entries = list(entries)
    by_type = {t.value: 0 for t in AccessType}
    for e in entries:
        by_type[e.access_type.value] += 1

    return {
        "total": len(entries),
        "active": sum(1 for e in entries if e.active),
        "inactive": sum(1 for e in entries if not e.active),
        "activeLast24h": sum(1 for e in entries if seen_within(e, timedelta(hours=24), now)),
        "activeLast7d": sum(1 for e in entries if seen_within(e, timedelta(days=7), now)),
        "neverUsed": sum(1 for e in entries if not e.last_seen),
        "totalAccesses": sum(e.access_count for e in entries),
        "byAccessType": by_type,
    }
