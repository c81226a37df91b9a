"""Busy-window sync from external calendars.

Providers report busy intervals as ISO strings. Entries that fail to parse or
whose end is not after their start are dropped here, before anything reaches
the availability engine as a :class:`BusyWindow`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta

from opencalendly.calendar.providers.base import BusyWindowFetcher, RawBusyWindow, parse_iso_instant
from opencalendly.scheduling.availability import InvalidParameterError
from opencalendly.scheduling.time_range import BusyWindow, ensure_utc

logger = logging.getLogger(__name__)

DEFAULT_SYNC_WINDOW_DAYS = 30
MAX_SYNC_WINDOW_DAYS = 90


def _parse_bound(name: str, value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            raise InvalidParameterError(f"Sync range {name} must be timezone-aware.")
        return ensure_utc(value)
    parsed = parse_iso_instant(value)
    if parsed is None:
        raise InvalidParameterError(f"Sync range {name} is invalid.")
    return parsed


def resolve_sync_range(
    now: datetime,
    start: str | datetime | None = None,
    end: str | datetime | None = None,
    *,
    default_days: int = DEFAULT_SYNC_WINDOW_DAYS,
    max_days: int = MAX_SYNC_WINDOW_DAYS,
) -> tuple[datetime, datetime]:
    """Resolve the UTC window to pull busy time for.

    Defaults to ``[now, now + 30 days)``. The end must follow the start and
    the window may not exceed 90 days.
    """
    range_start = _parse_bound("start", start) if start is not None else ensure_utc(now)
    range_end = (
        _parse_bound("end", end) if end is not None else range_start + timedelta(days=default_days)
    )

    if range_end <= range_start:
        raise InvalidParameterError("Sync range end must be after start.")
    if range_end - range_start > timedelta(days=max_days):
        raise InvalidParameterError(f"Sync range cannot exceed {max_days} days.")
    return range_start, range_end


def normalize_busy_windows(raw_windows: Iterable[RawBusyWindow]) -> list[BusyWindow]:
    windows: list[BusyWindow] = []
    dropped = 0
    for raw in raw_windows:
        starts_at = parse_iso_instant(raw.start)
        ends_at = parse_iso_instant(raw.end)
        if starts_at is None or ends_at is None or ends_at <= starts_at:
            dropped += 1
            continue
        windows.append(BusyWindow(starts_at=starts_at, ends_at=ends_at))
    if dropped:
        logger.debug("Dropped %d unusable busy window(s) from provider payload", dropped)
    return windows


async def sync_busy_windows(
    fetcher: BusyWindowFetcher,
    *,
    access_token: str,
    start: datetime,
    end: datetime,
) -> list[BusyWindow]:
    """Fetch and normalize busy windows. Provider failures propagate."""
    raw_windows = await fetcher.fetch_busy_windows(access_token, start, end)
    windows = normalize_busy_windows(raw_windows)
    logger.info(
        "Synced %d busy window(s) for %s .. %s",
        len(windows),
        start.isoformat(),
        end.isoformat(),
    )
    return windows
