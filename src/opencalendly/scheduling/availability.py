"""Availability slot computation.

Expands an organizer's recurring weekly rules and date-specific overrides into
bookable slots for a requested range:

- Rules are expressed as minute-of-day in the organizer's own timezone and are
  turned into UTC instants per calendar date through ``zoneinfo``, so DST days
  keep their wall-clock meaning.
- An override for a date replaces every rule for that date. An override with
  no windows blocks the date entirely; a date without an override falls back
  to the rules.
- Buffers shrink the open window at each edge; they never extend it.
- Slots are sliced back to back from the start of each window and discarded
  when they overlap a busy window (local bookings or synced provider events).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from opencalendly.scheduling.time_range import TimeRange, ensure_utc, merge_overlapping, overlaps

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 1440
MAX_RANGE_DAYS = 30


class InvalidParameterError(ValueError):
    """Raised when a slot computation request is malformed.

    Covers unparseable range starts, unknown timezones, non-positive
    durations and day counts outside the accepted range. Never retried; reported straight to the caller.
    """


class _MinuteWindow(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    start_minute: int = Field(ge=0, le=MINUTES_PER_DAY - 1)
    end_minute: int = Field(ge=0, le=MINUTES_PER_DAY - 1)
    buffer_before_minutes: int = Field(default=0, ge=0)
    buffer_after_minutes: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_order(self) -> _MinuteWindow:
        if self.end_minute <= self.start_minute:
            raise ValueError("end_minute must be greater than start_minute")
        return self


class AvailabilityRule(_MinuteWindow):
    """Recurring weekly open window. ``day_of_week`` 0 is Sunday."""

    day_of_week: int = Field(ge=0, le=6)


class OverrideWindow(_MinuteWindow):
    """Open (or, with ``is_available=False``, blocked) window on one date."""

    is_available: bool = True


class AvailabilityOverride(BaseModel):
    """Date-scoped windows that supersede the recurring rules for that date."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    override_date: date
    windows: tuple[OverrideWindow, ...] = ()


class Slot(BaseModel):
    """A bookable interval; ``assignment_user_ids`` is filled by team scheduling."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    starts_at: datetime
    ends_at: datetime
    assignment_user_ids: tuple[str, ...] = ()

    @field_validator("starts_at", "ends_at")
    @classmethod
    def _normalize_instant(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def key(self) -> tuple[datetime, datetime]:
        return (self.starts_at, self.ends_at)


def day_of_week(value: date) -> int:
    """Sunday-based day index (0=Sunday .. 6=Saturday)."""
    return value.isoweekday() % 7


def resolve_timezone(timezone: str) -> ZoneInfo:
    if not isinstance(timezone, str) or not timezone.strip():
        raise InvalidParameterError("timezone must be a non-empty IANA zone name")
    try:
        return ZoneInfo(timezone.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidParameterError(f"Unknown timezone: {timezone!r}") from exc


def parse_range_start(value: str | date | datetime, zone: tzinfo) -> datetime:
    """Resolve a range start to an aware datetime.

    Bare dates and naive datetimes are read in *zone*; ISO strings with an
    offset (or ``Z``) keep their own offset.
    """
    if isinstance(value, str):
        raw = value.strip()
        try:
            if len(raw) == 10:
                value = date.fromisoformat(raw)
            else:
                value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError as exc:
            raise InvalidParameterError(f"range_start is not a valid ISO-8601 value: {raw!r}") from exc

    if isinstance(value, datetime):
        if value.tzinfo is None or value.utcoffset() is None:
            return value.replace(tzinfo=zone)
        return value
    if isinstance(value, date):
        return datetime.combine(value, time(0), tzinfo=zone)
    raise InvalidParameterError("range_start must be an ISO-8601 string, date or datetime")


def _require_int(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameterError(f"{name} must be an integer")
    return value


def _local_instant(day: date, minute: int, zone: tzinfo) -> datetime:
    # Wall-clock addition from local midnight, then resolved by the zone.
    local = datetime.combine(day, time(0), tzinfo=zone) + timedelta(minutes=minute)
    return local.astimezone(UTC)


def _open_windows_for_date(
    day: date,
    zone: tzinfo,
    rules_by_day: dict[int, list[AvailabilityRule]],
    overrides_by_date: dict[date, AvailabilityOverride],
) -> tuple[list[tuple[datetime, datetime]], list[tuple[datetime, datetime]]]:
    """Return ``(open, blocked)`` UTC windows for one local date, open already shrunk."""
    override = overrides_by_date.get(day)
    if override is not None:
        sources: Sequence[_MinuteWindow] = [w for w in override.windows if w.is_available]
        blocked = [
            (_local_instant(day, w.start_minute, zone), _local_instant(day, w.end_minute, zone))
            for w in override.windows
            if not w.is_available
        ]
    else:
        sources = rules_by_day.get(day_of_week(day), [])
        blocked = []

    shrunk: list[tuple[datetime, datetime]] = []
    for window in sources:
        start = _local_instant(day, window.start_minute, zone) + timedelta(
            minutes=window.buffer_before_minutes
        )
        end = _local_instant(day, window.end_minute, zone) - timedelta(
            minutes=window.buffer_after_minutes
        )
        if end > start:
            shrunk.append((start, end))

    return merge_overlapping(shrunk), blocked


def compute_slots(
    *,
    range_start: str | date | datetime,
    days: int,
    duration_minutes: int,
    timezone: str,
    rules: Sequence[AvailabilityRule],
    overrides: Sequence[AvailabilityOverride] = (),
    busy_windows: Iterable[TimeRange] = (),
    max_days: int = MAX_RANGE_DAYS,
) -> list[Slot]:
    """Compute bookable slots for one subject.

    Args:
        range_start: First instant (or local date) of the requested range.
        days: Number of calendar days covered; ``0`` yields an empty result.
        duration_minutes: Length of every emitted slot.
        timezone: IANA zone the rules and overrides are expressed in.
        rules: Recurring weekly windows; several per weekday are unioned.
        overrides: Date-specific windows replacing the rules for their date.
        busy_windows: Local bookings and synced external busy windows.
        max_days: Largest accepted ``days``; longer ranges are rejected.

    Returns:
        Non-overlapping slots in chronological order.

    Raises:
        InvalidParameterError: on a bad timezone, range start, day count or duration,
            or a range that runs past the last representable date.
    """
    duration_minutes = _require_int("duration_minutes", duration_minutes)
    days = _require_int("days", days)
    if duration_minutes <= 0:
        raise InvalidParameterError("duration_minutes must be positive")
    if days < 0:
        raise InvalidParameterError("days must not be negative")
    if days > max_days:
        raise InvalidParameterError(f"days must not exceed {max_days}")

    zone = resolve_timezone(timezone)
    parsed_start = parse_range_start(range_start, zone)
    if days == 0:
        return []

    rules_by_day: dict[int, list[AvailabilityRule]] = {}
    for rule in rules:
        rules_by_day.setdefault(rule.day_of_week, []).append(rule)
    overrides_by_date = {override.override_date: override for override in overrides}
    busy = [(w.starts_at, w.ends_at) for w in busy_windows]

    try:
        slots = _collect_slots(
            local_start=parsed_start.astimezone(zone),
            days=days,
            duration=timedelta(minutes=duration_minutes),
            zone=zone,
            rules_by_day=rules_by_day,
            overrides_by_date=overrides_by_date,
            busy=busy,
        )
    except OverflowError as exc:
        raise InvalidParameterError("requested range runs past the supported date range") from exc

    logger.debug(
        "Computed %d slot(s) over %d day(s) in %s (duration=%dm, busy=%d)",
        len(slots),
        days,
        zone.key,
        duration_minutes,
        len(busy),
    )
    return slots


def _collect_slots(
    *,
    local_start: datetime,
    days: int,
    duration: timedelta,
    zone: ZoneInfo,
    rules_by_day: dict[int, list[AvailabilityRule]],
    overrides_by_date: dict[date, AvailabilityOverride],
    busy: list[tuple[datetime, datetime]],
) -> list[Slot]:
    range_start_utc = local_start.astimezone(UTC)
    range_end_utc = (local_start + timedelta(days=days)).astimezone(UTC)

    slots: list[Slot] = []
    first_day = local_start.date()
    last_day = range_end_utc.astimezone(zone).date()
    # Offsets from the first day; incrementing past date.max would overflow.
    for offset in range((last_day - first_day).days + 1):
        day = first_day + timedelta(days=offset)
        open_windows, blocked = _open_windows_for_date(day, zone, rules_by_day, overrides_by_date)
        unavailable = busy + blocked
        for window_start, window_end in open_windows:
            slot_start = window_start
            while slot_start + duration <= window_end:
                slot_end = slot_start + duration
                if (
                    range_start_utc <= slot_start
                    and slot_end <= range_end_utc
                    and not any(overlaps(slot_start, slot_end, b_start, b_end) for b_start, b_end in unavailable)
                ):
                    slots.append(Slot(starts_at=slot_start, ends_at=slot_end))
                slot_start = slot_end

    slots.sort(key=lambda slot: slot.starts_at)
    return slots
