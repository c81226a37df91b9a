"""Half-open time interval primitives shared by the scheduling engines.

Every instant handled here is a timezone-aware ``datetime`` normalized to UTC.
Timezones only matter when recurring rules are expanded into instants (see
:mod:`opencalendly.scheduling.availability`); once a value is a ``TimeRange``
it is compared purely as a UTC instant pair.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CONFIRMED_BOOKING_STATUS = "confirmed"


def ensure_utc(value: datetime) -> datetime:
    """Return *value* converted to UTC; naive datetimes are rejected."""
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError("datetime must be timezone-aware")
    return value.astimezone(UTC)


def overlaps(
    a_start: datetime,
    a_end: datetime,
    b_start: datetime,
    b_end: datetime,
) -> bool:
    """Half-open overlap test: ranges that only touch do not overlap."""
    return a_start < b_end and b_start < a_end


class TimeRange(BaseModel):
    """Half-open ``[starts_at, ends_at)`` interval in UTC."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    starts_at: datetime
    ends_at: datetime

    @field_validator("starts_at", "ends_at")
    @classmethod
    def _normalize_instant(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> TimeRange:
        if self.ends_at <= self.starts_at:
            raise ValueError("ends_at must be after starts_at")
        return self

    @property
    def duration(self) -> timedelta:
        return self.ends_at - self.starts_at

    def overlaps(self, other: TimeRange) -> bool:
        return overlaps(self.starts_at, self.ends_at, other.starts_at, other.ends_at)

    def contains(self, other: TimeRange) -> bool:
        return self.starts_at <= other.starts_at and other.ends_at <= self.ends_at


class BusyWindow(TimeRange):
    """A blocked interval from a local booking or a synced provider event."""


class ExistingBooking(BaseModel):
    """A booking already on the organizer's calendar.

    Only confirmed bookings block time. The buffers recorded on the booking
    widen the interval it blocks, so a new slot cannot sit inside the prep or
    wrap-up time of an earlier booking.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    starts_at: datetime
    ends_at: datetime
    status: str = CONFIRMED_BOOKING_STATUS
    buffer_before_minutes: int = Field(default=0, ge=0)
    buffer_after_minutes: int = Field(default=0, ge=0)

    @field_validator("starts_at", "ends_at")
    @classmethod
    def _normalize_instant(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> ExistingBooking:
        if self.ends_at <= self.starts_at:
            raise ValueError("ends_at must be after starts_at")
        return self

    @property
    def is_confirmed(self) -> bool:
        return self.status == CONFIRMED_BOOKING_STATUS

    def to_busy_window(self) -> BusyWindow:
        return BusyWindow(
            starts_at=self.starts_at - timedelta(minutes=self.buffer_before_minutes),
            ends_at=self.ends_at + timedelta(minutes=self.buffer_after_minutes),
        )


def busy_windows_from_bookings(bookings: Iterable[ExistingBooking]) -> list[BusyWindow]:
    """Convert confirmed bookings into buffered busy windows."""
    return [booking.to_busy_window() for booking in bookings if booking.is_confirmed]


def merge_overlapping(ranges: Iterable[tuple[datetime, datetime]]) -> list[tuple[datetime, datetime]]:
    """Merge strictly overlapping ``(start, end)`` pairs.

    Touching pairs stay separate so slicing each one keeps its own alignment.
    """
    merged: list[tuple[datetime, datetime]] = []
    for start, end in sorted(ranges):
        if merged and start < merged[-1][1]:
            previous_start, previous_end = merged[-1]
            merged[-1] = (previous_start, max(previous_end, end))
        else:
            merged.append((start, end))
    return merged
