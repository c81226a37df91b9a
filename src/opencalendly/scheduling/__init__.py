"""Availability and team scheduling engines."""

from opencalendly.scheduling.availability import (
    AvailabilityOverride,
    AvailabilityRule,
    InvalidParameterError,
    OverrideWindow,
    Slot,
    compute_slots,
)
from opencalendly.scheduling.team import (
    RoundRobinSelection,
    TeamAvailability,
    TeamMemberAvailability,
    TeamSchedulingMode,
    choose_round_robin_assignee,
    compute_team_availability_slots,
)
from opencalendly.scheduling.time_range import (
    BusyWindow,
    ExistingBooking,
    TimeRange,
    busy_windows_from_bookings,
)

__all__ = [
    "AvailabilityOverride",
    "AvailabilityRule",
    "BusyWindow",
    "ExistingBooking",
    "InvalidParameterError",
    "OverrideWindow",
    "RoundRobinSelection",
    "Slot",
    "TeamAvailability",
    "TeamMemberAvailability",
    "TeamSchedulingMode",
    "TimeRange",
    "busy_windows_from_bookings",
    "choose_round_robin_assignee",
    "compute_slots",
    "compute_team_availability_slots",
]
