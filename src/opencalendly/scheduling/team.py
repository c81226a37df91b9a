"""Team scheduling: round-robin assignment and collective availability.

Each member's slots are computed independently with their own timezone,
rules, overrides and bookings, then combined:

- ``collective``: only timestamps every member has free; all members attend.
- ``round_robin``: every timestamp any member has free, each assigned to one
  member by a rotating cursor walked in strict chronological order.

The round-robin cursor is plain input/output; persisting it between requests
belongs to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Sequence
from datetime import date, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from opencalendly.scheduling.availability import (
    MAX_RANGE_DAYS,
    AvailabilityOverride,
    AvailabilityRule,
    InvalidParameterError,
    Slot,
    compute_slots,
)
from opencalendly.scheduling.time_range import BusyWindow

logger = logging.getLogger(__name__)


class TeamSchedulingMode(StrEnum):
    ROUND_ROBIN = "round_robin"
    COLLECTIVE = "collective"


class TeamMemberAvailability(BaseModel):
    """One member's scheduling inputs, evaluated independently of the team."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    user_id: str = Field(min_length=1)
    timezone: str
    rules: tuple[AvailabilityRule, ...] = ()
    overrides: tuple[AvailabilityOverride, ...] = ()
    bookings: tuple[BusyWindow, ...] = ()


class RoundRobinSelection(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    assignee_user_id: str
    next_cursor: int


class TeamAvailability(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    slots: tuple[Slot, ...]
    final_cursor: int


def _normalize_cursor(cursor: int, total: int) -> int:
    if total <= 0:
        return 0
    return cursor % total


def choose_round_robin_assignee(
    *,
    ordered_member_ids: Sequence[str],
    available_member_ids: Collection[str],
    cursor: int,
) -> RoundRobinSelection | None:
    """Pick the next available member starting at ``cursor``.

    Scans ``ordered_member_ids`` circularly from ``cursor mod len``; the first
    id also in ``available_member_ids`` wins and the cursor moves just past it.
    Returns ``None`` when a full circle finds nobody available.
    """
    total = len(ordered_member_ids)
    if total == 0:
        return None

    available = set(available_member_ids)
    start = _normalize_cursor(cursor, total)
    for offset in range(total):
        index = (start + offset) % total
        candidate = ordered_member_ids[index]
        if candidate in available:
            return RoundRobinSelection(
                assignee_user_id=candidate,
                next_cursor=(index + 1) % total,
            )
    return None


def compute_team_availability_slots(
    *,
    mode: TeamSchedulingMode | str,
    range_start: str | date | datetime,
    days: int,
    duration_minutes: int,
    members: Sequence[TeamMemberAvailability],
    round_robin_cursor: int = 0,
    max_days: int = MAX_RANGE_DAYS,
) -> TeamAvailability:
    """Combine per-member availability into team slots.

    Members are ordered by user id so the cursor means the same thing on every
    call. Any ``InvalidParameterError`` from one member aborts the request.
    """
    try:
        mode = TeamSchedulingMode(mode)
    except ValueError as exc:
        raise InvalidParameterError(f"Unknown team scheduling mode: {mode!r}") from exc
    members_by_id = {member.user_id: member for member in members}
    ordered_ids = sorted(members_by_id)
    if not ordered_ids:
        return TeamAvailability(slots=(), final_cursor=0)

    free_by_key: dict[tuple[datetime, datetime], set[str]] = {}
    for user_id in ordered_ids:
        member = members_by_id[user_id]
        member_slots = compute_slots(
            range_start=range_start,
            days=days,
            duration_minutes=duration_minutes,
            timezone=member.timezone,
            rules=member.rules,
            overrides=member.overrides,
            busy_windows=member.bookings,
            max_days=max_days,
        )
        for slot in member_slots:
            free_by_key.setdefault(slot.key, set()).add(user_id)

    chronological = sorted(free_by_key)
    cursor = _normalize_cursor(round_robin_cursor, len(ordered_ids))

    if mode is TeamSchedulingMode.COLLECTIVE:
        required = set(ordered_ids)
        slots = tuple(
            Slot(starts_at=start, ends_at=end, assignment_user_ids=tuple(ordered_ids))
            for start, end in chronological
            if free_by_key[(start, end)] >= required
        )
        logger.debug(
            "Collective availability: %d of %d timestamp(s) shared by %d member(s)",
            len(slots),
            len(chronological),
            len(ordered_ids),
        )
        return TeamAvailability(slots=slots, final_cursor=cursor)

    assigned: list[Slot] = []
    for start, end in chronological:
        selection = choose_round_robin_assignee(
            ordered_member_ids=ordered_ids,
            available_member_ids=free_by_key[(start, end)],
            cursor=cursor,
        )
        if selection is None:
            continue
        assigned.append(
            Slot(
                starts_at=start,
                ends_at=end,
                assignment_user_ids=(selection.assignee_user_id,),
            )
        )
        cursor = selection.next_cursor

    logger.debug(
        "Round-robin availability: %d slot(s) across %d member(s), cursor %d -> %d",
        len(assigned),
        len(ordered_ids),
        round_robin_cursor,
        cursor,
    )
    return TeamAvailability(slots=tuple(assigned), final_cursor=cursor)
