"""Calendar writeback reconciliation.

Booking lifecycle events (create, cancel, reschedule) are mirrored to the
organizer's external calendar one attempt at a time. Each call to
:func:`process_writeback` performs exactly one provider call and returns the
record's next state:

    pending --(success)--------------------> succeeded
    pending --(failure, attempts left)-----> pending   (retry at backoff)
    pending --(failure, attempts exhausted)> failed

``succeeded`` and ``failed`` are terminal. Failures are not classified by
error type: a permanent 404 and a transient 503 both consume an attempt.
Callers guarantee at most one in-flight attempt per record.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from opencalendly.calendar.providers.base import WritebackBookingContext, WritebackProviderClient
from opencalendly.scheduling.time_range import ensure_utc

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000
MAX_BACKOFF_MINUTES = 60
MAX_BACKOFF_EXPONENT = 6
DEFAULT_MAX_ATTEMPTS = 5
FALLBACK_ERROR_MESSAGE = "Calendar writeback failed."


class MissingRescheduleTargetError(ValueError):
    """Raised when a reschedule writeback is processed without its target booking."""


class WritebackOperation(StrEnum):
    CREATE = "create"
    CANCEL = "cancel"
    RESCHEDULE = "reschedule"


class WritebackStatus(StrEnum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CalendarWritebackRecord(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    operation: WritebackOperation
    attempt_count: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    external_event_id: str | None = None


class RescheduleTarget(BaseModel):
    """The booking a reschedule moved to; the external event follows it."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    booking_id: str = Field(min_length=1)
    starts_at: datetime
    ends_at: datetime

    @field_validator("starts_at", "ends_at")
    @classmethod
    def _normalize_instant(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class CalendarWritebackResult(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    status: WritebackStatus
    attempt_count: int
    next_attempt_at: datetime
    last_attempt_at: datetime
    last_error: str | None
    external_event_id: str | None
    transfer_external_event_to_booking_id: str | None = None


def compute_next_attempt_at(attempt_count: int, now: datetime) -> datetime:
    """Backoff of 1, 2, 4, ... minutes after each attempt, capped at one hour."""
    exponent = max(0, min(MAX_BACKOFF_EXPONENT, attempt_count - 1))
    backoff_minutes = min(MAX_BACKOFF_MINUTES, 2**exponent)
    return now + timedelta(minutes=backoff_minutes)


def _error_message(exc: BaseException) -> str:
    message = str(exc) or FALLBACK_ERROR_MESSAGE
    return message[:MAX_ERROR_LENGTH]


async def process_writeback(
    *,
    record: CalendarWritebackRecord,
    booking: WritebackBookingContext,
    provider_client: WritebackProviderClient,
    now: datetime,
    reschedule_target: RescheduleTarget | None = None,
) -> CalendarWritebackResult:
    """Run one reconciliation attempt for *record*.

    On a successful reschedule ``transfer_external_event_to_booking_id`` names
    the new booking; re-pointing the stored mapping is the caller's job.

    Raises:
        MissingRescheduleTargetError: a reschedule record arrived without its
            target. This is a programming error and is never retried.
    """
    if record.operation is WritebackOperation.RESCHEDULE and reschedule_target is None:
        raise MissingRescheduleTargetError("Reschedule target is required for calendar writeback.")

    attempt_count = record.attempt_count + 1
    external_event_id = record.external_event_id
    transfer_to: str | None = None

    try:
        if record.operation is WritebackOperation.CREATE:
            created = await provider_client.create_event(booking)
            external_event_id = created.external_event_id
        elif record.operation is WritebackOperation.CANCEL:
            if external_event_id:
                await provider_client.cancel_event(external_event_id)
            else:
                logger.debug("No external event recorded; cancel writeback is a no-op")
        else:
            assert reschedule_target is not None
            if external_event_id:
                await provider_client.update_event(
                    external_event_id, reschedule_target.starts_at, reschedule_target.ends_at
                )
            else:
                created = await provider_client.create_event(
                    booking.model_copy(
                        update={
                            "starts_at": reschedule_target.starts_at,
                            "ends_at": reschedule_target.ends_at,
                        }
                    )
                )
                external_event_id = created.external_event_id
            transfer_to = reschedule_target.booking_id
    except Exception as exc:
        exhausted = attempt_count >= record.max_attempts
        status = WritebackStatus.FAILED if exhausted else WritebackStatus.PENDING
        next_attempt_at = now if exhausted else compute_next_attempt_at(attempt_count, now)
        logger.warning(
            "Calendar writeback %s attempt %d/%d failed (%s); status=%s next_attempt_at=%s",
            record.operation.value,
            attempt_count,
            record.max_attempts,
            type(exc).__name__,
            status.value,
            next_attempt_at.isoformat(),
        )
        return CalendarWritebackResult(
            status=status,
            attempt_count=attempt_count,
            next_attempt_at=next_attempt_at,
            last_attempt_at=now,
            last_error=_error_message(exc),
            external_event_id=record.external_event_id,
        )

    logger.info(
        "Calendar writeback %s succeeded on attempt %d (external_event_id=%s)",
        record.operation.value,
        attempt_count,
        external_event_id,
    )
    return CalendarWritebackResult(
        status=WritebackStatus.SUCCEEDED,
        attempt_count=attempt_count,
        next_attempt_at=now,
        last_attempt_at=now,
        last_error=None,
        external_event_id=external_event_id,
        transfer_external_event_to_booking_id=transfer_to,
    )
