"""Tests for the calendar writeback reconciler."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from opencalendly.calendar.providers.base import (
    CalendarProviderError,
    CreatedEvent,
    WritebackBookingContext,
)
from opencalendly.calendar.writeback import (
    FALLBACK_ERROR_MESSAGE,
    MAX_ERROR_LENGTH,
    CalendarWritebackRecord,
    MissingRescheduleTargetError,
    RescheduleTarget,
    WritebackOperation,
    WritebackStatus,
    compute_next_attempt_at,
    process_writeback,
)

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


@pytest.fixture
def booking() -> WritebackBookingContext:
    return WritebackBookingContext(
        event_name="Intro call",
        invitee_name="Pat Doe",
        invitee_email="pat@example.com",
        starts_at=datetime(2026, 3, 3, 9, 0, tzinfo=UTC),
        ends_at=datetime(2026, 3, 3, 9, 30, tzinfo=UTC),
        idempotency_key="booking-1:create",
    )


@pytest.fixture
def provider() -> AsyncMock:
    client = AsyncMock()
    client.create_event = AsyncMock(return_value=CreatedEvent(external_event_id="x"))
    client.cancel_event = AsyncMock(return_value=None)
    client.update_event = AsyncMock(return_value=None)
    return client


class TestComputeNextAttemptAt:
    @pytest.mark.parametrize(
        ("attempt_count", "minutes"),
        [(0, 1), (1, 1), (2, 2), (3, 4), (6, 32), (7, 60), (20, 60)],
    )
    def test_backoff_schedule(self, attempt_count, minutes):
        assert compute_next_attempt_at(attempt_count, NOW) == NOW + timedelta(minutes=minutes)


class TestProcessWritebackSuccess:
    async def test_create_records_external_event(self, booking, provider):
        result = await process_writeback(
            record=CalendarWritebackRecord(operation=WritebackOperation.CREATE),
            booking=booking,
            provider_client=provider,
            now=NOW,
        )

        provider.create_event.assert_awaited_once_with(booking)
        assert result.status is WritebackStatus.SUCCEEDED
        assert result.external_event_id == "x"
        assert result.transfer_external_event_to_booking_id is None
        assert result.attempt_count == 1
        assert result.next_attempt_at == NOW
        assert result.last_attempt_at == NOW
        assert result.last_error is None

    async def test_cancel_without_event_is_noop(self, booking, provider):
        result = await process_writeback(
            record=CalendarWritebackRecord(operation=WritebackOperation.CANCEL),
            booking=booking,
            provider_client=provider,
            now=NOW,
        )

        provider.cancel_event.assert_not_awaited()
        assert result.status is WritebackStatus.SUCCEEDED
        assert result.external_event_id is None

    async def test_cancel_deletes_existing_event(self, booking, provider):
        result = await process_writeback(
            record=CalendarWritebackRecord(operation="cancel", external_event_id="evt-1"),
            booking=booking,
            provider_client=provider,
            now=NOW,
        )

        provider.cancel_event.assert_awaited_once_with("evt-1")
        assert result.status is WritebackStatus.SUCCEEDED
        assert result.external_event_id == "evt-1"

    async def test_reschedule_updates_existing_event(self, booking, provider):
        target = RescheduleTarget(
            booking_id="booking-2",
            starts_at=datetime(2026, 3, 4, 10, 0, tzinfo=UTC),
            ends_at=datetime(2026, 3, 4, 10, 30, tzinfo=UTC),
        )

        result = await process_writeback(
            record=CalendarWritebackRecord(operation="reschedule", external_event_id="evt-1"),
            booking=booking,
            provider_client=provider,
            now=NOW,
            reschedule_target=target,
        )

        provider.update_event.assert_awaited_once_with("evt-1", target.starts_at, target.ends_at)
        provider.create_event.assert_not_awaited()
        assert result.external_event_id == "evt-1"
        assert result.transfer_external_event_to_booking_id == "booking-2"

    async def test_reschedule_without_event_creates_at_new_time(self, booking, provider):
        target = RescheduleTarget(
            booking_id="booking-2",
            starts_at=datetime(2026, 3, 4, 10, 0, tzinfo=UTC),
            ends_at=datetime(2026, 3, 4, 10, 30, tzinfo=UTC),
        )

        result = await process_writeback(
            record=CalendarWritebackRecord(operation=WritebackOperation.RESCHEDULE),
            booking=booking,
            provider_client=provider,
            now=NOW,
            reschedule_target=target,
        )

        created_for = provider.create_event.await_args.args[0]
        assert created_for.starts_at == target.starts_at
        assert created_for.ends_at == target.ends_at
        assert created_for.event_name == booking.event_name
        assert result.external_event_id == "x"
        assert result.transfer_external_event_to_booking_id == "booking-2"


class TestProcessWritebackFailure:
    async def test_failure_schedules_retry(self, booking, provider):
        provider.create_event.side_effect = CalendarProviderError("Google calendar event create failed: 503")

        result = await process_writeback(
            record=CalendarWritebackRecord(operation="create", attempt_count=1, max_attempts=5),
            booking=booking,
            provider_client=provider,
            now=NOW,
        )

        assert result.status is WritebackStatus.PENDING
        assert result.attempt_count == 2
        assert result.next_attempt_at == NOW + timedelta(minutes=2)
        assert result.last_attempt_at == NOW
        assert result.last_error == "Google calendar event create failed: 503"

    async def test_exhaustion_marks_failed(self, booking, provider):
        provider.cancel_event.side_effect = RuntimeError("gone")

        result = await process_writeback(
            record=CalendarWritebackRecord(
                operation="cancel", attempt_count=4, max_attempts=5, external_event_id="evt-1"
            ),
            booking=booking,
            provider_client=provider,
            now=NOW,
        )

        assert result.status is WritebackStatus.FAILED
        assert result.attempt_count == 5
        assert result.next_attempt_at == NOW
        assert result.external_event_id == "evt-1"

    async def test_error_message_is_truncated(self, booking, provider):
        provider.create_event.side_effect = CalendarProviderError("x" * 5000)

        result = await process_writeback(
            record=CalendarWritebackRecord(operation="create"),
            booking=booking,
            provider_client=provider,
            now=NOW,
        )

        assert len(result.last_error) == MAX_ERROR_LENGTH

    async def test_empty_error_uses_fallback(self, booking, provider):
        provider.create_event.side_effect = RuntimeError()

        result = await process_writeback(
            record=CalendarWritebackRecord(operation="create"),
            booking=booking,
            provider_client=provider,
            now=NOW,
        )

        assert result.last_error == FALLBACK_ERROR_MESSAGE

    async def test_failed_reschedule_keeps_mapping(self, booking, provider):
        provider.update_event.side_effect = CalendarProviderError("boom", status_code=500)

        result = await process_writeback(
            record=CalendarWritebackRecord(operation="reschedule", external_event_id="evt-1"),
            booking=booking,
            provider_client=provider,
            now=NOW,
            reschedule_target=RescheduleTarget(
                booking_id="booking-2",
                starts_at=datetime(2026, 3, 4, 10, 0, tzinfo=UTC),
                ends_at=datetime(2026, 3, 4, 10, 30, tzinfo=UTC),
            ),
        )

        assert result.status is WritebackStatus.PENDING
        assert result.transfer_external_event_to_booking_id is None
        assert result.external_event_id == "evt-1"

    async def test_missing_reschedule_target_raises(self, booking, provider):
        with pytest.raises(MissingRescheduleTargetError):
            await process_writeback(
                record=CalendarWritebackRecord(operation="reschedule", external_event_id="evt-1"),
                booking=booking,
                provider_client=provider,
                now=NOW,
            )
        provider.update_event.assert_not_awaited()
