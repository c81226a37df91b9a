"""Tests for busy-window sync helpers."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from opencalendly.calendar.providers.base import CalendarProviderError, RawBusyWindow
from opencalendly.calendar.sync import normalize_busy_windows, resolve_sync_range, sync_busy_windows
from opencalendly.scheduling.availability import InvalidParameterError

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class TestResolveSyncRange:
    def test_defaults_to_thirty_days_from_now(self):
        assert resolve_sync_range(NOW) == (NOW, NOW + timedelta(days=30))

    def test_explicit_strings(self):
        start, end = resolve_sync_range(NOW, "2026-03-05T00:00:00Z", "2026-03-06T00:00:00+01:00")
        assert start == datetime(2026, 3, 5, tzinfo=UTC)
        assert end == datetime(2026, 3, 5, 23, 0, tzinfo=UTC)

    def test_end_defaults_relative_to_start(self):
        start = datetime(2026, 4, 1, tzinfo=UTC)
        assert resolve_sync_range(NOW, start) == (start, start + timedelta(days=30))

    def test_end_must_follow_start(self):
        with pytest.raises(InvalidParameterError, match="after start"):
            resolve_sync_range(NOW, NOW, NOW)

    def test_span_is_capped(self):
        with pytest.raises(InvalidParameterError, match="90 days"):
            resolve_sync_range(NOW, NOW, NOW + timedelta(days=91))

    def test_exactly_ninety_days_is_allowed(self):
        assert resolve_sync_range(NOW, NOW, NOW + timedelta(days=90))[1] == NOW + timedelta(days=90)

    def test_unparseable_bound(self):
        with pytest.raises(InvalidParameterError, match="start"):
            resolve_sync_range(NOW, "yesterday")

    def test_naive_datetime_rejected(self):
        with pytest.raises(InvalidParameterError, match="timezone-aware"):
            resolve_sync_range(NOW, datetime(2026, 3, 2))


class TestNormalizeBusyWindows:
    def test_drops_unusable_entries(self):
        windows = normalize_busy_windows(
            [
                RawBusyWindow(start="2026-03-02T09:00:00Z", end="2026-03-02T10:00:00Z"),
                RawBusyWindow(start="garbage", end="2026-03-02T10:00:00Z"),
                RawBusyWindow(start="2026-03-02T11:00:00Z", end="2026-03-02T11:00:00Z"),
                RawBusyWindow(start="2026-03-02T13:00:00Z", end="2026-03-02T12:00:00Z"),
                RawBusyWindow(start="2026-03-02T14:00:00+02:00", end="2026-03-02T15:00:00+02:00"),
            ]
        )
        assert [(w.starts_at, w.ends_at) for w in windows] == [
            (datetime(2026, 3, 2, 9, tzinfo=UTC), datetime(2026, 3, 2, 10, tzinfo=UTC)),
            (datetime(2026, 3, 2, 12, tzinfo=UTC), datetime(2026, 3, 2, 13, tzinfo=UTC)),
        ]


class TestSyncBusyWindows:
    async def test_fetches_and_normalizes(self):
        fetcher = AsyncMock()
        fetcher.fetch_busy_windows = AsyncMock(
            return_value=[
                RawBusyWindow(start="2026-03-02T09:00:00Z", end="2026-03-02T10:00:00Z"),
                RawBusyWindow(start="nope", end="nope"),
            ]
        )
        start, end = resolve_sync_range(NOW)

        windows = await sync_busy_windows(fetcher, access_token="tok", start=start, end=end)

        fetcher.fetch_busy_windows.assert_awaited_once_with("tok", start, end)
        assert len(windows) == 1

    async def test_provider_errors_propagate(self):
        fetcher = AsyncMock()
        fetcher.fetch_busy_windows = AsyncMock(side_effect=CalendarProviderError("boom", status_code=502))

        with pytest.raises(CalendarProviderError) as exc_info:
            await sync_busy_windows(fetcher, access_token="tok", start=NOW, end=NOW + timedelta(days=1))
        assert exc_info.value.status_code == 502
