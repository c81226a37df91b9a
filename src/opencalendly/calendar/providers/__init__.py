"""Calendar provider adapters (Google, Microsoft) and their shared contracts."""

from opencalendly.calendar.providers.base import (
    BoundWritebackClient,
    BusyWindowFetcher,
    CalendarProviderError,
    CalendarTokenRefreshError,
    CreatedEvent,
    ProviderUserProfile,
    RawBusyWindow,
    TokenRefresher,
    TokenResponse,
    WritebackBookingContext,
    WritebackProviderClient,
)
from opencalendly.calendar.providers.google import GoogleCalendarClient, GoogleOAuthClient
from opencalendly.calendar.providers.microsoft import MicrosoftCalendarClient, MicrosoftOAuthClient

__all__ = [
    "BoundWritebackClient",
    "BusyWindowFetcher",
    "CalendarProviderError",
    "CalendarTokenRefreshError",
    "CreatedEvent",
    "GoogleCalendarClient",
    "GoogleOAuthClient",
    "MicrosoftCalendarClient",
    "MicrosoftOAuthClient",
    "ProviderUserProfile",
    "RawBusyWindow",
    "TokenRefresher",
    "TokenResponse",
    "WritebackBookingContext",
    "WritebackProviderClient",
]
