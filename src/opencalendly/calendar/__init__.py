"""Calendar integration: token resolution, busy-window sync and writeback."""

from opencalendly.calendar.crypto import DecryptionError, decrypt_secret, encrypt_secret
from opencalendly.calendar.sync import normalize_busy_windows, resolve_sync_range, sync_busy_windows
from opencalendly.calendar.tokens import (
    CalendarConnectionSecretState,
    TokenResolution,
    resolve_access_token,
    seal_token_resolution,
)
from opencalendly.calendar.writeback import (
    CalendarWritebackRecord,
    CalendarWritebackResult,
    MissingRescheduleTargetError,
    RescheduleTarget,
    WritebackOperation,
    WritebackStatus,
    compute_next_attempt_at,
    process_writeback,
)

__all__ = [
    "CalendarConnectionSecretState",
    "CalendarWritebackRecord",
    "CalendarWritebackResult",
    "DecryptionError",
    "MissingRescheduleTargetError",
    "RescheduleTarget",
    "TokenResolution",
    "WritebackOperation",
    "WritebackStatus",
    "compute_next_attempt_at",
    "decrypt_secret",
    "encrypt_secret",
    "normalize_busy_windows",
    "process_writeback",
    "resolve_access_token",
    "resolve_sync_range",
    "seal_token_resolution",
    "sync_busy_windows",
]
