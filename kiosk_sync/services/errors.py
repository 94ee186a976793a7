"""
errors.py - Failure taxonomy for the sync and storage layers.

Connectivity and Transport failures are recovered locally (deferral / retry).
Validation and StorageExhaustion failures are surfaced to the user.
"""


class KioskSyncError(Exception):
    """Base class for every error raised by kiosk_sync."""


class ConfigError(KioskSyncError):
    """Configuration failed validation."""


class ConnectivityError(KioskSyncError):
    """No network path. A deferral, never a consumed retry."""


class TransportError(KioskSyncError):
    """Network error while a request was in flight."""


class ServerRejectionError(KioskSyncError):
    """Non-2xx status or a response body that could not be interpreted."""

    def __init__(self, message: str, status: int = None):
        super().__init__(message)
        self.status = status


class AmbiguousAcceptanceError(ServerRejectionError):
    """2xx response that confirmed zero records."""


class ValidationError(KioskSyncError):
    """A locally stored record is structurally invalid."""


class StorageError(KioskSyncError):
    """The durable store could not be read or written."""


class StorageExhaustedError(StorageError):
    """A write would exceed the durable store capacity."""

    def __init__(self, key: str, required: int, capacity: int):
        super().__init__(
            f"Storage limit reached writing '{key}' ({required} of {capacity} bytes)"
        )
        self.key = key
        self.required = required
        self.capacity = capacity
