from __future__ import annotations


class LapseError(Exception):
    """Base exception for all lapse errors."""


# ── Argument Errors ──────────────────────────────────────────────────

class InvalidKeyError(LapseError, ValueError):
    """Key is None on a mutating call."""


class InvalidValueError(LapseError, ValueError):
    """Value is None where a value is required."""


# ── Storage Errors ───────────────────────────────────────────────────

class StoreError(LapseError):
    """Error from a host store backend."""


class BackendUnavailableError(StoreError):
    """Backend is not reachable or not installed."""


class StoreClosedError(StoreError):
    """Operation attempted on a closed store."""


class PartialWriteError(StoreError):
    """Only one of the data write and the expiry index write succeeded.

    Nothing is rolled back: either the value was stored without its expiry
    metadata, or the metadata was stored for a value that was not written.
    """


# ── Config Errors ────────────────────────────────────────────────────

class ConfigError(LapseError):
    """Invalid or missing configuration."""
