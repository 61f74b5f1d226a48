"""Lapse Core: shared types, config, errors, and logging."""
from __future__ import annotations

from lapse_core._version import __version__
from lapse_core.config import (
    BackendConfig,
    LapseConfig,
    LoggingConfig,
    TTLConfig,
)
from lapse_core.errors import (
    BackendUnavailableError,
    ConfigError,
    InvalidKeyError,
    InvalidValueError,
    LapseError,
    PartialWriteError,
    StoreClosedError,
    StoreError,
)
from lapse_core.logging import get_logger, setup_logging
from lapse_core.types import (
    BatchOp,
    BatchOpKind,
    Key,
    SweepResult,
    SweepState,
    Value,
    to_bytes,
)

__all__ = [
    # Config
    "BackendConfig",
    # Errors
    "BackendUnavailableError",
    # Types
    "BatchOp",
    "BatchOpKind",
    "ConfigError",
    "InvalidKeyError",
    "InvalidValueError",
    "Key",
    "LapseConfig",
    "LapseError",
    "LoggingConfig",
    "PartialWriteError",
    "StoreClosedError",
    "StoreError",
    "SweepResult",
    "SweepState",
    "TTLConfig",
    "Value",
    # Version
    "__version__",
    # Logging
    "get_logger",
    "setup_logging",
    "to_bytes",
]
