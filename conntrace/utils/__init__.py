"""Utility modules for conntrace."""

from .errors import (
    ConnTraceError,
    PersistenceError,
    ConfigurationError,
    LoopStoppedError,
)

__all__ = [
    "ConnTraceError",
    "PersistenceError",
    "ConfigurationError",
    "LoopStoppedError",
]
