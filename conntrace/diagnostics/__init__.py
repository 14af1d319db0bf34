"""Attempt artifact persistence and structured logging."""

from .logger import LogEntry, LogLevel, setup_logging
from .sink import TimelineSink, load_entry

__all__ = [
    "LogEntry",
    "LogLevel",
    "setup_logging",
    "TimelineSink",
    "load_entry",
]
