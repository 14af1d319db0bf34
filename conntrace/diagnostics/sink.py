"""Durable storage for attempt timelines.

One sink is created per run. Each attempt becomes one structured log entry:

Output: <output_dir>/<run_started_unix>/attempt-<NNNNNN>.json
"""

import json
import logging
import os
import time
from pathlib import Path
from typing import Optional, Union

from conntrace.probe.executor import AttemptResult, OutcomeKind
from conntrace.utils.errors import PersistenceError
from .logger import LogEntry, LogLevel

logger = logging.getLogger(__name__)

_LEVELS = {
    OutcomeKind.COMPLETED: LogLevel.INFO,
    OutcomeKind.TRANSPORT_FAILURE: LogLevel.ERROR,
    OutcomeKind.SETUP_FAILURE: LogLevel.WARNING,
}

_MESSAGES = {
    OutcomeKind.COMPLETED: "Request completed",
    OutcomeKind.TRANSPORT_FAILURE: "Request failed",
    OutcomeKind.SETUP_FAILURE: "Error creating request",
}


class TimelineSink:
    """Writes one JSON artifact per attempt.

    Usage:
        sink = TimelineSink("out")
        path = sink.persist(1, result)
    """

    def __init__(
        self,
        output_dir: Union[str, Path],
        run_id: Optional[str] = None,
    ):
        """Initialize sink and create the run directory.

        Args:
            output_dir: Base output directory
            run_id: Run directory name (default: run start as unix time)

        Raises:
            PersistenceError: If the run directory cannot be created
        """
        self.run_id = run_id or str(int(time.time()))
        self.output_dir = Path(output_dir) / self.run_id

        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(
                f"Cannot create output directory: {e}", path=str(self.output_dir)
            ) from e

    def build_entry(self, attempt: int, result: AttemptResult) -> LogEntry:
        """Structured log entry for one attempt."""
        kind = result.outcome.kind
        context = {"attempt": attempt}
        context.update(result.to_dict())
        return LogEntry(
            timestamp=result.started_at.isoformat(),
            level=_LEVELS[kind].value,
            message=_MESSAGES[kind],
            context=context,
        )

    def persist(self, attempt: int, result: AttemptResult) -> Path:
        """Write an attempt to disk and flush it.

        Returns:
            Path of the written artifact

        Raises:
            PersistenceError: If the artifact cannot be written
        """
        filepath = self.output_dir / f"attempt-{attempt:06d}.json"
        entry = self.build_entry(attempt, result)

        try:
            with open(filepath, "w") as f:
                f.write(entry.to_json())
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise PersistenceError(f"Cannot write artifact: {e}", path=str(filepath)) from e

        logger.debug(f"Saved attempt {attempt} to {filepath}")
        return filepath

    def get_output_path(self) -> Path:
        """Get the run directory path."""
        return self.output_dir


def load_entry(path: Union[str, Path]) -> LogEntry:
    """Read a persisted attempt artifact."""
    with open(path) as f:
        return LogEntry.from_dict(json.load(f))
