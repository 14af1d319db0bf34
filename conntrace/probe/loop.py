"""Retry-until-failure diagnostic loop.

States: running → stopped (terminal)

Every attempt is persisted before the next decision. The loop stops on the
first transport failure; completed attempts (any status code) and setup
failures keep it running. There is no delay, back-off or attempt limit.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Protocol

from conntrace.utils.errors import LoopStoppedError
from .executor import AttemptResult, OutcomeKind

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    """Diagnostic loop states."""

    RUNNING = "running"
    STOPPED = "stopped"


class StopReason(str, Enum):
    """Why the loop stopped."""

    TRANSPORT_FAILURE = "transport_failure"
    CANCELLED = "cancelled"


class Executor(Protocol):
    def execute(self) -> AttemptResult: ...


class Sink(Protocol):
    def persist(self, attempt: int, result: AttemptResult) -> Path: ...


AttemptCallback = Callable[[int, AttemptResult, Path], None]


@dataclass
class LoopSummary:
    """Final state of a diagnostic run."""

    attempts: int
    stop_reason: StopReason
    last_result: Optional[AttemptResult] = None
    last_artifact: Optional[Path] = None


class DiagnosticLoop:
    """Repeats attempts until one fails at the transport level.

    Usage:
        sink = TimelineSink("out")
        with RequestExecutor(ProbeConfig()) as executor:
            summary = DiagnosticLoop(executor, sink).run()
    """

    def __init__(
        self,
        executor: Executor,
        sink: Sink,
        on_attempt: Optional[AttemptCallback] = None,
        cancel: Optional[threading.Event] = None,
    ):
        """Initialize loop.

        Args:
            executor: Runs one attempt per call
            sink: Persists each attempt before the next decision
            on_attempt: Optional callback(attempt, result, artifact_path)
            cancel: Checked before each attempt; set it to stop the loop
        """
        self.executor = executor
        self.sink = sink
        self.on_attempt = on_attempt
        self.cancel = cancel or threading.Event()

        self.state = LoopState.RUNNING
        self.stop_reason: Optional[StopReason] = None
        self.attempts = 0
        self.last_result: Optional[AttemptResult] = None
        self.last_artifact: Optional[Path] = None

    @property
    def running(self) -> bool:
        return self.state == LoopState.RUNNING

    def step(self) -> AttemptResult:
        """Run and persist one attempt, then decide whether to stop."""
        if not self.running:
            raise LoopStoppedError(attempts=self.attempts)

        self.attempts += 1
        result = self.executor.execute()
        outcome = result.outcome

        # PersistenceError propagates: an attempt without a record is worthless
        artifact = self.sink.persist(self.attempts, result)
        self.last_result = result
        self.last_artifact = artifact

        if outcome.kind == OutcomeKind.SETUP_FAILURE:
            logger.warning(f"Attempt {self.attempts} could not be set up: {outcome.error}")

        if outcome.is_transport_failure:
            self._stop(StopReason.CANCELLED if outcome.cancelled else StopReason.TRANSPORT_FAILURE)
            logger.info(f"Attempt {self.attempts} failed at transport level: {outcome.error}")

        if self.on_attempt:
            self.on_attempt(self.attempts, result, artifact)

        return result

    def run(self) -> LoopSummary:
        """Iterate until stopped by a transport failure or cancellation."""
        while self.running:
            if self.cancel.is_set():
                self._stop(StopReason.CANCELLED)
                break
            self.step()

        return LoopSummary(
            attempts=self.attempts,
            stop_reason=self.stop_reason,
            last_result=self.last_result,
            last_artifact=self.last_artifact,
        )

    def _stop(self, reason: StopReason) -> None:
        self.state = LoopState.STOPPED
        self.stop_reason = reason
