"""Error hierarchy for conntrace.

Per-attempt failures (setup, transport) are never raised past the executor;
they are captured in the attempt outcome. Only the errors below propagate.
"""

from typing import Optional


class ConnTraceError(Exception):
    """Base exception for all conntrace errors."""

    pass


class PersistenceError(ConnTraceError):
    """Raised when an attempt artifact cannot be written.

    Without a durable record the attempt's diagnostic value is lost, so this
    aborts the run.
    """

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class ConfigurationError(ConnTraceError):
    """Raised when probe settings are invalid."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class LoopStoppedError(ConnTraceError):
    """Raised when stepping a diagnostic loop that has already stopped."""

    def __init__(self, message: str = "Diagnostic loop already stopped", attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts
