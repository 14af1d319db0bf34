"""Instrumented request executor.

Issues one request per call with a fresh timeline bound to it, and classifies
the attempt:

- transport failure: no usable response (DNS, connect, TLS, timeout, read or
  write errors), or the response body could not be drained
- completed: a response arrived and its body was drained, whatever the
  status code
- setup failure: the request could not even be built
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from conntrace import __version__
from conntrace.trace.hooks import LifecycleHooks, describe_error
from conntrace.trace.timeline import Timeline, TimelineRecorder, timeline_to_list
from conntrace.trace.transport import DEADLINE_EXTENSION, HOOKS_EXTENSION, TracingTransport
from .config import ProbeConfig

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    """Classification of one attempt."""

    COMPLETED = "completed"
    TRANSPORT_FAILURE = "transport_failure"
    SETUP_FAILURE = "setup_failure"


@dataclass(frozen=True)
class AttemptOutcome:
    """Result classification of one attempt."""

    kind: OutcomeKind
    status_code: Optional[int] = None
    error_type: Optional[str] = None
    error: Optional[str] = None
    cancelled: bool = False

    @classmethod
    def completed(cls, status_code: int) -> "AttemptOutcome":
        return cls(OutcomeKind.COMPLETED, status_code=status_code)

    @classmethod
    def transport_failure(
        cls,
        exc: BaseException,
        status_code: Optional[int] = None,
        cancelled: bool = False,
    ) -> "AttemptOutcome":
        return cls(
            OutcomeKind.TRANSPORT_FAILURE,
            status_code=status_code,
            error_type="cancelled" if cancelled else type(exc).__name__,
            error=describe_error(exc),
            cancelled=cancelled,
        )

    @classmethod
    def setup_failure(cls, exc: BaseException) -> "AttemptOutcome":
        return cls(
            OutcomeKind.SETUP_FAILURE,
            error_type=type(exc).__name__,
            error=describe_error(exc),
        )

    @property
    def is_transport_failure(self) -> bool:
        return self.kind == OutcomeKind.TRANSPORT_FAILURE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "status_code": self.status_code,
            "error_type": self.error_type,
            "error": self.error,
            "cancelled": self.cancelled,
        }


@dataclass(frozen=True)
class AttemptResult:
    """Timeline and outcome of one attempt."""

    timeline: Timeline
    outcome: AttemptOutcome
    started_at: datetime
    duration_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "duration_ms": round(self.duration_ms, 3),
            "outcome": self.outcome.to_dict(),
            "stages": timeline_to_list(self.timeline),
        }


class DeadlineExceeded(httpx.TimeoutException):
    """Raised when draining the response outlives the overall request timeout."""


def build_client(config: ProbeConfig) -> httpx.Client:
    """Build the long-lived client shared by every attempt."""
    transport = TracingTransport(
        verify=config.verify,
        limits=config.to_httpx_limits(),
        proxy=config.resolve_proxy(),
    )
    return httpx.Client(
        transport=transport,
        timeout=config.to_httpx_timeout(),
        follow_redirects=False,
        # Proxy resolution already happened above
        trust_env=False,
        headers={"User-Agent": f"conntrace/{__version__}"},
    )


class RequestExecutor:
    """Runs one instrumented request per call.

    Usage:
        with RequestExecutor(ProbeConfig()) as executor:
            result = executor.execute()
            if result.outcome.is_transport_failure:
                ...
    """

    def __init__(self, config: ProbeConfig, client: Optional[httpx.Client] = None):
        """Initialize executor.

        Args:
            config: Probe settings
            client: Client to send through (default: one built from config)
        """
        self.config = config
        self._client = client or build_client(config)

    def __enter__(self) -> "RequestExecutor":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self) -> None:
        self._client.close()

    def execute(self) -> AttemptResult:
        """Perform one request and classify it."""
        recorder = TimelineRecorder()
        hooks = LifecycleHooks(recorder)
        started_at = recorder.now()
        start = time.monotonic()
        deadline = start + self.config.request_timeout

        def finish(outcome: AttemptOutcome) -> AttemptResult:
            return AttemptResult(
                timeline=recorder.snapshot(),
                outcome=outcome,
                started_at=started_at,
                duration_ms=(time.monotonic() - start) * 1000,
            )

        try:
            request = self._client.build_request(
                self.config.method,
                self.config.url,
                extensions={HOOKS_EXTENSION: hooks, DEADLINE_EXTENSION: deadline},
            )
        except (httpx.InvalidURL, ValueError, TypeError) as e:
            logger.error(f"Error creating request: {e}")
            return finish(AttemptOutcome.setup_failure(e))

        try:
            response = self._client.send(request, stream=True)
        except httpx.RequestError as e:
            logger.debug(f"Request to {self.config.url} failed: {e}")
            return finish(AttemptOutcome.transport_failure(e))
        except KeyboardInterrupt as e:
            return finish(AttemptOutcome.transport_failure(e, cancelled=True))

        try:
            self._drain(response, deadline=deadline)
        except httpx.RequestError as e:
            logger.debug(f"Reading response from {self.config.url} failed: {e}")
            return finish(AttemptOutcome.transport_failure(e, status_code=response.status_code))
        except KeyboardInterrupt as e:
            return finish(
                AttemptOutcome.transport_failure(
                    e, status_code=response.status_code, cancelled=True
                )
            )
        finally:
            response.close()

        return finish(AttemptOutcome.completed(response.status_code))

    @staticmethod
    def _drain(response: httpx.Response, deadline: float) -> None:
        """Read and discard the body so the connection can be reused.

        Responses whose content is already loaded are iterated from memory.
        """
        for _chunk in response.iter_bytes():
            if time.monotonic() > deadline:
                raise DeadlineExceeded(
                    "Request timeout exceeded while reading body", request=response.request
                )
