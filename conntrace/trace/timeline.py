"""Append-only timeline of lifecycle stages for a single request attempt.

A timeline is created fresh for every attempt, filled by the lifecycle hooks
while the request is in flight, and handed off read-only once the attempt is
over.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple


class StageName(str, Enum):
    """Lifecycle points observed during a request."""

    GET_CONN = "GetConn"
    GOT_CONN = "GotConn"
    PUT_IDLE_CONN = "PutIdleConn"
    GOT_FIRST_RESPONSE_BYTE = "GotFirstResponseByte"
    GOT_100_CONTINUE = "Got100Continue"
    GOT_1XX_RESPONSE = "Got1xxResponse"
    DNS_START = "DNSStart"
    DNS_DONE = "DNSDone"
    CONNECT_START = "ConnectStart"
    CONNECT_DONE = "ConnectDone"
    TLS_HANDSHAKE_START = "TLSHandshakeStart"
    TLS_HANDSHAKE_DONE = "TLSHandshakeDone"
    WRITE_HEADER_FIELD = "WriteHeaderField"
    WRITE_HEADERS = "WriteHeaders"
    WAIT_100_CONTINUE = "Wait100Continue"
    WROTE_REQUEST = "WroteRequest"


@dataclass(frozen=True)
class Stage:
    """One observed lifecycle event."""

    name: StageName
    timestamp: datetime
    values: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        # Nested mappings and sequences are frozen too
        object.__setattr__(self, "values", _freeze(dict(self.values)))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the generic name/timestamp/values mapping."""
        return {
            "name": self.name.value,
            "timestamp": self.timestamp.isoformat(),
            "values": _thaw(self.values),
        }


Timeline = Tuple[Stage, ...]


def _freeze(value: Any) -> Any:
    """Read-only deep copy of a payload value."""
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    """Plain dict/list copy of a frozen payload value."""
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    return value


class MonotonicClock:
    """Wall-clock timestamps that never run backwards.

    The wall clock is read once; later readings advance it by the monotonic
    clock so stage order and timestamp order always agree.
    """

    def __init__(self, origin: Optional[datetime] = None):
        self._origin = origin or datetime.now(timezone.utc)
        self._start = time.monotonic()

    def now(self) -> datetime:
        return self._origin + timedelta(seconds=time.monotonic() - self._start)


class TimelineRecorder:
    """Ordered buffer of stages for exactly one attempt.

    Usage:
        recorder = TimelineRecorder()
        recorder.append(Stage(StageName.DNS_START, recorder.now(), {"host": "example.com"}))
        timeline = recorder.snapshot()
    """

    def __init__(self, clock: Optional[MonotonicClock] = None):
        self._clock = clock or MonotonicClock()
        self._stages: List[Stage] = []

    def now(self) -> datetime:
        """Timestamp for the next stage."""
        return self._clock.now()

    def append(self, stage: Stage) -> None:
        """Add a stage to the end of the timeline."""
        self._stages.append(stage)

    def snapshot(self) -> Timeline:
        """Get the stages recorded so far.

        Returns:
            Immutable tuple, unaffected by later appends
        """
        return tuple(self._stages)

    def __len__(self) -> int:
        return len(self._stages)


def timeline_to_list(timeline: Timeline) -> List[Dict[str, Any]]:
    """Convert a timeline to a list of plain dictionaries."""
    return [stage.to_dict() for stage in timeline]
