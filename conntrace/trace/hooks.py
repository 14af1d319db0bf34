"""Lifecycle hooks that turn HTTP client notifications into timeline stages.

Each method corresponds to one lifecycle point and appends exactly one stage
to the bound recorder. Hooks only observe: they never raise into the request
and nothing they return is acted upon.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Mapping, Optional, Sequence, Union

from .timeline import Stage, StageName, TimelineRecorder

ErrorLike = Union[BaseException, str, None]


def describe_error(error: ErrorLike) -> Optional[str]:
    """Render an error as a string for the stage payload."""
    if error is None:
        return None
    if isinstance(error, str):
        return error
    message = str(error)
    name = type(error).__name__
    return f"{name}: {message}" if message else name


@dataclass(frozen=True)
class ConnInfo:
    """Details about the connection handed to a request."""

    reused: bool
    was_idle: bool = False
    idle_time: float = 0.0  # seconds
    local_address: Optional[str] = None
    remote_address: Optional[str] = None
    tls: bool = False


class LifecycleHooks:
    """Instrumentation bound to one attempt's timeline recorder.

    Usage:
        recorder = TimelineRecorder()
        hooks = LifecycleHooks(recorder)
        hooks.dns_start("example.com")
        hooks.dns_done(["93.184.216.34"])
        timeline = recorder.snapshot()
    """

    def __init__(self, recorder: TimelineRecorder):
        self.recorder = recorder

    def _record(self, name: StageName, values: Optional[Dict[str, Any]] = None) -> None:
        self.recorder.append(Stage(name, self.recorder.now(), values or {}))

    # Connection pool

    def get_conn(self, host_port: str) -> None:
        self._record(StageName.GET_CONN, {"host_port": host_port})

    def got_conn(self, info: ConnInfo) -> None:
        conn = asdict(info)
        self._record(
            StageName.GOT_CONN,
            {
                "reused": conn.pop("reused"),
                "was_idle": conn.pop("was_idle"),
                "idle_time": conn.pop("idle_time"),
                "conn": conn,
            },
        )

    def put_idle_conn(self, error: ErrorLike = None) -> None:
        self._record(StageName.PUT_IDLE_CONN, {"error": describe_error(error)})

    # Response

    def got_first_response_byte(self) -> None:
        self._record(StageName.GOT_FIRST_RESPONSE_BYTE)

    def got_100_continue(self) -> None:
        self._record(StageName.GOT_100_CONTINUE)

    def got_1xx_response(self, code: int, header: Mapping[str, Sequence[str]]) -> None:
        """Record an informational response.

        Always returns None: the request carries on regardless.
        """
        self._record(
            StageName.GOT_1XX_RESPONSE,
            {"code": code, "header": {k: list(v) for k, v in header.items()}},
        )
        return None

    # Name resolution and dialing

    def dns_start(self, host: str) -> None:
        self._record(StageName.DNS_START, {"host": host})

    def dns_done(self, addrs: Sequence[str], error: ErrorLike = None) -> None:
        self._record(
            StageName.DNS_DONE,
            {"addrs": list(addrs), "error": describe_error(error)},
        )

    def connect_start(self, network: str, addr: str) -> None:
        self._record(StageName.CONNECT_START, {"network": network, "addr": addr})

    def connect_done(self, network: str, addr: str, error: ErrorLike = None) -> None:
        self._record(
            StageName.CONNECT_DONE,
            {"network": network, "addr": addr, "error": describe_error(error)},
        )

    # TLS

    def tls_handshake_start(self) -> None:
        self._record(StageName.TLS_HANDSHAKE_START)

    def tls_handshake_done(
        self,
        state: Optional[Mapping[str, Any]] = None,
        error: ErrorLike = None,
    ) -> None:
        self._record(
            StageName.TLS_HANDSHAKE_DONE,
            {"state": dict(state or {}), "error": describe_error(error)},
        )

    # Request writing

    def wrote_header_field(self, key: str, value: str) -> None:
        self._record(StageName.WRITE_HEADER_FIELD, {"key": key, "value": value})

    def wrote_headers(self) -> None:
        self._record(StageName.WRITE_HEADERS)

    def wait_100_continue(self) -> None:
        self._record(StageName.WAIT_100_CONTINUE)

    def wrote_request(self, error: ErrorLike = None) -> None:
        self._record(StageName.WROTE_REQUEST, {"error": describe_error(error)})
