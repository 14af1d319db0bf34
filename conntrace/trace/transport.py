"""httpx transport that feeds lifecycle hooks while a request is in flight.

Three layers report into a per-attempt TransportObserver:

- TracingTransport: connection acquisition (GetConn) and the httpcore
  ``trace`` extension (header/body writes, response close)
- TracingBackend: name resolution and TCP dialing
- TracingStream: TLS handshake, first write/read on a connection and
  informational (1xx) response heads

The hooks for a request are attached via ``request.extensions[HOOKS_EXTENSION]``.
Requests without hooks go through the transport unchanged. An optional
``request.extensions[DEADLINE_EXTENSION]`` bounds every network operation of
the request, name resolution included.

A CONNECT request sent to an HTTPS proxy carries the same extensions; its
writes, reads and trace events are left out of the timeline.
"""

import contextvars
import ipaddress
import logging
import socket
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

import httpcore
import httpx

from .hooks import ConnInfo, LifecycleHooks

logger = logging.getLogger(__name__)

HOOKS_EXTENSION = "conntrace.hooks"
# Absolute time.monotonic() by which the whole attempt must be over
DEADLINE_EXTENSION = "conntrace.deadline"

# Informational heads larger than this are not worth sniffing
MAX_SNIFF_BYTES = 64 * 1024

_active_observer: contextvars.ContextVar[Optional["TransportObserver"]] = contextvars.ContextVar(
    "conntrace_active_observer", default=None
)


def _format_address(address: Any) -> Optional[str]:
    """Format a socket address tuple as host:port."""
    if not isinstance(address, tuple) or len(address) < 2:
        return None if address is None else str(address)
    host, port = address[0], address[1]
    if ":" in str(host):
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def describe_tls(ssl_object: Any) -> Dict[str, Any]:
    """Summarize the negotiated TLS state of a connection."""
    if ssl_object is None:
        return {}

    state: Dict[str, Any] = {
        "version": ssl_object.version(),
        "server_name": getattr(ssl_object, "server_hostname", None),
        "did_resume": bool(getattr(ssl_object, "session_reused", False)),
        "negotiated_protocol": ssl_object.selected_alpn_protocol(),
    }

    cipher = ssl_object.cipher()
    if cipher:
        state["cipher_suite"] = cipher[0]
        state["cipher_bits"] = cipher[2]

    peer = ssl_object.getpeercert()
    if peer:
        state["peer_certificate"] = {
            "subject": [list(part) for rdn in peer.get("subject", ()) for part in rdn],
            "issuer": [list(part) for rdn in peer.get("issuer", ()) for part in rdn],
            "not_before": peer.get("notBefore"),
            "not_after": peer.get("notAfter"),
        }

    return state


class ResponseHeadSniffer:
    """Picks informational response heads out of the raw response bytes.

    httpcore consumes 1xx responses silently, so they are recovered from the
    bytes read off the connection. Sniffing stops at the first final head.
    """

    def __init__(self):
        self._buffer = b""
        self.done = False

    def feed(self, data: bytes) -> List[Tuple[int, Dict[str, List[str]]]]:
        """Feed received bytes.

        Returns:
            (status_code, headers) for each complete informational head
        """
        found: List[Tuple[int, Dict[str, List[str]]]] = []
        if self.done:
            return found

        self._buffer += data
        while not self.done:
            head, sep, rest = self._buffer.partition(b"\r\n\r\n")
            if not sep:
                if len(self._buffer) > MAX_SNIFF_BYTES:
                    self._stop()
                break

            lines = head.decode("latin-1").split("\r\n")
            parts = lines[0].split(" ", 2)
            try:
                code = int(parts[1])
            except (IndexError, ValueError):
                self._stop()
                break

            # 101 switches protocols and ends the response like a final head
            if not 100 <= code < 200 or code == 101:
                self._stop()
                break

            headers: Dict[str, List[str]] = {}
            for line in lines[1:]:
                name, _, value = line.partition(":")
                headers.setdefault(name.strip(), []).append(value.strip())
            found.append((code, headers))
            self._buffer = rest

        return found

    def _stop(self) -> None:
        self.done = True
        self._buffer = b""


class TransportObserver:
    """Per-attempt bridge from transport notifications to lifecycle hooks."""

    def __init__(self, hooks: LifecycleHooks, deadline: Optional[float] = None):
        """Initialize observer.

        Args:
            hooks: Instrumentation for the attempt
            deadline: time.monotonic() value after which every network
                operation of the attempt times out
        """
        self.hooks = hooks
        self.deadline = deadline
        self.dialed = False
        # Set while a proxy CONNECT request is on the wire
        self.tunneling = False
        self.stream: Optional["TracingStream"] = None
        self._got_conn = False
        self._first_byte = False
        self._pending_headers: List[Tuple[bytes, bytes]] = []
        self._sniffer: Optional[ResponseHeadSniffer] = None

    def on_trace_event(self, name: str, info: Dict[str, Any]) -> None:
        """httpcore ``trace`` extension callback."""
        try:
            self._dispatch(name, info)
        except Exception:
            logger.debug(f"Lifecycle hook failed for {name}", exc_info=True)

    def _dispatch(self, name: str, info: Dict[str, Any]) -> None:
        # Event names look like "http11.<step>.<phase>", possibly namespaced
        _, sep, event = name.partition("http11.")
        if not sep:
            return

        if event == "send_request_headers.started":
            self.tunneling = info["request"].method == b"CONNECT"
        if self.tunneling:
            # The tunnel setup is not part of the traced request
            return

        if event == "send_request_headers.started":
            self._pending_headers = list(info["request"].headers)
        elif event == "send_request_headers.complete":
            expect_continue = False
            for key, value in self._pending_headers:
                key_text = key.decode("latin-1")
                value_text = value.decode("latin-1")
                if key_text.lower() == "expect" and value_text.lower() == "100-continue":
                    expect_continue = True
                self.hooks.wrote_header_field(key_text, value_text)
            self.hooks.wrote_headers()
            if expect_continue:
                self.hooks.wait_100_continue()
            self._pending_headers = []
            self._sniffer = ResponseHeadSniffer()
        elif event in ("send_request_headers.failed", "send_request_body.failed"):
            self.hooks.wrote_request(info.get("exception"))
        elif event == "send_request_body.complete":
            self.hooks.wrote_request()
        elif event == "response_closed.complete":
            if self.stream is not None and self.stream.closed:
                self.hooks.put_idle_conn("connection closed")
            else:
                self.hooks.put_idle_conn()
        elif event == "response_closed.failed":
            self.hooks.put_idle_conn(info.get("exception"))

    def on_write(self, stream: "TracingStream", idle_time: float) -> None:
        if self.tunneling:
            return
        self.stream = stream
        if self._got_conn:
            return
        self._got_conn = True
        reused = not self.dialed
        self.hooks.got_conn(
            ConnInfo(
                reused=reused,
                was_idle=reused,
                idle_time=idle_time if reused else 0.0,
                local_address=_format_address(stream.get_extra_info("client_addr")),
                remote_address=_format_address(stream.get_extra_info("server_addr")),
                tls=stream.get_extra_info("ssl_object") is not None,
            )
        )

    def on_read(self, data: bytes) -> None:
        if not data or self.tunneling:
            return
        if not self._first_byte:
            self._first_byte = True
            self.hooks.got_first_response_byte()
        if self._sniffer is not None and not self._sniffer.done:
            for code, headers in self._sniffer.feed(data):
                if code == 100:
                    self.hooks.got_100_continue()
                self.hooks.got_1xx_response(code, headers)

    def cap_timeout(self, timeout: Optional[float], error: type) -> Optional[float]:
        """Shrink an operation timeout to what is left of the attempt.

        Raises:
            error: If the attempt deadline has already passed
        """
        if self.deadline is None:
            return timeout
        remaining = self.deadline - time.monotonic()
        if remaining <= 0:
            raise error("Request timeout exceeded")
        return remaining if timeout is None else min(timeout, remaining)

    def guard(self, callback, *args) -> None:
        """Run an observer callback without letting it disturb the request."""
        try:
            callback(*args)
        except Exception:
            logger.debug(f"Lifecycle hook {callback.__name__} failed", exc_info=True)


def current_observer() -> Optional[TransportObserver]:
    """Observer for the request in flight on this context, if any."""
    return _active_observer.get()


@contextmanager
def observing(observer: TransportObserver) -> Iterator[TransportObserver]:
    """Bind an observer to the current context for the duration of a request."""
    token = _active_observer.set(observer)
    try:
        yield observer
    finally:
        _active_observer.reset(token)


class TracingStream(httpcore.NetworkStream):
    """Network stream wrapper reporting reads, writes and TLS upgrades."""

    def __init__(self, stream: httpcore.NetworkStream):
        self._stream = stream
        self.last_activity = time.monotonic()
        self.closed = False

    def read(self, max_bytes: int, timeout: Optional[float] = None) -> bytes:
        observer = current_observer()
        if observer is not None:
            timeout = observer.cap_timeout(timeout, httpcore.ReadTimeout)
        data = self._stream.read(max_bytes, timeout=timeout)
        self.last_activity = time.monotonic()
        if observer is not None:
            observer.guard(observer.on_read, data)
        return data

    def write(self, buffer: bytes, timeout: Optional[float] = None) -> None:
        idle_time = time.monotonic() - self.last_activity
        observer = current_observer()
        if observer is not None:
            timeout = observer.cap_timeout(timeout, httpcore.WriteTimeout)
            observer.guard(observer.on_write, self, idle_time)
        self._stream.write(buffer, timeout=timeout)
        self.last_activity = time.monotonic()

    def close(self) -> None:
        self.closed = True
        self._stream.close()

    def start_tls(
        self,
        ssl_context,
        server_hostname: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> httpcore.NetworkStream:
        observer = current_observer()
        if observer is not None:
            timeout = observer.cap_timeout(timeout, httpcore.ConnectTimeout)
            observer.guard(observer.hooks.tls_handshake_start)

        try:
            tls_stream = self._stream.start_tls(
                ssl_context, server_hostname=server_hostname, timeout=timeout
            )
        except Exception as e:
            if observer is not None:
                observer.guard(observer.hooks.tls_handshake_done, None, e)
            raise

        wrapped = TracingStream(tls_stream)
        if observer is not None:
            observer.guard(self._report_tls, observer, wrapped)
        return wrapped

    @staticmethod
    def _report_tls(observer: TransportObserver, stream: "TracingStream") -> None:
        observer.hooks.tls_handshake_done(describe_tls(stream.get_extra_info("ssl_object")))

    def get_extra_info(self, info: str) -> Any:
        return self._stream.get_extra_info(info)


def _getaddrinfo(host: str, port: int, timeout: Optional[float]) -> List[Tuple[Any, ...]]:
    """socket.getaddrinfo with an upper bound on how long the caller waits.

    The lookup runs on a daemon thread; on timeout it is abandoned, not
    cancelled.

    Raises:
        TimeoutError: If no answer arrived within timeout seconds
        OSError: If resolution failed
    """
    if timeout is None:
        return socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)

    outcome: Dict[str, Any] = {}

    def lookup():
        try:
            outcome["infos"] = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
        except OSError as e:
            outcome["error"] = e

    worker = threading.Thread(target=lookup, name=f"conntrace-dns-{host}", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        raise TimeoutError(f"DNS lookup for {host} timed out after {timeout:.2f}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["infos"]


class TracingBackend(httpcore.NetworkBackend):
    """Network backend reporting name resolution and TCP dialing."""

    def __init__(self, backend: Optional[httpcore.NetworkBackend] = None):
        self._backend = backend or httpcore.SyncBackend()

    def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: Optional[float] = None,
        local_address: Optional[str] = None,
        socket_options=None,
    ) -> httpcore.NetworkStream:
        observer = current_observer()
        if observer is None:
            return TracingStream(
                self._backend.connect_tcp(
                    host,
                    port,
                    timeout=timeout,
                    local_address=local_address,
                    socket_options=socket_options,
                )
            )

        last_error: Optional[Exception] = None
        for network, address in self._resolve(observer, host, port, timeout):
            addr = _format_address(address)
            attempt_timeout = observer.cap_timeout(timeout, httpcore.ConnectTimeout)
            observer.guard(observer.hooks.connect_start, network, addr)
            try:
                stream = self._backend.connect_tcp(
                    address[0],
                    port,
                    timeout=attempt_timeout,
                    local_address=local_address,
                    socket_options=socket_options,
                )
            except (httpcore.ConnectError, httpcore.ConnectTimeout) as e:
                observer.guard(observer.hooks.connect_done, network, addr, e)
                last_error = e
                continue

            observer.guard(observer.hooks.connect_done, network, addr)
            observer.dialed = True
            return TracingStream(stream)

        if last_error is None:
            raise httpcore.ConnectError(f"No addresses found for {host}")
        raise last_error

    def _resolve(
        self,
        observer: TransportObserver,
        host: str,
        port: int,
        timeout: Optional[float] = None,
    ) -> List[Tuple[str, Tuple[str, int]]]:
        """Resolve host to (network, address) pairs in dialing order."""
        try:
            ipaddress.ip_address(host)
        except ValueError:
            pass
        else:
            # IP literals are dialed directly, no resolver involved
            return [("tcp", (host, port))]

        timeout = observer.cap_timeout(timeout, httpcore.ConnectTimeout)
        observer.guard(observer.hooks.dns_start, host)
        try:
            infos = _getaddrinfo(host, port, timeout)
        except TimeoutError as e:
            observer.guard(observer.hooks.dns_done, [], e)
            raise httpcore.ConnectTimeout(str(e)) from e
        except OSError as e:
            observer.guard(observer.hooks.dns_done, [], e)
            raise httpcore.ConnectError(str(e)) from e

        resolved: List[Tuple[str, Tuple[str, int]]] = []
        for _family, _type, _proto, _canonname, sockaddr in infos:
            address = (sockaddr[0], port)
            if ("tcp", address) not in resolved:
                resolved.append(("tcp", address))

        observer.guard(observer.hooks.dns_done, [ip for _, (ip, _) in resolved])
        return resolved

    def connect_unix_socket(self, path: str, timeout: Optional[float] = None, socket_options=None):
        return TracingStream(
            self._backend.connect_unix_socket(path, timeout=timeout, socket_options=socket_options)
        )

    def sleep(self, seconds: float) -> None:
        self._backend.sleep(seconds)


class TracingTransport(httpx.HTTPTransport):
    """HTTP transport whose connections report into lifecycle hooks.

    Accepts the same arguments as httpx.HTTPTransport. The connection pool is
    shared by every request sent through the transport, so connection reuse
    across attempts shows up in GotConn.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # httpx builds the pool itself; wrap whatever backend it chose
        self._pool._network_backend = TracingBackend(self._pool._network_backend)

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        hooks = request.extensions.get(HOOKS_EXTENSION)
        if hooks is None:
            return super().handle_request(request)

        observer = TransportObserver(hooks, deadline=request.extensions.get(DEADLINE_EXTENSION))
        request.extensions["trace"] = observer.on_trace_event

        port = request.url.port or (443 if request.url.scheme == "https" else 80)
        observer.guard(hooks.get_conn, _format_address((request.url.host, port)))

        with observing(observer):
            return super().handle_request(request)
