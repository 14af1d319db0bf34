"""Tests for attempt artifact persistence."""

import json
from datetime import datetime, timezone

import pytest
from conntrace.diagnostics.logger import LogEntry
from conntrace.diagnostics.sink import TimelineSink, load_entry
from conntrace.probe.executor import AttemptOutcome, AttemptResult
from conntrace.trace.hooks import ConnInfo, LifecycleHooks
from conntrace.trace.timeline import TimelineRecorder
from conntrace.utils.errors import PersistenceError


@pytest.fixture
def result():
    hooks = LifecycleHooks(TimelineRecorder())
    hooks.get_conn("update.traefik.io:443")
    hooks.dns_start("update.traefik.io")
    hooks.dns_done(["203.0.113.7"])
    hooks.got_conn(ConnInfo(reused=False, remote_address="203.0.113.7:443", tls=True))
    hooks.tls_handshake_done({"version": "TLSv1.3"}, None)
    return AttemptResult(
        timeline=hooks.recorder.snapshot(),
        outcome=AttemptOutcome.transport_failure(TimeoutError("handshake timed out")),
        started_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        duration_ms=10000.5,
    )


class TestTimelineSink:
    """Tests for TimelineSink."""

    def test_creates_run_directory(self, tmp_path):
        sink = TimelineSink(tmp_path / "out", run_id="1714564800")
        assert sink.get_output_path() == tmp_path / "out" / "1714564800"
        assert sink.get_output_path().is_dir()

    def test_default_run_id_is_unix_time(self, tmp_path):
        sink = TimelineSink(tmp_path)
        assert sink.run_id.isdigit()

    def test_persist_writes_structured_entry(self, tmp_path, result):
        sink = TimelineSink(tmp_path, run_id="run")
        path = sink.persist(7, result)

        assert path == tmp_path / "run" / "attempt-000007.json"
        data = json.loads(path.read_text())
        assert data["level"] == "error"
        assert data["message"] == "Request failed"
        assert data["timestamp"] == "2024-05-01T12:00:00+00:00"

        context = data["context"]
        assert context["attempt"] == 7
        assert context["duration_ms"] == 10000.5
        assert context["outcome"]["kind"] == "transport_failure"
        assert context["outcome"]["error"] == "TimeoutError: handshake timed out"
        assert [s["name"] for s in context["stages"]] == [
            "GetConn",
            "DNSStart",
            "DNSDone",
            "GotConn",
            "TLSHandshakeDone",
        ]
        assert context["stages"][3]["values"]["conn"]["remote_address"] == "203.0.113.7:443"
        assert context["stages"][4]["values"]["state"] == {"version": "TLSv1.3"}

    def test_levels_per_outcome(self, tmp_path, result):
        sink = TimelineSink(tmp_path, run_id="run")
        completed = AttemptResult(
            result.timeline, AttemptOutcome.completed(503), result.started_at, 1.0
        )
        setup = AttemptResult((), AttemptOutcome.setup_failure(ValueError("bad")), result.started_at, 0.0)
        assert sink.build_entry(1, completed).level == "info"
        assert sink.build_entry(2, setup).level == "warning"

    def test_load_entry_roundtrip(self, tmp_path, result):
        path = TimelineSink(tmp_path, run_id="run").persist(1, result)
        entry = load_entry(path)
        assert isinstance(entry, LogEntry)
        assert entry.context["attempt"] == 1

    def test_unwritable_directory(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        with pytest.raises(PersistenceError) as exc_info:
            TimelineSink(blocker)
        assert exc_info.value.path is not None

    def test_write_failure(self, tmp_path, result):
        sink = TimelineSink(tmp_path, run_id="run")
        # A directory where the artifact file should go makes open() fail
        (sink.get_output_path() / "attempt-000001.json").mkdir()
        with pytest.raises(PersistenceError) as exc_info:
            sink.persist(1, result)
        assert exc_info.value.path.endswith("attempt-000001.json")
