"""Tests for the click CLI."""

import json
from datetime import datetime, timezone

import conntrace.cli as cli_module
import pytest
from click.testing import CliRunner
from conntrace.cli import EXIT_BAD_CONFIG, EXIT_CANCELLED, cli
from conntrace.diagnostics.sink import TimelineSink
from conntrace.probe.executor import AttemptOutcome, AttemptResult
from conntrace.trace.hooks import LifecycleHooks
from conntrace.trace.timeline import TimelineRecorder


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def artifact(tmp_path):
    hooks = LifecycleHooks(TimelineRecorder())
    started_at = hooks.recorder.now()
    hooks.get_conn("example.com:443")
    hooks.connect_start("tcp", "93.184.216.34:443")
    hooks.connect_done("tcp", "93.184.216.34:443", ConnectionRefusedError("refused"))
    result = AttemptResult(
        timeline=hooks.recorder.snapshot(),
        outcome=AttemptOutcome.transport_failure(ConnectionRefusedError("refused")),
        started_at=started_at,
        duration_ms=12.0,
    )
    return TimelineSink(tmp_path, run_id="run").persist(4, result)


class TestShow:
    """Tests for the show command."""

    def test_renders_artifact(self, runner, artifact):
        result = runner.invoke(cli, ["show", str(artifact)])
        assert result.exit_code == 0
        assert "Attempt 4" in result.output
        assert "ConnectStart" in result.output
        assert "transport failure" in result.output

    def test_rejects_non_artifact(self, runner, tmp_path):
        path = tmp_path / "other.json"
        path.write_text(json.dumps({"unexpected": True}))
        result = runner.invoke(cli, ["show", str(path)])
        assert result.exit_code == EXIT_BAD_CONFIG


class TestCapture:
    """Tests for the capture command."""

    def test_bad_timeout(self, runner, tmp_path):
        result = runner.invoke(
            cli, ["capture", "--timeout", "-1", "--output-dir", str(tmp_path)]
        )
        assert result.exit_code == EXIT_BAD_CONFIG

    def test_stops_on_connection_error(self, runner, tmp_path, closed_port):
        url = f"http://127.0.0.1:{closed_port}/"
        result = runner.invoke(
            cli,
            ["capture", "--url", url, "--timeout", "2", "--no-env-proxy", "--output-dir", str(tmp_path)],
        )
        assert result.exit_code == 0, result.output
        assert "Connection error found after 1 attempts" in result.output

        artifacts = list(tmp_path.glob("*/attempt-*.json"))
        assert len(artifacts) == 1
        data = json.loads(artifacts[0].read_text())
        assert data["context"]["outcome"]["kind"] == "transport_failure"

    def test_interrupt_while_persisting(self, runner, tmp_path, monkeypatch):
        """Ctrl-C between requests exits as cancelled, not with a traceback."""

        class OneShotExecutor:
            def __init__(self, config):
                pass

            def __enter__(self):
                return self

            def __exit__(self, *exc_info):
                return False

            def execute(self):
                return AttemptResult((), AttemptOutcome.completed(200), datetime.now(timezone.utc), 1.0)

        class InterruptedSink:
            def __init__(self, output_dir):
                pass

            def get_output_path(self):
                return tmp_path

            def persist(self, attempt, result):
                raise KeyboardInterrupt

        monkeypatch.setattr(cli_module, "RequestExecutor", OneShotExecutor)
        monkeypatch.setattr(cli_module, "TimelineSink", InterruptedSink)

        result = runner.invoke(cli, ["capture", "--output-dir", str(tmp_path)])
        assert result.exit_code == EXIT_CANCELLED
        assert "Cancelled after 1 attempts" in result.output


class TestProbe:
    """Tests for the probe command."""

    def test_single_request(self, runner, http_server):
        result = runner.invoke(cli, ["probe", "--url", f"{http_server}/", "--no-env-proxy"])
        assert result.exit_code == 0, result.output
        assert "GotFirstResponseByte" in result.output
        assert "completed" in result.output

