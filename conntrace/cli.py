"""Click CLI for conntrace.

Commands:
- capture: Repeat the request until a connection error shows up
- probe: Run a single instrumented request and print its timeline
- show: Print a persisted attempt artifact
"""

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
from rich.console import Console
from rich.table import Table

from conntrace import __version__
from conntrace.diagnostics import TimelineSink, load_entry
from conntrace.diagnostics.logger import setup_logging
from conntrace.probe import (
    AttemptResult,
    DiagnosticLoop,
    OutcomeKind,
    RequestExecutor,
    StopReason,
    build_config,
)
from conntrace.probe.config import DEFAULT_OUTPUT_DIR, DEFAULT_TARGET_URL, ProbeConfig
from conntrace.trace.timeline import timeline_to_list
from conntrace.utils.errors import ConfigurationError, PersistenceError

console = Console()
logger = logging.getLogger(__name__)

EXIT_PERSISTENCE_FAILED = 1
EXIT_BAD_CONFIG = 2
EXIT_CANCELLED = 130


def probe_options(func):
    """Options shared by commands that send requests."""
    func = click.option(
        "--insecure", is_flag=True, help="Skip TLS certificate verification"
    )(func)
    func = click.option(
        "--no-env-proxy", is_flag=True, help="Ignore HTTP(S)_PROXY from the environment"
    )(func)
    func = click.option(
        "--timeout",
        type=float,
        envvar="CONNTRACE_TIMEOUT",
        help="Handshake, response-header, idle and overall timeout in seconds (default 10)",
    )(func)
    func = click.option(
        "--url",
        envvar="CONNTRACE_URL",
        default=DEFAULT_TARGET_URL,
        show_default=True,
        help="URL requested on every attempt",
    )(func)
    return func


def _load_config(
    url: str,
    timeout: Optional[float],
    no_env_proxy: bool,
    insecure: bool,
    output_dir: Optional[str] = None,
) -> ProbeConfig:
    try:
        return build_config(
            url=url,
            tls_handshake_timeout=timeout,
            response_header_timeout=timeout,
            idle_conn_timeout=timeout,
            request_timeout=timeout,
            trust_env=not no_env_proxy,
            verify=not insecure,
            output_dir=output_dir,
        )
    except ConfigurationError as e:
        console.print(f"[red]{e}[/]")
        sys.exit(EXIT_BAD_CONFIG)


def _describe_outcome(outcome: Dict[str, Any]) -> str:
    kind = outcome.get("kind")
    if kind == OutcomeKind.COMPLETED.value:
        return f"[green]completed[/] ({outcome.get('status_code')})"
    if kind == OutcomeKind.SETUP_FAILURE.value:
        return f"[yellow]setup failure[/] - {outcome.get('error')}"
    if outcome.get("cancelled"):
        return "[yellow]cancelled[/]"
    return f"[red]transport failure[/] - {outcome.get('error')}"


def render_timeline(stages: List[Dict[str, Any]], title: str) -> Table:
    """Render serialized stages as a table with offsets from the first stage."""
    table = Table(title=title)
    table.add_column("#", style="dim", justify="right")
    table.add_column("+ms", justify="right", no_wrap=True)
    table.add_column("Stage", no_wrap=True)
    table.add_column("Values", overflow="fold")

    origin = None
    for index, stage in enumerate(stages, start=1):
        timestamp = datetime.fromisoformat(stage["timestamp"])
        if origin is None:
            origin = timestamp
        offset_ms = (timestamp - origin).total_seconds() * 1000
        values = stage.get("values") or {}
        table.add_row(
            str(index),
            f"{offset_ms:.2f}",
            stage["name"],
            json.dumps(values, default=str) if values else "",
        )

    return table


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--debug",
    is_flag=True,
    help="Enable debug logging",
)
@click.option(
    "--debug-http",
    is_flag=True,
    help="Enable verbose httpx/httpcore logging",
)
def cli(debug: bool, debug_http: bool):
    """conntrace - trace HTTP request lifecycles until a connection fails."""
    level = "DEBUG" if debug else "INFO"
    setup_logging(level=level, debug_http=debug_http)


@cli.command()
@probe_options
@click.option(
    "--output-dir",
    envvar="CONNTRACE_OUTPUT_DIR",
    default=DEFAULT_OUTPUT_DIR,
    show_default=True,
    help="Directory for attempt artifacts",
)
def capture(
    url: str,
    timeout: Optional[float],
    no_env_proxy: bool,
    insecure: bool,
    output_dir: str,
):
    """Repeat the request until a connection error is found."""
    config = _load_config(url, timeout, no_env_proxy, insecure, output_dir)

    try:
        sink = TimelineSink(config.output_dir)
    except PersistenceError as e:
        console.print(f"[red]{e}[/]")
        sys.exit(EXIT_PERSISTENCE_FAILED)

    def report(attempt: int, result: AttemptResult, path: Path):
        console.print(
            f"Attempt {attempt}: {_describe_outcome(result.outcome.to_dict())} "
            f"in {result.duration_ms:.0f}ms, {len(result.timeline)} stages"
        )

    console.print(f"[bold]Capturing[/] {config.method} {config.url}")
    console.print(f"Writing timelines to {sink.get_output_path()}")

    with RequestExecutor(config) as executor:
        loop = DiagnosticLoop(executor, sink, on_attempt=report)
        try:
            summary = loop.run()
        except PersistenceError as e:
            console.print(f"[red]{e}[/]")
            sys.exit(EXIT_PERSISTENCE_FAILED)
        except KeyboardInterrupt:
            # Interrupted outside a request, e.g. while persisting
            console.print(f"[yellow]Cancelled after {loop.attempts} attempts[/]")
            sys.exit(EXIT_CANCELLED)

    logger.debug(f"Stopped after {summary.attempts} attempts: {summary.stop_reason.value}")

    if summary.stop_reason == StopReason.CANCELLED:
        console.print(f"[yellow]Cancelled after {summary.attempts} attempts[/]")
        sys.exit(EXIT_CANCELLED)

    console.print(f"[bold red]Connection error found after {summary.attempts} attempts![/]")
    console.print(f"Timeline: {summary.last_artifact}")


@cli.command()
@probe_options
@click.option(
    "--output-dir",
    envvar="CONNTRACE_OUTPUT_DIR",
    default=None,
    help="Also persist the attempt under this directory",
)
def probe(
    url: str,
    timeout: Optional[float],
    no_env_proxy: bool,
    insecure: bool,
    output_dir: Optional[str],
):
    """Run one instrumented request and print its timeline."""
    config = _load_config(url, timeout, no_env_proxy, insecure, output_dir)

    with RequestExecutor(config) as executor:
        result = executor.execute()

    console.print(
        render_timeline(timeline_to_list(result.timeline), title=f"{config.method} {config.url}")
    )
    console.print(f"Outcome: {_describe_outcome(result.outcome.to_dict())}")

    if output_dir:
        try:
            path = TimelineSink(output_dir).persist(1, result)
        except PersistenceError as e:
            console.print(f"[red]{e}[/]")
            sys.exit(EXIT_PERSISTENCE_FAILED)
        console.print(f"Saved to {path}")


@cli.command()
@click.argument("artifact", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def show(artifact: Path):
    """Print a persisted attempt artifact."""
    try:
        entry = load_entry(artifact)
    except (ValueError, TypeError, KeyError) as e:
        console.print(f"[red]Not an attempt artifact: {e}[/]")
        sys.exit(EXIT_BAD_CONFIG)

    context = entry.context
    console.print(
        render_timeline(
            context.get("stages", []),
            title=f"Attempt {context.get('attempt', '?')} at {entry.timestamp}",
        )
    )
    console.print(f"Outcome: {_describe_outcome(context.get('outcome', {}))}")
    if context.get("duration_ms") is not None:
        console.print(f"Duration: {context['duration_ms']:.0f}ms")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
