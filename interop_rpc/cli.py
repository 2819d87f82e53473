# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Command-line interface for the interop server and client suite.

Provides ``serve`` to run ``grpc.testing.TestService``, ``test`` to run the
interop client scenarios against any server, and ``list`` to show them.

Usage::

    interop-rpc serve --port 8080
    interop-rpc serve --port 0 --log-level INFO --log-format json
    interop-rpc test --target localhost:8080 --filter "streaming*"
    interop-rpc list

Every option can also be set through an ``INTEROP_RPC_*`` environment
variable (for example ``INTEROP_RPC_PORT``).

"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from collections.abc import Callable
from enum import StrEnum
from typing import Annotated

import typer

from interop_rpc.client import connect
from interop_rpc.runner import DEFAULT_TEST_TIMEOUT, InteropResult, InteropSuite, list_interop_tests, run_interop
from interop_rpc.server import InteropServer, ServerConfig, serve

# ---------------------------------------------------------------------------
# Known loggers registry
# ---------------------------------------------------------------------------

_KNOWN_LOGGERS: tuple[tuple[str, str, str], ...] = (
    ("interop_rpc", "Root logger for all interop-rpc output", "Enable to see all framework logging"),
    ("interop_rpc.access", "One structured record per completed call", "Monitor request throughput and errors"),
    ("interop_rpc.server", "Server lifecycle and dispatch", "Debug binding, shutdown and handler faults"),
    ("interop_rpc.queue", "Delay queue scheduling", "Debug stalled or discarded scheduled writes"),
    ("interop_rpc.handlers", "Per-method handler decisions", "Debug injected statuses and write failures"),
    ("interop_rpc.client", "Client channel lifecycle", "Debug connection targets"),
    ("interop_rpc.otel", "OpenTelemetry integration", "Debug span creation and propagation"),
    ("interop_rpc.sentry", "Sentry integration", "Debug error capture"),
)

_KNOWN_LOGGER_NAMES: frozenset[str] = frozenset(name for name, _, _ in _KNOWN_LOGGERS)


class LogFormat(StrEnum):
    """Log record rendering on stderr."""

    text = "text"
    json = "json"


class OutputFormat(StrEnum):
    """Output format for test results."""

    auto = "auto"
    json = "json"
    table = "table"


app = typer.Typer(
    name="interop-rpc",
    help="gRPC interop test server and client suite.",
    add_completion=False,
    no_args_is_help=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _configure_logging(level: str | None, log_format: LogFormat, debug: bool, loggers: list[str] | None) -> None:
    """Attach a stderr handler to the target loggers at the requested level."""
    if debug:
        level = "DEBUG"
    if level is None:
        return

    handler = logging.StreamHandler(sys.stderr)
    if log_format == LogFormat.json:
        from interop_rpc.logging_utils import InteropJsonFormatter

        handler.setFormatter(InteropJsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(name)-22s %(levelname)-5s %(message)s"))

    numeric_level = logging.getLevelNamesMapping()[level.upper()]
    targets: list[str] = loggers if loggers else ["interop_rpc"]

    for name in targets:
        if name not in _KNOWN_LOGGER_NAMES:
            sys.stderr.write(f"Warning: unknown logger '{name}'\n")
            sys.stderr.flush()
        logger = logging.getLogger(name)
        logger.setLevel(numeric_level)
        logger.addHandler(handler)


def _parse_filter(value: str | None) -> list[str] | None:
    if not value:
        return None
    return [p.strip() for p in value.split(",") if p.strip()] or None


def _format_table(suite: InteropSuite) -> str:
    """Format results as a human-readable table."""
    lines: list[str] = []
    lines.append(f"interop-rpc: {suite.passed} passed, {suite.failed} failed ({suite.duration_ms / 1000:.2f}s)")
    lines.append("")

    for r in suite.results:
        status = "PASS" if r.passed else "FAIL"
        lines.append(f"  {r.name:<45s} {status:>4s}  {r.duration_ms:>7.1f}ms")
        if r.error:
            lines.append(f"    {r.error}")

    return "\n".join(lines)


def _format_json(suite: InteropSuite) -> str:
    """Format results as JSON."""
    data: dict[str, object] = {
        "total": suite.total,
        "passed": suite.passed,
        "failed": suite.failed,
        "duration_ms": round(suite.duration_ms, 1),
        "results": [
            {
                "name": r.name,
                "category": r.category,
                "passed": r.passed,
                "duration_ms": round(r.duration_ms, 1),
                "error": r.error,
            }
            for r in suite.results
        ],
    }
    return json.dumps(data, indent=2)


def _make_progress_callback() -> Callable[[InteropResult], None] | None:
    """Create a progress callback for real-time output on TTY stderr."""
    if not sys.stderr.isatty():
        return None

    def _progress(result: InteropResult) -> None:
        status = "PASS" if result.passed else "FAIL"
        sys.stderr.write(f"  {result.name:<45s} {status}\n")
        sys.stderr.flush()

    return _progress


def _build_interop_server(server_id: str | None, otel: bool, sentry_dsn: str | None) -> InteropServer:
    """Create the server and attach the requested instrumentation."""
    interop = InteropServer(server_id=server_id)
    if otel:
        from interop_rpc.otel import instrument_server

        instrument_server(interop)
    if sentry_dsn:
        import sentry_sdk

        from interop_rpc.sentry import instrument_server_sentry

        sentry_sdk.init(dsn=sentry_dsn)
        instrument_server_sentry(interop)
    return interop


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


_LogLevelOption = Annotated[
    str | None, typer.Option("--log-level", envvar="INTEROP_RPC_LOG_LEVEL", help="Log level for stderr output")
]
_LogFormatOption = Annotated[
    LogFormat, typer.Option("--log-format", envvar="INTEROP_RPC_LOG_FORMAT", help="Log record format")
]
_LogLoggerOption = Annotated[
    list[str] | None, typer.Option("--log-logger", help="Logger to configure (repeatable, default interop_rpc)")
]
_DebugOption = Annotated[bool, typer.Option("--debug", help="Shorthand for --log-level DEBUG")]


@app.command("serve")
def serve_command(
    port: Annotated[int, typer.Option("--port", envvar="INTEROP_RPC_PORT", help="Port to bind; 0 picks a free one")],
    host: Annotated[str, typer.Option("--host", envvar="INTEROP_RPC_HOST", help="Interface to bind")] = "0.0.0.0",
    server_id: Annotated[
        str | None, typer.Option("--server-id", envvar="INTEROP_RPC_SERVER_ID", help="Server identifier")
    ] = None,
    max_concurrent_rpcs: Annotated[
        int | None,
        typer.Option("--max-concurrent-rpcs", envvar="INTEROP_RPC_MAX_CONCURRENT_RPCS", help="Concurrent call limit"),
    ] = None,
    grace_period: Annotated[
        float, typer.Option("--grace-period", envvar="INTEROP_RPC_GRACE_PERIOD", help="Shutdown grace in seconds")
    ] = 5.0,
    otel: Annotated[bool, typer.Option("--otel", help="Enable OpenTelemetry instrumentation")] = False,
    sentry_dsn: Annotated[
        str | None, typer.Option("--sentry-dsn", envvar="INTEROP_RPC_SENTRY_DSN", help="Report faults to Sentry")
    ] = None,
    log_level: _LogLevelOption = None,
    log_format: _LogFormatOption = LogFormat.text,
    log_logger: _LogLoggerOption = None,
    debug: _DebugOption = False,
) -> None:
    """Serve grpc.testing.TestService until interrupted."""
    if port < 0:
        raise typer.BadParameter("--port must be non-negative")
    _configure_logging(log_level, log_format, debug, log_logger)
    config = ServerConfig(
        host=host,
        port=port,
        server_id=server_id,
        max_concurrent_rpcs=max_concurrent_rpcs,
        grace_period=grace_period,
    )
    interop = _build_interop_server(server_id, otel, sentry_dsn)

    def _announce(bound: int) -> None:
        typer.echo(f"PORT:{bound}")

    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(serve(config, interop, on_started=_announce))


@app.command("test")
def run_tests_command(
    target: Annotated[str, typer.Option("--target", "-t", envvar="INTEROP_RPC_TARGET", help="Server host:port")],
    filter_: Annotated[
        str | None, typer.Option("--filter", "-k", help="Comma-separated glob patterns of tests to run")
    ] = None,
    fmt: Annotated[OutputFormat, typer.Option("--format", "-f", help="Output format")] = OutputFormat.auto,
    timeout: Annotated[
        float, typer.Option("--timeout", help="Per-test timeout in seconds; 0 disables")
    ] = DEFAULT_TEST_TIMEOUT,
    log_level: _LogLevelOption = None,
    log_format: _LogFormatOption = LogFormat.text,
    log_logger: _LogLoggerOption = None,
    debug: _DebugOption = False,
) -> None:
    """Run the interop client suite against a server."""
    _configure_logging(log_level, log_format, debug, log_logger)
    if fmt == OutputFormat.auto:
        fmt = OutputFormat.table if sys.stdout.isatty() else OutputFormat.json
    progress_cb = _make_progress_callback() if fmt == OutputFormat.table else None

    async def _run() -> InteropSuite:
        async with connect(target) as client:
            return await run_interop(
                client,
                filter_patterns=_parse_filter(filter_),
                on_progress=progress_cb,
                timeout=timeout,
            )

    suite = asyncio.run(_run())
    typer.echo(_format_json(suite) if fmt == OutputFormat.json else _format_table(suite))
    if not suite.success:
        raise typer.Exit(1)


@app.command("list")
def list_command(
    filter_: Annotated[str | None, typer.Option("--filter", "-k", help="Comma-separated glob patterns")] = None,
) -> None:
    """List the interop client tests."""
    for name in list_interop_tests(_parse_filter(filter_)):
        typer.echo(name)


@app.command("loggers")
def loggers_command() -> None:
    """List the named loggers and what they report."""
    for name, description, hint in _KNOWN_LOGGERS:
        typer.echo(f"{name:<22s} {description}. {hint}.")


def main() -> None:
    """Console script entry point."""
    app()
