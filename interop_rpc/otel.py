# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""OpenTelemetry server-side instrumentation for the interop server.

Provides ``OtelConfig`` and ``instrument_server()`` for adding distributed
tracing (one ``SERVER`` span per call) and metrics (request counter and
duration histogram) to :class:`~interop_rpc.server.InteropServer` dispatch.

Requires ``pip install interop-rpc[otel]`` (opentelemetry-api + opentelemetry-sdk).

Usage::

    from interop_rpc.otel import OtelConfig, instrument_server

    server = InteropServer()
    instrument_server(server)  # uses global TracerProvider / MeterProvider
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from contextvars import Token
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from opentelemetry import context as otel_context
from opentelemetry import propagate, trace
from opentelemetry.context import Context
from opentelemetry.metrics import Counter, Histogram, Meter, MeterProvider, get_meter_provider
from opentelemetry.trace import SpanKind, StatusCode, Tracer, TracerProvider, get_tracer_provider

from interop_rpc._common import CallStatistics, HookToken, Metadata, _register_dispatch_hook

if TYPE_CHECKING:
    from interop_rpc.call import CallOutcome
    from interop_rpc.handlers import InteropMethodInfo
    from interop_rpc.server import InteropServer

_logger = logging.getLogger("interop_rpc.otel")

_INSTRUMENTATION_NAME = "interop_rpc"
_INSTRUMENTATION_VERSION = "0.1.0"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OtelConfig:
    """Configuration for OpenTelemetry instrumentation.

    Attributes:
        tracer_provider: Custom ``TracerProvider``; uses the global provider when ``None``.
        meter_provider: Custom ``MeterProvider``; uses the global provider when ``None``.
        enable_tracing: Enable span creation (default ``True``).
        enable_metrics: Enable counter/histogram recording (default ``True``).
        record_exceptions: Record exceptions on error spans (default ``True``).
        custom_attributes: Extra span/metric attributes merged into every dispatch.

    """

    tracer_provider: TracerProvider | None = None
    meter_provider: MeterProvider | None = None
    enable_tracing: bool = True
    enable_metrics: bool = True
    record_exceptions: bool = True
    custom_attributes: Mapping[str, str] = field(default_factory=dict)


def instrument_server(server: InteropServer, config: OtelConfig | None = None) -> InteropServer:
    """Attach OpenTelemetry tracing and metrics to a server.

    Must be called before the server starts serving.

    Args:
        server: The ``InteropServer`` to instrument.
        config: Optional configuration; uses global providers and defaults when ``None``.

    Returns:
        The same *server* instance (for chaining).

    """
    if config is None:
        config = OtelConfig()
    hook = _OtelDispatchHook(config, server.service_name, server.server_id)
    server._dispatch_hook = _register_dispatch_hook(server._dispatch_hook, hook)
    _logger.debug("OpenTelemetry instrumentation attached (server_id=%s)", server.server_id)
    return server


# ---------------------------------------------------------------------------
# Internal dispatch hook
# ---------------------------------------------------------------------------


@dataclass
class _OtelHookToken:
    """Internal token carrying span + timing for on_dispatch_end."""

    span: trace.Span | None
    otel_token: Token[Context] | None
    start_time: float
    method_name: str
    method_kind: str


def _metadata_carrier(metadata: Metadata) -> dict[str, str]:
    """Text-valued invocation metadata as a propagation carrier (binary keys skipped)."""
    return {key: value for key, value in metadata if isinstance(value, str)}


class _OtelDispatchHook:
    """Implements ``_DispatchHook`` with OpenTelemetry spans and metrics."""

    __slots__ = (
        "_config",
        "_counter",
        "_histogram",
        "_meter",
        "_server_id",
        "_service",
        "_tracer",
    )

    def __init__(self, config: OtelConfig, service: str, server_id: str) -> None:
        self._config = config
        self._service = service
        self._server_id = server_id

        tp = config.tracer_provider or get_tracer_provider()
        self._tracer: Tracer = tp.get_tracer(_INSTRUMENTATION_NAME, _INSTRUMENTATION_VERSION)

        mp: MeterProvider = config.meter_provider or get_meter_provider()
        self._meter: Meter = mp.get_meter(_INSTRUMENTATION_NAME, _INSTRUMENTATION_VERSION)
        self._counter: Counter = self._meter.create_counter(
            "rpc.server.requests",
            unit="{request}",
            description="Number of RPC requests handled",
        )
        self._histogram: Histogram = self._meter.create_histogram(
            "rpc.server.duration",
            unit="s",
            description="Duration of RPC requests",
        )

    def on_dispatch_start(self, info: InteropMethodInfo, metadata: Metadata) -> HookToken:
        """Start a span (child of any ``traceparent`` in the metadata) and record the start time."""
        start_time = time.monotonic()
        span: trace.Span | None = None
        otel_token: Token[Context] | None = None

        if self._config.enable_tracing:
            parent_ctx = propagate.extract(_metadata_carrier(metadata))
            attrs: dict[str, str] = {
                "rpc.system": "grpc",
                "rpc.service": self._service,
                "rpc.method": info.name,
                "rpc.interop.method_kind": info.kind.value,
                "rpc.interop.server_id": self._server_id,
            }
            attrs.update(self._config.custom_attributes)
            span = self._tracer.start_span(
                f"{self._service}/{info.name}",
                kind=SpanKind.SERVER,
                attributes=attrs,
                context=parent_ctx,
            )
            otel_token = otel_context.attach(trace.set_span_in_context(span))

        return _OtelHookToken(
            span=span,
            otel_token=otel_token,
            start_time=start_time,
            method_name=info.name,
            method_kind=info.kind.value,
        )

    def on_dispatch_end(
        self,
        token: HookToken,
        info: InteropMethodInfo,
        error: BaseException | None,
        *,
        outcome: CallOutcome | None = None,
        stats: CallStatistics | None = None,
    ) -> None:
        """End the span and record metrics."""
        if not isinstance(token, _OtelHookToken):
            return

        duration = time.monotonic() - token.start_time
        failed = error is not None or outcome is None or not outcome.ok
        status = "error" if failed else "ok"

        if token.span is not None:
            if outcome is not None:
                token.span.set_attribute("rpc.grpc.status_code", outcome.code.value[0])
            if error is not None:
                token.span.set_status(StatusCode.ERROR, str(error))
                token.span.set_attribute("rpc.interop.error_type", type(error).__name__)
                if self._config.record_exceptions:
                    token.span.record_exception(error)
            elif failed:
                token.span.set_status(StatusCode.ERROR, outcome.message if outcome is not None else "")
            else:
                token.span.set_status(StatusCode.OK)
            if stats is not None:
                token.span.set_attribute("rpc.interop.input_messages", stats.input_messages)
                token.span.set_attribute("rpc.interop.output_messages", stats.output_messages)
                token.span.set_attribute("rpc.interop.input_bytes", stats.input_bytes)
                token.span.set_attribute("rpc.interop.output_bytes", stats.output_bytes)
            token.span.end()

        if token.otel_token is not None:
            otel_context.detach(token.otel_token)

        if self._config.enable_metrics:
            metric_attrs: dict[str, str] = {
                "rpc.system": "grpc",
                "rpc.service": self._service,
                "rpc.method": token.method_name,
                "rpc.interop.method_kind": token.method_kind,
                "status": status,
            }
            self._counter.add(1, metric_attrs)
            self._histogram.record(duration, metric_attrs)
