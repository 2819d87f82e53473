# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Interop server dispatch over ``grpc.aio``.

:class:`InteropServer` turns the method table from
:mod:`interop_rpc.handlers` into a ``grpc.GenericRpcHandler`` and drives one
handler instance per call.  :func:`start_server` and :func:`serve` bind it to
a port::

    config = ServerConfig(port=8080)
    asyncio.run(serve(config))

Methods of ``grpc.testing.TestService`` that are not registered (for
example ``UnimplementedCall``) are answered with ``UNIMPLEMENTED`` by the
runtime.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import grpc
from google.protobuf.message import Message

from interop_rpc._common import (
    CallStatistics,
    HookToken,
    InvalidRequestError,
    _access_logger,
    _current_request_id,
    _DispatchHook,
    _generate_request_id,
    _logger,
)
from interop_rpc.call import CallOutcome, ServerCall
from interop_rpc.handlers import CallHandler, InteropMethodInfo, interop_methods
from interop_rpc.messages import SERVICE_NAME

__all__ = ["InteropServer", "ServerConfig", "serve", "start_server"]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServerConfig:
    """Settings for binding and running an :class:`InteropServer`.

    Attributes:
        host: Interface to bind.
        port: TCP port; ``0`` lets the OS pick a free one.
        server_id: Identifier reported in logs and ``fill_server_id``
            responses; random when ``None``.
        max_concurrent_rpcs: Upper bound on concurrently served calls;
            unbounded when ``None``.
        grace_period: Seconds in-flight calls get to finish on shutdown.
        options: Extra gRPC channel arguments for the server.

    """

    host: str = "0.0.0.0"
    port: int = 0
    server_id: str | None = None
    max_concurrent_rpcs: int | None = None
    grace_period: float = 5.0
    options: Sequence[tuple[str, Any]] = field(default_factory=tuple)

    @property
    def address(self) -> str:
        """``host:port`` bind address."""
        return f"{self.host}:{self.port}"


# ---------------------------------------------------------------------------
# Server helpers
# ---------------------------------------------------------------------------


def _log_method_error(service: str, method_name: str, server_id: str, exc: BaseException) -> str:
    """Log a handler fault and return the exception class name."""
    error_type = type(exc).__name__
    extra: dict[str, object] = {"server_id": server_id, "method": method_name, "error_type": error_type}
    request_id = _current_request_id.get()
    if request_id:
        extra["request_id"] = request_id
    _logger.error(
        "Error in %s.%s: %s",
        service,
        method_name,
        exc,
        exc_info=True,
        extra=extra,
    )
    return error_type


def _emit_access_log(
    method_name: str,
    method_kind: str,
    server_id: str,
    peer: str,
    duration_ms: float,
    outcome: CallOutcome | None,
    error_type: str = "",
    stats: CallStatistics | None = None,
) -> None:
    """Emit a structured access log record for a finished call."""
    if not _access_logger.isEnabledFor(logging.INFO):
        return
    grpc_status = outcome.code.name if outcome is not None else grpc.StatusCode.CANCELLED.name
    status = "ok" if outcome is not None and outcome.ok else "error"
    try:
        extra: dict[str, object] = {
            "server_id": server_id,
            "service": SERVICE_NAME,
            "method": method_name,
            "method_kind": method_kind,
            "peer": peer,
            "duration_ms": round(duration_ms, 2),
            "status": status,
            "grpc_status": grpc_status,
            "error_type": error_type,
        }
        request_id = _current_request_id.get()
        if request_id:
            extra["request_id"] = request_id
        if stats is not None:
            extra["input_messages"] = stats.input_messages
            extra["output_messages"] = stats.output_messages
            extra["input_bytes"] = stats.input_bytes
            extra["output_bytes"] = stats.output_bytes
        _access_logger.info(
            "%s/%s %s",
            SERVICE_NAME,
            method_name,
            grpc_status,
            extra=extra,
        )
    except Exception:
        _logger.debug("Access log emission failed", exc_info=True)


async def _apply_outcome(context: grpc.aio.ServicerContext, outcome: CallOutcome) -> Message | None:
    """Hand the terminal signal to the runtime."""
    if outcome.ok:
        context.set_trailing_metadata(outcome.trailing_metadata)
        return outcome.response
    await context.abort(outcome.code, outcome.message, outcome.trailing_metadata)
    return None  # unreachable: abort() raises


_HANDLER_FACTORIES: dict[tuple[bool, bool], Callable[..., grpc.RpcMethodHandler]] = {
    (False, False): grpc.unary_unary_rpc_method_handler,
    (False, True): grpc.unary_stream_rpc_method_handler,
    (True, False): grpc.stream_unary_rpc_method_handler,
    (True, True): grpc.stream_stream_rpc_method_handler,
}


class _InteropGenericHandler(grpc.GenericRpcHandler):
    """Routes method paths to the server's dispatch coroutine."""

    def __init__(self, server: InteropServer) -> None:
        self._routes: dict[str, grpc.RpcMethodHandler] = {
            info.path: self._method_handler(server, info) for info in server.methods.values()
        }

    @staticmethod
    def _method_handler(server: InteropServer, info: InteropMethodInfo) -> grpc.RpcMethodHandler:
        async def behavior(request: Any, context: grpc.aio.ServicerContext) -> Message | None:
            return await server.dispatch(info, request, context)

        factory = _HANDLER_FACTORIES[(info.kind.request_streaming, info.kind.response_streaming)]
        return factory(
            behavior,
            request_deserializer=info.request_type.FromString,
            response_serializer=info.response_type.SerializeToString,
        )

    def service(self, handler_call_details: grpc.HandlerCallDetails) -> grpc.RpcMethodHandler | None:
        """Return the handler for a method path, or ``None`` for unknown methods."""
        return self._routes.get(handler_call_details.method)


# ---------------------------------------------------------------------------
# InteropServer
# ---------------------------------------------------------------------------


class InteropServer:
    """Serves ``grpc.testing.TestService`` with one handler state machine per call."""

    __slots__ = ("_dispatch_hook", "_methods", "_server_id")

    def __init__(self, *, server_id: str | None = None) -> None:
        """Initialize with an optional server identifier (auto-generated if ``None``)."""
        self._methods = interop_methods()
        self._server_id = server_id if server_id is not None else uuid.uuid4().hex[:12]
        self._dispatch_hook: _DispatchHook | None = None
        _logger.info(
            "InteropServer created for %s (server_id=%s, methods=%d)",
            SERVICE_NAME,
            self._server_id,
            len(self._methods),
            extra={"server_id": self._server_id, "service": SERVICE_NAME, "method_count": len(self._methods)},
        )

    @property
    def methods(self) -> Mapping[str, InteropMethodInfo]:
        """Registered methods by name."""
        return self._methods

    @property
    def server_id(self) -> str:
        """Short random identifier for this server instance."""
        return self._server_id

    @property
    def service_name(self) -> str:
        """Fully-qualified name of the served service."""
        return SERVICE_NAME

    def generic_handler(self) -> grpc.GenericRpcHandler:
        """Build the routing handler to register on a ``grpc.aio.Server``."""
        return _InteropGenericHandler(self)

    def add_to_server(self, server: grpc.aio.Server) -> None:
        """Register this service on *server*."""
        server.add_generic_rpc_handlers((self.generic_handler(),))

    async def dispatch(self, info: InteropMethodInfo, request: Any, context: grpc.aio.ServicerContext) -> Message | None:
        """Serve one call of *info* and return its unary response, if any.

        *request* is the single request message for unary-request methods and
        the inbound message iterator for client-streaming ones.
        """
        _current_request_id.set(_generate_request_id())
        stats = CallStatistics()
        call = ServerCall(context, info.name, stats)
        handler = info.handler_type(call, server_id=self._server_id)
        hook = self._dispatch_hook
        hook_token: HookToken | None = None
        if hook is not None:
            try:
                hook_token = hook.on_dispatch_start(info, call.metadata)
            except Exception:
                _logger.debug("Dispatch hook start failed", exc_info=True)

        start = time.monotonic()
        outcome: CallOutcome | None = None
        error: BaseException | None = None
        error_type = ""
        try:
            outcome = await self._drive(info, handler, call, request)
        except asyncio.CancelledError as exc:
            error = exc
            error_type = type(exc).__name__
            raise
        except Exception as exc:
            error = exc
            error_type = _log_method_error(SERVICE_NAME, info.name, self._server_id, exc)
            code = grpc.StatusCode.INVALID_ARGUMENT if isinstance(exc, InvalidRequestError) else grpc.StatusCode.INTERNAL
            call.fail(code, str(exc), handler.trailing_metadata)
            outcome = await call.wait_closed()
        finally:
            handler.close()
            duration_ms = (time.monotonic() - start) * 1000
            if hook is not None and hook_token is not None:
                try:
                    hook.on_dispatch_end(hook_token, info, error, outcome=outcome, stats=stats)
                except Exception:
                    _logger.debug("Dispatch hook end failed", exc_info=True)
            _emit_access_log(
                info.name,
                info.kind.value,
                self._server_id,
                context.peer() or "",
                duration_ms,
                outcome,
                error_type,
                stats,
            )
        return await _apply_outcome(context, outcome)

    @staticmethod
    async def _drive(info: InteropMethodInfo, handler: CallHandler, call: ServerCall, request: Any) -> CallOutcome:
        """Feed the call's events to *handler* until it gives a terminal signal."""
        await handler.on_start()
        if info.kind.request_streaming:
            if not call.closed:
                inbound: AsyncIterator[Message] = request
                async for message in inbound:
                    call.stats.record_input(message)
                    await handler.on_message(message)
                    if call.closed:
                        break
        elif not call.closed:
            call.stats.record_input(request)
            await handler.on_message(request)
        if not call.closed:
            await handler.on_end()
        outcome = await call.wait_closed()
        await handler.settle()
        return outcome


# ---------------------------------------------------------------------------
# Serving
# ---------------------------------------------------------------------------


async def start_server(
    config: ServerConfig, interop: InteropServer | None = None
) -> tuple[grpc.aio.Server, InteropServer, int]:
    """Create, bind and start a ``grpc.aio`` server.

    Returns:
        The running gRPC server, the :class:`InteropServer` it serves and the
        bound port.

    Raises:
        RuntimeError: If the address could not be bound.

    """
    if interop is None:
        interop = InteropServer(server_id=config.server_id)
    server = grpc.aio.server(
        options=list(config.options),
        maximum_concurrent_rpcs=config.max_concurrent_rpcs,
    )
    interop.add_to_server(server)
    port = server.add_insecure_port(config.address)
    if port == 0:
        raise RuntimeError(f"Failed to bind {config.address}")
    await server.start()
    _logger.info(
        "Serving %s on %s:%d",
        SERVICE_NAME,
        config.host,
        port,
        extra={"server_id": interop.server_id, "host": config.host, "port": port},
    )
    return server, interop, port


async def serve(
    config: ServerConfig,
    interop: InteropServer | None = None,
    *,
    on_started: Callable[[int], None] | None = None,
) -> None:
    """Run a server until the task is cancelled or the server terminates.

    *on_started* receives the bound port once the server accepts calls.
    """
    server, _, port = await start_server(config, interop)
    if on_started is not None:
        on_started(port)
    try:
        await server.wait_for_termination()
    finally:
        _logger.info("Shutting down (grace period %.1fs)", config.grace_period)
        await server.stop(config.grace_period)
