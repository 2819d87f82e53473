# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Per-call state machines for the ``grpc.testing.TestService`` methods.

One handler instance serves exactly one call.  The server drives it through
four events::

    await handler.on_start()             # once, before any inbound message
    await handler.on_message(message)    # per inbound message (once for unary requests)
    await handler.on_end()               # at end-of-input, unless the call already ended
    await handler.settle()               # after the terminal signal, before it is applied

and calls :meth:`CallHandler.close` when the call is over, whatever the
reason.  Handlers that answer with a stream of timed responses push their
writes, and finally the close, through a per-call :class:`DelayQueue`, so
responses leave in exactly the order they were scheduled.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import ClassVar, Final

import grpc
from google.protobuf.message import Message

from interop_rpc import messages
from interop_rpc._common import InvalidRequestError, Metadata
from interop_rpc.call import Call
from interop_rpc.delay_queue import DelayQueue
from interop_rpc.metadata import echo_initial_metadata, echo_trailing_metadata

__all__ = [
    "CallHandler",
    "EmptyCallHandler",
    "FullDuplexCallHandler",
    "HalfDuplexCallHandler",
    "InteropMethodInfo",
    "MethodKind",
    "StreamingInputCallHandler",
    "StreamingOutputCallHandler",
    "UnaryCallHandler",
    "interop_methods",
]

_logger = logging.getLogger("interop_rpc.handlers")

HALF_DUPLEX_UNIMPLEMENTED: Final = "HalfDuplexCall not yet implemented"


# ---------------------------------------------------------------------------
# MethodKind enum
# ---------------------------------------------------------------------------


class MethodKind(Enum):
    """The closed set of call shapes served by the interop server."""

    EMPTY = "empty"
    UNARY = "unary"
    STREAMING_INPUT = "streaming_input"
    STREAMING_OUTPUT = "streaming_output"
    FULL_DUPLEX = "full_duplex"
    HALF_DUPLEX = "half_duplex"

    @property
    def request_streaming(self) -> bool:
        """Whether the client sends a stream of messages."""
        return self in (MethodKind.STREAMING_INPUT, MethodKind.FULL_DUPLEX, MethodKind.HALF_DUPLEX)

    @property
    def response_streaming(self) -> bool:
        """Whether the server answers with a stream of messages."""
        return self in (MethodKind.STREAMING_OUTPUT, MethodKind.FULL_DUPLEX, MethodKind.HALF_DUPLEX)


# ---------------------------------------------------------------------------
# Base handler
# ---------------------------------------------------------------------------


class CallHandler:
    """Base state machine: echoes headers on start and owns the trailer.

    The trailer (trailing echo metadata) is computed once from the invocation
    metadata and attached to every terminal signal, success or error.
    """

    kind: ClassVar[MethodKind]

    __slots__ = ("_call", "_server_id", "_trailer")

    def __init__(self, call: Call, *, server_id: str = "") -> None:
        """Bind the handler to *call*."""
        self._call = call
        self._server_id = server_id
        self._trailer: Metadata = echo_trailing_metadata(call.metadata)

    @property
    def trailing_metadata(self) -> Metadata:
        """Trailing metadata every terminal signal of this call carries."""
        return self._trailer

    async def on_start(self) -> None:
        """Echo the initial-echo header if the caller sent one."""
        headers = echo_initial_metadata(self._call.metadata)
        if headers:
            await self._call.send_headers(headers)

    async def on_message(self, message: Message) -> None:
        """Handle one inbound message."""

    async def on_end(self) -> None:
        """Handle end-of-input."""

    async def settle(self) -> None:
        """Wait for work the handler still has in flight."""

    def close(self) -> None:
        """Release per-call resources; the call is over."""

    def _fail_with_status(self, status: Message) -> None:
        _logger.debug(
            "Injected status %d on %s",
            status.code,
            self.kind.value,
            extra={"method_kind": self.kind.value, "grpc_status": status.code},
        )
        self._call.fail(messages.status_code(status.code), status.message, self._trailer)

    def _reject(self, exc: InvalidRequestError) -> None:
        self._call.fail(grpc.StatusCode.INVALID_ARGUMENT, str(exc), self._trailer)


# ---------------------------------------------------------------------------
# Unary-response handlers
# ---------------------------------------------------------------------------


class EmptyCallHandler(CallHandler):
    """``EmptyCall``: echo headers, answer ``Empty``."""

    kind = MethodKind.EMPTY
    __slots__ = ()

    async def on_end(self) -> None:
        """Respond with an empty message."""
        self._call.end(messages.Empty(), self._trailer)


class UnaryCallHandler(CallHandler):
    """``UnaryCall``: answer one payload of the requested type and size, or the injected status."""

    kind = MethodKind.UNARY
    __slots__ = ()

    async def on_message(self, message: Message) -> None:
        """Respond to the single request."""
        status = messages.injected_status(message)
        if status is not None:
            self._fail_with_status(status)
            return
        try:
            payload = messages.build_payload(message.response_type, message.response_size)
        except InvalidRequestError as exc:
            self._reject(exc)
            return
        response = messages.SimpleResponse(payload=payload)
        if message.fill_server_id:
            response.server_id = self._server_id
        self._call.end(response, self._trailer)


class StreamingInputCallHandler(CallHandler):
    """``StreamingInputCall``: sum inbound payload sizes, answer the total at end-of-input."""

    kind = MethodKind.STREAMING_INPUT
    __slots__ = ("_aggregate",)

    def __init__(self, call: Call, *, server_id: str = "") -> None:
        """Start with a zero total."""
        super().__init__(call, server_id=server_id)
        self._aggregate = 0

    @property
    def aggregate(self) -> int:
        """Bytes received so far."""
        return self._aggregate

    async def on_message(self, message: Message) -> None:
        """Add the message's payload body length to the total."""
        self._aggregate += len(message.payload.body)

    async def on_end(self) -> None:
        """Respond once with the aggregate size."""
        self._call.end(messages.StreamingInputCallResponse(aggregated_payload_size=self._aggregate), self._trailer)


# ---------------------------------------------------------------------------
# Streaming-response handlers
# ---------------------------------------------------------------------------


class _ScheduledResponsesHandler(CallHandler):
    """Shared machinery for handlers that schedule timed payload writes."""

    __slots__ = ("_queue",)

    def __init__(self, call: Call, *, server_id: str = "") -> None:
        super().__init__(call, server_id=server_id)
        self._queue = DelayQueue(self.kind.value)

    @property
    def queue(self) -> DelayQueue:
        """The call's response queue."""
        return self._queue

    def _schedule_responses(self, request: Message) -> None:
        """Queue one payload write per ResponseParameters entry, in order.

        Every entry is validated before anything is queued, so a bad request
        never produces a partial response stream.
        """
        for params in request.response_parameters:
            if params.size < 0 or params.interval_us < 0:
                raise InvalidRequestError(
                    f"response parameters must be non-negative, got size={params.size} interval_us={params.interval_us}"
                )
        for params in request.response_parameters:
            self._queue.add(
                functools.partial(self._write_payload, request.response_type, params.size),
                params.interval_us,
            )

    def _schedule_close(self) -> None:
        self._queue.add(self._close)

    async def _write_payload(self, response_type: int, size: int, advance: Callable[[], None]) -> None:
        try:
            await self._call.write(
                messages.StreamingOutputCallResponse(payload=messages.build_payload(response_type, size))
            )
        except Exception as exc:
            _logger.warning(
                "Write failed on %s, aborting call: %s",
                self.kind.value,
                exc,
                extra={"method_kind": self.kind.value, "error_type": type(exc).__name__},
            )
            self._queue.clear()
            self._call.fail(grpc.StatusCode.INTERNAL, f"write failed: {exc}", self._trailer)
        finally:
            advance()

    def _close(self, advance: Callable[[], None]) -> None:
        try:
            self._call.end(None, self._trailer)
        finally:
            advance()

    async def settle(self) -> None:
        """Wait until the in-flight queued action (if any) finished."""
        await self._queue.join()

    def close(self) -> None:
        """Discard queued work that has not started."""
        self._queue.close()


class StreamingOutputCallHandler(_ScheduledResponsesHandler):
    """``StreamingOutputCall``: one timed write per response parameter, then close."""

    kind = MethodKind.STREAMING_OUTPUT
    __slots__ = ()

    async def on_message(self, message: Message) -> None:
        """Schedule the requested responses, or fail with the injected status."""
        status = messages.injected_status(message)
        if status is not None:
            self._fail_with_status(status)
            return
        try:
            self._schedule_responses(message)
        except InvalidRequestError as exc:
            self._reject(exc)

    async def on_end(self) -> None:
        """Queue the normal close after every scheduled write."""
        self._schedule_close()


class FullDuplexCallHandler(_ScheduledResponsesHandler):
    """``FullDuplexCall``: responses for each inbound message on one shared queue.

    Responses to distinct inbound messages leave in arrival order of those
    messages, because they are appended to the same queue.
    """

    kind = MethodKind.FULL_DUPLEX
    __slots__ = ()

    async def on_message(self, message: Message) -> None:
        """Schedule this message's responses, or abandon the call with its injected status."""
        status = messages.injected_status(message)
        if status is not None:
            self._queue.clear()
            self._fail_with_status(status)
            return
        try:
            self._schedule_responses(message)
        except InvalidRequestError as exc:
            self._queue.clear()
            self._reject(exc)

    async def on_end(self) -> None:
        """Queue the normal close after every response scheduled so far."""
        self._schedule_close()


class HalfDuplexCallHandler(CallHandler):
    """``HalfDuplexCall``: not implemented; every call fails with ``UNIMPLEMENTED``."""

    kind = MethodKind.HALF_DUPLEX
    __slots__ = ()

    async def on_start(self) -> None:
        """Fail immediately, whatever the input."""
        self._call.fail(grpc.StatusCode.UNIMPLEMENTED, HALF_DUPLEX_UNIMPLEMENTED, self._trailer)


# ---------------------------------------------------------------------------
# Method table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InteropMethodInfo:
    """Registration entry for one service method.

    Attributes:
        name: Method name as it appears in the service definition.
        kind: Call shape.
        request_type: Message class of inbound messages.
        response_type: Message class of outbound messages.
        handler_type: State machine instantiated per call.

    """

    name: str
    kind: MethodKind
    request_type: type[Message]
    response_type: type[Message]
    handler_type: type[CallHandler]

    @property
    def path(self) -> str:
        """Fully-qualified method path used on the wire."""
        return f"/{messages.SERVICE_NAME}/{self.name}"


_METHODS: Final[Mapping[str, InteropMethodInfo]] = MappingProxyType(
    {
        info.name: info
        for info in (
            InteropMethodInfo("EmptyCall", MethodKind.EMPTY, messages.Empty, messages.Empty, EmptyCallHandler),
            InteropMethodInfo(
                "UnaryCall", MethodKind.UNARY, messages.SimpleRequest, messages.SimpleResponse, UnaryCallHandler
            ),
            InteropMethodInfo(
                "StreamingOutputCall",
                MethodKind.STREAMING_OUTPUT,
                messages.StreamingOutputCallRequest,
                messages.StreamingOutputCallResponse,
                StreamingOutputCallHandler,
            ),
            InteropMethodInfo(
                "StreamingInputCall",
                MethodKind.STREAMING_INPUT,
                messages.StreamingInputCallRequest,
                messages.StreamingInputCallResponse,
                StreamingInputCallHandler,
            ),
            InteropMethodInfo(
                "FullDuplexCall",
                MethodKind.FULL_DUPLEX,
                messages.StreamingOutputCallRequest,
                messages.StreamingOutputCallResponse,
                FullDuplexCallHandler,
            ),
            InteropMethodInfo(
                "HalfDuplexCall",
                MethodKind.HALF_DUPLEX,
                messages.StreamingOutputCallRequest,
                messages.StreamingOutputCallResponse,
                HalfDuplexCallHandler,
            ),
        )
    }
)


def interop_methods() -> Mapping[str, InteropMethodInfo]:
    """Return the immutable method-name -> registration table."""
    return _METHODS
