# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for the per-method call handlers, driven through an in-memory call."""

from __future__ import annotations

import asyncio

import grpc
import pytest
from google.protobuf.message import Message

from interop_rpc._common import Metadata
from interop_rpc.call import CallOutcome
from interop_rpc.handlers import (
    HALF_DUPLEX_UNIMPLEMENTED,
    EmptyCallHandler,
    FullDuplexCallHandler,
    HalfDuplexCallHandler,
    MethodKind,
    StreamingInputCallHandler,
    StreamingOutputCallHandler,
    UnaryCallHandler,
    interop_methods,
)
from interop_rpc.messages import (
    COMPRESSABLE,
    EchoStatus,
    Empty,
    Payload,
    ResponseParameters,
    SimpleRequest,
    StreamingInputCallRequest,
    StreamingOutputCallRequest,
)
from interop_rpc.metadata import ECHO_INITIAL_KEY, ECHO_TRAILING_KEY

_TRAILER_VALUE = b"\xab\xab\xab"


# ---------------------------------------------------------------------------
# In-memory call
# ---------------------------------------------------------------------------


class FakeCall:
    """Records everything a handler does to its call."""

    def __init__(self, metadata: Metadata = (), *, write_error: Exception | None = None) -> None:
        """Create with optional invocation metadata and a write fault to inject."""
        self._metadata = metadata
        self._closed = asyncio.Event()
        self.headers: list[Metadata] = []
        self.writes: list[Message] = []
        self.outcome: CallOutcome | None = None
        self.write_error = write_error

    @property
    def closed(self) -> bool:
        """Whether a terminal signal was given."""
        return self.outcome is not None

    @property
    def metadata(self) -> Metadata:
        """Invocation metadata."""
        return self._metadata

    async def send_headers(self, metadata: Metadata) -> None:
        """Record headers."""
        self.headers.append(metadata)

    async def write(self, message: Message) -> None:
        """Record a write, or raise the injected fault."""
        if self.write_error is not None:
            raise self.write_error
        if not self.closed:
            self.writes.append(message)

    def end(self, response: Message | None = None, trailing_metadata: Metadata = ()) -> None:
        """Record a normal close."""
        self._settle(CallOutcome(grpc.StatusCode.OK, "", tuple(trailing_metadata), response))

    def fail(self, code: grpc.StatusCode, message: str, trailing_metadata: Metadata = ()) -> None:
        """Record an error close."""
        self._settle(CallOutcome(code, message, tuple(trailing_metadata)))

    async def wait_closed(self) -> CallOutcome:
        """Wait for the terminal signal."""
        await asyncio.wait_for(self._closed.wait(), timeout=2.0)
        assert self.outcome is not None
        return self.outcome

    def _settle(self, outcome: CallOutcome) -> None:
        if self.outcome is None:
            self.outcome = outcome
            self._closed.set()


def _echo_metadata() -> Metadata:
    return ((ECHO_INITIAL_KEY, "hello"), (ECHO_TRAILING_KEY, _TRAILER_VALUE))


def _output_request(*sizes: int, interval_us: int = 0) -> Message:
    request = StreamingOutputCallRequest(response_type=COMPRESSABLE)
    for size in sizes:
        request.response_parameters.append(ResponseParameters(size=size, interval_us=interval_us))
    return request


def _sizes(call: FakeCall) -> list[int]:
    return [len(w.payload.body) for w in call.writes]


# ---------------------------------------------------------------------------
# Method table
# ---------------------------------------------------------------------------


class TestMethodTable:
    """The registered method set and call shapes."""

    def test_six_methods_registered(self) -> None:
        """Exactly the six served methods are registered; UnimplementedCall is not."""
        methods = interop_methods()
        assert set(methods) == {
            "EmptyCall",
            "UnaryCall",
            "StreamingInputCall",
            "StreamingOutputCall",
            "FullDuplexCall",
            "HalfDuplexCall",
        }
        assert "UnimplementedCall" not in methods

    def test_paths(self) -> None:
        """Method paths are fully qualified."""
        assert interop_methods()["UnaryCall"].path == "/grpc.testing.TestService/UnaryCall"

    @pytest.mark.parametrize(
        ("kind", "request_streaming", "response_streaming"),
        [
            (MethodKind.EMPTY, False, False),
            (MethodKind.UNARY, False, False),
            (MethodKind.STREAMING_INPUT, True, False),
            (MethodKind.STREAMING_OUTPUT, False, True),
            (MethodKind.FULL_DUPLEX, True, True),
            (MethodKind.HALF_DUPLEX, True, True),
        ],
    )
    def test_call_shapes(self, kind: MethodKind, request_streaming: bool, response_streaming: bool) -> None:
        """Each kind reports its streaming directions."""
        assert kind.request_streaming is request_streaming
        assert kind.response_streaming is response_streaming

    def test_handler_kinds_match_table(self) -> None:
        """Every registration's handler serves the registered call shape."""
        for info in interop_methods().values():
            assert info.handler_type.kind is info.kind


# ---------------------------------------------------------------------------
# Unary-response handlers
# ---------------------------------------------------------------------------


class TestEmptyCall:
    """EmptyCall echoes metadata and answers Empty."""

    async def test_echo_and_empty_response(self) -> None:
        """Headers and trailer are echoed; the response is Empty."""
        call = FakeCall(_echo_metadata())
        handler = EmptyCallHandler(call)
        await handler.on_start()
        await handler.on_message(Empty())
        await handler.on_end()
        outcome = await call.wait_closed()
        assert call.headers == [((ECHO_INITIAL_KEY, "hello"),)]
        assert outcome.ok
        assert outcome.response == Empty()
        assert outcome.trailing_metadata == ((ECHO_TRAILING_KEY, _TRAILER_VALUE),)

    async def test_no_echo_keys_no_headers(self) -> None:
        """Without echo keys nothing is echoed."""
        call = FakeCall()
        handler = EmptyCallHandler(call)
        await handler.on_start()
        await handler.on_end()
        outcome = await call.wait_closed()
        assert call.headers == []
        assert outcome.trailing_metadata == ()


class TestUnaryCall:
    """UnaryCall answers a payload of the requested size or the injected status."""

    async def test_payload_of_requested_size(self) -> None:
        """The response body is response_size zero bytes."""
        call = FakeCall()
        handler = UnaryCallHandler(call)
        request = SimpleRequest(response_type=COMPRESSABLE, response_size=314159, payload=Payload(body=bytes(271828)))
        await handler.on_message(request)
        outcome = await call.wait_closed()
        assert outcome.ok
        assert outcome.response is not None
        assert outcome.response.payload.body == bytes(314159)
        assert outcome.response.payload.type == COMPRESSABLE

    async def test_zero_size(self) -> None:
        """A zero response size gives an empty body."""
        call = FakeCall()
        await UnaryCallHandler(call).on_message(SimpleRequest(response_size=0))
        outcome = await call.wait_closed()
        assert outcome.response is not None
        assert outcome.response.payload.body == b""

    async def test_injected_status(self) -> None:
        """A non-OK response_status fails the call with that code, message and the trailer."""
        call = FakeCall(_echo_metadata())
        handler = UnaryCallHandler(call)
        await handler.on_message(
            SimpleRequest(response_size=10, response_status=EchoStatus(code=2, message="test status message"))
        )
        outcome = await call.wait_closed()
        assert outcome.code == grpc.StatusCode.UNKNOWN
        assert outcome.message == "test status message"
        assert outcome.trailing_metadata == ((ECHO_TRAILING_KEY, _TRAILER_VALUE),)
        assert outcome.response is None

    async def test_ok_status_is_ignored(self) -> None:
        """A response_status with code 0 requests normal processing."""
        call = FakeCall()
        await UnaryCallHandler(call).on_message(
            SimpleRequest(response_size=3, response_status=EchoStatus(code=0, message="ignored"))
        )
        outcome = await call.wait_closed()
        assert outcome.ok
        assert outcome.response is not None
        assert len(outcome.response.payload.body) == 3

    async def test_unknown_status_number_maps_to_unknown(self) -> None:
        """Status numbers outside the gRPC range become UNKNOWN."""
        call = FakeCall()
        await UnaryCallHandler(call).on_message(SimpleRequest(response_status=EchoStatus(code=99, message="odd")))
        outcome = await call.wait_closed()
        assert outcome.code == grpc.StatusCode.UNKNOWN
        assert outcome.message == "odd"

    async def test_negative_size_rejected(self) -> None:
        """A negative response size is INVALID_ARGUMENT."""
        call = FakeCall()
        await UnaryCallHandler(call).on_message(SimpleRequest(response_size=-1))
        outcome = await call.wait_closed()
        assert outcome.code == grpc.StatusCode.INVALID_ARGUMENT

    async def test_fill_server_id(self) -> None:
        """fill_server_id copies the server identifier into the response."""
        call = FakeCall()
        await UnaryCallHandler(call, server_id="abc123").on_message(SimpleRequest(fill_server_id=True))
        outcome = await call.wait_closed()
        assert outcome.response is not None
        assert outcome.response.server_id == "abc123"


class TestStreamingInputCall:
    """StreamingInputCall sums payload sizes."""

    async def test_aggregate(self) -> None:
        """The response carries the sum of inbound payload sizes."""
        call = FakeCall()
        handler = StreamingInputCallHandler(call)
        for size in (27182, 8, 1828, 45904):
            await handler.on_message(StreamingInputCallRequest(payload=Payload(body=bytes(size))))
        assert handler.aggregate == 74922
        await handler.on_end()
        outcome = await call.wait_closed()
        assert outcome.ok
        assert outcome.response is not None
        assert outcome.response.aggregated_payload_size == 74922

    async def test_no_messages(self) -> None:
        """No inbound messages aggregate to zero."""
        call = FakeCall()
        handler = StreamingInputCallHandler(call)
        await handler.on_end()
        outcome = await call.wait_closed()
        assert outcome.response is not None
        assert outcome.response.aggregated_payload_size == 0


# ---------------------------------------------------------------------------
# Streaming-response handlers
# ---------------------------------------------------------------------------


class TestStreamingOutputCall:
    """StreamingOutputCall writes one payload per response parameter."""

    async def test_writes_then_closes(self) -> None:
        """Payload sizes follow the request order and the call closes after them."""
        call = FakeCall(_echo_metadata())
        handler = StreamingOutputCallHandler(call)
        await handler.on_start()
        await handler.on_message(_output_request(31415, 9, 2653, 58979))
        await handler.on_end()
        outcome = await call.wait_closed()
        await handler.settle()
        assert _sizes(call) == [31415, 9, 2653, 58979]
        assert outcome.ok
        assert outcome.response is None
        assert outcome.trailing_metadata == ((ECHO_TRAILING_KEY, _TRAILER_VALUE),)
        assert handler.queue.idle

    async def test_no_parameters_closes_immediately(self) -> None:
        """An empty parameter list just closes the call."""
        call = FakeCall()
        handler = StreamingOutputCallHandler(call)
        await handler.on_message(_output_request())
        await handler.on_end()
        outcome = await call.wait_closed()
        assert outcome.ok
        assert call.writes == []

    async def test_injected_status(self) -> None:
        """An injected status fails the call without writing."""
        call = FakeCall()
        handler = StreamingOutputCallHandler(call)
        request = _output_request(10)
        request.response_status.CopyFrom(EchoStatus(code=9, message="precondition"))
        await handler.on_message(request)
        outcome = await call.wait_closed()
        assert outcome.code == grpc.StatusCode.FAILED_PRECONDITION
        assert outcome.message == "precondition"
        assert call.writes == []

    async def test_negative_parameters_rejected_before_queueing(self) -> None:
        """A negative size or interval anywhere in the list queues nothing."""
        call = FakeCall()
        handler = StreamingOutputCallHandler(call)
        request = _output_request(10)
        request.response_parameters.append(ResponseParameters(size=5, interval_us=-1))
        await handler.on_message(request)
        outcome = await call.wait_closed()
        assert outcome.code == grpc.StatusCode.INVALID_ARGUMENT
        assert len(handler.queue) == 0
        assert handler.queue.idle

    async def test_close_discards_pending_writes(self) -> None:
        """Closing the handler drops writes whose timers have not fired."""
        call = FakeCall()
        handler = StreamingOutputCallHandler(call)
        await handler.on_message(_output_request(10, 20, interval_us=500_000))
        handler.close()
        await asyncio.sleep(0.01)
        assert call.writes == []
        assert handler.queue.closed


class TestFullDuplexCall:
    """FullDuplexCall interleaves scheduling with inbound messages."""

    async def test_responses_follow_message_order(self) -> None:
        """Responses to later messages come after responses to earlier ones."""
        call = FakeCall()
        handler = FullDuplexCallHandler(call)
        await handler.on_message(_output_request(1, 2, interval_us=10_000))
        await handler.on_message(_output_request(3))
        await handler.on_end()
        await call.wait_closed()
        assert _sizes(call) == [1, 2, 3]

    async def test_end_waits_for_scheduled_writes(self) -> None:
        """The close is queued behind every scheduled write."""
        call = FakeCall()
        handler = FullDuplexCallHandler(call)
        await handler.on_message(_output_request(7, interval_us=20_000))
        await handler.on_end()
        assert not call.closed
        outcome = await call.wait_closed()
        assert outcome.ok
        assert _sizes(call) == [7]

    async def test_injected_status_discards_pending(self) -> None:
        """An injected status mid-stream drops responses not yet written."""
        call = FakeCall(_echo_metadata())
        handler = FullDuplexCallHandler(call)
        await handler.on_message(_output_request(100, interval_us=10_000_000))
        status_request = StreamingOutputCallRequest(response_status=EchoStatus(code=2, message="stop"))
        await handler.on_message(status_request)
        outcome = await call.wait_closed()
        await asyncio.wait_for(handler.settle(), timeout=0.5)
        assert outcome.code == grpc.StatusCode.UNKNOWN
        assert outcome.message == "stop"
        assert outcome.trailing_metadata == ((ECHO_TRAILING_KEY, _TRAILER_VALUE),)
        assert call.writes == []
        assert len(handler.queue) == 0

    async def test_invalid_message_settles_promptly(self) -> None:
        """A rejected message ends the call without waiting out an earlier timer."""
        call = FakeCall()
        handler = FullDuplexCallHandler(call)
        await handler.on_message(_output_request(1, interval_us=10_000_000))
        await handler.on_message(_output_request(2, interval_us=-1))
        outcome = await call.wait_closed()
        await asyncio.wait_for(handler.settle(), timeout=0.5)
        assert outcome.code == grpc.StatusCode.INVALID_ARGUMENT
        assert call.writes == []
        assert handler.queue.idle

    async def test_write_failure_fails_call(self) -> None:
        """A failing write ends the call with INTERNAL and drops later work."""
        call = FakeCall(write_error=ConnectionResetError("peer went away"))
        handler = FullDuplexCallHandler(call)
        await handler.on_message(_output_request(1, 2, 3))
        outcome = await call.wait_closed()
        await handler.settle()
        assert outcome.code == grpc.StatusCode.INTERNAL
        assert "peer went away" in outcome.message
        assert not handler.queue.stalled
        assert len(handler.queue) == 0


class TestHalfDuplexCall:
    """HalfDuplexCall is not implemented."""

    async def test_unimplemented_on_start(self) -> None:
        """The call fails at start with UNIMPLEMENTED and the trailer, echoing no headers."""
        call = FakeCall(_echo_metadata())
        handler = HalfDuplexCallHandler(call)
        await handler.on_start()
        outcome = await call.wait_closed()
        assert outcome.code == grpc.StatusCode.UNIMPLEMENTED
        assert outcome.message == HALF_DUPLEX_UNIMPLEMENTED
        assert outcome.trailing_metadata == ((ECHO_TRAILING_KEY, _TRAILER_VALUE),)
        assert call.headers == []
