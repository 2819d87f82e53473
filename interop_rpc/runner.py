# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Interop test runner library.

Provides test registration, execution and result collection for checking a
``grpc.testing.TestService`` server against the standard interop client
scenarios (large unary, streaming in both directions, ping-pong, metadata
echo, status injection, unimplemented methods and deadlines).

Usage::

    from interop_rpc.client import connect
    from interop_rpc.runner import run_interop

    async with connect("localhost:8080") as client:
        suite = await run_interop(client)
    assert suite.success

"""

from __future__ import annotations

import asyncio
import contextlib
import fnmatch
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeAlias

import grpc
from google.protobuf.message import Message

from interop_rpc.client import InteropClient
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
from interop_rpc.metadata import ECHO_INITIAL_KEY, ECHO_TRAILING_KEY, first_value

__all__ = [
    "DEFAULT_TEST_TIMEOUT",
    "InteropResult",
    "InteropSuite",
    "list_interop_tests",
    "run_interop",
]

# Default per-test timeout in seconds.
DEFAULT_TEST_TIMEOUT: float = 10.0

_TestFn: TypeAlias = Callable[[InteropClient], Awaitable[None]]


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InteropResult:
    """Result of a single interop test."""

    name: str
    category: str
    passed: bool
    duration_ms: float
    error: str | None = None


@dataclass(frozen=True)
class InteropSuite:
    """Aggregate results of an interop test run."""

    results: list[InteropResult]
    total: int
    passed: int
    failed: int
    duration_ms: float

    @property
    def success(self) -> bool:
        """Whether all tests passed."""
        return self.failed == 0


# ---------------------------------------------------------------------------
# Test registration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _InteropTest:
    """A registered interop test."""

    category: str
    name: str
    fn: _TestFn

    @property
    def full_name(self) -> str:
        """Return category.name format."""
        return f"{self.category}.{self.name}"


_TESTS: list[_InteropTest] = []


def _interop_test(*, category: str, name: str) -> Callable[[_TestFn], _TestFn]:
    """Register an interop test coroutine."""

    def decorator(fn: _TestFn) -> _TestFn:
        _TESTS.append(_InteropTest(category=category, name=name, fn=fn))
        return fn

    return decorator


# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------

_REQUEST_SIZES = (27182, 8, 1828, 45904)
_RESPONSE_SIZES = (31415, 9, 2653, 58979)

_INITIAL_METADATA_VALUE = "test_initial_metadata_value"
_TRAILING_METADATA_VALUE = b"\xab\xab\xab"

_STATUS_MESSAGE = "test status message"
_SPECIAL_STATUS_MESSAGE = "\t\ntest with whitespace\r\nand Unicode BMP ☺ and non-BMP 😈\t\n"


def _payload(size: int) -> Message:
    return Payload(type=COMPRESSABLE, body=bytes(size))


def _streaming_output_request(size: int, *, interval_us: int = 0, payload_size: int = 0) -> Message:
    request = StreamingOutputCallRequest(response_type=COMPRESSABLE)
    request.response_parameters.append(ResponseParameters(size=size, interval_us=interval_us))
    if payload_size:
        request.payload.CopyFrom(_payload(payload_size))
    return request


async def _expect_status(call: grpc.aio.Call, code: grpc.StatusCode, details: str | None = None) -> None:
    actual = await call.code()
    assert actual == code, f"expected {code.name}, got {actual.name}"
    if details is not None:
        actual_details = await call.details()
        assert actual_details == details, f"expected details {details!r}, got {actual_details!r}"


# ---------------------------------------------------------------------------
# Unary tests
# ---------------------------------------------------------------------------


@_interop_test(category="unary", name="empty_unary")
async def _test_empty_unary(client: InteropClient) -> None:
    response = await client.empty_call(Empty())
    assert response == Empty(), f"unexpected response {response!r}"


@_interop_test(category="unary", name="large_unary")
async def _test_large_unary(client: InteropClient) -> None:
    request = SimpleRequest(response_type=COMPRESSABLE, response_size=314159, payload=_payload(271828))
    response = await client.unary_call(request)
    assert response.payload.type == COMPRESSABLE
    assert len(response.payload.body) == 314159, f"body is {len(response.payload.body)} bytes"
    assert response.payload.body == bytes(314159)


# ---------------------------------------------------------------------------
# Streaming tests
# ---------------------------------------------------------------------------


@_interop_test(category="streaming", name="client_streaming")
async def _test_client_streaming(client: InteropClient) -> None:
    requests = [StreamingInputCallRequest(payload=_payload(size)) for size in _REQUEST_SIZES]
    response = await client.streaming_input_call(requests)
    assert response.aggregated_payload_size == 74922, f"aggregated {response.aggregated_payload_size}"


@_interop_test(category="streaming", name="client_streaming_empty")
async def _test_client_streaming_empty(client: InteropClient) -> None:
    response = await client.streaming_input_call([])
    assert response.aggregated_payload_size == 0, f"aggregated {response.aggregated_payload_size}"


@_interop_test(category="streaming", name="server_streaming")
async def _test_server_streaming(client: InteropClient) -> None:
    request = StreamingOutputCallRequest(response_type=COMPRESSABLE)
    for size in _RESPONSE_SIZES:
        request.response_parameters.append(ResponseParameters(size=size))
    sizes = [len(response.payload.body) async for response in client.streaming_output_call(request)]
    assert sizes == list(_RESPONSE_SIZES), f"received sizes {sizes}"


@_interop_test(category="streaming", name="server_streaming_with_delay")
async def _test_server_streaming_with_delay(client: InteropClient) -> None:
    """The second response is written at least 50ms after the first.

    The gap is measured between client-side arrivals, which can shorten it
    by a few milliseconds of delivery jitter on the first response; 40ms is
    the accepted lower bound.
    """
    request = StreamingOutputCallRequest(response_type=COMPRESSABLE)
    request.response_parameters.append(ResponseParameters(size=10, interval_us=0))
    request.response_parameters.append(ResponseParameters(size=20, interval_us=50000))
    arrivals: list[tuple[int, float]] = []
    async for response in client.streaming_output_call(request):
        arrivals.append((len(response.payload.body), time.monotonic()))
    assert [size for size, _ in arrivals] == [10, 20], f"received {arrivals}"
    gap = arrivals[1][1] - arrivals[0][1]
    assert gap >= 0.04, f"second response arrived {gap * 1000:.1f}ms after the first"


@_interop_test(category="streaming", name="ping_pong")
async def _test_ping_pong(client: InteropClient) -> None:
    call = client.full_duplex_call()
    for request_size, response_size in zip(_REQUEST_SIZES, _RESPONSE_SIZES, strict=True):
        await call.write(_streaming_output_request(response_size, payload_size=request_size))
        response = await call.read()
        assert response is not grpc.aio.EOF, "stream ended early"
        assert len(response.payload.body) == response_size
    await call.done_writing()
    assert await call.read() is grpc.aio.EOF, "unexpected extra response"
    await _expect_status(call, grpc.StatusCode.OK)


@_interop_test(category="streaming", name="empty_stream")
async def _test_empty_stream(client: InteropClient) -> None:
    call = client.full_duplex_call()
    await call.done_writing()
    assert await call.read() is grpc.aio.EOF, "expected no responses"
    await _expect_status(call, grpc.StatusCode.OK)


# ---------------------------------------------------------------------------
# Metadata tests
# ---------------------------------------------------------------------------


@_interop_test(category="metadata", name="custom_metadata")
async def _test_custom_metadata(client: InteropClient) -> None:
    metadata = ((ECHO_INITIAL_KEY, _INITIAL_METADATA_VALUE), (ECHO_TRAILING_KEY, _TRAILING_METADATA_VALUE))

    unary = client.unary_call(
        SimpleRequest(response_type=COMPRESSABLE, response_size=314159, payload=_payload(271828)),
        metadata=metadata,
    )
    await unary
    assert first_value(await unary.initial_metadata(), ECHO_INITIAL_KEY) == _INITIAL_METADATA_VALUE
    assert first_value(await unary.trailing_metadata(), ECHO_TRAILING_KEY) == _TRAILING_METADATA_VALUE

    duplex = client.full_duplex_call(metadata=metadata)
    await duplex.write(_streaming_output_request(314159, payload_size=271828))
    await duplex.done_writing()
    sizes = [len(response.payload.body) async for response in duplex]
    assert sizes == [314159], f"received sizes {sizes}"
    assert first_value(await duplex.initial_metadata(), ECHO_INITIAL_KEY) == _INITIAL_METADATA_VALUE
    assert first_value(await duplex.trailing_metadata(), ECHO_TRAILING_KEY) == _TRAILING_METADATA_VALUE


# ---------------------------------------------------------------------------
# Status tests
# ---------------------------------------------------------------------------


async def _check_injected_status(client: InteropClient, message: str) -> None:
    status = EchoStatus(code=grpc.StatusCode.UNKNOWN.value[0], message=message)

    unary = client.unary_call(SimpleRequest(response_status=status))
    await _expect_status(unary, grpc.StatusCode.UNKNOWN, message)

    duplex = client.full_duplex_call()
    await duplex.write(StreamingOutputCallRequest(response_status=status))
    await duplex.done_writing()
    await _expect_status(duplex, grpc.StatusCode.UNKNOWN, message)


@_interop_test(category="status", name="status_code_and_message")
async def _test_status_code_and_message(client: InteropClient) -> None:
    await _check_injected_status(client, _STATUS_MESSAGE)


@_interop_test(category="status", name="special_status_message")
async def _test_special_status_message(client: InteropClient) -> None:
    await _check_injected_status(client, _SPECIAL_STATUS_MESSAGE)


@_interop_test(category="status", name="unimplemented_method")
async def _test_unimplemented_method(client: InteropClient) -> None:
    await _expect_status(client.unimplemented_call(Empty()), grpc.StatusCode.UNIMPLEMENTED)


@_interop_test(category="status", name="half_duplex_unimplemented")
async def _test_half_duplex_unimplemented(client: InteropClient) -> None:
    call = client.half_duplex_call([_streaming_output_request(10)])
    await _expect_status(call, grpc.StatusCode.UNIMPLEMENTED)


# ---------------------------------------------------------------------------
# Deadline tests
# ---------------------------------------------------------------------------


@_interop_test(category="deadline", name="timeout_on_sleeping_server")
async def _test_timeout_on_sleeping_server(client: InteropClient) -> None:
    call = client.full_duplex_call(timeout=0.001)
    # the deadline may already have fired, in which case the write is refused
    with contextlib.suppress(asyncio.InvalidStateError, grpc.aio.AioRpcError):
        await call.write(StreamingOutputCallRequest(payload=_payload(27182)))
    await _expect_status(call, grpc.StatusCode.DEADLINE_EXCEEDED)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def _matches_filter(test: _InteropTest, patterns: list[str]) -> bool:
    """Check if a test matches any of the given glob patterns by full name, name or category."""
    return any(
        fnmatch.fnmatch(test.full_name, pattern)
        or fnmatch.fnmatch(test.name, pattern)
        or fnmatch.fnmatch(test.category, pattern)
        for pattern in patterns
    )


def list_interop_tests(filter_patterns: list[str] | None = None) -> list[str]:
    """Return sorted names of available tests, optionally filtered.

    Args:
        filter_patterns: Optional glob patterns to filter tests.

    Returns:
        Sorted list of test names in ``category.name`` format.

    """
    tests = _TESTS
    if filter_patterns:
        tests = [t for t in _TESTS if _matches_filter(t, filter_patterns)]
    return sorted(t.full_name for t in tests)


async def run_interop(
    client: InteropClient,
    *,
    filter_patterns: list[str] | None = None,
    on_progress: Callable[[InteropResult], None] | None = None,
    timeout: float = DEFAULT_TEST_TIMEOUT,
) -> InteropSuite:
    """Run interop tests against a server and return results.

    Args:
        client: Client connected to the server under test.
        filter_patterns: Optional glob patterns to filter which tests run.
        on_progress: Optional callback invoked after each test completes.
        timeout: Per-test timeout in seconds.  Set to ``0`` to disable.

    Returns:
        An InteropSuite with all results.

    """
    suite_start = time.monotonic()
    results: list[InteropResult] = []

    tests_to_run = _TESTS
    if filter_patterns:
        tests_to_run = [t for t in _TESTS if _matches_filter(t, filter_patterns)]

    for test in tests_to_run:
        start = time.monotonic()
        error: str | None = None
        passed = True
        try:
            async with asyncio.timeout(timeout if timeout > 0 else None):
                await test.fn(client)
        except TimeoutError:
            passed = False
            error = f"Test exceeded {timeout}s timeout"
        except AssertionError as e:
            passed = False
            error = str(e) if str(e) else "Assertion failed"
        except grpc.aio.AioRpcError as e:
            passed = False
            error = f"AioRpcError({e.code().name}): {e.details()}"
        except Exception as e:
            passed = False
            error = f"{type(e).__name__}: {e}"
        elapsed_ms = (time.monotonic() - start) * 1000

        result = InteropResult(
            name=test.full_name,
            category=test.category,
            passed=passed,
            duration_ms=elapsed_ms,
            error=error,
        )
        results.append(result)
        if on_progress:
            on_progress(result)

    suite_elapsed = (time.monotonic() - suite_start) * 1000
    passed_count = sum(1 for r in results if r.passed)

    return InteropSuite(
        results=results,
        total=len(results),
        passed=passed_count,
        failed=len(results) - passed_count,
        duration_ms=suite_elapsed,
    )
