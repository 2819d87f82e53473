# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Async client for ``grpc.testing.TestService``.

:class:`InteropClient` wraps a ``grpc.aio.Channel`` with one multi-callable
per method and returns the raw ``grpc.aio`` call objects, so callers can read
initial metadata, trailing metadata and status details as well as responses::

    async with connect("localhost:8080") as client:
        call = client.unary_call(SimpleRequest(response_size=10))
        response = await call
        trailers = await call.trailing_metadata()

"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterable, AsyncIterator, Sequence
from typing import Any

import grpc
from google.protobuf.message import Message

from interop_rpc._common import Metadata
from interop_rpc.messages import (
    SERVICE_NAME,
    Empty,
    SimpleResponse,
    StreamingInputCallResponse,
    StreamingOutputCallResponse,
)

__all__ = ["InteropClient", "connect"]

_logger = logging.getLogger("interop_rpc.client")


def _path(method: str) -> str:
    return f"/{SERVICE_NAME}/{method}"


def _serialize(message: Message) -> bytes:
    return message.SerializeToString()


class InteropClient:
    """Typed multi-callables for every ``TestService`` method.

    Every method accepts optional invocation ``metadata`` and a ``timeout`` in
    seconds and returns the ``grpc.aio`` call without awaiting it.
    """

    __slots__ = (
        "_channel",
        "_empty_call",
        "_full_duplex_call",
        "_half_duplex_call",
        "_streaming_input_call",
        "_streaming_output_call",
        "_unary_call",
        "_unimplemented_call",
    )

    def __init__(self, channel: grpc.aio.Channel) -> None:
        self._channel = channel
        self._empty_call = channel.unary_unary(
            _path("EmptyCall"), request_serializer=_serialize, response_deserializer=Empty.FromString
        )
        self._unary_call = channel.unary_unary(
            _path("UnaryCall"), request_serializer=_serialize, response_deserializer=SimpleResponse.FromString
        )
        self._streaming_output_call = channel.unary_stream(
            _path("StreamingOutputCall"),
            request_serializer=_serialize,
            response_deserializer=StreamingOutputCallResponse.FromString,
        )
        self._streaming_input_call = channel.stream_unary(
            _path("StreamingInputCall"),
            request_serializer=_serialize,
            response_deserializer=StreamingInputCallResponse.FromString,
        )
        self._full_duplex_call = channel.stream_stream(
            _path("FullDuplexCall"),
            request_serializer=_serialize,
            response_deserializer=StreamingOutputCallResponse.FromString,
        )
        self._half_duplex_call = channel.stream_stream(
            _path("HalfDuplexCall"),
            request_serializer=_serialize,
            response_deserializer=StreamingOutputCallResponse.FromString,
        )
        self._unimplemented_call = channel.unary_unary(
            _path("UnimplementedCall"), request_serializer=_serialize, response_deserializer=Empty.FromString
        )

    @property
    def channel(self) -> grpc.aio.Channel:
        """The underlying channel."""
        return self._channel

    def empty_call(
        self, request: Message | None = None, *, metadata: Metadata | None = None, timeout: float | None = None
    ) -> grpc.aio.UnaryUnaryCall:
        """Start ``EmptyCall``."""
        return self._empty_call(request if request is not None else Empty(), metadata=metadata, timeout=timeout)

    def unary_call(
        self, request: Message, *, metadata: Metadata | None = None, timeout: float | None = None
    ) -> grpc.aio.UnaryUnaryCall:
        """Start ``UnaryCall``."""
        return self._unary_call(request, metadata=metadata, timeout=timeout)

    def streaming_output_call(
        self, request: Message, *, metadata: Metadata | None = None, timeout: float | None = None
    ) -> grpc.aio.UnaryStreamCall:
        """Start ``StreamingOutputCall``."""
        return self._streaming_output_call(request, metadata=metadata, timeout=timeout)

    def streaming_input_call(
        self,
        requests: AsyncIterable[Message] | Sequence[Message] | None = None,
        *,
        metadata: Metadata | None = None,
        timeout: float | None = None,
    ) -> grpc.aio.StreamUnaryCall:
        """Start ``StreamingInputCall``.

        With *requests* ``None`` the caller writes through the returned call
        and finishes with ``done_to_write()``.
        """
        return self._streaming_input_call(requests, metadata=metadata, timeout=timeout)

    def full_duplex_call(
        self,
        requests: AsyncIterable[Message] | Sequence[Message] | None = None,
        *,
        metadata: Metadata | None = None,
        timeout: float | None = None,
    ) -> grpc.aio.StreamStreamCall:
        """Start ``FullDuplexCall``; see :meth:`streaming_input_call` for *requests*."""
        return self._full_duplex_call(requests, metadata=metadata, timeout=timeout)

    def half_duplex_call(
        self,
        requests: AsyncIterable[Message] | Sequence[Message] | None = None,
        *,
        metadata: Metadata | None = None,
        timeout: float | None = None,
    ) -> grpc.aio.StreamStreamCall:
        """Start ``HalfDuplexCall``."""
        return self._half_duplex_call(requests, metadata=metadata, timeout=timeout)

    def unimplemented_call(
        self, request: Message | None = None, *, metadata: Metadata | None = None, timeout: float | None = None
    ) -> grpc.aio.UnaryUnaryCall:
        """Start ``UnimplementedCall``, which no conforming server registers."""
        return self._unimplemented_call(request if request is not None else Empty(), metadata=metadata, timeout=timeout)


@contextlib.asynccontextmanager
async def connect(target: str, *, options: Sequence[tuple[str, Any]] | None = None) -> AsyncIterator[InteropClient]:
    """Open an insecure channel to *target* and yield an :class:`InteropClient`.

    The channel is closed when the block exits.

    Args:
        target: ``host:port`` of the server.
        options: Extra gRPC channel arguments.

    """
    _logger.debug("Connecting to %s", target, extra={"target": target})
    async with grpc.aio.insecure_channel(target, options=list(options) if options else None) as channel:
        yield InteropClient(channel)
