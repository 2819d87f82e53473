# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""The call surface handlers program against.

Handlers never touch a ``grpc.aio.ServicerContext`` directly: they read
metadata, send headers, write messages, and end or fail the call through a
:class:`Call`.  :class:`ServerCall` implements it over ``grpc.aio``; the
terminal signal is recorded as a :class:`CallOutcome` that the server applies
to the context once the handler's queued work has settled.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

import grpc
from google.protobuf.message import Message

from interop_rpc._common import CallStatistics, Metadata

__all__ = ["Call", "CallOutcome", "ServerCall"]

_logger = logging.getLogger("interop_rpc.server")


@dataclass(frozen=True)
class CallOutcome:
    """Terminal signal of a call.

    Attributes:
        code: Final status; ``OK`` for a normal close.
        message: Status details (empty on success).
        trailing_metadata: Trailers sent with the status.
        response: The single response of a unary-response call, else ``None``.

    """

    code: grpc.StatusCode
    message: str = ""
    trailing_metadata: Metadata = ()
    response: Message | None = None

    @property
    def ok(self) -> bool:
        """Whether the call closed normally."""
        return self.code is grpc.StatusCode.OK


class Call(Protocol):
    """Operations a handler may perform on the call it serves."""

    @property
    def closed(self) -> bool:
        """Whether a terminal signal was already given."""
        ...

    @property
    def metadata(self) -> Metadata:
        """Invocation metadata as received."""
        ...

    async def send_headers(self, metadata: Metadata) -> None:
        """Send response headers."""
        ...

    async def write(self, message: Message) -> None:
        """Write one outbound message of a streaming response."""
        ...

    def end(self, response: Message | None = None, trailing_metadata: Metadata = ()) -> None:
        """Terminate the call normally."""
        ...

    def fail(self, code: grpc.StatusCode, message: str, trailing_metadata: Metadata = ()) -> None:
        """Terminate the call with an error status."""
        ...


class ServerCall:
    """:class:`Call` over a ``grpc.aio`` servicer context.

    Only the first terminal signal counts; later ``end``/``fail`` calls and
    writes after termination are dropped and logged at DEBUG.
    """

    __slots__ = ("_context", "_metadata", "_method", "_outcome", "stats")

    def __init__(
        self,
        context: grpc.aio.ServicerContext,
        method: str,
        stats: CallStatistics | None = None,
    ) -> None:
        """Bind to *context*; must be created inside the call's event loop."""
        self._context = context
        self._method = method
        self._metadata: Metadata = tuple(context.invocation_metadata() or ())
        self._outcome: asyncio.Future[CallOutcome] = asyncio.get_running_loop().create_future()
        self.stats = stats if stats is not None else CallStatistics()

    @property
    def metadata(self) -> Metadata:
        """Invocation metadata as received."""
        return self._metadata

    @property
    def closed(self) -> bool:
        """Whether a terminal signal was already given."""
        return self._outcome.done()

    async def send_headers(self, metadata: Metadata) -> None:
        """Send response headers, unless the call already ended."""
        if self.closed:
            _logger.debug("Dropping headers on closed call %s", self._method)
            return
        await self._context.send_initial_metadata(metadata)

    async def write(self, message: Message) -> None:
        """Write one streamed response, unless the call already ended."""
        if self.closed:
            _logger.debug("Dropping write on closed call %s", self._method)
            return
        await self._context.write(message)
        self.stats.record_output(message)

    def end(self, response: Message | None = None, trailing_metadata: Metadata = ()) -> None:
        """Terminate the call normally with *trailing_metadata*."""
        if response is not None and not self.closed:
            self.stats.record_output(response)
        self._settle(CallOutcome(grpc.StatusCode.OK, "", tuple(trailing_metadata), response))

    def fail(self, code: grpc.StatusCode, message: str, trailing_metadata: Metadata = ()) -> None:
        """Terminate the call with *code* and *message*."""
        self._settle(CallOutcome(code, message, tuple(trailing_metadata)))

    async def wait_closed(self) -> CallOutcome:
        """Wait for the terminal signal and return it."""
        return await self._outcome

    def _settle(self, outcome: CallOutcome) -> None:
        if self._outcome.done():
            _logger.debug("Ignoring second terminal signal %s on call %s", outcome.code.name, self._method)
            return
        self._outcome.set_result(outcome)
