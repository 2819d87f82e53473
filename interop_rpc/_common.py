# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Loggers, errors, request correlation, call statistics and dispatch hooks."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from contextvars import ContextVar
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, TypeAlias

if TYPE_CHECKING:
    from google.protobuf.message import Message

    from interop_rpc.call import CallOutcome
    from interop_rpc.handlers import InteropMethodInfo

# ---------------------------------------------------------------------------
# Loggers
# ---------------------------------------------------------------------------

_logger = logging.getLogger("interop_rpc.server")
_access_logger = logging.getLogger("interop_rpc.access")

Metadata: TypeAlias = tuple[tuple[str, str | bytes], ...]
"""gRPC metadata in tuple form, as accepted by ``grpc.aio``."""


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class InvalidRequestError(ValueError):
    """Raised when a request asks for something the protocol cannot express (e.g. a negative size)."""


# ---------------------------------------------------------------------------
# Per-request correlation ID
# ---------------------------------------------------------------------------


def _generate_request_id() -> str:
    """Generate a 16-char hex request ID for correlation."""
    return uuid.uuid4().hex[:16]


_current_request_id: ContextVar[str] = ContextVar("interop_rpc_request_id", default="")


# ---------------------------------------------------------------------------
# Per-call I/O statistics
# ---------------------------------------------------------------------------


@dataclass
class CallStatistics:
    """Mutable accumulator of per-call message counters.

    Created at dispatch start and populated as messages flow through the
    call.  Surfaced through the access log and dispatch hooks.  Byte counts
    are serialized protobuf sizes (``Message.ByteSize()``), without gRPC
    framing.

    Attributes:
        input_messages: Number of inbound messages read by the server.
        output_messages: Number of outbound messages written by the server,
            including a unary response.
        input_bytes: Serialized bytes across all inbound messages.
        output_bytes: Serialized bytes across all outbound messages.

    """

    input_messages: int = 0
    output_messages: int = 0
    input_bytes: int = 0
    output_bytes: int = 0

    def record_input(self, message: Message) -> None:
        """Record an inbound message."""
        self.input_messages += 1
        self.input_bytes += message.ByteSize()

    def record_output(self, message: Message) -> None:
        """Record an outbound message."""
        self.output_messages += 1
        self.output_bytes += message.ByteSize()


# ---------------------------------------------------------------------------
# Dispatch hook protocol
# ---------------------------------------------------------------------------

HookToken: TypeAlias = object
"""Opaque token returned by ``_DispatchHook.on_dispatch_start``."""


class _DispatchHook(Protocol):
    """Internal protocol for observability hooks called around call dispatch."""

    def on_dispatch_start(self, info: InteropMethodInfo, metadata: Metadata) -> HookToken:
        """Start observability for a dispatch and return an opaque token."""
        ...

    def on_dispatch_end(
        self,
        token: HookToken,
        info: InteropMethodInfo,
        error: BaseException | None,
        *,
        outcome: CallOutcome | None = None,
        stats: CallStatistics | None = None,
    ) -> None:
        """Finalize observability after the call terminated (normally, with a status, or by fault)."""
        ...


class _CompositeDispatchHook:
    """Fans a dispatch out to several hooks; ends them in reverse order."""

    __slots__ = ("_hooks",)

    def __init__(self, hooks: Sequence[_DispatchHook]) -> None:
        self._hooks: list[_DispatchHook] = list(hooks)

    def append(self, hook: _DispatchHook) -> None:
        """Add another hook after the existing ones."""
        self._hooks.append(hook)

    def on_dispatch_start(self, info: InteropMethodInfo, metadata: Metadata) -> HookToken:
        """Start every hook, skipping (and logging) hooks that fail."""
        tokens: list[tuple[_DispatchHook, HookToken]] = []
        for hook in self._hooks:
            try:
                tokens.append((hook, hook.on_dispatch_start(info, metadata)))
            except Exception:
                _logger.warning("Dispatch hook %r failed on start", hook, exc_info=True)
        return tokens

    def on_dispatch_end(
        self,
        token: HookToken,
        info: InteropMethodInfo,
        error: BaseException | None,
        *,
        outcome: CallOutcome | None = None,
        stats: CallStatistics | None = None,
    ) -> None:
        """End the hooks that started successfully, last started first."""
        if not isinstance(token, list):
            return
        for hook, hook_token in reversed(token):
            try:
                hook.on_dispatch_end(hook_token, info, error, outcome=outcome, stats=stats)
            except Exception:
                _logger.warning("Dispatch hook %r failed on end", hook, exc_info=True)


def _register_dispatch_hook(existing: _DispatchHook | None, new_hook: _DispatchHook) -> _DispatchHook:
    """Combine *new_hook* with an already installed hook (if any)."""
    if existing is None:
        return new_hook
    if isinstance(existing, _CompositeDispatchHook):
        existing.append(new_hook)
        return existing
    return _CompositeDispatchHook([existing, new_hook])
