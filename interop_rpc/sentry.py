# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Sentry error reporting and optional performance monitoring for the interop server.

Provides ``SentryConfig`` and ``instrument_server_sentry()`` for reporting
unexpected handler faults to Sentry with call context (method, call shape,
server ID).  Injected statuses are protocol behavior, not faults, and are
never reported.

Requires ``pip install interop-rpc[sentry]`` (sentry-sdk>=2.0).

Users must initialize Sentry separately via ``sentry_sdk.init()``; this
module does not manage the DSN or SDK lifecycle.

Usage::

    import sentry_sdk
    from interop_rpc.sentry import SentryConfig, instrument_server_sentry

    sentry_sdk.init(dsn="https://...")
    server = InteropServer()
    instrument_server_sentry(server)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import sentry_sdk
import sentry_sdk.tracing

from interop_rpc._common import CallStatistics, HookToken, Metadata, _register_dispatch_hook

if TYPE_CHECKING:
    from interop_rpc.call import CallOutcome
    from interop_rpc.handlers import InteropMethodInfo
    from interop_rpc.server import InteropServer

_logger = logging.getLogger("interop_rpc.sentry")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SentryConfig:
    """Configuration for Sentry error reporting and optional performance monitoring.

    Attributes:
        enable_error_capture: Capture handler faults via ``sentry_sdk.capture_exception`` (default ``True``).
        enable_performance: Start a Sentry transaction per call.  Opt-in, to avoid
            duplicate tracing when used alongside OpenTelemetry.
        record_request_context: Set Sentry scope context with method, call shape
            and server ID (default ``True``).
        custom_tags: Extra tags applied to every Sentry event.
        ignored_exceptions: Exception types to skip when reporting.
        op_name: Sentry transaction operation name (default ``"rpc.server"``).

    """

    enable_error_capture: bool = True
    enable_performance: bool = False
    record_request_context: bool = True
    custom_tags: Mapping[str, str] = field(default_factory=dict)
    ignored_exceptions: tuple[type[BaseException], ...] = (asyncio.CancelledError,)
    op_name: str = "rpc.server"


def instrument_server_sentry(server: InteropServer, config: SentryConfig | None = None) -> InteropServer:
    """Attach Sentry error reporting to a server.

    Must be called before the server starts serving.

    Args:
        server: The ``InteropServer`` to instrument.
        config: Optional configuration; uses defaults when ``None``.

    Returns:
        The same *server* instance (for chaining).

    """
    if config is None:
        config = SentryConfig()
    hook = _SentryDispatchHook(config, server.service_name, server.server_id)
    server._dispatch_hook = _register_dispatch_hook(server._dispatch_hook, hook)
    _logger.debug("Sentry instrumentation attached (server_id=%s)", server.server_id)
    return server


# ---------------------------------------------------------------------------
# Internal dispatch hook
# ---------------------------------------------------------------------------


@dataclass
class _SentryHookToken:
    """Internal token carrying transaction reference for on_dispatch_end."""

    transaction: sentry_sdk.tracing.Transaction | sentry_sdk.tracing.NoOpSpan | None
    method_name: str


class _SentryDispatchHook:
    """Implements ``_DispatchHook`` with Sentry error capture and optional transactions."""

    __slots__ = ("_config", "_server_id", "_service")

    def __init__(self, config: SentryConfig, service: str, server_id: str) -> None:
        self._config = config
        self._service = service
        self._server_id = server_id

    def on_dispatch_start(self, info: InteropMethodInfo, metadata: Metadata) -> HookToken:
        """Set Sentry scope context and optionally start a transaction."""
        scope = sentry_sdk.get_current_scope()

        if self._config.record_request_context:
            scope.set_context(
                "rpc",
                {
                    "method": info.name,
                    "method_kind": info.kind.value,
                    "service": self._service,
                    "server_id": self._server_id,
                },
            )

        for key, value in self._config.custom_tags.items():
            scope.set_tag(key, value)

        transaction: sentry_sdk.tracing.Transaction | sentry_sdk.tracing.NoOpSpan | None = None
        if self._config.enable_performance:
            transaction = sentry_sdk.start_transaction(
                op=self._config.op_name,
                name=f"{self._service}/{info.name}",
            )

        return _SentryHookToken(transaction=transaction, method_name=info.name)

    def on_dispatch_end(
        self,
        token: HookToken,
        info: InteropMethodInfo,
        error: BaseException | None,
        *,
        outcome: CallOutcome | None = None,
        stats: CallStatistics | None = None,
    ) -> None:
        """Capture handler faults and finalize any active transaction."""
        if not isinstance(token, _SentryHookToken):
            return

        if (
            error is not None
            and self._config.enable_error_capture
            and not isinstance(error, self._config.ignored_exceptions)
        ):
            sentry_sdk.capture_exception(error)

        if token.transaction is not None:
            if error is not None:
                token.transaction.set_status("internal_error")
            elif outcome is not None and not outcome.ok:
                token.transaction.set_status(outcome.code.name.lower())
            else:
                token.transaction.set_status("ok")
            token.transaction.finish()
