# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""JSON formatter for structured logging output.

Provides :class:`InteropJsonFormatter`, a :class:`logging.Formatter` subclass
that serializes log records as single-line JSON objects.  Every ``extra``
field attached to a record (``server_id``, ``method``, ``request_id``,
``grpc_status`` and friends) is included automatically.

This module is not auto-imported by ``interop_rpc``; import it explicitly::

    from interop_rpc.logging_utils import InteropJsonFormatter
"""

from __future__ import annotations

import json
import logging

__all__ = ["InteropJsonFormatter"]

# Attribute names every LogRecord carries; anything else came in via ``extra``.
_DEFAULT_RECORD_ATTRS: frozenset[str] = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()) | {
    "message",
    "asctime",
    "taskName",
}

_RESERVED_KEYS: frozenset[str] = frozenset({"timestamp", "level", "logger", "message", "exception", "stack_info"})


class InteropJsonFormatter(logging.Formatter):
    """JSON formatter that emits all structured extra fields.

    ``timestamp``, ``level``, ``logger`` and ``message`` are always present
    and cannot be overwritten by extra fields of the same name.  Exception
    information goes under ``"exception"``.  Values that are not JSON
    serializable (bytes from binary metadata, enums) are rendered with
    ``str()``.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        record.message = record.getMessage()
        obj: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            **{k: v for k, v in record.__dict__.items() if k not in _DEFAULT_RECORD_ATTRS and k not in _RESERVED_KEYS},
        }
        if record.exc_info and record.exc_info[1]:
            obj["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            obj["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(obj, default=str)
