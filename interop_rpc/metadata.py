# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Echo metadata keys and helpers shared by every call handler.

The interop protocol asks the server to mirror two well-known metadata keys:
the first value of ``x-grpc-test-echo-initial`` is sent back as a response
header, and the first value of ``x-grpc-test-echo-trailing-bin`` is attached
to the call's trailing metadata on every terminal outcome.  Absent keys mean
there is nothing to echo.
"""

from __future__ import annotations

from collections.abc import Iterable

from interop_rpc._common import Metadata

__all__ = [
    "ECHO_INITIAL_KEY",
    "ECHO_TRAILING_KEY",
    "echo_initial_metadata",
    "echo_trailing_metadata",
    "first_value",
    "metadata_values",
]

ECHO_INITIAL_KEY = "x-grpc-test-echo-initial"
ECHO_TRAILING_KEY = "x-grpc-test-echo-trailing-bin"


def metadata_values(metadata: Iterable[tuple[str, str | bytes]] | None, key: str) -> list[str | bytes]:
    """Return every value stored under *key*, in arrival order.

    Accepts tuple-form metadata as well as ``grpc.aio.Metadata``, which
    iterates as ``(key, value)`` pairs.  Keys are compared case-insensitively
    because HTTP/2 lowercases them on the wire.
    """
    if metadata is None:
        return []
    wanted = key.lower()
    return [value for name, value in metadata if name.lower() == wanted]


def first_value(metadata: Iterable[tuple[str, str | bytes]] | None, key: str) -> str | bytes | None:
    """Return the first value stored under *key*, or ``None``."""
    values = metadata_values(metadata, key)
    return values[0] if values else None


def echo_initial_metadata(metadata: Iterable[tuple[str, str | bytes]] | None) -> Metadata:
    """Response headers echoing the initial-echo key; empty when the key is absent."""
    value = first_value(metadata, ECHO_INITIAL_KEY)
    if value is None:
        return ()
    return ((ECHO_INITIAL_KEY, value),)


def echo_trailing_metadata(metadata: Iterable[tuple[str, str | bytes]] | None) -> Metadata:
    """Trailing metadata echoing the trailing-echo key; empty when the key is absent."""
    value = first_value(metadata, ECHO_TRAILING_KEY)
    if value is None:
        return ()
    return ((ECHO_TRAILING_KEY, value),)
