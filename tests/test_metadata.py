# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for echo metadata helpers."""

from __future__ import annotations

import grpc

from interop_rpc.metadata import (
    ECHO_INITIAL_KEY,
    ECHO_TRAILING_KEY,
    echo_initial_metadata,
    echo_trailing_metadata,
    first_value,
    metadata_values,
)


class TestLookup:
    """Reading values out of metadata."""

    def test_values_in_order(self) -> None:
        """Every value for a key is returned in arrival order."""
        md = (("a", "1"), ("b", "2"), ("a", "3"))
        assert metadata_values(md, "a") == ["1", "3"]

    def test_case_insensitive(self) -> None:
        """Keys match regardless of case."""
        assert first_value((("X-Grpc-Test-Echo-Initial", "v"),), ECHO_INITIAL_KEY) == "v"

    def test_missing_and_none(self) -> None:
        """Missing keys and absent metadata give nothing."""
        assert metadata_values(None, "a") == []
        assert first_value((("b", "1"),), "a") is None

    def test_aio_metadata(self) -> None:
        """grpc.aio.Metadata is accepted."""
        md = grpc.aio.Metadata((ECHO_INITIAL_KEY, "x"), (ECHO_INITIAL_KEY, "y"))
        assert first_value(md, ECHO_INITIAL_KEY) == "x"


class TestEcho:
    """Echo metadata construction."""

    def test_initial_first_value_only(self) -> None:
        """Only the first initial-echo value is echoed."""
        md = ((ECHO_INITIAL_KEY, "one"), (ECHO_INITIAL_KEY, "two"))
        assert echo_initial_metadata(md) == ((ECHO_INITIAL_KEY, "one"),)

    def test_trailing_binary(self) -> None:
        """Binary trailing-echo values are echoed unchanged."""
        md = (("other", "x"), (ECHO_TRAILING_KEY, b"\xab\xab\xab"))
        assert echo_trailing_metadata(md) == ((ECHO_TRAILING_KEY, b"\xab\xab\xab"),)

    def test_absent_keys(self) -> None:
        """Without echo keys there is nothing to echo."""
        md = (("user-agent", "test"),)
        assert echo_initial_metadata(md) == ()
        assert echo_trailing_metadata(md) == ()
        assert echo_trailing_metadata(None) == ()

    def test_keys_are_independent(self) -> None:
        """The initial key is not echoed as a trailer and vice versa."""
        assert echo_trailing_metadata(((ECHO_INITIAL_KEY, "x"),)) == ()
        assert echo_initial_metadata(((ECHO_TRAILING_KEY, b"x"),)) == ()
