# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for the runtime-built interop message classes and payload helpers."""

from __future__ import annotations

import grpc
import pytest

from interop_rpc._common import InvalidRequestError
from interop_rpc.messages import (
    COMPRESSABLE,
    SERVICE_NAME,
    EchoStatus,
    Payload,
    ResponseParameters,
    SimpleRequest,
    SimpleResponse,
    StreamingInputCallResponse,
    StreamingOutputCallRequest,
    build_payload,
    injected_status,
    status_code,
)


class TestSchema:
    """Message names and field numbers match the published interop schema."""

    def test_full_names(self) -> None:
        """Messages live in the grpc.testing package."""
        assert SimpleRequest.DESCRIPTOR.full_name == "grpc.testing.SimpleRequest"
        assert StreamingOutputCallRequest.DESCRIPTOR.full_name == "grpc.testing.StreamingOutputCallRequest"
        assert SERVICE_NAME == "grpc.testing.TestService"

    def test_simple_request_wire_format(self) -> None:
        """response_size is field 2 and fill_server_id is field 9."""
        assert SimpleRequest(response_size=5).SerializeToString() == b"\x10\x05"
        assert SimpleRequest(fill_server_id=True).SerializeToString() == b"\x48\x01"

    def test_response_status_field_number(self) -> None:
        """response_status is field 7 in both request types."""
        status = EchoStatus(code=2)
        assert SimpleRequest(response_status=status).SerializeToString() == b"\x3a\x02\x08\x02"
        assert StreamingOutputCallRequest(response_status=status).SerializeToString() == b"\x3a\x02\x08\x02"

    def test_response_parameters_wire_format(self) -> None:
        """size is field 1 and interval_us is field 2."""
        assert ResponseParameters(size=1, interval_us=2).SerializeToString() == b"\x08\x01\x10\x02"

    def test_aggregated_size_wire_format(self) -> None:
        """aggregated_payload_size is field 1."""
        assert StreamingInputCallResponse(aggregated_payload_size=3).SerializeToString() == b"\x08\x03"

    def test_unknown_fields_survive_round_trip(self) -> None:
        """Fields this schema omits are preserved when re-serialized."""
        # field 10 is not declared in this schema
        data = b"\x10\x05" + b"\x52\x00"
        assert SimpleRequest.FromString(data).SerializeToString() == data

    def test_server_id_field(self) -> None:
        """SimpleResponse carries a server_id string."""
        assert SimpleResponse(server_id="x").server_id == "x"


class TestBuildPayload:
    """Payload construction."""

    def test_zero_filled_body(self) -> None:
        """The body is size zero bytes of the requested type."""
        payload = build_payload(COMPRESSABLE, 4)
        assert payload == Payload(type=COMPRESSABLE, body=b"\x00\x00\x00\x00")

    def test_empty_body(self) -> None:
        """Size zero gives an empty body."""
        assert build_payload(COMPRESSABLE, 0).body == b""

    def test_negative_size_rejected(self) -> None:
        """Negative sizes are invalid requests."""
        with pytest.raises(InvalidRequestError, match="non-negative"):
            build_payload(COMPRESSABLE, -5)


class TestStatus:
    """Injected status interpretation."""

    @pytest.mark.parametrize(
        ("number", "expected"),
        [
            (0, grpc.StatusCode.OK),
            (2, grpc.StatusCode.UNKNOWN),
            (3, grpc.StatusCode.INVALID_ARGUMENT),
            (12, grpc.StatusCode.UNIMPLEMENTED),
            (16, grpc.StatusCode.UNAUTHENTICATED),
            (17, grpc.StatusCode.UNKNOWN),
            (-1, grpc.StatusCode.UNKNOWN),
        ],
    )
    def test_status_code(self, number: int, expected: grpc.StatusCode) -> None:
        """Numbers map to gRPC codes; unknown numbers become UNKNOWN."""
        assert status_code(number) is expected

    def test_absent(self) -> None:
        """No response_status means no injected status."""
        assert injected_status(SimpleRequest()) is None

    def test_ok_is_absent(self) -> None:
        """A code 0 status is treated as absent."""
        assert injected_status(SimpleRequest(response_status=EchoStatus(code=0, message="x"))) is None

    def test_present(self) -> None:
        """A non-OK status is returned as sent."""
        status = injected_status(StreamingOutputCallRequest(response_status=EchoStatus(code=5, message="gone")))
        assert status is not None
        assert status.code == 5
        assert status.message == "gone"
