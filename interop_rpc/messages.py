# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Interop test message schema and payload construction.

The ``grpc.testing`` messages are declared here as a ``FileDescriptorProto``
and compiled into message classes through a private descriptor pool when the
module is imported, so no generated ``_pb2`` modules are needed and the
classes never collide with another copy of the interop protos loaded into
the default pool.

Field names and numbers follow the published interop schema
(``grpc/testing/messages.proto`` and ``empty.proto``); fields the server
never reads or writes are omitted, which is wire-compatible because unknown
fields are preserved.

Usage::

    from interop_rpc.messages import SimpleRequest, build_payload

    request = SimpleRequest(response_size=10)
    payload = build_payload(request.response_type, request.response_size)

"""

from __future__ import annotations

from typing import Final

import grpc
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import Message

from interop_rpc._common import InvalidRequestError

__all__ = [
    "COMPRESSABLE",
    "PACKAGE",
    "SERVICE_NAME",
    "BoolValue",
    "EchoStatus",
    "Empty",
    "Payload",
    "ResponseParameters",
    "SimpleRequest",
    "SimpleResponse",
    "StreamingInputCallRequest",
    "StreamingInputCallResponse",
    "StreamingOutputCallRequest",
    "StreamingOutputCallResponse",
    "build_payload",
    "injected_status",
    "status_code",
]

PACKAGE: Final = "grpc.testing"
SERVICE_NAME: Final = f"{PACKAGE}.TestService"

COMPRESSABLE: Final = 0
"""The only ``PayloadType`` value: uncompressed zero-filled bytes."""

_F = descriptor_pb2.FieldDescriptorProto

# (name, number, type, message/enum type name or None, repeated)
_FieldSpec = tuple[str, int, int, str | None, bool]

_MESSAGES: dict[str, list[_FieldSpec]] = {
    "Empty": [],
    "BoolValue": [("value", 1, _F.TYPE_BOOL, None, False)],
    "Payload": [
        ("type", 1, _F.TYPE_ENUM, "PayloadType", False),
        ("body", 2, _F.TYPE_BYTES, None, False),
    ],
    "EchoStatus": [
        ("code", 1, _F.TYPE_INT32, None, False),
        ("message", 2, _F.TYPE_STRING, None, False),
    ],
    "SimpleRequest": [
        ("response_type", 1, _F.TYPE_ENUM, "PayloadType", False),
        ("response_size", 2, _F.TYPE_INT32, None, False),
        ("payload", 3, _F.TYPE_MESSAGE, "Payload", False),
        ("fill_username", 4, _F.TYPE_BOOL, None, False),
        ("fill_oauth_scope", 5, _F.TYPE_BOOL, None, False),
        ("response_compressed", 6, _F.TYPE_MESSAGE, "BoolValue", False),
        ("response_status", 7, _F.TYPE_MESSAGE, "EchoStatus", False),
        ("expect_compressed", 8, _F.TYPE_MESSAGE, "BoolValue", False),
        ("fill_server_id", 9, _F.TYPE_BOOL, None, False),
    ],
    "SimpleResponse": [
        ("payload", 1, _F.TYPE_MESSAGE, "Payload", False),
        ("username", 2, _F.TYPE_STRING, None, False),
        ("oauth_scope", 3, _F.TYPE_STRING, None, False),
        ("server_id", 4, _F.TYPE_STRING, None, False),
        ("hostname", 6, _F.TYPE_STRING, None, False),
    ],
    "StreamingInputCallRequest": [
        ("payload", 1, _F.TYPE_MESSAGE, "Payload", False),
        ("expect_compressed", 2, _F.TYPE_MESSAGE, "BoolValue", False),
    ],
    "StreamingInputCallResponse": [
        ("aggregated_payload_size", 1, _F.TYPE_INT32, None, False),
    ],
    "ResponseParameters": [
        ("size", 1, _F.TYPE_INT32, None, False),
        ("interval_us", 2, _F.TYPE_INT32, None, False),
        ("compressed", 3, _F.TYPE_MESSAGE, "BoolValue", False),
    ],
    "StreamingOutputCallRequest": [
        ("response_type", 1, _F.TYPE_ENUM, "PayloadType", False),
        ("response_parameters", 2, _F.TYPE_MESSAGE, "ResponseParameters", True),
        ("payload", 3, _F.TYPE_MESSAGE, "Payload", False),
        ("response_status", 7, _F.TYPE_MESSAGE, "EchoStatus", False),
    ],
    "StreamingOutputCallResponse": [
        ("payload", 1, _F.TYPE_MESSAGE, "Payload", False),
    ],
}


def _build_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    """Assemble the ``grpc.testing`` file descriptor from ``_MESSAGES``."""
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="interop_rpc/grpc_testing.proto",
        package=PACKAGE,
        syntax="proto3",
    )
    payload_type = file_proto.enum_type.add(name="PayloadType")
    payload_type.value.add(name="COMPRESSABLE", number=COMPRESSABLE)

    for message_name, fields in _MESSAGES.items():
        message_proto = file_proto.message_type.add(name=message_name)
        for field_name, number, field_type, type_name, repeated in fields:
            field_proto = message_proto.field.add(
                name=field_name,
                number=number,
                type=field_type,
                label=_F.LABEL_REPEATED if repeated else _F.LABEL_OPTIONAL,
                json_name=_json_name(field_name),
            )
            if type_name is not None:
                field_proto.type_name = f".{PACKAGE}.{type_name}"
    return file_proto


def _json_name(field_name: str) -> str:
    """Return the lowerCamelCase JSON name protoc would assign."""
    head, *rest = field_name.split("_")
    return head + "".join(part.capitalize() for part in rest)


_POOL = descriptor_pool.DescriptorPool()
_POOL.AddSerializedFile(_build_file_descriptor().SerializeToString())


def _message_class(name: str) -> type[Message]:
    return message_factory.GetMessageClass(_POOL.FindMessageTypeByName(f"{PACKAGE}.{name}"))


Empty = _message_class("Empty")
BoolValue = _message_class("BoolValue")
Payload = _message_class("Payload")
EchoStatus = _message_class("EchoStatus")
SimpleRequest = _message_class("SimpleRequest")
SimpleResponse = _message_class("SimpleResponse")
StreamingInputCallRequest = _message_class("StreamingInputCallRequest")
StreamingInputCallResponse = _message_class("StreamingInputCallResponse")
ResponseParameters = _message_class("ResponseParameters")
StreamingOutputCallRequest = _message_class("StreamingOutputCallRequest")
StreamingOutputCallResponse = _message_class("StreamingOutputCallResponse")


# ---------------------------------------------------------------------------
# Payload builder
# ---------------------------------------------------------------------------


def build_payload(payload_type: int, size: int) -> Message:
    """Build a ``Payload`` of *payload_type* whose body is *size* zero bytes.

    Raises:
        InvalidRequestError: If *size* is negative.

    """
    if size < 0:
        raise InvalidRequestError(f"payload size must be non-negative, got {size}")
    return Payload(type=payload_type, body=bytes(size))


# ---------------------------------------------------------------------------
# Injected status helpers
# ---------------------------------------------------------------------------

_STATUS_CODES: Final[dict[int, grpc.StatusCode]] = {code.value[0]: code for code in grpc.StatusCode}


def status_code(code: int) -> grpc.StatusCode:
    """Map a numeric gRPC status code to ``grpc.StatusCode``; unknown numbers become ``UNKNOWN``."""
    return _STATUS_CODES.get(code, grpc.StatusCode.UNKNOWN)


def injected_status(request: Message) -> Message | None:
    """Return the request's ``response_status`` if it asks for a non-OK outcome.

    A status with code ``0`` (OK) requests normal processing and is treated
    as absent.
    """
    if not request.HasField("response_status"):
        return None
    status = request.response_status
    if status.code == grpc.StatusCode.OK.value[0]:
        return None
    return status
