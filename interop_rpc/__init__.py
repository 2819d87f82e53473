# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""gRPC interop test server (``grpc.testing.TestService``) and client suite on ``grpc.aio``."""

import logging

from interop_rpc._common import CallStatistics, InvalidRequestError
from interop_rpc.call import Call, CallOutcome, ServerCall
from interop_rpc.client import InteropClient, connect
from interop_rpc.delay_queue import DelayQueue, ScheduledTask
from interop_rpc.handlers import (
    CallHandler,
    EmptyCallHandler,
    FullDuplexCallHandler,
    HalfDuplexCallHandler,
    InteropMethodInfo,
    MethodKind,
    StreamingInputCallHandler,
    StreamingOutputCallHandler,
    UnaryCallHandler,
    interop_methods,
)
from interop_rpc.messages import SERVICE_NAME, build_payload
from interop_rpc.metadata import ECHO_INITIAL_KEY, ECHO_TRAILING_KEY
from interop_rpc.runner import InteropResult, InteropSuite, list_interop_tests, run_interop
from interop_rpc.server import InteropServer, ServerConfig, serve, start_server

__all__ = [
    "ECHO_INITIAL_KEY",
    "ECHO_TRAILING_KEY",
    "SERVICE_NAME",
    "Call",
    "CallHandler",
    "CallOutcome",
    "CallStatistics",
    "DelayQueue",
    "EmptyCallHandler",
    "FullDuplexCallHandler",
    "HalfDuplexCallHandler",
    "InteropClient",
    "InteropMethodInfo",
    "InteropResult",
    "InteropServer",
    "InteropSuite",
    "InvalidRequestError",
    "MethodKind",
    "ScheduledTask",
    "ServerCall",
    "ServerConfig",
    "StreamingInputCallHandler",
    "StreamingOutputCallHandler",
    "UnaryCallHandler",
    "build_payload",
    "connect",
    "interop_methods",
    "list_interop_tests",
    "run_interop",
    "serve",
    "start_server",
]

logging.getLogger("interop_rpc").addHandler(logging.NullHandler())
