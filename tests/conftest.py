# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Shared test fixtures for interop-rpc tests."""

from __future__ import annotations

import socket
import subprocess
import sys
import time
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass

import grpc
import pytest

from interop_rpc.client import InteropClient, connect
from interop_rpc.server import InteropServer, ServerConfig, start_server


@dataclass
class RunningServer:
    """A started ``grpc.aio`` server and the interop service it hosts."""

    server: grpc.aio.Server
    interop: InteropServer
    port: int

    @property
    def target(self) -> str:
        """Client target for the loopback address."""
        return f"127.0.0.1:{self.port}"


@pytest.fixture()
def interop() -> InteropServer:
    """An un-instrumented interop service with a fixed server ID."""
    return InteropServer(server_id="test-server")


@pytest.fixture()
async def running_server(interop: InteropServer) -> AsyncIterator[RunningServer]:
    """Serve *interop* on a free loopback port for one test."""
    server, _, port = await start_server(ServerConfig(host="127.0.0.1", port=0), interop)
    try:
        yield RunningServer(server=server, interop=interop, port=port)
    finally:
        await server.stop(None)


@pytest.fixture()
async def client(running_server: RunningServer) -> AsyncIterator[InteropClient]:
    """A client connected to ``running_server``."""
    async with connect(running_server.target) as interop_client:
        yield interop_client


def _wait_for_port(port: int, timeout: float = 5.0) -> None:
    """Poll until the server is accepting TCP connections."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            with socket.create_connection(("127.0.0.1", port), timeout=1.0):
                return
        except OSError:
            time.sleep(0.1)
    raise TimeoutError(f"Server on port {port} did not start within {timeout}s")


@pytest.fixture(scope="session")
def served_port() -> Iterator[int]:
    """Spawn ``interop-rpc serve`` as a subprocess for the entire test session."""
    proc = subprocess.Popen(
        [sys.executable, "-m", "interop_rpc", "serve", "--host", "127.0.0.1", "--port", "0"],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    try:
        assert proc.stdout is not None
        line = proc.stdout.readline().decode().strip()
        assert line.startswith("PORT:"), f"Expected PORT:<n>, got: {line!r}"
        port = int(line.split(":", 1)[1])

        _wait_for_port(port)

        yield port
    finally:
        proc.terminate()
        proc.wait(timeout=10)
