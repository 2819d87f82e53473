"""Minimal interop-rpc example: serve TestService and call it in-process.

The server binds a free port on localhost, and a client on the same event
loop exercises a unary call with echoed metadata and a paced server
stream.

Run::

    python examples/hello_interop.py
"""

from __future__ import annotations

import asyncio

from interop_rpc import ECHO_INITIAL_KEY, ServerConfig, connect, start_server
from interop_rpc.messages import ResponseParameters, SimpleRequest, StreamingOutputCallRequest
from interop_rpc.metadata import first_value


async def main() -> None:
    """Run the example."""
    # 1. Start the server on a port chosen by the OS.
    server, interop, port = await start_server(ServerConfig(host="127.0.0.1", port=0, server_id="hello"))
    try:
        async with connect(f"127.0.0.1:{port}") as client:
            # 2. Unary call: ask for a 16-byte payload and an echoed header.
            call = client.unary_call(
                SimpleRequest(response_size=16, fill_server_id=True),
                metadata=((ECHO_INITIAL_KEY, "hi"),),
            )
            response = await call
            echoed = first_value(await call.initial_metadata(), ECHO_INITIAL_KEY)
            print(f"payload={len(response.payload.body)} bytes server_id={response.server_id} echoed={echoed}")

            # 3. Server stream: three responses, 50 ms apart.
            request = StreamingOutputCallRequest()
            for size in (1, 2, 3):
                request.response_parameters.append(ResponseParameters(size=size, interval_us=50_000))
            sizes = [len(r.payload.body) async for r in client.streaming_output_call(request)]
            print(f"stream sizes={sizes}")
    finally:
        await server.stop(None)
    print(f"served by {interop.server_id}")


if __name__ == "__main__":
    asyncio.run(main())
