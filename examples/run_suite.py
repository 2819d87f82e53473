"""Run the interop client suite against an in-process server.

Run::

    python examples/run_suite.py
"""

from __future__ import annotations

import asyncio

from interop_rpc import InteropResult, ServerConfig, connect, run_interop, start_server


def _report(result: InteropResult) -> None:
    print(f"  {result.name:<45s} {'PASS' if result.passed else 'FAIL'}")


async def main() -> int:
    """Run every interop test and return a process exit code."""
    server, _, port = await start_server(ServerConfig(host="127.0.0.1", port=0))
    try:
        async with connect(f"127.0.0.1:{port}") as client:
            suite = await run_interop(client, on_progress=_report)
    finally:
        await server.stop(None)
    print(f"{suite.passed}/{suite.total} passed")
    return 0 if suite.success else 1


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
