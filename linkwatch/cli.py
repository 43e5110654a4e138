"""Command-line entry points.

Usage:
    python -m linkwatch.cli serve [--host 127.0.0.1] [--port 4000]
    python -m linkwatch.cli watch <process_id> [--backend-url URL]
"""

import argparse
import asyncio
import logging
import sys

from linkwatch.config import get_settings
from linkwatch.monitor.client import BackendClient
from linkwatch.monitor.reconnect import ConnectionState, MonitorConfig, ReconnectionMonitor

_TERMINAL_STATES = (ConnectionState.IDLE, ConnectionState.DISCONNECTED, ConnectionState.FAILED)


def _print_transition(old: ConnectionState, new: ConnectionState) -> None:
    print(f"[{old} -> {new}]")


async def watch(process_id: str, backend_url: str, config: MonitorConfig) -> ConnectionState:
    """Monitor one process until it reaches a state that needs user action."""
    done = asyncio.Event()

    def on_transition(old: ConnectionState, new: ConnectionState) -> None:
        _print_transition(old, new)
        if new in _TERMINAL_STATES:
            done.set()

    async with BackendClient(backend_url, timeout=config.status_timeout, event_timeout=config.event_timeout) as client:
        monitor = ReconnectionMonitor(process_id, client, config)
        monitor.subscribe(on_transition)
        state = await monitor.start()
        if state in _TERMINAL_STATES:
            return state
        try:
            await done.wait()
        except asyncio.CancelledError:
            await monitor.stop()
            raise
        finally:
            await monitor.close()
        return monitor.state


def _serve(host: str, port: int) -> None:
    import uvicorn

    uvicorn.run("linkwatch.api.main:app", host=host, port=port)


def main(argv: list[str] | None = None) -> int:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    parser = argparse.ArgumentParser(prog="linkwatch", description="Connection health monitoring for browser sessions")
    sub = parser.add_subparsers(dest="command", required=True)

    serve_parser = sub.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=4000)

    watch_parser = sub.add_parser("watch", help="Watch a recording process and reconnect on failure")
    watch_parser.add_argument("process_id")
    watch_parser.add_argument("--backend-url", default=settings.backend_url)

    args = parser.parse_args(argv)

    if args.command == "serve":
        _serve(args.host, args.port)
        return 0

    print(f"Watching process {args.process_id} via {args.backend_url} (Ctrl+C to stop)")
    try:
        final = asyncio.run(watch(args.process_id, args.backend_url, MonitorConfig.from_settings(settings)))
    except KeyboardInterrupt:
        print("\nStopped.")
        return 0

    print(f"Final state: {final}")
    return 0 if final == ConnectionState.IDLE else 1


if __name__ == "__main__":
    sys.exit(main())
