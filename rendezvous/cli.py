"""Rendezvous command-line interface."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
import sys
from typing import Any

from loguru import logger
from pydantic import ValidationError

from rendezvous.config.schema import RendezvousConfig
from rendezvous.relay.service import RendezvousService


def setup_logging(level: str) -> None:
    """Replace loguru's default sink with one stderr sink at *level*."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def load_config(args: argparse.Namespace) -> RendezvousConfig:
    """Environment first, command-line flags on top."""
    overrides: dict[str, Any] = {}
    for name in (
        "host", "port", "sweep_interval", "liveness_timeout", "max_message_size", "log_level",
    ):
        value = getattr(args, name, None)
        if value is not None:
            overrides[name] = value
    if getattr(args, "no_forwarded_for", False):
        overrides["trust_forwarded_for"] = False
    return RendezvousConfig(**overrides)


async def _cmd_serve(config: RendezvousConfig) -> int:
    service = RendezvousService(config)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    await service.start()
    try:
        await stop_event.wait()
    finally:
        await service.stop()
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="LAN rendezvous and relay server")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the rendezvous server")
    serve.add_argument("--host", help="Interface to bind (default 0.0.0.0)")
    serve.add_argument("--port", type=int, help="Port to listen on (default 3030 or $PORT)")
    serve.add_argument("--sweep-interval", type=float, dest="sweep_interval",
                       help="Seconds between liveness sweeps")
    serve.add_argument("--liveness-timeout", type=float, dest="liveness_timeout",
                       help="Seconds without heartbeat before a device is evicted")
    serve.add_argument("--max-message-size", type=int, dest="max_message_size",
                       help="Largest accepted frame in bytes")
    serve.add_argument("--no-forwarded-for", action="store_true", dest="no_forwarded_for",
                       help="Ignore X-Forwarded-For and use the socket address")
    serve.add_argument("--log-level", dest="log_level",
                       help="TRACE, DEBUG, INFO, SUCCESS, WARNING, ERROR or CRITICAL")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        config = load_config(args)
    except ValidationError as exc:
        parser.error(str(exc))
    setup_logging(config.log_level)
    with contextlib.suppress(KeyboardInterrupt):
        return asyncio.run(_cmd_serve(config))
    return 0


if __name__ == "__main__":
    sys.exit(main())
