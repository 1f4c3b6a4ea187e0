#!/usr/bin/env python3
"""Operational entry point for the latest-known-value service.

Subcommands:
- ``get``: resolve the latest value once (origin, then cache, then store)
  and print it.
- ``worker``: run the persistence worker until SIGINT/SIGTERM.
- ``init-db``: create the durable table.

Configuration is read from ``LASTKNOWN_*`` environment variables; see
``LastKnownConfig.from_env``.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from lastknown import LastKnownConfig, LastKnownError, LastKnownService  # noqa: E402

_LOG = logging.getLogger("run_pipeline")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Latest-known-value service runner.")
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    get_parser = subparsers.add_parser("get", help="Print the latest known value.")
    get_parser.add_argument(
        "--deadline",
        type=float,
        default=None,
        help="Overall budget in seconds (default: LASTKNOWN_REQUEST_DEADLINE).",
    )

    subparsers.add_parser("worker", help="Consume the channel into the durable store.")
    subparsers.add_parser("init-db", help="Create the durable table.")
    return parser.parse_args()


async def _get(config: LastKnownConfig, deadline: float | None) -> int:
    async with LastKnownService(config) as service:
        payload = await service.get_latest(deadline)
    if payload is None:
        print("No value available", file=sys.stderr)
        return 1
    print(payload)
    return 0


async def _worker(config: LastKnownConfig) -> int:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with LastKnownService(config) as service:
        task = service.start_worker()
        stopper = asyncio.create_task(stop.wait())
        await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
        stopper.cancel()
        if task.done():
            _LOG.warning("Worker exited before a stop signal")

    state = service.worker_state
    if state is not None:
        _LOG.info(
            "Worker summary received=%d applied=%d skipped_stale=%d decode_failures=%d store_failures=%d",
            state.received,
            state.applied,
            state.skipped_stale,
            state.decode_failures,
            state.store_failures,
        )
    return 0


async def _init_db(config: LastKnownConfig) -> int:
    async with LastKnownService(config) as service:
        await service.create_schema()
    print("Schema ready")
    return 0


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = LastKnownConfig.from_env()
        if args.command == "get":
            return asyncio.run(_get(config, args.deadline))
        if args.command == "worker":
            return asyncio.run(_worker(config))
        return asyncio.run(_init_db(config))
    except LastKnownError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(_main())
