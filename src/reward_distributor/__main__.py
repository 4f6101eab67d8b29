"""Command line entry point.

Usage:
    python -m reward_distributor worker
    python -m reward_distributor api --port 8080 --with-worker
    python -m reward_distributor init-db
    python -m reward_distributor prepare [--cycle-id N]
    python -m reward_distributor snapshot [--cycle-id N]
    python -m reward_distributor settings
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import sys
from typing import Any

from pydantic import ValidationError

from reward_distributor.config import Settings, get_settings
from reward_distributor.errors import DistributorError
from reward_distributor.service import Application
from reward_distributor.storage.database import DatabaseManager

logger = logging.getLogger("reward_distributor")


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _run_worker(settings: Settings) -> None:
    await Application(settings, run_worker=True).run()


async def _init_db(settings: Settings) -> None:
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()


async def _one_shot(settings: Settings, command: str, cycle_id: int | None) -> int:
    async with Application(settings, run_worker=False) as app:
        if command == "prepare":
            prep = await app.service.prepare(cycle_id)
            _print_json(prep.to_dict())
            return 0 if prep.terminal else 1
        snapshot = await app.service.window_status(cycle_id)
        _print_json(snapshot.to_dict())
        return 0


def _serve_api(settings: Settings, host: str, port: int | None, with_worker: bool) -> None:
    import uvicorn

    from reward_distributor.api import create_app

    app = create_app(application=Application(settings, run_worker=with_worker))
    uvicorn.run(app, host=host, port=port or settings.api_port, log_level=settings.log_level.lower())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reward-distributor", description=__doc__.splitlines()[0])
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("worker", help="Run the cycle worker until interrupted")

    api = sub.add_parser("api", help="Serve the claim and read API")
    api.add_argument("--host", default="0.0.0.0")
    api.add_argument("--port", type=int, default=None)
    api.add_argument("--with-worker", action="store_true", help="Also run the cycle worker in-process")

    sub.add_parser("init-db", help="Create the schema (development databases)")

    for name in ("prepare", "snapshot"):
        cmd = sub.add_parser(name, help=f"Run one {name} for a cycle and print the outcome")
        cmd.add_argument("--cycle-id", type=int, default=None, help="Window boundary (epoch ms)")

    sub.add_parser("settings", help="Print the effective settings with secrets redacted")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return 2
    _configure_logging(settings)

    if args.command == "settings":
        _print_json(settings.redacted_summary())
        return 0
    if args.command == "init-db":
        asyncio.run(_init_db(settings))
        return 0

    required = "worker" if args.command == "worker" or getattr(args, "with_worker", False) else args.command
    try:
        settings.validate_requirements(command=required)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    try:
        if args.command == "worker":
            with contextlib.suppress(KeyboardInterrupt):
                asyncio.run(_run_worker(settings))
            return 0
        if args.command == "api":
            _serve_api(settings, args.host, args.port, args.with_worker)
            return 0
        return asyncio.run(_one_shot(settings, args.command, args.cycle_id))
    except DistributorError as e:
        logger.error("%s failed: %s (%s)", args.command, e.message, e.code)
        return 1


if __name__ == "__main__":
    sys.exit(main())
