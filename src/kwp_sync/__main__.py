from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, List, Optional

from rich.console import Console

from .config import ConfigError, load_config
from .copier import run_clone
from .engines import DatabaseSession
from .errors import PayloadValidationError, SyncError
from .logging_utils import get_logger, setup_logging
from .models import SyncConfig
from .project import insert_project
from .queue import QueueConsumer, QueueRepository
from .supabase import SupabaseClient
from .sync import pull_projects, push_projects

console = Console()
LOGGER = get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kwp_sync",
        description="Sync projects between the KWP ERP database and Supabase.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    queue = commands.add_parser("process-queue", help="insert queued projects into the ERP")
    queue.add_argument("--once", action="store_true", help="process one page and exit")

    insert = commands.add_parser("insert-project", help="insert one project from a JSON file")
    insert.add_argument("payload", type=Path)

    commands.add_parser("clone", help="clone the ERP database into the target server")
    commands.add_parser("pull", help="upsert ERP projects into Supabase")

    push = commands.add_parser("push", help="merge project rows from a JSON file into the ERP")
    push.add_argument("rows", type=Path)
    return parser


def read_json(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise PayloadValidationError(f"Cannot read {path}: {exc}") from exc


def _require_supabase(config: SyncConfig) -> None:
    if config.supabase is None:
        raise ConfigError("Missing env vars: SUPA_URL, SUPA_SERVICE_KEY")


async def process_queue(config: SyncConfig, once: bool) -> None:
    async with DatabaseSession(config.database) as session:
        async with SupabaseClient(config.supabase) as client:
            consumer = QueueConsumer(
                QueueRepository(client, config.queue),
                session.engine,
                session.catalog,
                config.insert,
            )
            if once:
                await consumer.run_once()
            else:
                LOGGER.info(
                    "Polling %s every %.1fs", config.queue.table, config.queue.poll_interval
                )
                await consumer.run_forever(config.queue.poll_interval)


async def insert_one(config: SyncConfig, path: Path) -> None:
    payload = read_json(path)
    if not isinstance(payload, dict):
        raise PayloadValidationError(f"{path} must contain a JSON object")
    async with DatabaseSession(config.database) as session:
        result = await insert_project(session.engine, session.catalog, payload, config.insert)
    console.print(f"Project {result.projnr}: {result.status}")


async def pull(config: SyncConfig) -> None:
    async with DatabaseSession(config.database) as session:
        async with SupabaseClient(config.supabase) as client:
            with console.status("Pulling projects..."):
                count = await pull_projects(
                    session.engine,
                    client,
                    table=config.supabase.project_table,
                    batch_size=config.supabase.pull_batch_size,
                )
    console.print(f"Pulled {count} projects")


async def push(config: SyncConfig, path: Path) -> None:
    data = read_json(path)
    rows = data.get("rows", []) if isinstance(data, dict) else data
    if not isinstance(rows, list):
        raise PayloadValidationError(f"{path} must contain a list of rows")
    async with DatabaseSession(config.database) as session:
        count = await push_projects(session.engine, rows)
    console.print(f"Pushed {count} projects")


async def clone(config: SyncConfig) -> bool:
    summary = await run_clone(config.database, config.clone, console=console)
    for result in summary.failed:
        console.print(f"[red]{result.table}[/red]: {result.error}")
    return not summary.failed


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    setup_logging(os.getenv("LOG_LEVEL", "INFO"), console=console)
    try:
        config = load_config()
        if args.command in ("process-queue", "pull"):
            _require_supabase(config)
        if args.command == "clone" and config.clone is None:
            raise ConfigError("Missing env vars: MSSQL_DOCKER_SA_PASSWORD")
    except ConfigError as exc:
        LOGGER.error("Configuration error: %s", exc)
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        if args.command == "process-queue":
            asyncio.run(process_queue(config, args.once))
        elif args.command == "insert-project":
            asyncio.run(insert_one(config, args.payload))
        elif args.command == "pull":
            asyncio.run(pull(config))
        elif args.command == "push":
            asyncio.run(push(config, args.rows))
        elif args.command == "clone":
            if not asyncio.run(clone(config)):
                sys.exit(2)
    except KeyboardInterrupt:
        LOGGER.info("Interrupted")
    except SyncError as exc:
        LOGGER.error("%s", exc)
        print(f"Sync error: {exc}", file=sys.stderr)
        sys.exit(2)
    except Exception as exc:  # pragma: no cover - guard for CLI usage
        LOGGER.exception("Command %s failed", args.command)
        print(f"{args.command} failed: {exc}", file=sys.stderr)
        sys.exit(3)


if __name__ == "__main__":
    main()
