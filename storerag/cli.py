#!/usr/bin/env python3
"""Operator CLI for store lifecycle maintenance.

Works against the configured shared backends (``RAG_*`` environment), so it
is only meaningful with the Redis/Postgres/pgvector backends.

Examples
- ``storerag status <store_id>``
- ``storerag resync <store_id>``
- ``storerag unlock <store_id>``
- ``storerag orphans --purge``
- ``storerag reconcile-scheduler``
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Optional

import structlog

from storerag.common.config import ServiceConfig
from storerag.common.errors import StoreNotFound
from storerag.common.logging import configure_logging
from storerag.service.runtime import ServiceRuntime

logger = structlog.get_logger("cli")


async def run_command(args: argparse.Namespace, config: Optional[ServiceConfig] = None) -> Any:
    """Execute one CLI command and return its JSON-serializable result."""
    runtime = ServiceRuntime(config or ServiceConfig())
    coordinator = runtime.coordinator
    try:
        if args.command == "status":
            status = await coordinator.get_status(args.store_id)
            return status.to_dict()
        if args.command == "resync":
            report = await coordinator.resync(args.store_id)
            return report or {"store_id": args.store_id, "skipped": True}
        if args.command == "unlock":
            released = await coordinator.force_unlock(args.store_id)
            return {"store_id": args.store_id, "released": released}
        if args.command == "orphans":
            if args.purge:
                partitions = await coordinator.purge_orphaned_partitions()
            else:
                partitions = await coordinator.find_orphaned_partitions()
            return {"partitions": partitions, "purged": args.purge}
        if args.command == "reconcile-scheduler":
            return {"removed": await coordinator.reconcile_scheduler()}
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await runtime.cleanup()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="storerag", description="Store RAG lifecycle maintenance")
    subparsers = parser.add_subparsers(dest="command", required=True)

    status = subparsers.add_parser("status", help="Show sync status and partition counts")
    status.add_argument("store_id")

    resync = subparsers.add_parser("resync", help="Re-index a store now")
    resync.add_argument("store_id")

    unlock = subparsers.add_parser("unlock", help="Force-release a stuck lock")
    unlock.add_argument("store_id")

    orphans = subparsers.add_parser("orphans", help="List partitions without a store row")
    orphans.add_argument("--purge", action="store_true", help="Delete the orphaned partitions")

    subparsers.add_parser("reconcile-scheduler", help="Drop scheduled ids without an active store")
    return parser


def main(argv: Optional[list] = None) -> None:
    """Main function for CLI."""
    args = build_parser().parse_args(argv)

    config = ServiceConfig()
    configure_logging("storerag-cli", config.rag_log_level, "console")

    try:
        result = asyncio.run(run_command(args, config))
    except StoreNotFound as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
