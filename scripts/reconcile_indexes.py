#!/usr/bin/env python3
"""Reconcile the vector index and graph against the record store.

The record store is authoritative. For one scope this script:
- re-indexes active records that have no vector point (and re-extracts their graph items)
- removes vector points whose record is missing or no longer active
- removes graph items whose origin record is missing or no longer active

Safe to re-run. Use it after a PartialFailure whose compensation reported
errors, or after restoring one backend from backup.

Usage:
    MCP_RECORDS_DATABASE_PATH=~/.openmemory/openmemory.db \
    MCP_QDRANT_URL=http://localhost:6333 \
    MCP_FALKORDB_ENABLED=true MCP_FALKORDB_HOST=localhost \
        python scripts/reconcile_indexes.py --scope user_id=alice [--scope app_id=cursor] [--dry-run]
"""

import argparse
import asyncio
import json
import logging
import time

from openmemory_mcp.config import get_settings
from openmemory_mcp.context import ServiceContext
from openmemory_mcp.models.scope import FilterSpec

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


def parse_scope(pairs: list[str]) -> FilterSpec:
    """Turn ``["user_id=alice", "app_id=cursor"]`` into a FilterSpec."""
    dims: dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep:
            raise argparse.ArgumentTypeError(f"Expected dim=value, got {pair!r}")
        dims[name.strip()] = value.strip()
    return FilterSpec.of(dims)


async def reconcile(scope: FilterSpec, dry_run: bool) -> dict:
    settings = get_settings()
    context = await ServiceContext.create(settings)
    try:
        return await context.engine.reconcile(scope, dry_run=dry_run)
    finally:
        await context.aclose()


def main():
    parser = argparse.ArgumentParser(description="Repair drift between the record store and the indexes")
    parser.add_argument(
        "--scope",
        action="append",
        required=True,
        metavar="DIM=VALUE",
        help="Scope dimension to reconcile (repeatable, at least one)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Report drift without changing anything")
    args = parser.parse_args()

    try:
        scope = parse_scope(args.scope)
    except (argparse.ArgumentTypeError, ValueError) as e:
        parser.error(str(e))

    if args.dry_run:
        logger.info("=== DRY RUN MODE ===")

    start = time.monotonic()
    report = asyncio.run(reconcile(scope, args.dry_run))
    elapsed = time.monotonic() - start

    logger.info(f"Done in {elapsed:.1f}s for scope {scope}")
    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
