"""Restore variant prices from a stored backup without going through the API."""

from __future__ import annotations

import asyncio
import logging
import sys

from dotenv import load_dotenv

from bulkprice.catalog.shopify import ShopifyClient
from bulkprice.runs.orchestrator import RunOrchestrator
from bulkprice.storage.backups import backup_store_from_env
from bulkprice.storage.run_logs import run_log_store_from_env


async def main(backup_id: str) -> int:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    client = ShopifyClient()
    orchestrator = RunOrchestrator(client, backup_store_from_env(), run_log_store_from_env())
    try:
        result = await orchestrator.rollback(backup_id)
    finally:
        await client.close()
    for line in result.log:
        print(line)
    summary = result.summary
    print(f"Restored {summary.updated} variants ({summary.skipped} skipped, {summary.errors} errors)")
    return 1 if summary.errors else 0


if __name__ == "__main__":
    if len(sys.argv) != 2:
        raise SystemExit("usage: python scripts/rollback.py <backupId>")
    raise SystemExit(asyncio.run(main(sys.argv[1])))
