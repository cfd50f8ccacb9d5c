#!/usr/bin/env python3
"""Run the MQL snapshot sync from the command line.

Usage:
    uv run python scripts/run_mql_sync.py
    uv run python scripts/run_mql_sync.py --year 2025
    uv run python scripts/run_mql_sync.py --year 2025 --expenses-only
    uv run python scripts/run_mql_sync.py --year 2025 --repeat-deals

Reads credentials from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime, timezone

# Ensure project root is on sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

import structlog  # noqa: E402

from src.app.analytics.repeat_deals import backfill_repeat_deals  # noqa: E402
from src.app.api.middleware.logging import configure_structlog  # noqa: E402
from src.app.core.database import close_db  # noqa: E402
from src.app.core.redis import close_redis  # noqa: E402
from src.app.wiring import build_services  # noqa: E402

logger = structlog.get_logger(__name__)


async def main_async(args: argparse.Namespace) -> None:
    services = build_services()
    year = args.year or datetime.now(timezone.utc).year

    try:
        if args.expenses_only:
            logger.info("Updating marketing expenses", year=year)
            result = await services.mql_sync.update_marketing_expenses_only(year)
        elif args.repeat_deals:
            logger.info("Backfilling repeat deals", year=year)
            result = await backfill_repeat_deals(services.mql_repository, year)
        else:
            logger.info("Running MQL sync", year=year)
            result = (await services.mql_sync.run(year)).model_dump(mode="json")
    finally:
        await close_db()
        await close_redis()

    print(json.dumps(result, indent=2, ensure_ascii=False, default=str))


def main() -> None:
    parser = argparse.ArgumentParser(description="Sync monthly MQL snapshots")
    parser.add_argument("--year", type=int, default=None, help="Year to sync (default: current)")
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--expenses-only",
        action="store_true",
        help="Only refresh marketing spend on existing snapshots",
    )
    group.add_argument(
        "--repeat-deals",
        action="store_true",
        help="Only recompute repeat deals from stored leads",
    )
    args = parser.parse_args()

    configure_structlog()
    asyncio.run(main_async(args))


if __name__ == "__main__":
    main()
