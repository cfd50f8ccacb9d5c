#!/usr/bin/env python3
"""Run reminder jobs once from the command line.

Usage:
    uv run python scripts/run_reminders.py --scan
    uv run python scripts/run_reminders.py --process
    uv run python scripts/run_reminders.py --proforma

--scan reads today's Google Calendar and schedules Meet reminders,
--process delivers reminders that are due, --proforma sends second
payment reminders for 50/50 deals.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Ensure project root is on sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

import structlog  # noqa: E402

from src.app.api.middleware.logging import configure_structlog  # noqa: E402
from src.app.core.database import close_db  # noqa: E402
from src.app.core.redis import close_redis  # noqa: E402
from src.app.wiring import build_services  # noqa: E402

logger = structlog.get_logger(__name__)


async def main_async(args: argparse.Namespace) -> None:
    services = build_services()

    try:
        if args.proforma:
            if services.proforma_reminders is None:
                print("Error: wFirma is not configured")
                sys.exit(1)
            result = await services.proforma_reminders.process_all_deals(trigger="cli")
        else:
            if services.meet_reminders is None:
                print("Error: Google Calendar is not configured")
                sys.exit(1)
            if args.scan:
                result = await services.meet_reminders.daily_calendar_scan(trigger="cli")
            else:
                result = await services.meet_reminders.process_scheduled_reminders(trigger="cli")
    finally:
        await close_db()
        await close_redis()

    print(json.dumps(result.model_dump(mode="json"), indent=2, ensure_ascii=False))


def main() -> None:
    parser = argparse.ArgumentParser(description="Run reminder jobs")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--scan", action="store_true", help="Scan today's calendar")
    group.add_argument("--process", action="store_true", help="Send due Meet reminders")
    group.add_argument("--proforma", action="store_true", help="Send proforma second-payment reminders")
    args = parser.parse_args()

    configure_structlog()
    asyncio.run(main_async(args))


if __name__ == "__main__":
    main()
