#!/usr/bin/env python3
"""
Expire stale pending orders.

Pending orders older than PENDING_ORDER_TTL_HOURS move to expired in one
statement. Safe to run concurrently with checkout: an order that is paid
while this runs is not touched.

Usage:
    # Expire with the configured TTL (for cron)
    python3 scripts/expire_pending_orders.py

    # Override the TTL
    python3 scripts/expire_pending_orders.py --ttl-hours 48
"""

import argparse
import asyncio
import sys
from datetime import UTC, datetime, timedelta

from fulfillment.config import settings
from fulfillment.db.session import close_engines, get_write_session
from fulfillment.observability import get_logger, setup_logging
from fulfillment.services.orders import OrderService

logger = get_logger("expire_pending_orders")


async def run(ttl_hours: int) -> int:
    cutoff = datetime.now(UTC) - timedelta(hours=ttl_hours)
    try:
        async with get_write_session() as session:
            return await OrderService(session).expire_stale_orders(cutoff)
    finally:
        await close_engines()


def main() -> None:
    parser = argparse.ArgumentParser(description="Expire stale pending orders")
    parser.add_argument(
        "--ttl-hours",
        type=int,
        default=settings.pending_order_ttl_hours,
        help="Age in hours after which a pending order expires",
    )
    args = parser.parse_args()

    if args.ttl_hours <= 0:
        parser.error("--ttl-hours must be positive")

    setup_logging()
    expired = asyncio.run(run(args.ttl_hours))
    logger.info("expire_job_complete", expired=expired, ttl_hours=args.ttl_hours)
    sys.exit(0)


if __name__ == "__main__":
    main()
