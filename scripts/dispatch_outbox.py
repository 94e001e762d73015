#!/usr/bin/env python3
"""
Deliver pending outbox notifications.

Request handlers already dispatch after each commit; this job picks up
whatever they missed (process restarts, notifier outages).

Usage:
    # One pass (for cron)
    python3 scripts/dispatch_outbox.py

    # Keep polling every 30 seconds
    python3 scripts/dispatch_outbox.py --loop --interval 30
"""

import argparse
import asyncio

from fulfillment.db.session import close_engines
from fulfillment.observability import get_logger, setup_logging
from fulfillment.services.notifications import build_notifier, dispatch_outbox

logger = get_logger("dispatch_outbox")


async def run(loop: bool, interval: float) -> None:
    notifier = build_notifier()
    try:
        while True:
            delivered = await dispatch_outbox(notifier)
            logger.info("outbox_pass_complete", delivered=delivered)
            if not loop:
                return
            await asyncio.sleep(interval)
    finally:
        await close_engines()


def main() -> None:
    parser = argparse.ArgumentParser(description="Deliver pending outbox notifications")
    parser.add_argument("--loop", action="store_true", help="Keep polling instead of one pass")
    parser.add_argument("--interval", type=float, default=30.0, help="Seconds between passes")
    args = parser.parse_args()

    setup_logging()
    try:
        asyncio.run(run(args.loop, args.interval))
    except KeyboardInterrupt:
        logger.info("outbox_dispatcher_stopped")


if __name__ == "__main__":
    main()
