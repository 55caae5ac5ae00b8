"""Run the subscription scheduler manually.

Usage:
    cd backend
    python -m scripts.run_subscription_scheduler
    python -m scripts.run_subscription_scheduler --now 2024-03-01T00:00:00+00:00
"""

import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from app.modules.billing.scheduler import run_subscription_scheduler


async def main(now: datetime | None):
    """Run one scheduler pass."""
    print("\n" + "=" * 60)
    print("Running Subscription Scheduler")
    print("=" * 60)

    summary = await run_subscription_scheduler(now=now)

    print(f"\nResults:")
    print(f"  Subscriptions processed: {summary['processed']}")
    print(f"  Invoices created: {summary['created']}")
    print(f"  Already invoiced: {summary['existing']}")
    print(f"  Skipped: {summary['skipped']}")
    print(f"  Failed: {summary['failed']}")
    print(f"  Dunning reminders sent: {summary['dunning_sent']}")
    print(f"  Subscriptions paused: {summary['paused']}")
    print(f"  Run at: {summary['run_at']}")

    for error in summary["errors"]:
        print(f"  ✗ {error}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the subscription scheduler once")
    parser.add_argument("--now", type=datetime.fromisoformat, default=None,
                        help="Timezone-aware ISO timestamp to run as")
    args = parser.parse_args()
    if args.now is not None and args.now.tzinfo is None:
        parser.error("--now must include a UTC offset")
    asyncio.run(main(args.now))
