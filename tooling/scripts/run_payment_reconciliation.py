"""Run one payment reconciliation sweep outside the API process.

Intended usage: schedule via cron, or run by hand after a gateway outage
to settle payments that never received a webhook.

Example:
    python tooling/scripts/run_payment_reconciliation.py --trigger cron --batch-size 100
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Execute a payment reconciliation sweep once")
    parser.add_argument(
        "--trigger",
        default="cli",
        help="Label recorded on the reconciliation run to describe the invocation source.",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Override the number of pending payments inspected in this sweep.",
    )
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=None,
        help="Override the number of failed lookups tolerated before a payment is expired.",
    )
    return parser.parse_args()


async def _run(trigger: str, batch_size: int | None, max_attempts: int | None) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from settlement_api.core.settings import settings  # type: ignore import-position
    from settlement_api.db.session import async_session, engine as db_engine  # type: ignore import-position
    from settlement_api.services.payments import build_engine  # type: ignore import-position
    from settlement_api.workers import PaymentReconciliationWorker  # type: ignore import-position

    engine = build_engine(settings, async_session)
    if batch_size:
        engine.policy.batch_size = batch_size
    if max_attempts:
        engine.policy.max_attempts = max_attempts

    worker = PaymentReconciliationWorker(async_session, engine, trigger_label=trigger)
    try:
        # The dispatcher stays stopped so notifications run inline before exit.
        return await worker.run_once(triggered_by=trigger)
    finally:
        await db_engine.dispose()


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.trigger, args.batch_size, args.max_attempts))
    logger.success(
        "Payment reconciliation run completed",
        checked=summary.get("checked", 0),
        resolved=summary.get("resolved", 0),
        failed=summary.get("failed", 0),
        exhausted=summary.get("exhausted", 0),
        trigger=args.trigger,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
