#!/usr/bin/env python3
"""
Inspect cycle, item and purchase locks and the purchase queue.

Usage:
    python scripts/inspect_locks.py                # report only
    python scripts/inspect_locks.py --clear-cycle  # force-release the cycle lock
"""

import argparse
import asyncio
from datetime import datetime

from sqlalchemy import select

from stocksniper.db.models import AttemptStatus, PurchaseAttempt
from stocksniper.db.session import AsyncSessionLocal
from stocksniper.dispatch.queue import RedisJobQueue
from stocksniper.worker.locks import CYCLE_LOCK_KEY, LockManager, lock_age_seconds

OPEN_STATUSES = [
    AttemptStatus.DETECTED.value,
    AttemptStatus.CARTED.value,
    AttemptStatus.CHECKOUT_STARTED.value,
    AttemptStatus.CHECKOUT_PAYMENT.value,
]


def _describe(key: str, info) -> str:
    age = lock_age_seconds(info)
    age_display = f"{age:.0f}" if age is not None else "n/a"
    return f"  {key}: owner={info.get('owner')} age_s={age_display} ttl_s={info.get('ttl_seconds')}"


async def inspect(clear_cycle: bool) -> None:
    locks = LockManager()
    queue = RedisJobQueue()

    print("Lock Inspection")
    print("===============")
    cycle_info = await locks.get_lock_info(CYCLE_LOCK_KEY)
    if not cycle_info:
        print("Cycle lock: none")
    else:
        print("Cycle lock: present")
        print(_describe(CYCLE_LOCK_KEY, cycle_info))

    for label, pattern in (("Item locks", "cycle:item:*"), ("Purchase locks", "autobuy:*")):
        keys = await locks.list_locks(pattern)
        print(f"{label}: {len(keys)}")
        for key in sorted(keys):
            info = await locks.get_lock_info(key)
            if info:
                print(_describe(key, info))

    print(f"Dead-lettered jobs: {await queue.dead_letter_count()}")
    print("")

    async with AsyncSessionLocal() as db:
        result = await db.execute(
            select(PurchaseAttempt)
            .where(PurchaseAttempt.status.in_(OPEN_STATUSES))
            .order_by(PurchaseAttempt.created_at)
        )
        open_attempts = result.scalars().all()

    print(f"Open purchase attempts: {len(open_attempts)}")
    for attempt in open_attempts:
        age_s = (datetime.utcnow() - attempt.created_at).total_seconds()
        print(
            f"  - id={attempt.id} item={attempt.watch_item_id} tenant={attempt.tenant_id} "
            f"status={attempt.status} age_s={age_s:.0f}"
        )

    print("")
    print("Recommendations")
    print("----------------")
    cycle_age = lock_age_seconds(cycle_info)
    if cycle_info and cycle_age is not None and cycle_age > 120:
        print("- Cycle lock is older than two cycles. Re-run with --clear-cycle if no cycle is running.")
    stale = [a for a in open_attempts if (datetime.utcnow() - a.created_at).total_seconds() > 900]
    if stale:
        print(f"- {len(stale)} attempt(s) open for over 15 minutes. Check the worker and dead-letter stream.")
    if not cycle_info and not stale:
        print("- No issues detected.")

    if clear_cycle and cycle_info:
        await locks.force_release(CYCLE_LOCK_KEY)
        print("")
        print("Cycle lock cleared.")

    await locks.close()
    await queue.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--clear-cycle", action="store_true", help="force-release the cycle lock")
    args = parser.parse_args()
    asyncio.run(inspect(args.clear_cycle))
