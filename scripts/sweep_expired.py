"""Run timeout sweeper passes against the configured database.

Uses the same environment as the API (`POSTGRES_DSN`, window settings), so it
can be run from cron when the in-process sweeper is disabled.
"""

import argparse

from seatpay.common.db import SessionLocal
from seatpay.common.logging import configure_logging
from seatpay.services.reconciliation.service import ReconciliationCoordinator
from seatpay.services.reconciliation.store import PaymentStore
from seatpay.services.reconciliation.sweeper import TimeoutSweeper


def main() -> None:
    parser = argparse.ArgumentParser(description="Cancel PENDING payments whose open window elapsed.")
    parser.add_argument("--batch-size", type=int, default=100)
    parser.add_argument("--max-batches", type=int, default=10)
    args = parser.parse_args()

    configure_logging()
    sweeper = TimeoutSweeper(ReconciliationCoordinator(PaymentStore(SessionLocal)), batch_size=args.batch_size)
    total = 0
    for _ in range(args.max_batches):
        cancelled = sweeper.sweep_once()
        total += len(cancelled)
        if len(cancelled) < args.batch_size:
            break
    print(f"cancelled={total}")


if __name__ == "__main__":
    main()
