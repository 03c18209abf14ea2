"""Background timeout sweeper.

Finds PENDING payments older than the open window and asks the coordinator to
force the timeout edge. Inspect applies the same edge lazily, so a slow sweep
only delays the cleanup, never the answer a provider sees.
"""

import asyncio

from seatpay.common.config import settings
from seatpay.common.logging import logger
from seatpay.services.reconciliation.service import ReconciliationCoordinator


class TimeoutSweeper:
    def __init__(
        self,
        coordinator: ReconciliationCoordinator,
        interval_seconds: float | None = None,
        batch_size: int | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.interval_seconds = settings.sweep_interval_seconds if interval_seconds is None else interval_seconds
        self.batch_size = batch_size or settings.sweep_batch_size

    def sweep_once(self) -> list[str]:
        """Expire every eligible payment in one batch; returns the cancelled ids."""

        cancelled = []
        for payment_id in self.coordinator.stale_candidates(self.batch_size):
            outcome = self.coordinator.expire(payment_id, trigger="background")
            if outcome.ok:
                cancelled.append(payment_id)
            else:
                # A fresh OPEN/PREPARE keeps an old payment alive.
                logger.debug("sweep skipped payment_id=%s reason=%s", payment_id, outcome.detail)
        if cancelled:
            logger.info("sweep cancelled count=%s", len(cancelled))
        return cancelled

    async def run(self) -> None:
        """Sweep forever at a fixed interval."""

        while True:
            try:
                await asyncio.to_thread(self.sweep_once)
            except Exception as exc:
                logger.exception("sweep failed: %s", exc)
            await asyncio.sleep(self.interval_seconds)
