"""Outbox publisher for payment notifications."""

import asyncio

from seatpay.common.config import settings
from seatpay.common.events import EventEnvelope, KafkaBus
from seatpay.common.logging import logger
from seatpay.common.outbox import (
    claim_outbox_batch,
    mark_outbox_sent,
    requeue_outbox_event,
    update_outbox_backlog_metrics,
)
from seatpay.services.reconciliation.models import OutboxEvent


class NotificationPublisher:
    """Drains committed outbox rows to Kafka.

    Delivery is at-least-once; a broker failure requeues the row and never
    reaches back into the payment that produced it.
    """

    def __init__(self, session_factory, bus: KafkaBus | None = None, service_name: str | None = None) -> None:
        self.session_factory = session_factory
        self.bus = bus or KafkaBus()
        self.service_name = service_name or settings.service_name

    async def publish_pending(self, limit: int = 100) -> int:
        """Publish one claimed batch; returns how many rows were delivered."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, OutboxEvent, limit=limit)
            update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
            db.commit()
        sent = 0
        for row in rows:
            try:
                await self.bus.publish(row["topic"], EventEnvelope(**row["payload"]))
                with self.session_factory() as db:
                    mark_outbox_sent(db, OutboxEvent, row["id"])
                    update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                    db.commit()
                sent += 1
            except Exception as exc:
                logger.exception("outbox publish failed event_id=%s: %s", row["id"], exc)
                with self.session_factory() as db:
                    requeue_outbox_event(db, OutboxEvent, row["id"])
                    update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                    db.commit()
        return sent

    async def run(self) -> None:
        """Continuously publish and ack pending outbox events."""

        while True:
            try:
                await self.publish_pending()
            except Exception as exc:
                logger.exception("outbox batch failed: %s", exc)
            await asyncio.sleep(0.5)

    async def close(self) -> None:
        await self.bus.close()
