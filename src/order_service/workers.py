import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from base_domains.delivery import Backoff
from base_domains.errors import PublishError
from base_domains.events import OrderEvent
from base_domains.messaging import Broker
from base_domains.models import utcnow
from order_service import crud
from order_service.config import OrderSettings
from order_service.models import Order, OrderStatus, OrdersOutbox

logger = logging.getLogger("orders.outbox")


@dataclass
class PublishPass:
    published: int = 0
    failed: int = 0
    # seconds to wait before the next pass after a broker failure
    retry_after: float = 0.0


async def _mark_failed(entry: OrdersOutbox, error: str, session: AsyncSession) -> None:
    now = utcnow()
    entry.failed_at = now
    entry.last_error = error
    order = await session.get(Order, entry.order_id)
    if order is not None and order.status == OrderStatus.PENDING.value:
        order.status = OrderStatus.FAILED.value
        order.updated_at = now
    await session.commit()


async def publish_pending(
    settings: OrderSettings,
    session_factory: async_sessionmaker[AsyncSession],
    broker: Broker,
) -> PublishPass:
    """
    One drain of the outbox. Entries go out strictly in creation order; the
    first broker failure ends the pass so no later entry overtakes it.
    """
    backoff = Backoff(settings.PUBLISH_BASE_DELAY, settings.PUBLISH_MAX_DELAY)
    outcome = PublishPass()

    async with session_factory() as session:
        entries = await crud.list_pending_outbox(session, settings.OUTBOX_BATCH_SIZE)
        if entries:
            logger.info("[Orders] Pending outbox events: %d", len(entries))

        for entry in entries:
            try:
                event = OrderEvent.model_validate(entry.payload)
            except ValidationError as e:
                logger.error("[Orders] Outbox entry %s has an invalid payload: %s", entry.event_id, e)
                await _mark_failed(entry, f"invalid payload: {e}", session)
                outcome.failed += 1
                continue

            try:
                partition = await broker.append(
                    settings.TOPIC,
                    key=event.order_id,
                    value=event.to_bytes(),
                    headers={"event_id": str(event.event_id), "event_type": entry.event_type},
                )
            except PublishError as e:
                entry.attempts += 1
                entry.last_error = str(e)
                await session.commit()
                outcome.retry_after = backoff.delay(entry.attempts)
                logger.warning("[Orders] Publish of %s failed (attempt %d), retrying in %.1fs: %s",
                               entry.event_id, entry.attempts, outcome.retry_after, e)
                break

            now = utcnow()
            entry.published_at = now
            entry.partition = partition
            entry.attempts += 1
            entry.last_error = None
            order = await session.get(Order, entry.order_id)
            if order is not None and order.status == OrderStatus.PENDING.value:
                order.status = OrderStatus.CONFIRMED.value
                order.updated_at = now
            await session.commit()
            outcome.published += 1
            logger.info("[Orders] Published %s for order %s to partition %d",
                        entry.event_id, entry.order_id, partition)

    return outcome


async def outbox_publisher(
    settings: OrderSettings,
    session_factory: async_sessionmaker[AsyncSession],
    broker: Broker,
    stopping: asyncio.Event,
):
    logger.info("[Orders] Outbox publisher started")
    while not stopping.is_set():
        try:
            outcome = await publish_pending(settings, session_factory, broker)
            delay = outcome.retry_after or settings.OUTBOX_POLL_INTERVAL
        except Exception:
            logger.exception("[Orders] Outbox pass failed")
            delay = settings.OUTBOX_POLL_INTERVAL

        try:
            await asyncio.wait_for(stopping.wait(), delay)
        except asyncio.TimeoutError:
            pass
    logger.info("[Orders] Outbox publisher stopped")


async def outbox_housekeeping(
    settings: OrderSettings,
    session_factory: async_sessionmaker[AsyncSession],
    stopping: asyncio.Event,
    interval: float = 3600.0,
):
    while not stopping.is_set():
        cutoff = utcnow() - timedelta(hours=settings.OUTBOX_RETENTION_HOURS)
        try:
            async with session_factory() as session:
                removed = await crud.prune_published(cutoff, session)
            if removed:
                logger.info("[Orders] Pruned %d published outbox entries", removed)
        except Exception:
            logger.exception("[Orders] Outbox housekeeping failed")

        try:
            await asyncio.wait_for(stopping.wait(), interval)
        except asyncio.TimeoutError:
            pass
