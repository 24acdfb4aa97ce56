import logging

from sqlalchemy.ext.asyncio import AsyncSession

from base_domains.delivery import Ack, HandlerResult, Nack
from base_domains.events import OrderEvent
from stock_service import crud

logger = logging.getLogger("stock.workers")


class StockHandler:
    """Reserves inventory for each order event."""

    async def on_event(self, session: AsyncSession, event: OrderEvent) -> HandlerResult:
        try:
            stock = await crud.reserve_for_order(event, session)
        except crud.InsufficientStock as e:
            logger.warning("[Stock] Order %s: %s", event.order_id, e)
            # stock may be replenished before the retry budget runs out
            return Nack(retryable=True, reason=str(e))

        logger.info("[Stock] Order %s reserved %d x %s, %d left",
                    event.order_id, event.quantity, event.product, stock.quantity)
        return Ack()
