from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from base_domains.events import OrderEvent
from base_domains.models import utcnow
from stock_service.models import Stock


class InsufficientStock(Exception):
    def __init__(self, product: str, requested: int, available: int):
        super().__init__(
            f"insufficient stock for {product}: requested={requested}, available={available}"
        )
        self.product = product
        self.requested = requested
        self.available = available


async def get_stock(
    product: str,
    session: AsyncSession
) -> Stock | None:
    return await session.get(Stock, product)


async def set_stock(
    product: str,
    quantity: int,
    session: AsyncSession
) -> Stock:
    stmt = select(Stock).where(Stock.product == product).with_for_update()
    stock = (await session.execute(stmt)).scalar_one_or_none()
    if stock is None:
        stock = Stock(product=product, quantity=quantity)
        session.add(stock)
    else:
        stock.quantity = quantity
        stock.updated_at = utcnow()
    await session.commit()
    return stock


async def reserve_for_order(
    event: OrderEvent,
    session: AsyncSession
) -> Stock:
    """
    Decrements stock for an order inside the caller's transaction; the caller
    commits together with the processed-event record and offset.
    """
    stmt = select(Stock).where(Stock.product == event.product).with_for_update()
    stock = (await session.execute(stmt)).scalar_one_or_none()
    available = stock.quantity if stock else 0
    if stock is None or available < event.quantity:
        raise InsufficientStock(event.product, event.quantity, available)

    stock.quantity -= event.quantity
    stock.updated_at = utcnow()
    return stock
