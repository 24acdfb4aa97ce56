from datetime import datetime
from typing import List
from uuid import uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from base_domains.errors import OrderValidationError, PersistenceError
from base_domains.events import ORDER_CREATED, OrderEvent
from order_service.models import Order, OrderStatus, OrdersOutbox
from order_service.schemas import OrderCreateRequest


class OrderExistsError(Exception):
    pass


def _same_order(order: Order, order_in: OrderCreateRequest) -> bool:
    return (
        order.product == order_in.product
        and order.quantity == order_in.quantity
        and order.customer_contact == str(order_in.email)
    )


async def submit_order(
    order_in: OrderCreateRequest,
    session: AsyncSession
) -> Order:
    """
    Stores the order and its outbox entry in one transaction. Either both rows
    are committed or neither is.

    Resubmitting an existing order id with identical fields returns the stored
    order without queueing a second event.
    """
    if order_in.quantity <= 0:
        raise OrderValidationError("quantity must be positive")

    try:
        existing = await session.get(Order, order_in.order_id)
        if existing is not None:
            if _same_order(existing, order_in):
                return existing
            raise OrderExistsError(order_in.order_id)

        order = Order(
            order_id=order_in.order_id,
            product=order_in.product,
            quantity=order_in.quantity,
            customer_contact=str(order_in.email),
            status=OrderStatus.PENDING.value,
        )
        event = OrderEvent(
            event_id=uuid4(),
            order_id=order.order_id,
            product=order.product,
            quantity=order.quantity,
            email=order.customer_contact,
        )
        session.add(order)
        session.add(OrdersOutbox(
            event_id=event.event_id,
            order_id=order.order_id,
            event_type=ORDER_CREATED,
            payload=event.to_payload(),
        ))
        await session.commit()
    except IntegrityError:
        # a concurrent request inserted the same order id first
        await session.rollback()
        existing = await session.get(Order, order_in.order_id)
        if existing is not None and _same_order(existing, order_in):
            return existing
        raise OrderExistsError(order_in.order_id)
    except SQLAlchemyError as e:
        await session.rollback()
        raise PersistenceError(f"could not store order {order_in.order_id}: {e}") from e
    return order


async def get_order(
    order_id: str,
    session: AsyncSession
) -> Order | None:
    return await session.get(Order, order_id)


async def list_pending_outbox(
    session: AsyncSession,
    limit: int = 100
) -> List[OrdersOutbox]:
    """
    Unpublished entries in creation order.
    """
    result = await session.execute(
        select(OrdersOutbox)
        .where(OrdersOutbox.published_at.is_(None), OrdersOutbox.failed_at.is_(None))
        .order_by(OrdersOutbox.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def count_pending_outbox(session: AsyncSession) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(OrdersOutbox)
        .where(OrdersOutbox.published_at.is_(None), OrdersOutbox.failed_at.is_(None))
    )
    return result.scalar_one()


async def prune_published(
    older_than: datetime,
    session: AsyncSession
) -> int:
    result = await session.execute(
        delete(OrdersOutbox).where(
            OrdersOutbox.published_at.is_not(None),
            OrdersOutbox.published_at < older_than,
        )
    )
    await session.commit()
    return result.rowcount or 0
