from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from base_domains.models import ConsumerOffset, DeadLetter, ProcessedEvent, utcnow


class DeadLetterNotFound(Exception):
    pass


async def get_committed_offset(
    session: AsyncSession,
    consumer_group: str,
    topic: str,
    partition: int,
) -> Optional[int]:
    row = await session.get(ConsumerOffset, (consumer_group, topic, partition))
    return row.last_committed_offset if row else None


async def commit_offset(
    session: AsyncSession,
    consumer_group: str,
    topic: str,
    partition: int,
    offset: int,
) -> None:
    """
    Stages the offset in the caller's transaction. Offsets never move
    backwards; committing an older offset is a no-op.
    """
    row = await session.get(
        ConsumerOffset, (consumer_group, topic, partition), with_for_update=True
    )
    if row is None:
        session.add(ConsumerOffset(
            consumer_group=consumer_group,
            topic=topic,
            partition=partition,
            last_committed_offset=offset,
        ))
    elif offset > row.last_committed_offset:
        row.last_committed_offset = offset
        row.updated_at = utcnow()


async def is_processed(session: AsyncSession, consumer_group: str, event_id: UUID) -> bool:
    return await session.get(ProcessedEvent, (consumer_group, event_id)) is not None


async def mark_processed(session: AsyncSession, consumer_group: str, event_id: UUID) -> None:
    session.add(ProcessedEvent(consumer_group=consumer_group, event_id=event_id))


async def prune_processed(
    session: AsyncSession,
    consumer_group: str,
    older_than: datetime,
) -> int:
    result = await session.execute(
        delete(ProcessedEvent).where(
            ProcessedEvent.consumer_group == consumer_group,
            ProcessedEvent.processed_at < older_than,
        )
    )
    await session.commit()
    return result.rowcount or 0


async def add_dead_letter(
    session: AsyncSession,
    *,
    event_id: Optional[UUID],
    consumer_group: str,
    topic: str,
    partition: int,
    offset: int,
    last_error: str,
    attempts: int,
    payload: Optional[dict],
) -> DeadLetter:
    dead = DeadLetter(
        event_id=event_id,
        consumer_group=consumer_group,
        topic=topic,
        partition=partition,
        record_offset=offset,
        last_error=last_error,
        attempts=attempts,
        payload=payload,
    )
    session.add(dead)
    return dead


async def list_dead_letters(
    session: AsyncSession,
    consumer_group: str,
    include_resolved: bool = False,
) -> List[DeadLetter]:
    stmt = select(DeadLetter).where(DeadLetter.consumer_group == consumer_group)
    if not include_resolved:
        stmt = stmt.where(DeadLetter.resolved_at.is_(None))
    result = await session.execute(stmt.order_by(DeadLetter.id))
    return list(result.scalars().all())


async def get_dead_letter(
    session: AsyncSession,
    consumer_group: str,
    dead_letter_id: int,
) -> DeadLetter:
    dead = await session.get(DeadLetter, dead_letter_id, with_for_update=True)
    if dead is None or dead.consumer_group != consumer_group:
        raise DeadLetterNotFound(dead_letter_id)
    return dead
