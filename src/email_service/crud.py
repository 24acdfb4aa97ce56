from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from email_service.models import SentEmail


async def record_sent_email(
    event_id: UUID,
    order_id: str,
    recipient: str,
    provider_message_id: Optional[str],
    session: AsyncSession
) -> SentEmail:
    sent = SentEmail(
        event_id=event_id,
        order_id=order_id,
        recipient=recipient,
        provider_message_id=provider_message_id,
    )
    session.add(sent)
    return sent


async def list_sent_emails(
    session: AsyncSession,
    order_id: Optional[str] = None
) -> List[SentEmail]:
    stmt = select(SentEmail)
    if order_id is not None:
        stmt = stmt.where(SentEmail.order_id == order_id)
    result = await session.execute(stmt.order_by(SentEmail.sent_at))
    return list(result.scalars().all())
