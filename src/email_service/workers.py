import logging

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.ext.asyncio import AsyncSession

from base_domains.delivery import Ack, HandlerResult, Nack
from base_domains.events import OrderEvent
from email_service import crud
from email_service.mailer import MailGateway, order_confirmation

logger = logging.getLogger("email.workers")


class EmailHandler:
    """
    Sends one confirmation per order event. The mail goes out before the
    consumer commits, so a crash in between can repeat it; the provider gets
    the event id as idempotency key for that case.
    """

    def __init__(self, gateway: MailGateway):
        self.gateway = gateway

    async def on_event(self, session: AsyncSession, event: OrderEvent) -> HandlerResult:
        try:
            validate_email(event.email, check_deliverability=False)
        except EmailNotValidError as e:
            logger.error("[Email] Order %s has an invalid address %r: %s", event.order_id, event.email, e)
            return Nack(retryable=False, reason=f"invalid address {event.email!r}: {e}")

        # transient/permanent mail errors propagate to the consumer loop
        message_id = await self.gateway.send(order_confirmation(event))
        await crud.record_sent_email(event.event_id, event.order_id, event.email, message_id, session)
        return Ack()
