"""
Outbound mail through the Mailgun HTTP API.

Failures are split the way the consumer loop needs them: transport errors,
throttling and server errors are worth retrying; any other rejection (for
example an address Mailgun refuses) will fail the same way every time.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol

import httpx

from base_domains.errors import HandlerPermanentError, HandlerTransientError
from base_domains.events import OrderEvent
from email_service.config import EmailSettings

logger = logging.getLogger("email.mailer")


class MailDeliveryError(Exception):
    pass


class TransientMailError(MailDeliveryError, HandlerTransientError):
    pass


class PermanentMailError(MailDeliveryError, HandlerPermanentError):
    pass


@dataclass(frozen=True)
class OutgoingMail:
    to: str
    subject: str
    text: str
    idempotency_key: str


class MailGateway(Protocol):
    async def send(self, mail: OutgoingMail) -> Optional[str]: ...


def order_confirmation(event: OrderEvent) -> OutgoingMail:
    return OutgoingMail(
        to=event.email,
        subject=f"Order {event.order_id} confirmed",
        text=(
            f"Thank you for your order!\n\n"
            f"Order: {event.order_id}\n"
            f"Product: {event.product}\n"
            f"Quantity: {event.quantity}\n"
        ),
        idempotency_key=str(event.event_id),
    )


class MailgunGateway:
    def __init__(self, client: httpx.AsyncClient, domain: str, api_key: str, sender: str):
        self._client = client
        self.domain = domain
        self.api_key = api_key
        self.sender = sender

    async def send(self, mail: OutgoingMail) -> Optional[str]:
        try:
            resp = await self._client.post(
                f"/v3/{self.domain}/messages",
                auth=("api", self.api_key),
                data={
                    "from": self.sender,
                    "to": mail.to,
                    "subject": mail.subject,
                    "text": mail.text,
                    "h:X-Idempotency-Key": mail.idempotency_key,
                },
            )
        except httpx.TransportError as e:
            raise TransientMailError(f"mail transport error: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientMailError(f"mail provider returned {resp.status_code}")
        if resp.status_code >= 400:
            raise PermanentMailError(
                f"mail provider rejected message to {mail.to}: {resp.status_code} {resp.text}"
            )

        try:
            message_id = resp.json().get("id")
        except ValueError:
            message_id = None
        logger.info("[Email] Sent %r to %s (%s)", mail.subject, mail.to, message_id)
        return message_id


@asynccontextmanager
async def mailgun_gateway(settings: EmailSettings) -> AsyncIterator[MailgunGateway]:
    async with httpx.AsyncClient(
        base_url=settings.MAILGUN_BASE_URL,
        timeout=settings.MAIL_TIMEOUT,
    ) as client:
        yield MailgunGateway(
            client,
            settings.MAILGUN_DOMAIN,
            settings.MAILGUN_API_KEY,
            settings.MAIL_FROM,
        )
