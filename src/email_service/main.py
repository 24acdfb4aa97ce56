import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI
from sqlalchemy.ext.asyncio import AsyncSession

from base_domains.app import create_consumer_app
from base_domains.db import get_session
from email_service import crud, schemas
from email_service.config import EmailSettings
from email_service.mailer import MailGateway, mailgun_gateway
from email_service.models import Base
from email_service.workers import EmailHandler

logger = logging.getLogger(__name__)


def create_app(
    settings: EmailSettings | None = None,
    broker=None,
    gateway: Optional[MailGateway] = None,
) -> FastAPI:
    settings = settings or EmailSettings()

    @asynccontextmanager
    async def handler_scope():
        if gateway is not None:
            yield EmailHandler(gateway)
            return
        async with mailgun_gateway(settings) as mailgun:
            yield EmailHandler(mailgun)

    app = create_consumer_app(
        "Email Service",
        settings,
        handler_scope,
        Base.metadata,
        broker=broker,
    )

    @app.get("/emails", response_model=List[schemas.SentEmailRead])
    async def list_emails(
        order_id: Optional[str] = None,
        session: AsyncSession = Depends(get_session)
    ):
        return await crud.list_sent_emails(session, order_id)

    return app


def run():
    settings = EmailSettings()
    logging.basicConfig(level=settings.LOG_LEVEL)
    uvicorn.run(create_app(settings), host=settings.HTTP_HOST, port=settings.HTTP_PORT)


if __name__ == "__main__":
    run()
