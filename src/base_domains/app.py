import logging
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI
from sqlalchemy import MetaData

from base_domains import api
from base_domains.config import ConsumerSettings
from base_domains.consumer import ConsumerGroup, EventHandler
from base_domains.db import create_tables, make_engine, make_session_factory
from base_domains.messaging import Broker, broker_from_settings
from base_domains.models import ConsumerBase

logger = logging.getLogger("relay.app")


def create_consumer_app(
    title: str,
    settings: ConsumerSettings,
    handler_scope: Callable[[], AbstractAsyncContextManager[EventHandler]],
    metadata: MetaData,
    broker: Optional[Broker] = None,
) -> FastAPI:
    """
    FastAPI app for one consumer group. The lifespan owns every process-scoped
    resource (engine, broker, handler, consumer workers) and releases them in
    reverse order on shutdown.
    """
    prefix = f"[{settings.CONSUMER_GROUP}]"

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = make_engine(settings)
        await create_tables(engine, ConsumerBase.metadata, metadata)

        app.state.settings = settings
        app.state.session_factory = make_session_factory(engine)
        app.state.broker = broker or broker_from_settings(settings, prefix)
        await app.state.broker.start()
        try:
            async with handler_scope() as handler:
                app.state.consumer_group = ConsumerGroup(
                    settings, app.state.broker, app.state.session_factory, handler
                )
                if settings.RUN_WORKERS:
                    app.state.consumer_group.start()
                    logger.info("%s Consuming %s", prefix, settings.TOPIC)
                try:
                    yield
                finally:
                    await app.state.consumer_group.stop()
        finally:
            await app.state.broker.close()
            await engine.dispose()

    app = FastAPI(title=title, lifespan=lifespan)
    app.include_router(api.router)
    return app
