import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from base_domains.db import create_tables, get_session, make_engine, make_session_factory
from base_domains.errors import OrderValidationError, PersistenceError
from base_domains.messaging import broker_from_settings
from order_service import crud, schemas, workers
from order_service.config import OrderSettings
from order_service.models import Base

logger = logging.getLogger(__name__)


def create_app(settings: OrderSettings | None = None, broker=None) -> FastAPI:
    settings = settings or OrderSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = make_engine(settings)
        await create_tables(engine, Base.metadata)

        app.state.settings = settings
        app.state.session_factory = make_session_factory(engine)
        app.state.broker = broker or broker_from_settings(settings, "[Orders]")
        await app.state.broker.start()

        stopping = asyncio.Event()
        tasks = []
        if settings.RUN_WORKERS:
            tasks.append(asyncio.create_task(workers.outbox_publisher(
                settings, app.state.session_factory, app.state.broker, stopping
            )))
            tasks.append(asyncio.create_task(workers.outbox_housekeeping(
                settings, app.state.session_factory, stopping
            )))
        try:
            yield
        finally:
            stopping.set()
            await asyncio.gather(*tasks, return_exceptions=True)
            await app.state.broker.close()
            await engine.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_errors(exc)})

    @app.post("/orders", response_model=schemas.OrderCreated, status_code=201)
    async def create_order(
        order_in: schemas.OrderCreateRequest,
        session: AsyncSession = Depends(get_session)
    ):
        try:
            order = await crud.submit_order(order_in, session)
        except OrderValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except crud.OrderExistsError:
            raise HTTPException(status_code=409, detail="Order already exists with different contents")
        except PersistenceError:
            logger.exception("[Orders] Could not store order %s", order_in.order_id)
            raise HTTPException(status_code=503, detail="Order store unavailable")
        return schemas.OrderCreated(order_id=order.order_id)

    @app.get("/orders/{order_id}", response_model=schemas.OrderRead)
    async def get_order(
        order_id: str,
        session: AsyncSession = Depends(get_session)
    ):
        order = await crud.get_order(order_id, session)
        if not order:
            raise HTTPException(status_code=404, detail="Order not found")
        return order

    @app.get("/outbox/pending")
    async def pending_outbox(session: AsyncSession = Depends(get_session)):
        return {"pending": await crud.count_pending_outbox(session)}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": settings.SERVICE_NAME}

    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


def run():
    settings = OrderSettings()
    logging.basicConfig(level=settings.LOG_LEVEL)
    uvicorn.run(create_app(settings), host=settings.HTTP_HOST, port=settings.HTTP_PORT)


if __name__ == "__main__":
    run()
