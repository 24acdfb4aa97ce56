import logging
from contextlib import nullcontext

import uvicorn
from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from base_domains.app import create_consumer_app
from base_domains.db import get_session
from stock_service import crud, schemas
from stock_service.config import StockSettings
from stock_service.models import Base
from stock_service.workers import StockHandler

logger = logging.getLogger(__name__)


def create_app(settings: StockSettings | None = None, broker=None) -> FastAPI:
    settings = settings or StockSettings()
    app = create_consumer_app(
        "Stock Service",
        settings,
        lambda: nullcontext(StockHandler()),
        Base.metadata,
        broker=broker,
    )

    @app.get("/stock/{product}", response_model=schemas.StockRead)
    async def get_stock(
        product: str,
        session: AsyncSession = Depends(get_session)
    ):
        stock = await crud.get_stock(product, session)
        if not stock:
            raise HTTPException(status_code=404, detail="Product not found")
        return stock

    @app.put("/stock/{product}", response_model=schemas.StockRead)
    async def put_stock(
        product: str,
        stock_in: schemas.StockUpdate,
        session: AsyncSession = Depends(get_session)
    ):
        return await crud.set_stock(product, stock_in.quantity, session)

    return app


def run():
    settings = StockSettings()
    logging.basicConfig(level=settings.LOG_LEVEL)
    uvicorn.run(create_app(settings), host=settings.HTTP_HOST, port=settings.HTTP_PORT)


if __name__ == "__main__":
    run()
