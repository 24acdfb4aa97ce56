from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from base_domains import crud, schemas
from base_domains.db import get_session
from base_domains.errors import HandlerPermanentError, HandlerTransientError

router = APIRouter()


@router.get("/dead-letters", response_model=List[schemas.DeadLetterRead])
async def list_dead_letters(
    request: Request,
    include_resolved: bool = False,
    session: AsyncSession = Depends(get_session)
):
    group = request.app.state.consumer_group.group
    return await crud.list_dead_letters(session, group, include_resolved)


@router.post("/dead-letters/{dead_letter_id}/replay", response_model=schemas.DeadLetterRead)
async def replay_dead_letter(dead_letter_id: int, request: Request):
    consumer_group = request.app.state.consumer_group
    try:
        return await consumer_group.replay(dead_letter_id)
    except crud.DeadLetterNotFound:
        raise HTTPException(status_code=404, detail="Dead letter not found")
    except (HandlerTransientError, HandlerPermanentError) as e:
        raise HTTPException(status_code=409, detail=f"Replay failed: {e}")


@router.get("/deliveries", response_model=List[schemas.DeliveryRead])
async def list_deliveries(request: Request):
    coordinator = request.app.state.consumer_group.coordinator
    return [tracker.as_dict() for tracker in coordinator.inflight()]


@router.get("/health")
async def health(request: Request):
    return {"status": "ok", "service": request.app.state.settings.SERVICE_NAME}
