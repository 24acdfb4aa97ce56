from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class DeadLetterRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_id: Optional[UUID]
    consumer_group: str
    topic: str
    partition: int
    record_offset: int
    last_error: str
    attempts: int
    payload: Optional[Any]
    created_at: datetime
    resolved_at: Optional[datetime]


class DeliveryRead(BaseModel):
    consumer_group: str
    event_id: UUID
    state: str
    attempts: int
    last_error: Optional[str]
    retry_in: Optional[float]
