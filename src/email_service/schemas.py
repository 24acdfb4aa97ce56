from pydantic import BaseModel, ConfigDict
from typing import Optional
from uuid import UUID
from datetime import datetime


class SentEmailRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: UUID
    order_id: str
    recipient: str
    provider_message_id: Optional[str]
    sent_at: datetime
