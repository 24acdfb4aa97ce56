from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime


class StockUpdate(BaseModel):
    quantity: int = Field(..., ge=0, description="Units on hand (non-negative)")


class StockRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product: str
    quantity: int
    updated_at: Optional[datetime]
