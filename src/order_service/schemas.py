from pydantic import BaseModel, ConfigDict, EmailStr, Field
from typing import Optional
from datetime import datetime


class OrderCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    order_id: str = Field(..., alias="orderId", min_length=1, max_length=100)
    product: str = Field(..., min_length=1, max_length=200, description="Product name")
    quantity: int = Field(..., gt=0, description="Units ordered (positive integer)")
    email: EmailStr = Field(..., description="Customer contact for the confirmation")


class OrderCreated(BaseModel):
    order_id: str = Field(..., serialization_alias="orderId")


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    product: str
    quantity: int
    customer_contact: str
    status: str
    created_at: datetime
    updated_at: Optional[datetime]

