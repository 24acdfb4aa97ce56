"""
Shared event shape for the order topic.

Every service serializes and parses order events through ``OrderEvent`` so
the producer and both consumer groups agree on one wire format:
``{eventId, orderId, product, quantity, email}``.
"""
import zlib
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

ORDER_TOPIC = "order_topic"
ORDER_CREATED = "order_created"

STOCK_GROUP = "stock-service"
EMAIL_GROUP = "email-service"


class OrderEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    event_id: UUID = Field(..., alias="eventId")
    order_id: str = Field(..., alias="orderId", min_length=1)
    product: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    email: str = Field(..., min_length=1, description="Customer contact")

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode()

    @classmethod
    def from_bytes(cls, raw: bytes) -> "OrderEvent":
        return cls.model_validate_json(raw)


def partition_for(key: str, partitions: int) -> int:
    """Stable partition for a record key; all events of one order share it."""
    if partitions < 1:
        raise ValueError("partitions must be positive")
    return zlib.crc32(key.encode()) % partitions
