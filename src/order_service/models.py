import enum

from sqlalchemy import Column, DateTime, Integer, String, Text, Uuid
from sqlalchemy.orm import declarative_base

from base_domains.models import JSONType, utcnow

Base = declarative_base()


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class Order(Base):
    __tablename__ = "orders"

    order_id = Column(String(100), primary_key=True)
    product = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False)
    customer_contact = Column(String(320), nullable=False)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)


class OrdersOutbox(Base):
    __tablename__ = "orders_outbox"

    # creation order; the publisher drains by ascending id
    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(Uuid, nullable=False, unique=True)
    order_id = Column(String(100), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    payload = Column(JSONType, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    published_at = Column(DateTime(timezone=True), nullable=True, index=True)
    partition = Column(Integer, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
