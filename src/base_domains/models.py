from datetime import datetime, timezone

from sqlalchemy import JSON, BigInteger, Column, DateTime, Integer, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

# Tables every consumer group keeps in its own private store.
ConsumerBase = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConsumerOffset(ConsumerBase):
    __tablename__ = "consumer_offsets"

    consumer_group = Column(String(100), primary_key=True)
    topic = Column(String(200), primary_key=True)
    partition = Column(Integer, primary_key=True)
    last_committed_offset = Column(BigInteger, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ProcessedEvent(ConsumerBase):
    __tablename__ = "processed_events"

    consumer_group = Column(String(100), primary_key=True)
    event_id = Column(Uuid, primary_key=True)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class DeadLetter(ConsumerBase):
    __tablename__ = "dead_letters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(Uuid, nullable=True, index=True)
    consumer_group = Column(String(100), nullable=False)
    topic = Column(String(200), nullable=False)
    partition = Column(Integer, nullable=False)
    record_offset = Column(BigInteger, nullable=False)
    last_error = Column(Text, nullable=False)
    attempts = Column(Integer, nullable=False)
    payload = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
