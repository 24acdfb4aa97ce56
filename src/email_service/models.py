from sqlalchemy import Column, DateTime, String, Uuid
from sqlalchemy.orm import declarative_base

from base_domains.models import utcnow

Base = declarative_base()


class SentEmail(Base):
    __tablename__ = "sent_emails"

    event_id = Column(Uuid, primary_key=True)
    order_id = Column(String(100), nullable=False, index=True)
    recipient = Column(String(320), nullable=False)
    provider_message_id = Column(String(300), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
