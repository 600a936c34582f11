"""ProcessorEvent model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime

from paycore.models.base import Base, utcnow
from paycore.models.enums import ProcessorEventStatus


class ProcessorEvent(Base):
    """Processor webhook event log for idempotency"""
    __tablename__ = "processor_events"

    id = Column(Integer, primary_key=True, index=True)
    processor_event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_kind = Column(String(50), nullable=False, index=True)
    processor_transaction_id = Column(String(255), nullable=True, index=True)
    status = Column(String(20), nullable=False, default=ProcessorEventStatus.APPLIED.value, index=True)
    result = Column(JSON, nullable=True)  # Outcome returned to duplicate deliveries
    payload = Column(JSON, nullable=False)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
    applied_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<ProcessorEvent(id={self.processor_event_id}, kind={self.event_kind}, status={self.status})>"
