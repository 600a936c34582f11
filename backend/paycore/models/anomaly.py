"""
Anomaly queue model.

Dead-letter store for events the webhook acknowledged but could not apply,
and for alerts (ledger underflow) that need an operator.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON

from paycore.models.base import Base, utcnow
from paycore.models.enums import AnomalyStatus


class Anomaly(Base):
    __tablename__ = "anomalies"

    id = Column(Integer, primary_key=True, index=True)
    processor_event_id = Column(String(255), nullable=True, index=True)
    error_type = Column(String(50), nullable=False, index=True)
    severity = Column(String(20), nullable=False)  # AnomalySeverity
    message = Column(Text, nullable=False)
    payload = Column(JSON, nullable=True)

    status = Column(String(20), nullable=False, default=AnomalyStatus.OPEN.value, index=True)
    retry_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Anomaly(id={self.id}, type='{self.error_type}', status='{self.status}')>"
