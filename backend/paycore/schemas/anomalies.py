"""Pydantic schemas for the anomaly queue"""
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class AnomalyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    processor_event_id: Optional[str] = None
    error_type: str
    severity: str
    message: str
    payload: Optional[Dict[str, Any]] = None
    status: str
    retry_count: int
    created_at: datetime
    last_retry_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


class ReplayResponse(BaseModel):
    attempted: int
    resolved: int
    still_failing: int
    archived: int
