"""Operator endpoints for the anomaly queue"""
import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from paycore.core.security import require_internal_token
from paycore.db.session import get_db
from paycore.models.enums import AnomalyStatus
from paycore.schemas.anomalies import AnomalyResponse, ReplayResponse
from paycore.services import anomaly_service
from paycore.services.notification_service import emit_notifications

router = APIRouter(
    prefix="/api/anomalies",
    tags=["anomalies"],
    dependencies=[Depends(require_internal_token)]
)
logger = logging.getLogger(__name__)


@router.get("", response_model=List[AnomalyResponse])
def list_anomalies(
    status: Optional[AnomalyStatus] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db)
):
    return anomaly_service.list_anomalies(db, status=status.value if status else None, limit=limit)


@router.post("/replay", response_model=ReplayResponse)
def replay_anomalies(
    background_tasks: BackgroundTasks,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    db: Session = Depends(get_db)
):
    """Run one replay pass now instead of waiting for the background task"""
    report = anomaly_service.replay_failed_events(db, limit=limit)
    if report.notifications:
        background_tasks.add_task(emit_notifications, report.notifications)
    return report.as_dict()


@router.post("/{anomaly_id}/resolve", response_model=AnomalyResponse)
def resolve_anomaly(anomaly_id: int, db: Session = Depends(get_db)):
    return anomaly_service.resolve_anomaly(db, anomaly_id)
