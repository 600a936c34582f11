"""
Anomaly queue.

Events the webhook acknowledged but could not apply land here together with
ledger alerts. Retryable anomalies (a predecessor event that had not arrived
yet) are replayed by the drain task; the rest wait for an operator.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from paycore.core.config import settings
from paycore.core.exceptions import (
    AlreadyApplied, InvalidTransition, LedgerUnderflow, MalformedEvent, NotFound, SubscriptionConflict
)
from paycore.core.metrics import anomalies_counter, anomaly_replays_counter
from paycore.models.anomaly import Anomaly
from paycore.models.enums import AnomalySeverity, AnomalyStatus
from paycore.services.notification_service import Notification

logger = logging.getLogger(__name__)
anomaly_logger = logging.getLogger("anomaly")

# Error types the replay task re-runs: both mean a predecessor may still arrive
RETRYABLE_ERROR_TYPES = ("InvalidTransition", "NotFound")
PROCESSING_ERROR = "ProcessingError"


def error_type_for(error: Exception) -> str:
    """Stable queue label for an exception (subclasses collapse to their family)"""
    for family in (InvalidTransition, NotFound, LedgerUnderflow, MalformedEvent, AlreadyApplied,
                   SubscriptionConflict):
        if isinstance(error, family):
            return family.__name__
    return PROCESSING_ERROR


def severity_for(error_type: str) -> AnomalySeverity:
    if error_type in (LedgerUnderflow.__name__, MalformedEvent.__name__):
        return AnomalySeverity.WARNING
    return AnomalySeverity.CRITICAL


def record_anomaly(
    db: Session,
    error_type: str,
    message: str,
    severity: AnomalySeverity = AnomalySeverity.CRITICAL,
    processor_event_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None
) -> Anomaly:
    """Queue an anomaly in the caller's unit of work"""
    anomaly = Anomaly(
        processor_event_id=processor_event_id,
        error_type=error_type,
        severity=severity.value,
        message=message,
        payload=payload,
        status=AnomalyStatus.OPEN.value,
        retry_count=0
    )
    db.add(anomaly)
    db.flush()

    anomalies_counter.labels(error_type=error_type).inc()
    log = anomaly_logger.critical if severity == AnomalySeverity.CRITICAL else anomaly_logger.warning
    log(f"[{error_type}] {message} (event={processor_event_id}, anomaly={anomaly.id})")
    return anomaly


def record_error(
    db: Session,
    error: Exception,
    processor_event_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None
) -> Anomaly:
    error_type = error_type_for(error)
    message = getattr(error, "message", None) or str(error) or type(error).__name__
    return record_anomaly(
        db,
        error_type,
        message,
        severity=severity_for(error_type),
        processor_event_id=processor_event_id,
        payload=payload
    )


def list_anomalies(db: Session, status: Optional[str] = None, limit: int = 100) -> List[Anomaly]:
    query = db.query(Anomaly)
    if status:
        query = query.filter(Anomaly.status == status)
    return query.order_by(Anomaly.id.desc()).limit(limit).all()


def get_anomaly(db: Session, anomaly_id: int) -> Optional[Anomaly]:
    return db.query(Anomaly).filter(Anomaly.id == anomaly_id).first()


def resolve_anomaly(db: Session, anomaly_id: int) -> Anomaly:
    """Operator acknowledgement. Resolving twice is a no-op."""
    anomaly = get_anomaly(db, anomaly_id)
    if not anomaly:
        raise NotFound("Anomaly", anomaly_id)
    if anomaly.status != AnomalyStatus.RESOLVED.value:
        anomaly.status = AnomalyStatus.RESOLVED.value
        anomaly.resolved_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(anomaly)
        logger.info(f"Anomaly {anomaly_id} resolved by operator")
    return anomaly


@dataclass
class ReplayReport:
    attempted: int = 0
    resolved: int = 0
    still_failing: int = 0
    archived: int = 0
    anomaly_ids: List[int] = field(default_factory=list)
    # Emitted by the caller once the pass is over
    notifications: List[Notification] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "resolved": self.resolved,
            "still_failing": self.still_failing,
            "archived": self.archived,
        }


def replay_failed_events(db: Session, limit: Optional[int] = None) -> ReplayReport:
    """
    Re-run queued events that failed with a retryable error.

    Oldest first, so a sale queued before its refund is applied first.
    Each anomaly is settled in its own database transaction. Notifications
    from events that now apply are collected on the report, not sent.
    """
    from paycore.schemas.events import NormalizedEvent
    from paycore.services.event_router import IngestStatus, ingest_event

    limit = limit or settings.ANOMALY_REPLAY_BATCH_SIZE
    report = ReplayReport()

    candidates = db.query(Anomaly.id).filter(
        Anomaly.status.in_([AnomalyStatus.OPEN.value, AnomalyStatus.RETRYING.value]),
        Anomaly.error_type.in_(RETRYABLE_ERROR_TYPES),
        Anomaly.payload.isnot(None)
    ).order_by(Anomaly.id).limit(limit).all()

    for (anomaly_id,) in candidates:
        anomaly = get_anomaly(db, anomaly_id)
        if anomaly is None or anomaly.status not in (AnomalyStatus.OPEN.value, AnomalyStatus.RETRYING.value):
            continue

        report.attempted += 1
        report.anomaly_ids.append(anomaly_id)
        anomaly.status = AnomalyStatus.RETRYING.value
        anomaly.retry_count += 1
        anomaly.last_retry_at = datetime.now(timezone.utc)
        db.commit()

        event = NormalizedEvent.model_validate(anomaly.payload)
        outcome = ingest_event(db, event, record_anomalies=False)

        anomaly = get_anomaly(db, anomaly_id)
        if outcome.status == IngestStatus.REJECTED:
            anomaly.message = outcome.error or anomaly.message
            if anomaly.retry_count >= settings.ANOMALY_MAX_RETRIES:
                anomaly.status = AnomalyStatus.ARCHIVED.value
                report.archived += 1
                anomaly_logger.critical(
                    f"Anomaly {anomaly_id} archived after {anomaly.retry_count} retries: {anomaly.message}"
                )
                anomaly_replays_counter.labels(status="archived").inc()
            else:
                anomaly.status = AnomalyStatus.OPEN.value
                report.still_failing += 1
                anomaly_replays_counter.labels(status="failed").inc()
        else:
            anomaly.status = AnomalyStatus.RESOLVED.value
            anomaly.resolved_at = datetime.now(timezone.utc)
            report.resolved += 1
            report.notifications.extend(outcome.notifications)
            logger.info(f"Anomaly {anomaly_id} resolved by replay ({outcome.status.value})")
            anomaly_replays_counter.labels(status="resolved").inc()
        db.commit()

    if report.attempted:
        logger.info(f"Anomaly replay: {report.as_dict()}")
    return report
