"""
Idempotency guard for processor events.

The processor delivers at least once, so every event ID is claimed in the
same database transaction as its side effects. A duplicate delivery finds
the committed claim and gets the stored result back instead of running
again.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paycore.core.exceptions import DuplicateEvent
from paycore.models.enums import ProcessorEventStatus
from paycore.models.processor_event import ProcessorEvent
from paycore.schemas.events import NormalizedEvent

logger = logging.getLogger(__name__)

# A claim in either state means the event must not run again
SETTLED_STATUSES = (ProcessorEventStatus.APPLIED.value, ProcessorEventStatus.IGNORED.value)


def _payload(event: NormalizedEvent) -> Dict[str, Any]:
    return event.model_dump(mode="json")


def get_processor_event(db: Session, processor_event_id: str) -> Optional[ProcessorEvent]:
    return db.query(ProcessorEvent).filter(
        ProcessorEvent.processor_event_id == processor_event_id
    ).first()


def claim_event(db: Session, event: NormalizedEvent) -> ProcessorEvent:
    """
    Record processor_event_id as applied before any side effect commits.

    Must be the first write of the caller's unit of work: a concurrent
    claim of the same ID rolls the session back.

    Raises:
        DuplicateEvent: The event was already applied or ignored, or another
            worker holds the claim
    """
    existing = get_processor_event(db, event.processor_event_id)

    if existing is not None:
        if existing.status in SETTLED_STATUSES:
            raise DuplicateEvent(event.processor_event_id, existing.result)

        # Failed earlier: take it back over, unless another worker just did
        attempts = existing.attempts
        reclaimed = db.query(ProcessorEvent).filter(
            ProcessorEvent.id == existing.id,
            ProcessorEvent.status == ProcessorEventStatus.FAILED.value,
            ProcessorEvent.attempts == attempts
        ).update({
            ProcessorEvent.status: ProcessorEventStatus.APPLIED.value,
            ProcessorEvent.attempts: attempts + 1,
            ProcessorEvent.error_message: None,
            ProcessorEvent.updated_at: datetime.now(timezone.utc),
        }, synchronize_session=False)

        if reclaimed == 0:
            db.rollback()
            current = get_processor_event(db, event.processor_event_id)
            raise DuplicateEvent(event.processor_event_id, current.result if current else None)

        db.expire(existing)
        logger.info(f"Retrying previously failed event {event.processor_event_id} (attempt {attempts + 1})")
        return existing

    claim = ProcessorEvent(
        processor_event_id=event.processor_event_id,
        event_kind=event.kind.value,
        processor_transaction_id=event.processor_transaction_id,
        status=ProcessorEventStatus.APPLIED.value,
        payload=_payload(event),
        attempts=1
    )
    db.add(claim)
    try:
        db.flush()
    except IntegrityError:
        # Lost the insert race on the unique processor_event_id
        db.rollback()
        winner = get_processor_event(db, event.processor_event_id)
        logger.info(f"Concurrent delivery of event {event.processor_event_id} detected")
        raise DuplicateEvent(event.processor_event_id, winner.result if winner else None)

    return claim


def record_result(
    db: Session,
    claim: ProcessorEvent,
    result: Dict[str, Any],
    status: ProcessorEventStatus = ProcessorEventStatus.APPLIED
) -> ProcessorEvent:
    """Store the computed outcome in the same unit as the side effects"""
    claim.status = status.value
    claim.result = result
    claim.error_message = None
    claim.applied_at = datetime.now(timezone.utc)
    db.flush()
    return claim


def _upsert_settlement(
    db: Session,
    event: NormalizedEvent,
    status: ProcessorEventStatus,
    error_message: Optional[str],
    result: Optional[Dict[str, Any]]
) -> ProcessorEvent:
    record = get_processor_event(db, event.processor_event_id)
    if record is None:
        record = ProcessorEvent(
            processor_event_id=event.processor_event_id,
            event_kind=event.kind.value,
            processor_transaction_id=event.processor_transaction_id,
            payload=_payload(event),
            attempts=1
        )
        db.add(record)
    else:
        # The reclaim that bumped attempts was rolled back with everything else
        record.attempts = (record.attempts or 0) + 1

    record.status = status.value
    record.error_message = error_message
    record.result = result
    db.flush()
    return record


def record_failure(db: Session, event: NormalizedEvent, error: Exception) -> ProcessorEvent:
    """Store a failed attempt. Call after rolling back the failed unit."""
    message = getattr(error, "message", None) or str(error)
    return _upsert_settlement(
        db,
        event,
        ProcessorEventStatus.FAILED,
        f"{type(error).__name__}: {message}",
        {"status": "rejected", "error": type(error).__name__}
    )


def record_ignored(db: Session, event: NormalizedEvent, result: Dict[str, Any]) -> ProcessorEvent:
    """Settle an event that needed no state change after a rolled back unit"""
    return _upsert_settlement(db, event, ProcessorEventStatus.IGNORED, None, result)
