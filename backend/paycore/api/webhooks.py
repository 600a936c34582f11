"""Payment processor webhook endpoint"""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from paycore.core.exceptions import AuthenticationFailure, MalformedEvent
from paycore.core.metrics import webhook_auth_failures_counter, webhook_events_counter
from paycore.core.security import verify_webhook_origin
from paycore.db.session import get_db
from paycore.services.anomaly_service import record_error
from paycore.services.event_router import ingest_event
from paycore.services.normalizer import normalize_event, parse_payload
from paycore.services.notification_service import emit_notifications

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)
webhook_logger = logging.getLogger("webhook")

# Stored with a malformed-body anomaly so an operator can see what arrived
MALFORMED_BODY_PREVIEW = 4096


def _queue_malformed(db: Session, error: MalformedEvent, payload: bytes) -> None:
    try:
        record_error(db, error, payload={
            "body": payload[:MALFORMED_BODY_PREVIEW].decode("utf-8", errors="replace"),
            "details": error.details,
        })
        db.commit()
    except Exception as record_exc:
        db.rollback()
        logger.error(f"Failed to record malformed webhook: {record_exc}", exc_info=True)


@router.post("/processor")
async def processor_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db)
):
    """Handle payment processor notifications

    Authentication is checked against the raw bytes before anything parses
    them. After that the processor always gets a 200: failures are recorded
    in the anomaly queue, and duplicates are safe because every event ID is
    claimed before its side effects commit.
    """
    payload = await request.body()

    try:
        verify_webhook_origin(request.headers, payload)
    except AuthenticationFailure as e:
        webhook_auth_failures_counter.labels(reason=e.message).inc()
        raise HTTPException(401, e.message)

    try:
        event = normalize_event(parse_payload(payload, request.headers.get("content-type")))
    except MalformedEvent as e:
        webhook_logger.error(f"Malformed webhook payload dropped: {e.message}")
        webhook_events_counter.labels(kind="malformed", outcome="malformed").inc()
        await run_in_threadpool(_queue_malformed, db, e, payload)
        return {"status": "malformed"}

    try:
        # Database work stays off the event loop
        outcome = await run_in_threadpool(ingest_event, db, event)
    except Exception as e:
        # Even the failure record could not be written; the processor will retry
        logger.error(f"Unexpected error processing webhook {event.processor_event_id}: {e}", exc_info=True)
        return {"status": "error", "processor_event_id": event.processor_event_id}

    if outcome.notifications:
        background_tasks.add_task(emit_notifications, outcome.notifications)

    return {"status": outcome.status.value, "processor_event_id": outcome.processor_event_id}
