"""
Event router - dispatches normalized processor events.

ingest_event runs one event to a definite outcome: claim the event ID,
route it to the transaction and/or subscription state machines, store the
result and commit as one unit. Failures roll the unit back and are stored
as a failed claim plus an anomaly, never silently dropped.
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from paycore.core.exceptions import AlreadyApplied, DuplicateEvent, PaymentCoreError
from paycore.core.metrics import webhook_events_counter
from paycore.core.otel import tracer
from paycore.models.enums import ProcessorEventStatus, SubscriptionStatus
from paycore.models.transaction import Transaction
from paycore.schemas.events import EventKind, NormalizedEvent
from paycore.services import notification_service as notify
from paycore.services import subscription_service, transaction_service
from paycore.services.anomaly_service import record_error
from paycore.services.idempotency import claim_event, record_failure, record_ignored, record_result
from paycore.services.notification_service import Notification

logger = logging.getLogger(__name__)
webhook_logger = logging.getLogger("webhook")


class IngestStatus(str, enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    REJECTED = "rejected"


@dataclass
class RoutedEvent:
    result: Dict[str, Any]
    status: ProcessorEventStatus = ProcessorEventStatus.APPLIED
    notifications: List[Notification] = field(default_factory=list)


@dataclass
class IngestOutcome:
    status: IngestStatus
    processor_event_id: str
    kind: EventKind
    result: Dict[str, Any] = field(default_factory=dict)
    notifications: List[Notification] = field(default_factory=list)
    error: Optional[str] = None
    anomaly_id: Optional[int] = None


def _transaction_data(txn: Transaction) -> Dict[str, Any]:
    return {
        "transaction_id": txn.id,
        "kind": txn.kind,
        "status": txn.status,
        "amount": str(txn.amount),
        "currency": txn.currency,
        "target_id": txn.target_id,
    }


def _earnings_data(txn: Transaction) -> Dict[str, Any]:
    data = _transaction_data(txn)
    data["creator_earnings"] = str(txn.creator_earnings)
    if txn.reversal_amount is not None:
        data["reversal_amount"] = str(txn.reversal_amount)
    return data


# Handlers: one per EventKind

def _handle_sale_success(db: Session, event: NormalizedEvent) -> RoutedEvent:
    transition = transaction_service.apply_event(db, EventKind.NEW_SALE_SUCCESS, event)
    txn = transition.transaction
    routed = RoutedEvent(transition.as_dict(), notifications=[
        Notification(txn.payer_id, notify.PAYMENT_SUCCESS, _transaction_data(txn)),
        Notification(txn.creator_id, notify.EARNINGS_CREDITED, _earnings_data(txn)),
    ])

    change = subscription_service.record_initial_charge(db, transition, event)
    if change is not None:
        routed.result["subscription"] = change.as_dict()
        if change.previous_status == SubscriptionStatus.PENDING.value \
                and change.subscription.status == SubscriptionStatus.ACTIVE.value:
            routed.notifications.append(Notification(
                txn.payer_id, notify.SUBSCRIPTION_ACTIVATED, {"subscription_id": change.subscription.id}
            ))
    return routed


def _handle_sale_failure(db: Session, event: NormalizedEvent) -> RoutedEvent:
    transition = transaction_service.apply_event(db, EventKind.NEW_SALE_FAILURE, event)
    txn = transition.transaction
    data = _transaction_data(txn)
    data["reason"] = txn.failure_reason
    return RoutedEvent(transition.as_dict(), notifications=[
        Notification(txn.payer_id, notify.PAYMENT_FAILED, data),
    ])


def _handle_renewal_success(db: Session, event: NormalizedEvent) -> RoutedEvent:
    change = subscription_service.record_renewal_success(db, event)
    txn = change.transition.transaction
    sub = change.subscription
    return RoutedEvent(change.as_dict(), notifications=[
        Notification(sub.payer_id, notify.SUBSCRIPTION_RENEWED, {
            "subscription_id": sub.id,
            "amount": str(txn.amount),
            "next_billing_date": sub.next_billing_date.isoformat(),
        }),
        Notification(sub.creator_id, notify.EARNINGS_CREDITED, _earnings_data(txn)),
    ])


def _handle_renewal_failure(db: Session, event: NormalizedEvent) -> RoutedEvent:
    change = subscription_service.record_renewal_failure(db, event)
    sub = change.subscription
    data = {"subscription_id": sub.id, "failed_payment_count": sub.failed_payment_count, "reason": event.reason}
    routed = RoutedEvent(change.as_dict(), notifications=[
        Notification(sub.payer_id, notify.SUBSCRIPTION_PAYMENT_FAILED, data),
    ])
    if change.previous_status != sub.status and sub.status == SubscriptionStatus.SUSPENDED.value:
        routed.notifications.append(Notification(sub.payer_id, notify.SUBSCRIPTION_SUSPENDED, data))
        routed.notifications.append(Notification(sub.creator_id, notify.SUBSCRIPTION_SUSPENDED, data))
    return routed


def _handle_cancellation(db: Session, event: NormalizedEvent) -> RoutedEvent:
    change = subscription_service.cancel_subscription(db, event)
    sub = change.subscription
    data = {"subscription_id": sub.id, "reason": sub.cancellation_reason}
    return RoutedEvent(change.as_dict(), notifications=[
        Notification(sub.payer_id, notify.SUBSCRIPTION_CANCELLED, data),
        Notification(sub.creator_id, notify.SUBSCRIPTION_CANCELLED, data),
    ])


def _handle_expiration(db: Session, event: NormalizedEvent) -> RoutedEvent:
    change = subscription_service.expire_subscription(db, event)
    sub = change.subscription
    return RoutedEvent(change.as_dict(), notifications=[
        Notification(sub.payer_id, notify.SUBSCRIPTION_EXPIRED, {"subscription_id": sub.id}),
    ])


def _handle_refund(db: Session, event: NormalizedEvent) -> RoutedEvent:
    transition = transaction_service.apply_event(db, EventKind.REFUND, event)
    txn = transition.transaction
    return RoutedEvent(transition.as_dict(), notifications=[
        Notification(txn.payer_id, notify.REFUND_PROCESSED, _transaction_data(txn)),
        Notification(txn.creator_id, notify.REFUND_PROCESSED, _earnings_data(txn)),
    ])


def _handle_chargeback(db: Session, event: NormalizedEvent) -> RoutedEvent:
    transition = transaction_service.apply_event(db, EventKind.CHARGEBACK, event)
    txn = transition.transaction
    data = _earnings_data(txn)
    data["penalty_fee"] = str(txn.penalty_fee)
    return RoutedEvent(transition.as_dict(), notifications=[
        Notification(txn.creator_id, notify.CHARGEBACK_RECEIVED, data),
    ])


def _handle_void(db: Session, event: NormalizedEvent) -> RoutedEvent:
    transition = transaction_service.apply_event(db, EventKind.VOID, event)
    txn = transition.transaction
    return RoutedEvent(transition.as_dict(), notifications=[
        Notification(txn.payer_id, notify.TRANSACTION_VOIDED, _transaction_data(txn)),
        Notification(txn.creator_id, notify.TRANSACTION_VOIDED, _earnings_data(txn)),
    ])


def _handle_unrecognized(db: Session, event: NormalizedEvent) -> RoutedEvent:
    webhook_logger.warning(f"Unrecognized processor event type {event.raw_kind!r} ({event.processor_event_id}), acknowledged")
    return RoutedEvent(
        {"status": "ignored", "reason": "unrecognized event type", "raw_kind": event.raw_kind},
        status=ProcessorEventStatus.IGNORED
    )


EVENT_HANDLERS: Dict[EventKind, Callable[[Session, NormalizedEvent], RoutedEvent]] = {
    EventKind.NEW_SALE_SUCCESS: _handle_sale_success,
    EventKind.NEW_SALE_FAILURE: _handle_sale_failure,
    EventKind.RENEWAL_SUCCESS: _handle_renewal_success,
    EventKind.RENEWAL_FAILURE: _handle_renewal_failure,
    EventKind.CANCELLATION: _handle_cancellation,
    EventKind.EXPIRATION: _handle_expiration,
    EventKind.REFUND: _handle_refund,
    EventKind.CHARGEBACK: _handle_chargeback,
    EventKind.VOID: _handle_void,
    EventKind.UNRECOGNIZED: _handle_unrecognized,
}

_unhandled = set(EventKind) - set(EVENT_HANDLERS)
if _unhandled:
    raise RuntimeError(f"No handler for event kinds: {sorted(k.value for k in _unhandled)}")


def route_event(db: Session, event: NormalizedEvent) -> RoutedEvent:
    return EVENT_HANDLERS[event.kind](db, event)


def _reject(db: Session, event: NormalizedEvent, error: Exception, record_anomalies: bool) -> IngestOutcome:
    message = getattr(error, "message", None) or str(error) or type(error).__name__
    record_failure(db, event, error)
    anomaly = None
    if record_anomalies:
        anomaly = record_error(db, error, processor_event_id=event.processor_event_id,
                               payload=event.model_dump(mode="json"))
    else:
        webhook_logger.warning(f"Replay of {event.processor_event_id} still failing: {message}")
    db.commit()

    return IngestOutcome(
        IngestStatus.REJECTED,
        event.processor_event_id,
        event.kind,
        result={"status": IngestStatus.REJECTED.value, "error": type(error).__name__},
        error=message,
        anomaly_id=anomaly.id if anomaly else None
    )


def _ingest(db: Session, event: NormalizedEvent, record_anomalies: bool) -> IngestOutcome:
    try:
        claim = claim_event(db, event)
        routed = route_event(db, event)
        record_result(db, claim, routed.result, routed.status)
        db.commit()
    except DuplicateEvent as e:
        db.rollback()
        webhook_logger.info(f"Duplicate delivery of {event.processor_event_id}, returning stored result")
        return IngestOutcome(IngestStatus.DUPLICATE, event.processor_event_id, event.kind, result=e.previous_result)
    except AlreadyApplied as e:
        # A different event ID asked for a state the record already has
        db.rollback()
        result = dict(e.details, status="already_applied")
        record_ignored(db, event, result)
        db.commit()
        webhook_logger.info(f"Event {event.processor_event_id}: {e.message}")
        return IngestOutcome(IngestStatus.DUPLICATE, event.processor_event_id, event.kind, result=result)
    except PaymentCoreError as e:
        db.rollback()
        return _reject(db, event, e, record_anomalies)
    except Exception as e:
        db.rollback()
        logger.error(f"Unexpected error applying event {event.processor_event_id}: {e}", exc_info=True)
        return _reject(db, event, e, record_anomalies)

    status = IngestStatus.IGNORED if routed.status == ProcessorEventStatus.IGNORED else IngestStatus.APPLIED
    webhook_logger.info(f"Event {event.processor_event_id} ({event.kind.value}) {status.value}")
    return IngestOutcome(status, event.processor_event_id, event.kind, routed.result, routed.notifications)


def ingest_event(db: Session, event: NormalizedEvent, record_anomalies: bool = True) -> IngestOutcome:
    """
    Apply one normalized event and commit.

    Notifications in the outcome are for the caller to emit after this
    returns; nothing here waits on Redis.
    """
    with tracer.start_as_current_span("paycore.ingest_event") as span:
        span.set_attribute("paycore.event_kind", event.kind.value)
        span.set_attribute("paycore.processor_event_id", event.processor_event_id)
        outcome = _ingest(db, event, record_anomalies)
        span.set_attribute("paycore.outcome", outcome.status.value)

    webhook_events_counter.labels(kind=event.kind.value, outcome=outcome.status.value).inc()
    return outcome
