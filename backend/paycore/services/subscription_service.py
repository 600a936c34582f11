"""Subscription billing tracker - recurring agreements between payers and creators"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paycore.core.config import settings
from paycore.core.exceptions import (
    AlreadyApplied, InvalidTransition, SubscriptionConflict, SubscriptionNotFound
)
from paycore.models.enums import (
    CYCLE_LENGTH_DAYS, BillingCycle, BillingOutcome, LedgerReason, SubscriptionStatus,
    TransactionKind, TransactionStatus
)
from paycore.models.subscription import BillingRecord, Subscription
from paycore.models.transaction import Transaction
from paycore.schemas.events import EventKind, NormalizedEvent
from paycore.services import transaction_service

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value)


@dataclass
class SubscriptionChange:
    subscription: Subscription
    previous_status: str
    billing_record: Optional[BillingRecord] = None
    transition: Optional[transaction_service.TransitionResult] = None
    notes: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        sub = self.subscription
        result = {
            "subscription_id": sub.id,
            "processor_subscription_id": sub.processor_subscription_id,
            "previous_status": self.previous_status,
            "status": sub.status,
            "failed_payment_count": sub.failed_payment_count,
        }
        if self.transition is not None:
            result["transaction"] = self.transition.as_dict()
        if self.notes:
            result["notes"] = self.notes
        return result


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_subscription(db: Session, subscription_id: int) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.id == subscription_id).first()


def get_by_processor_id(db: Session, processor_subscription_id: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(
        Subscription.processor_subscription_id == processor_subscription_id
    ).first()


def get_active_subscription(
    db: Session,
    payer_id: str,
    creator_id: str,
    exclude_id: Optional[int] = None
) -> Optional[Subscription]:
    query = db.query(Subscription).filter(
        Subscription.payer_id == payer_id,
        Subscription.creator_id == creator_id,
        Subscription.status == SubscriptionStatus.ACTIVE.value
    )
    if exclude_id is not None:
        query = query.filter(Subscription.id != exclude_id)
    return query.first()


def _require_subscription(db: Session, event: NormalizedEvent) -> Subscription:
    if not event.processor_subscription_id:
        raise SubscriptionNotFound()
    subscription = get_by_processor_id(db, event.processor_subscription_id)
    if subscription is None:
        raise SubscriptionNotFound(event.processor_subscription_id)
    return subscription


def _cas_status(
    db: Session,
    subscription: Subscription,
    expected: Union[str, tuple],
    values: Dict[str, Any],
    requested: str
) -> None:
    """Conditional update on the expected status; refreshes the instance"""
    expected_statuses = (expected,) if isinstance(expected, str) else expected
    values = dict(values, updated_at=_now())
    updated = db.query(Subscription).filter(
        Subscription.id == subscription.id,
        Subscription.status.in_(expected_statuses)
    ).update(
        {getattr(Subscription, name): value for name, value in values.items()},
        synchronize_session=False
    )
    db.refresh(subscription)
    if updated == 0:
        if subscription.status == requested:
            raise AlreadyApplied("Subscription", subscription.id, requested)
        raise InvalidTransition("Subscription", subscription.id, subscription.status, requested)


def create_subscription(
    db: Session,
    payer_id: str,
    creator_id: str,
    tier: str,
    amount: Union[Decimal, str],
    processor_subscription_id: str,
    billing_cycle: Union[BillingCycle, str] = BillingCycle.MONTHLY,
    cycle_length_days: Optional[int] = None,
    currency: Optional[str] = None
) -> Subscription:
    """
    Record a signup in pending status.

    Raises:
        SubscriptionConflict: Payer already has an active subscription to the
            creator, or the processor subscription ID is already known
        ValueError: Non-positive amount or cycle length
    """
    amount = Decimal(str(amount)).quantize(Decimal("0.01"))
    if amount <= 0:
        raise ValueError("Subscription amount must be positive")
    billing_cycle = BillingCycle(billing_cycle)
    cycle_length_days = cycle_length_days or CYCLE_LENGTH_DAYS[billing_cycle]
    if cycle_length_days <= 0:
        raise ValueError("Billing cycle length must be positive")

    if get_active_subscription(db, payer_id, creator_id):
        raise SubscriptionConflict(
            f"Payer {payer_id} already has an active subscription to creator {creator_id}",
            details={"payer_id": payer_id, "creator_id": creator_id}
        )
    if get_by_processor_id(db, processor_subscription_id):
        raise SubscriptionConflict(
            f"Processor subscription {processor_subscription_id} already exists",
            details={"processor_subscription_id": processor_subscription_id}
        )

    subscription = Subscription(
        payer_id=payer_id,
        creator_id=creator_id,
        tier=tier,
        amount=amount,
        currency=(currency or settings.DEFAULT_CURRENCY).upper(),
        billing_cycle=billing_cycle.value,
        cycle_length_days=cycle_length_days,
        processor_subscription_id=processor_subscription_id,
        status=SubscriptionStatus.PENDING.value,
        next_billing_date=_now(),
        failed_payment_count=0
    )
    db.add(subscription)
    db.commit()
    db.refresh(subscription)

    logger.info(
        f"Created pending subscription {subscription.id} ({tier}, {billing_cycle.value}) "
        f"for payer {payer_id} -> creator {creator_id}"
    )
    return subscription


def activate_subscription(db: Session, subscription: Subscription, at: Optional[datetime] = None) -> Subscription:
    """pending -> active on the first successful charge"""
    at = at or _now()
    if get_active_subscription(db, subscription.payer_id, subscription.creator_id, exclude_id=subscription.id):
        raise SubscriptionConflict(
            f"Payer {subscription.payer_id} already has an active subscription to creator {subscription.creator_id}",
            details={"subscription_id": subscription.id}
        )

    _cas_status(db, subscription, SubscriptionStatus.PENDING.value, {
        "status": SubscriptionStatus.ACTIVE.value,
        "activated_at": at,
        "last_billing_date": at,
        "next_billing_date": at + timedelta(days=subscription.cycle_length_days),
        "failed_payment_count": 0,
    }, SubscriptionStatus.ACTIVE.value)

    logger.info(f"Subscription {subscription.id} activated, next billing {subscription.next_billing_date}")
    return subscription


def _append_billing(
    db: Session,
    subscription: Subscription,
    amount: Decimal,
    outcome: BillingOutcome,
    transaction: Optional[Transaction] = None,
    processor_transaction_id: Optional[str] = None,
    reason: Optional[str] = None
) -> BillingRecord:
    record = BillingRecord(
        subscription_id=subscription.id,
        billed_at=_now(),
        amount=amount,
        outcome=outcome.value,
        transaction_id=transaction.id if transaction else None,
        processor_transaction_id=processor_transaction_id,
        reason=reason
    )
    db.add(record)
    db.flush()
    return record


def record_initial_charge(
    db: Session,
    transition: transaction_service.TransitionResult,
    event: NormalizedEvent
) -> Optional[SubscriptionChange]:
    """Link a completed signup charge to its subscription and activate it"""
    transaction = transition.transaction
    subscription = None
    if event.processor_subscription_id:
        subscription = get_by_processor_id(db, event.processor_subscription_id)
    if subscription is None and transaction.subscription_id:
        subscription = get_subscription(db, transaction.subscription_id)
    if subscription is None:
        if transaction.kind == TransactionKind.SUBSCRIPTION_CHARGE.value:
            # The sale stands; an operator links or refunds it
            from paycore.services.anomaly_service import record_error
            record_error(
                db,
                SubscriptionNotFound(event.processor_subscription_id or transaction.subscription_id),
                processor_event_id=event.processor_event_id
            )
        return None

    if transaction.subscription_id != subscription.id:
        transaction.subscription_id = subscription.id

    previous = subscription.status
    change = SubscriptionChange(subscription, previous)
    if previous == SubscriptionStatus.PENDING.value:
        try:
            activate_subscription(db, subscription)
        except SubscriptionConflict as e:
            # The money was collected: keep the sale, leave activation to an operator
            from paycore.services.anomaly_service import record_error
            record_error(db, e, processor_event_id=event.processor_event_id)
            change.notes.append("activation blocked by another active subscription")
    else:
        change.notes.append(f"subscription already {previous}")

    change.billing_record = _append_billing(
        db, subscription, Decimal(str(transaction.amount)), BillingOutcome.SUCCESS,
        transaction=transaction, processor_transaction_id=transaction.processor_transaction_id
    )
    return change


def record_renewal_success(db: Session, event: NormalizedEvent) -> SubscriptionChange:
    """
    Bill one renewal cycle.

    Creates the subscription_charge Transaction, completes it through the
    state machine (which credits the subscriptions bucket), appends billing
    history, resets the failure counter and advances next_billing_date by
    exactly one cycle.

    Raises:
        SubscriptionNotFound: Unknown processor subscription ID
        AlreadyApplied: This processor transaction was already billed
        InvalidTransition: Subscription is not active (suspended ones need
            reactivate_subscription first)
    """
    subscription = _require_subscription(db, event)
    if event.processor_transaction_id:
        billed = db.query(Transaction).filter(
            Transaction.processor_transaction_id == event.processor_transaction_id
        ).first()
        if billed is not None:
            raise AlreadyApplied("Transaction", billed.id, billed.status)

    previous = subscription.status
    if previous != SubscriptionStatus.ACTIVE.value:
        raise InvalidTransition("Subscription", subscription.id, previous, "renewed")

    amount = event.amount if event.amount and event.amount > 0 else Decimal(str(subscription.amount))
    transaction = Transaction(
        payer_id=subscription.payer_id,
        creator_id=subscription.creator_id,
        kind=TransactionKind.SUBSCRIPTION_CHARGE.value,
        status=TransactionStatus.PENDING.value,
        amount=amount,
        currency=event.currency or subscription.currency,
        target_id=str(subscription.id),
        subscription_id=subscription.id
    )
    db.add(transaction)
    db.flush()

    try:
        transition = transaction_service.apply_event(
            db,
            EventKind.NEW_SALE_SUCCESS,
            event,
            transaction_id=transaction.id,
            credit_reason=LedgerReason.RENEWAL
        )
    except IntegrityError:
        # Another worker billed the same processor transaction first
        raise AlreadyApplied(
            "Transaction", event.processor_transaction_id, TransactionStatus.COMPLETED.value
        )

    billed_at = _now()
    _cas_status(db, subscription, SubscriptionStatus.ACTIVE.value, {
        "failed_payment_count": 0,
        "last_billing_date": billed_at,
        "next_billing_date": subscription.next_billing_date + timedelta(days=subscription.cycle_length_days),
    }, SubscriptionStatus.ACTIVE.value)

    change = SubscriptionChange(subscription, previous, transition=transition)
    change.billing_record = _append_billing(
        db, subscription, amount, BillingOutcome.SUCCESS,
        transaction=transition.transaction,
        processor_transaction_id=event.processor_transaction_id
    )
    logger.info(
        f"Subscription {subscription.id} renewed for {amount}, next billing {subscription.next_billing_date}"
    )
    return change


def record_renewal_failure(db: Session, event: NormalizedEvent) -> SubscriptionChange:
    """
    Count a failed renewal; suspend at MAX_CONSECUTIVE_RENEWAL_FAILURES.

    The counter is incremented in SQL so concurrent failures are not lost.
    """
    subscription = _require_subscription(db, event)
    previous = subscription.status
    if previous not in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.SUSPENDED.value):
        raise InvalidTransition("Subscription", subscription.id, previous, "renewal_failed")

    now = _now()
    db.query(Subscription).filter(Subscription.id == subscription.id).update({
        Subscription.failed_payment_count: Subscription.failed_payment_count + 1,
        Subscription.last_failed_payment_at: now,
        Subscription.updated_at: now,
    }, synchronize_session=False)
    db.refresh(subscription)

    change = SubscriptionChange(subscription, previous)
    change.billing_record = _append_billing(
        db, subscription,
        event.amount if event.amount else Decimal(str(subscription.amount)),
        BillingOutcome.FAILED,
        processor_transaction_id=event.processor_transaction_id,
        reason=event.reason
    )

    threshold = settings.MAX_CONSECUTIVE_RENEWAL_FAILURES
    if subscription.status == SubscriptionStatus.ACTIVE.value and subscription.failed_payment_count >= threshold:
        _cas_status(db, subscription, SubscriptionStatus.ACTIVE.value, {
            "status": SubscriptionStatus.SUSPENDED.value,
            "suspended_at": now,
            "suspension_reason": f"{subscription.failed_payment_count} consecutive renewal failures",
        }, SubscriptionStatus.SUSPENDED.value)
        logger.warning(
            f"Subscription {subscription.id} suspended after {subscription.failed_payment_count} failed renewals"
        )
    else:
        logger.info(
            f"Subscription {subscription.id} renewal failed "
            f"({subscription.failed_payment_count}/{threshold}): {event.reason}"
        )
    return change


def cancel_subscription(db: Session, event: NormalizedEvent) -> SubscriptionChange:
    """Terminal regardless of the failure counter"""
    subscription = _require_subscription(db, event)
    previous = subscription.status
    if previous == SubscriptionStatus.CANCELLED.value:
        raise AlreadyApplied("Subscription", subscription.id, previous)

    now = _now()
    _cas_status(db, subscription, (
        SubscriptionStatus.PENDING.value,
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.SUSPENDED.value,
    ), {
        "status": SubscriptionStatus.CANCELLED.value,
        "cancelled_at": now,
        "cancellation_reason": event.reason,
    }, SubscriptionStatus.CANCELLED.value)

    logger.info(f"Subscription {subscription.id} cancelled ({previous} -> cancelled): {event.reason}")
    return SubscriptionChange(subscription, previous)


def expire_subscription(db: Session, event: NormalizedEvent) -> SubscriptionChange:
    """
    Terminal. A cancelled subscription keeps its status and only gets
    expires_at stamped: the processor sends Expiration when the paid period
    of a cancelled agreement runs out.
    """
    subscription = _require_subscription(db, event)
    previous = subscription.status
    now = _now()

    if previous == SubscriptionStatus.EXPIRED.value:
        raise AlreadyApplied("Subscription", subscription.id, previous)

    if previous == SubscriptionStatus.CANCELLED.value:
        if subscription.expires_at is None:
            subscription.expires_at = now
            db.flush()
        change = SubscriptionChange(subscription, previous)
        change.notes.append("cancelled subscription reached end of paid period")
        return change

    _cas_status(db, subscription, (
        SubscriptionStatus.PENDING.value,
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.SUSPENDED.value,
    ), {
        "status": SubscriptionStatus.EXPIRED.value,
        "expires_at": now,
    }, SubscriptionStatus.EXPIRED.value)

    logger.info(f"Subscription {subscription.id} expired ({previous} -> expired)")
    return SubscriptionChange(subscription, previous)


def reactivate_subscription(db: Session, subscription_id: int) -> Subscription:
    """
    Explicit suspended -> active path. Clears the failure counter; billing
    resumes from the stored next_billing_date.

    Raises:
        SubscriptionNotFound, InvalidTransition, SubscriptionConflict
    """
    subscription = get_subscription(db, subscription_id)
    if subscription is None:
        raise SubscriptionNotFound(subscription_id)
    if subscription.status != SubscriptionStatus.SUSPENDED.value:
        raise InvalidTransition("Subscription", subscription.id, subscription.status, SubscriptionStatus.ACTIVE.value)
    if get_active_subscription(db, subscription.payer_id, subscription.creator_id, exclude_id=subscription.id):
        raise SubscriptionConflict(
            f"Payer {subscription.payer_id} already has an active subscription to creator {subscription.creator_id}",
            details={"subscription_id": subscription.id}
        )

    _cas_status(db, subscription, SubscriptionStatus.SUSPENDED.value, {
        "status": SubscriptionStatus.ACTIVE.value,
        "failed_payment_count": 0,
        "suspended_at": None,
        "suspension_reason": None,
    }, SubscriptionStatus.ACTIVE.value)
    db.commit()
    db.refresh(subscription)

    logger.info(f"Subscription {subscription.id} reactivated")
    return subscription


def subscriptions_due_for_billing(db: Session, now: Optional[datetime] = None) -> List[Subscription]:
    """Active subscriptions whose next billing date has passed (suspended ones never are)"""
    now = now or _now()
    return db.query(Subscription).filter(
        Subscription.status == SubscriptionStatus.ACTIVE.value,
        Subscription.next_billing_date <= now
    ).order_by(Subscription.next_billing_date).all()
