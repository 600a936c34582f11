"""
Transaction state machine.

pending -> completed | failed, completed -> refunded | chargedback | voided.
Status changes are compare-and-swap updates on the expected prior status,
so two workers racing on one transaction cannot both apply an edge.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Tuple, Union

from sqlalchemy.orm import Session

from paycore.core.config import settings
from paycore.core.exceptions import AlreadyApplied, InvalidTransition, TransactionNotFound
from paycore.models.earnings import LedgerEntry
from paycore.models.enums import (
    BUCKET_FOR_KIND, LedgerReason, TransactionKind, TransactionStatus
)
from paycore.models.transaction import Transaction
from paycore.schemas.events import EventKind, NormalizedEvent
from paycore.services import ledger_service

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING: {TransactionStatus.COMPLETED, TransactionStatus.FAILED},
    TransactionStatus.COMPLETED: {
        TransactionStatus.REFUNDED,
        TransactionStatus.CHARGEDBACK,
        TransactionStatus.VOIDED,
    },
}

# Event kinds that move a transaction, and where they move it
TARGET_STATUS = {
    EventKind.NEW_SALE_SUCCESS: TransactionStatus.COMPLETED,
    EventKind.NEW_SALE_FAILURE: TransactionStatus.FAILED,
    EventKind.REFUND: TransactionStatus.REFUNDED,
    EventKind.CHARGEBACK: TransactionStatus.CHARGEDBACK,
    EventKind.VOID: TransactionStatus.VOIDED,
}

REVERSAL_REASON = {
    TransactionStatus.REFUNDED: LedgerReason.REFUND,
    TransactionStatus.CHARGEDBACK: LedgerReason.CHARGEBACK,
    TransactionStatus.VOIDED: LedgerReason.VOID,
}

STATUS_TIMESTAMP = {
    TransactionStatus.COMPLETED: "completed_at",
    TransactionStatus.FAILED: "failed_at",
    TransactionStatus.REFUNDED: "refunded_at",
    TransactionStatus.CHARGEDBACK: "chargedback_at",
    TransactionStatus.VOIDED: "voided_at",
}


@dataclass
class TransitionResult:
    transaction: Transaction
    previous_status: TransactionStatus
    new_status: TransactionStatus
    ledger_entry: Optional[LedgerEntry] = None

    def as_dict(self) -> Dict[str, Any]:
        txn = self.transaction
        result = {
            "transaction_id": txn.id,
            "processor_transaction_id": txn.processor_transaction_id,
            "previous_status": self.previous_status.value,
            "status": self.new_status.value,
        }
        if self.ledger_entry is not None:
            result["ledger_entry_id"] = self.ledger_entry.id
            result["amount_delta"] = str(self.ledger_entry.amount_delta)
            result["bucket"] = self.ledger_entry.bucket
        return result


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def compute_split(amount: Union[Decimal, str], fee_percent: Union[Decimal, str, None] = None) -> Tuple[Decimal, Decimal]:
    """
    Split a charge into (platform_fee, creator_earnings).

    The fee is rounded half-up to the cent and earnings take the remainder,
    so fee + earnings == amount exactly.
    """
    if fee_percent is None:
        fee_percent = settings.PLATFORM_FEE_PERCENT
    amount = Decimal(str(amount)).quantize(CENT)
    fee = (amount * Decimal(str(fee_percent)) / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)
    return fee, amount - fee


def get_transaction(db: Session, transaction_id: int) -> Optional[Transaction]:
    return db.query(Transaction).filter(Transaction.id == transaction_id).first()


def initiate_charge(
    db: Session,
    payer_id: str,
    creator_id: str,
    amount: Union[Decimal, str],
    kind: Union[TransactionKind, str],
    target_id: Optional[str] = None,
    currency: Optional[str] = None,
    subscription_id: Optional[int] = None
) -> Transaction:
    """
    Create a pending Transaction before the charge goes to the processor.

    The returned id is what the caller embeds in the charge request's
    custom fields so the processor's notification can find it again.

    Raises:
        ValueError: Non-positive amount or unknown kind
    """
    amount = Decimal(str(amount)).quantize(CENT)
    if amount <= 0:
        raise ValueError("Charge amount must be positive")
    kind = TransactionKind(kind)

    transaction = Transaction(
        payer_id=payer_id,
        creator_id=creator_id,
        kind=kind.value,
        status=TransactionStatus.PENDING.value,
        amount=amount,
        currency=(currency or settings.DEFAULT_CURRENCY).upper(),
        target_id=target_id,
        subscription_id=subscription_id
    )
    db.add(transaction)
    db.commit()
    db.refresh(transaction)

    logger.info(
        f"Initiated {kind.value} charge {transaction.id}: {amount} {transaction.currency} "
        f"from {payer_id} to creator {creator_id}"
    )
    return transaction


def _resolve_transaction(
    db: Session,
    event: NormalizedEvent,
    transaction_id: Optional[int]
) -> Transaction:
    local_id = transaction_id or event.local_transaction_id
    if local_id is not None:
        transaction = get_transaction(db, local_id)
        if transaction is None:
            raise TransactionNotFound(local_id)
        return transaction

    if event.processor_transaction_id:
        transaction = db.query(Transaction).filter(
            Transaction.processor_transaction_id == event.processor_transaction_id
        ).first()
        if transaction is None:
            raise TransactionNotFound(event.processor_transaction_id)
        return transaction

    raise TransactionNotFound()


def apply_event(
    db: Session,
    event_kind: EventKind,
    event: NormalizedEvent,
    transaction_id: Optional[int] = None,
    credit_reason: LedgerReason = LedgerReason.SALE
) -> TransitionResult:
    """
    Move a transaction along one edge and apply its ledger effect.

    Flushes only: the caller commits the status change, the ledger entry and
    the idempotency claim together.

    Raises:
        TransactionNotFound: No local transaction for the event
        InvalidTransition: Edge not allowed from the current status
        AlreadyApplied: Transaction is already in the requested status
    """
    target = TARGET_STATUS.get(EventKind(event_kind))
    if target is None:
        raise ValueError(f"Event kind {event_kind} does not move a transaction")

    transaction = _resolve_transaction(db, event, transaction_id)
    current = TransactionStatus(transaction.status)

    if current == target:
        raise AlreadyApplied("Transaction", transaction.id, current.value)
    if not can_transition(current, target):
        raise InvalidTransition("Transaction", transaction.id, current.value, target.value)

    now = datetime.now(timezone.utc)
    values: Dict[str, Any] = {
        "status": target.value,
        "updated_at": now,
        STATUS_TIMESTAMP[target]: now,
    }

    if target == TransactionStatus.COMPLETED:
        fee, earnings = compute_split(transaction.amount)
        values["platform_fee"] = fee
        values["creator_earnings"] = earnings
        if event.processor_transaction_id and not transaction.processor_transaction_id:
            values["processor_transaction_id"] = event.processor_transaction_id
    elif target == TransactionStatus.FAILED:
        values["failure_reason"] = event.reason
        if event.processor_transaction_id and not transaction.processor_transaction_id:
            values["processor_transaction_id"] = event.processor_transaction_id
    else:
        penalty = settings.CHARGEBACK_PENALTY_FEE if target == TransactionStatus.CHARGEDBACK else Decimal("0")
        penalty = Decimal(str(penalty)).quantize(CENT)
        values["reversal_amount"] = Decimal(str(transaction.creator_earnings)) + penalty
        values["penalty_fee"] = penalty

    # Compare-and-swap on the status we validated against
    updated = db.query(Transaction).filter(
        Transaction.id == transaction.id,
        Transaction.status == current.value
    ).update(
        {getattr(Transaction, name): value for name, value in values.items()},
        synchronize_session=False
    )
    if updated == 0:
        db.refresh(transaction)
        actual = TransactionStatus(transaction.status)
        if actual == target:
            raise AlreadyApplied("Transaction", transaction.id, actual.value)
        raise InvalidTransition("Transaction", transaction.id, actual.value, target.value)

    db.refresh(transaction)
    logger.info(f"Transaction {transaction.id}: {current.value} -> {target.value}")

    bucket = BUCKET_FOR_KIND[TransactionKind(transaction.kind)]
    entry = None
    if target == TransactionStatus.COMPLETED:
        entry = ledger_service.apply_delta(
            db,
            transaction.creator_id,
            Decimal(str(transaction.creator_earnings)),
            bucket,
            transaction.id,
            credit_reason
        )
    elif target in REVERSAL_REASON:
        entry = ledger_service.reverse_credit(
            db,
            transaction.creator_id,
            transaction.id,
            bucket,
            Decimal(str(transaction.creator_earnings)),
            REVERSAL_REASON[target],
            penalty_amount=Decimal(str(transaction.penalty_fee or 0))
        )

    return TransitionResult(transaction, current, target, entry)
