"""
Ledger reconciler - creator earnings accounting.

Every change to an EarningsLedger is one SQL-side increment plus one
LedgerEntry append, flushed in the caller's database transaction so both
commit or neither does. Counters are a cache; the entries are the record
and counters can always be rebuilt from them.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from paycore.core.config import settings
from paycore.core.exceptions import LedgerUnderflow
from paycore.core.metrics import ledger_mutations_counter, ledger_underflow_counter
from paycore.models.earnings import EarningsLedger, LedgerEntry
from paycore.models.enums import (
    CREDIT_REASONS, EarningsBucket, LedgerBalance, LedgerReason
)

logger = logging.getLogger(__name__)
ledger_logger = logging.getLogger("ledger")
anomaly_logger = logging.getLogger("anomaly")

ZERO = Decimal("0.00")

COUNTER_COLUMNS = (
    "lifetime_earnings",
    "available_balance",
    "pending_balance",
    "total_refunds",
    "total_chargebacks",
)
BUCKET_COLUMNS = tuple(bucket.value for bucket in EarningsBucket)

BALANCE_COLUMNS = {
    LedgerBalance.AVAILABLE: "available_balance",
    LedgerBalance.PENDING: "pending_balance",
}


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        return insert
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        return insert
    return None


def ensure_ledger(db: Session, creator_id: str) -> None:
    """Create the creator's ledger row if missing. Safe under concurrent first credits."""
    exists = db.execute(
        select(EarningsLedger.id).where(EarningsLedger.creator_id == creator_id)
    ).first()
    if exists:
        return

    insert = _insert_for(db)
    if insert is not None:
        now = datetime.now(timezone.utc)
        db.execute(
            insert(EarningsLedger)
            .values(creator_id=creator_id, created_at=now, updated_at=now)
            .on_conflict_do_nothing(index_elements=["creator_id"])
        )
        return

    try:
        with db.begin_nested():
            db.add(EarningsLedger(creator_id=creator_id))
    except IntegrityError:
        logger.debug(f"Ledger for creator {creator_id} created concurrently")


def lock_ledger(db: Session, creator_id: str) -> None:
    """Row-lock the creator's ledger until commit (no-op on SQLite, which locks the database)"""
    ensure_ledger(db, creator_id)
    db.execute(
        select(EarningsLedger.id).where(EarningsLedger.creator_id == creator_id).with_for_update()
    ).first()


def get_ledger(db: Session, creator_id: str) -> Optional[EarningsLedger]:
    # populate_existing: counters change behind the ORM through SQL increments
    return db.query(EarningsLedger).populate_existing().filter(
        EarningsLedger.creator_id == creator_id
    ).first()


def credit_balance() -> LedgerBalance:
    """Where new credits land under the configured hold policy"""
    if settings.EARNINGS_HOLD_DAYS > 0:
        return LedgerBalance.PENDING
    return LedgerBalance.AVAILABLE


def balance_holding(db: Session, transaction_id: int) -> LedgerBalance:
    """Balance that currently holds a transaction's credit (pending until released)"""
    pending = db.execute(
        select(func.coalesce(func.sum(LedgerEntry.amount_delta), 0)).where(
            LedgerEntry.transaction_id == transaction_id,
            LedgerEntry.balance == LedgerBalance.PENDING.value
        )
    ).scalar_one()
    if Decimal(str(pending)) > 0:
        return LedgerBalance.PENDING
    return LedgerBalance.AVAILABLE


def apply_delta(
    db: Session,
    creator_id: str,
    amount_delta: Decimal,
    bucket: EarningsBucket,
    transaction_ref: int,
    reason: LedgerReason,
    balance: Optional[LedgerBalance] = None,
    penalty_amount: Decimal = ZERO
) -> LedgerEntry:
    """
    Apply one signed effect to a creator's ledger.

    Args:
        db: Session whose transaction the increment and log entry join
        creator_id: Creator receiving (or losing) the money
        amount_delta: Signed amount; reversals are negative and include the penalty
        bucket: Earnings source the effect is reported under
        transaction_ref: Transaction.id behind the effect
        reason: Why the ledger moved
        balance: Balance the delta lands in (defaults to the hold policy)
        penalty_amount: Part of a negative delta that is a chargeback penalty

    Returns:
        The appended LedgerEntry. Reversals that leave the balance negative
        are flagged, never blocked.
    """
    amount_delta = Decimal(amount_delta).quantize(Decimal("0.01"))
    penalty_amount = Decimal(penalty_amount).quantize(Decimal("0.01"))
    bucket = EarningsBucket(bucket)
    reason = LedgerReason(reason)
    if balance is None:
        balance = credit_balance() if amount_delta > 0 else LedgerBalance.AVAILABLE
    balance = LedgerBalance(balance)

    ensure_ledger(db, creator_id)

    balance_column = BALANCE_COLUMNS[balance]
    increments: Dict[str, Decimal] = {balance_column: amount_delta}

    if reason != LedgerReason.RELEASE:
        # Earnings part excludes the penalty: it never was the creator's revenue
        earnings_delta = amount_delta + penalty_amount
        increments["lifetime_earnings"] = earnings_delta
        increments[bucket.value] = earnings_delta
    if reason == LedgerReason.REFUND:
        increments["total_refunds"] = -amount_delta
    elif reason == LedgerReason.CHARGEBACK:
        increments["total_chargebacks"] = -amount_delta

    values = {
        getattr(EarningsLedger, name): getattr(EarningsLedger, name) + delta
        for name, delta in increments.items()
    }
    values[EarningsLedger.updated_at] = datetime.now(timezone.utc)
    db.execute(
        update(EarningsLedger)
        .where(EarningsLedger.creator_id == creator_id)
        .values(values)
        .execution_options(synchronize_session=False)
    )

    new_balance = db.execute(
        select(getattr(EarningsLedger, balance_column)).where(EarningsLedger.creator_id == creator_id)
    ).scalar_one()
    underflow = amount_delta < 0 and Decimal(str(new_balance)) < 0

    entry = LedgerEntry(
        creator_id=creator_id,
        transaction_id=transaction_ref,
        amount_delta=amount_delta,
        balance=balance.value,
        bucket=bucket.value,
        reason=reason.value,
        penalty_amount=penalty_amount,
        underflow=underflow
    )
    db.add(entry)
    db.flush()

    ledger_mutations_counter.labels(bucket=bucket.value, reason=reason.value).inc()
    ledger_logger.info(
        f"Ledger {creator_id}: {amount_delta:+} {balance.value} ({bucket.value}/{reason.value}) "
        f"for transaction {transaction_ref}"
    )

    if underflow:
        _flag_underflow(db, creator_id, balance, Decimal(str(new_balance)), entry)

    return entry


def _flag_underflow(
    db: Session,
    creator_id: str,
    balance: LedgerBalance,
    new_balance: Decimal,
    entry: LedgerEntry
) -> None:
    from paycore.services.anomaly_service import record_error

    ledger_underflow_counter.inc()
    alert = LedgerUnderflow(
        f"Creator {creator_id} {balance.value} balance is {new_balance} after "
        f"{entry.reason} of transaction {entry.transaction_id}",
        details={
            "creator_id": creator_id,
            "balance": balance.value,
            "new_balance": str(new_balance),
            "ledger_entry_id": entry.id,
            "transaction_id": entry.transaction_id,
        }
    )
    record_error(db, alert, payload=alert.details)


def reverse_credit(
    db: Session,
    creator_id: str,
    transaction_ref: int,
    bucket: EarningsBucket,
    earnings: Decimal,
    reason: LedgerReason,
    penalty_amount: Decimal = ZERO
) -> LedgerEntry:
    """Debit earnings (+ penalty) from whichever balance holds the original credit"""
    # Serializes with release_matured_earnings so the holding balance cannot move underneath
    lock_ledger(db, creator_id)
    return apply_delta(
        db,
        creator_id,
        -(Decimal(earnings) + Decimal(penalty_amount)),
        bucket,
        transaction_ref,
        reason,
        balance=balance_holding(db, transaction_ref),
        penalty_amount=penalty_amount
    )


def release_matured_earnings(db: Session, now: Optional[datetime] = None) -> int:
    """
    Move credits whose hold period has elapsed from pending to available.

    Writes a pair of release entries per transaction (net zero), committing
    each pair on its own. The held amount is read under the creator's ledger
    lock, so concurrent workers and a racing reversal see each other's
    entries. Credits that already have a pending debit (a release or a
    reversal) are not scanned again.

    Returns the number of transactions released.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=settings.EARNINGS_HOLD_DAYS)

    debit = aliased(LedgerEntry)
    settled = select(debit.id).where(
        debit.transaction_id == LedgerEntry.transaction_id,
        debit.balance == LedgerBalance.PENDING.value,
        debit.amount_delta < 0
    ).exists()
    matured = db.query(LedgerEntry).filter(
        LedgerEntry.balance == LedgerBalance.PENDING.value,
        LedgerEntry.reason.in_([r.value for r in CREDIT_REASONS]),
        LedgerEntry.created_at <= cutoff,
        ~settled
    ).order_by(LedgerEntry.id).all()

    released = 0
    for credit in matured:
        lock_ledger(db, credit.creator_id)
        held = db.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount_delta), 0)).where(
                LedgerEntry.transaction_id == credit.transaction_id,
                LedgerEntry.balance == LedgerBalance.PENDING.value
            )
        ).scalar_one()
        held = Decimal(str(held))
        if held <= 0:
            # Released or reversed by another worker since the scan
            db.rollback()
            continue

        apply_delta(db, credit.creator_id, -held, credit.bucket, credit.transaction_id,
                    LedgerReason.RELEASE, balance=LedgerBalance.PENDING)
        apply_delta(db, credit.creator_id, held, credit.bucket, credit.transaction_id,
                    LedgerReason.RELEASE, balance=LedgerBalance.AVAILABLE)
        db.commit()
        released += 1

    if released:
        ledger_logger.info(f"Released {released} matured credit(s) to available")
    return released


def derive_counters(db: Session, creator_id: str) -> Dict[str, Decimal]:
    """Recompute every ledger counter from the effect log"""
    derived = {name: ZERO for name in COUNTER_COLUMNS + BUCKET_COLUMNS}

    rows = db.execute(
        select(
            LedgerEntry.balance,
            LedgerEntry.bucket,
            LedgerEntry.reason,
            func.sum(LedgerEntry.amount_delta),
            func.sum(LedgerEntry.penalty_amount)
        ).where(LedgerEntry.creator_id == creator_id)
        .group_by(LedgerEntry.balance, LedgerEntry.bucket, LedgerEntry.reason)
    ).all()

    for balance, bucket, reason, delta_sum, penalty_sum in rows:
        delta_sum = Decimal(str(delta_sum or 0))
        penalty_sum = Decimal(str(penalty_sum or 0))

        derived[BALANCE_COLUMNS[LedgerBalance(balance)]] += delta_sum
        if reason != LedgerReason.RELEASE.value:
            derived["lifetime_earnings"] += delta_sum + penalty_sum
            derived[bucket] += delta_sum + penalty_sum
        if reason == LedgerReason.REFUND.value:
            derived["total_refunds"] -= delta_sum
        elif reason == LedgerReason.CHARGEBACK.value:
            derived["total_chargebacks"] -= delta_sum

    return {name: value.quantize(Decimal("0.01")) for name, value in derived.items()}


@dataclass
class ReconciliationReport:
    creator_id: str
    counters: Dict[str, Decimal]
    derived: Dict[str, Decimal]
    drift: Dict[str, Decimal] = field(default_factory=dict)
    entry_count: int = 0

    @property
    def balanced(self) -> bool:
        return not self.drift


def _counters_of(ledger: Optional[EarningsLedger]) -> Dict[str, Decimal]:
    return {
        name: Decimal(str(getattr(ledger, name))) if ledger else ZERO
        for name in COUNTER_COLUMNS + BUCKET_COLUMNS
    }


def reconcile_ledger(db: Session, creator_id: str) -> ReconciliationReport:
    """Compare cached counters with the log. Read only."""
    counters = _counters_of(get_ledger(db, creator_id))
    derived = derive_counters(db, creator_id)
    drift = {
        name: counters[name] - derived[name]
        for name in counters
        if counters[name] != derived[name]
    }
    entry_count = db.query(func.count(LedgerEntry.id)).filter(
        LedgerEntry.creator_id == creator_id
    ).scalar()

    if drift:
        anomaly_logger.critical(f"Ledger drift for creator {creator_id}: {drift}")
    return ReconciliationReport(creator_id, counters, derived, drift, entry_count)


def rebuild_from_log(db: Session, creator_id: str) -> EarningsLedger:
    """Overwrite the cached counters with values derived from the log"""
    ensure_ledger(db, creator_id)
    derived = derive_counters(db, creator_id)
    db.execute(
        update(EarningsLedger)
        .where(EarningsLedger.creator_id == creator_id)
        .values(updated_at=datetime.now(timezone.utc), **derived)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    ledger_logger.warning(f"Ledger counters for creator {creator_id} rebuilt from effect log")
    return get_ledger(db, creator_id)


def estimate_tax(lifetime_earnings: Decimal) -> Decimal:
    """Estimated tax owed on lifetime earnings, for display only"""
    base = max(Decimal(lifetime_earnings), ZERO)
    return (base * Decimal(str(settings.TAX_ESTIMATE_RATE))).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def get_ledger_summary(db: Session, creator_id: str) -> Dict[str, Any]:
    """Read contract for payouts and analytics (zeroes for creators with no earnings yet)"""
    ledger = get_ledger(db, creator_id)
    counters = _counters_of(ledger)
    return {
        "creator_id": creator_id,
        "available_balance": counters["available_balance"],
        "pending_balance": counters["pending_balance"],
        "lifetime_earnings": counters["lifetime_earnings"],
        "total_refunds": counters["total_refunds"],
        "total_chargebacks": counters["total_chargebacks"],
        "estimated_tax": estimate_tax(counters["lifetime_earnings"]),
        "breakdown": {name: counters[name] for name in BUCKET_COLUMNS},
        "updated_at": ledger.updated_at if ledger else None,
    }


def list_ledger_entries(
    db: Session,
    creator_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    bucket: Optional[EarningsBucket] = None,
    limit: Optional[int] = None
) -> List[LedgerEntry]:
    """Effect log entries, oldest first, filtered by [start, end) and bucket"""
    query = db.query(LedgerEntry).filter(LedgerEntry.creator_id == creator_id)
    if start is not None:
        query = query.filter(LedgerEntry.created_at >= start)
    if end is not None:
        query = query.filter(LedgerEntry.created_at < end)
    if bucket is not None:
        query = query.filter(LedgerEntry.bucket == EarningsBucket(bucket).value)
    query = query.order_by(LedgerEntry.id)
    if limit:
        query = query.limit(limit)
    return query.all()
