"""Earnings ledger models"""
from decimal import Decimal

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index, Boolean
from sqlalchemy.orm import relationship

from paycore.models.base import Base, Money, utcnow

ZERO = Decimal("0.00")


class EarningsLedger(Base):
    """Per-creator running account.

    Counters are a cache over LedgerEntry rows and must always be
    re-derivable from them. They are only ever changed through SQL-side
    increments issued by the ledger service.
    """
    __tablename__ = "earnings_ledgers"

    id = Column(Integer, primary_key=True, index=True)
    creator_id = Column(String(64), unique=True, nullable=False, index=True)

    lifetime_earnings = Column(Money, nullable=False, default=ZERO)
    available_balance = Column(Money, nullable=False, default=ZERO)
    pending_balance = Column(Money, nullable=False, default=ZERO)
    total_refunds = Column(Money, nullable=False, default=ZERO)
    total_chargebacks = Column(Money, nullable=False, default=ZERO)

    # Breakdown by source (one column per EarningsBucket)
    content_sales = Column(Money, nullable=False, default=ZERO)
    tips = Column(Money, nullable=False, default=ZERO)
    messages = Column(Money, nullable=False, default=ZERO)
    subscriptions = Column(Money, nullable=False, default=ZERO)
    credits = Column(Money, nullable=False, default=ZERO)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    entries = relationship(
        "LedgerEntry",
        primaryjoin="EarningsLedger.creator_id == foreign(LedgerEntry.creator_id)",
        order_by="LedgerEntry.id",
        viewonly=True
    )

    def __repr__(self):
        return (
            f"<EarningsLedger(creator_id={self.creator_id}, available={self.available_balance}, "
            f"pending={self.pending_balance})>"
        )


class LedgerEntry(Base):
    """Append-only transaction-effect log. NO updates or deletions."""
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, index=True)
    creator_id = Column(String(64), nullable=False, index=True)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=False, index=True)

    amount_delta = Column(Money, nullable=False)  # Signed
    balance = Column(String(20), nullable=False)  # LedgerBalance the delta lands in
    bucket = Column(String(30), nullable=False)  # EarningsBucket
    reason = Column(String(20), nullable=False)  # LedgerReason
    penalty_amount = Column(Money, nullable=False, default=ZERO)  # Part of a chargeback delta
    underflow = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("ix_ledger_entries_creator_created", "creator_id", "created_at"),
        Index("ix_ledger_entries_transaction_reason", "transaction_id", "reason"),
    )

    def __repr__(self):
        return f"<LedgerEntry(id={self.id}, delta={self.amount_delta}, bucket={self.bucket}, reason={self.reason})>"
