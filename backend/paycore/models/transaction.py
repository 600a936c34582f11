"""Transaction model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index, Text, CheckConstraint
from sqlalchemy.orm import relationship

from paycore.models.base import Base, Money, utcnow
from paycore.models.enums import TransactionStatus


class Transaction(Base):
    """One charge attempt and its outcome"""
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    # Assigned by the processor; unknown until the sale is confirmed
    processor_transaction_id = Column(String(255), unique=True, nullable=True, index=True)

    payer_id = Column(String(64), nullable=False, index=True)
    creator_id = Column(String(64), nullable=False, index=True)
    kind = Column(String(50), nullable=False)  # TransactionKind
    status = Column(String(20), nullable=False, default=TransactionStatus.PENDING.value, index=True)

    amount = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    platform_fee = Column(Money, nullable=True)  # Frozen on completion
    creator_earnings = Column(Money, nullable=True)  # Frozen on completion
    reversal_amount = Column(Money, nullable=True)  # Debited from the ledger on refund/chargeback
    penalty_fee = Column(Money, nullable=True)  # Chargeback penalty included in reversal_amount

    # Content, message, subscription or tip target being paid for
    target_id = Column(String(64), nullable=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)
    failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    chargedback_at = Column(DateTime(timezone=True), nullable=True)
    voided_at = Column(DateTime(timezone=True), nullable=True)

    subscription = relationship("Subscription", back_populates="transactions")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        Index("ix_transactions_creator_status", "creator_id", "status"),
    )

    def __repr__(self):
        return f"<Transaction(id={self.id}, kind={self.kind}, status={self.status}, amount={self.amount})>"
