"""Subscription model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index, Text, text
from sqlalchemy.orm import relationship

from paycore.models.base import Base, Money, utcnow
from paycore.models.enums import SubscriptionStatus


class Subscription(Base):
    """Recurring billing agreement between a payer and a creator"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    payer_id = Column(String(64), nullable=False, index=True)
    creator_id = Column(String(64), nullable=False, index=True)
    processor_subscription_id = Column(String(255), unique=True, nullable=False, index=True)

    tier = Column(String(50), nullable=False)
    amount = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    billing_cycle = Column(String(20), nullable=False, default="monthly")  # BillingCycle
    cycle_length_days = Column(Integer, nullable=False, default=30)

    status = Column(String(20), nullable=False, default=SubscriptionStatus.PENDING.value, index=True)
    next_billing_date = Column(DateTime(timezone=True), nullable=False, index=True)
    last_billing_date = Column(DateTime(timezone=True), nullable=True)
    failed_payment_count = Column(Integer, nullable=False, default=0)
    last_failed_payment_at = Column(DateTime(timezone=True), nullable=True)

    activated_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    suspended_at = Column(DateTime(timezone=True), nullable=True)
    suspension_reason = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    billing_history = relationship(
        "BillingRecord",
        back_populates="subscription",
        order_by="BillingRecord.id",
        cascade="all, delete-orphan"
    )
    transactions = relationship("Transaction", back_populates="subscription")

    __table_args__ = (
        # At most one active subscription per (payer, creator)
        Index(
            "uq_subscriptions_active_pair",
            "payer_id", "creator_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'")
        ),
        Index("ix_subscriptions_status_next_billing", "status", "next_billing_date"),
    )

    def __repr__(self):
        return f"<Subscription(id={self.id}, status={self.status}, failed={self.failed_payment_count})>"


class BillingRecord(Base):
    """Append-only billing history row"""
    __tablename__ = "billing_records"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    billed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    amount = Column(Money, nullable=False)
    outcome = Column(String(20), nullable=False)  # BillingOutcome
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    processor_transaction_id = Column(String(255), nullable=True)
    reason = Column(Text, nullable=True)

    subscription = relationship("Subscription", back_populates="billing_history")

    def __repr__(self):
        return f"<BillingRecord(subscription_id={self.subscription_id}, outcome={self.outcome}, amount={self.amount})>"
