"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from paycore.models.base import Base
from paycore.models.transaction import Transaction
from paycore.models.earnings import EarningsLedger, LedgerEntry
from paycore.models.subscription import Subscription, BillingRecord
from paycore.models.processor_event import ProcessorEvent
from paycore.models.anomaly import Anomaly

# Export all for convenience
__all__ = [
    "Base", "Transaction", "EarningsLedger", "LedgerEntry",
    "Subscription", "BillingRecord", "ProcessorEvent", "Anomaly"
]
