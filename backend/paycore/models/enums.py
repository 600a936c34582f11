"""Closed value sets shared by models, services and schemas"""
import enum


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CHARGEDBACK = "chargedback"
    VOIDED = "voided"


class TransactionKind(str, enum.Enum):
    CONTENT_UNLOCK = "content_unlock"
    MESSAGE_UNLOCK = "message_unlock"
    TIP = "tip"
    SUBSCRIPTION_CHARGE = "subscription_charge"
    CREDIT_PURCHASE = "credit_purchase"


class EarningsBucket(str, enum.Enum):
    CONTENT_SALES = "content_sales"
    TIPS = "tips"
    MESSAGES = "messages"
    SUBSCRIPTIONS = "subscriptions"
    CREDITS = "credits"


# Every transaction kind credits exactly one bucket
BUCKET_FOR_KIND = {
    TransactionKind.CONTENT_UNLOCK: EarningsBucket.CONTENT_SALES,
    TransactionKind.MESSAGE_UNLOCK: EarningsBucket.MESSAGES,
    TransactionKind.TIP: EarningsBucket.TIPS,
    TransactionKind.SUBSCRIPTION_CHARGE: EarningsBucket.SUBSCRIPTIONS,
    TransactionKind.CREDIT_PURCHASE: EarningsBucket.CREDITS,
}


class LedgerBalance(str, enum.Enum):
    AVAILABLE = "available"
    PENDING = "pending"


class LedgerReason(str, enum.Enum):
    SALE = "sale"
    RENEWAL = "renewal"
    REFUND = "refund"
    CHARGEBACK = "chargeback"
    VOID = "void"
    RELEASE = "release"


CREDIT_REASONS = (LedgerReason.SALE, LedgerReason.RENEWAL)


class SubscriptionStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BillingCycle(str, enum.Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


CYCLE_LENGTH_DAYS = {
    BillingCycle.MONTHLY: 30,
    BillingCycle.QUARTERLY: 90,
    BillingCycle.YEARLY: 365,
}


class BillingOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"


class ProcessorEventStatus(str, enum.Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    FAILED = "failed"


class AnomalyStatus(str, enum.Enum):
    OPEN = "open"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    ARCHIVED = "archived"  # Gave up


class AnomalySeverity(str, enum.Enum):
    CRITICAL = "critical"
    WARNING = "warning"
