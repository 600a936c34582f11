"""Pydantic schemas for subscriptions"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from paycore.models.enums import BillingCycle


class SubscriptionCreateRequest(BaseModel):
    payer_id: str = Field(..., min_length=1, max_length=64)
    creator_id: str = Field(..., min_length=1, max_length=64)
    tier: str = Field(..., min_length=1, max_length=50)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    processor_subscription_id: str = Field(..., min_length=1, max_length=255)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    cycle_length_days: Optional[int] = Field(None, gt=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class BillingRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    billed_at: datetime
    amount: Decimal
    outcome: str
    transaction_id: Optional[int] = None
    processor_transaction_id: Optional[str] = None
    reason: Optional[str] = None


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    payer_id: str
    creator_id: str
    processor_subscription_id: str
    tier: str
    amount: Decimal
    currency: str
    billing_cycle: str
    cycle_length_days: int
    status: str
    next_billing_date: datetime
    last_billing_date: Optional[datetime] = None
    failed_payment_count: int
    activated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    suspended_at: Optional[datetime] = None
    suspension_reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    billing_history: List[BillingRecordResponse] = []
