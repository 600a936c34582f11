"""Pydantic schemas for transactions"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from paycore.models.enums import TransactionKind


class ChargeRequest(BaseModel):
    """Charge initiation from a payment controller"""
    payer_id: str = Field(..., min_length=1, max_length=64)
    creator_id: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    kind: TransactionKind
    target_id: Optional[str] = Field(None, max_length=64)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    subscription_id: Optional[int] = None


class ChargeResponse(BaseModel):
    transaction_id: int
    status: str
    # Echo back into the processor's custom fields
    correlation_field: str = "transactionId"


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    processor_transaction_id: Optional[str] = None
    payer_id: str
    creator_id: str
    kind: str
    status: str
    amount: Decimal
    currency: str
    platform_fee: Optional[Decimal] = None
    creator_earnings: Optional[Decimal] = None
    reversal_amount: Optional[Decimal] = None
    penalty_fee: Optional[Decimal] = None
    target_id: Optional[str] = None
    subscription_id: Optional[int] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    chargedback_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
