"""Pydantic schemas for the earnings ledger read contract"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class LedgerSummaryResponse(BaseModel):
    creator_id: str
    available_balance: Decimal
    pending_balance: Decimal
    lifetime_earnings: Decimal
    total_refunds: Decimal
    total_chargebacks: Decimal
    estimated_tax: Decimal
    breakdown: Dict[str, Decimal]
    updated_at: Optional[datetime] = None


class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_id: int
    amount_delta: Decimal
    balance: str
    bucket: str
    reason: str
    penalty_amount: Decimal
    underflow: bool
    created_at: datetime


class LedgerEntriesResponse(BaseModel):
    creator_id: str
    entries: List[LedgerEntryResponse]


class ReconciliationResponse(BaseModel):
    creator_id: str
    balanced: bool
    entry_count: int
    counters: Dict[str, Decimal]
    derived: Dict[str, Decimal]
    drift: Dict[str, Decimal]
