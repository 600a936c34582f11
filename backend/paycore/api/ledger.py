"""Creator earnings read contract (payouts, analytics) - read only"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from paycore.core.security import require_internal_token
from paycore.db.session import get_db
from paycore.models.enums import EarningsBucket
from paycore.schemas.ledger import (
    LedgerEntriesResponse, LedgerEntryResponse, LedgerSummaryResponse, ReconciliationResponse
)
from paycore.services import ledger_service

router = APIRouter(
    prefix="/api/creators",
    tags=["earnings"],
    dependencies=[Depends(require_internal_token)]
)


@router.get("/{creator_id}/earnings", response_model=LedgerSummaryResponse)
def get_earnings(creator_id: str, db: Session = Depends(get_db)):
    return ledger_service.get_ledger_summary(db, creator_id)


@router.get("/{creator_id}/earnings/entries", response_model=LedgerEntriesResponse)
def get_earnings_entries(
    creator_id: str,
    start: Optional[datetime] = Query(None, description="Inclusive lower bound on created_at"),
    end: Optional[datetime] = Query(None, description="Exclusive upper bound on created_at"),
    bucket: Optional[EarningsBucket] = Query(None),
    limit: int = Query(500, ge=1, le=5000),
    db: Session = Depends(get_db)
):
    if start and end and start >= end:
        raise HTTPException(400, "start must be before end")
    entries = ledger_service.list_ledger_entries(db, creator_id, start=start, end=end, bucket=bucket, limit=limit)
    return LedgerEntriesResponse(
        creator_id=creator_id,
        entries=[LedgerEntryResponse.model_validate(entry) for entry in entries]
    )


@router.get("/{creator_id}/earnings/reconciliation", response_model=ReconciliationResponse)
def get_reconciliation(creator_id: str, db: Session = Depends(get_db)):
    """Compare cached counters against the effect log"""
    report = ledger_service.reconcile_ledger(db, creator_id)
    return ReconciliationResponse(
        creator_id=report.creator_id,
        balanced=report.balanced,
        entry_count=report.entry_count,
        counters=report.counters,
        derived=report.derived,
        drift=report.drift
    )
