"""Charge initiation and transaction lookup (internal callers only)"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from paycore.core.exceptions import TransactionNotFound
from paycore.core.security import require_internal_token
from paycore.db.session import get_db
from paycore.schemas.transactions import ChargeRequest, ChargeResponse, TransactionResponse
from paycore.services.transaction_service import get_transaction, initiate_charge

router = APIRouter(
    prefix="/api/transactions",
    tags=["transactions"],
    dependencies=[Depends(require_internal_token)]
)
logger = logging.getLogger(__name__)


@router.post("", response_model=ChargeResponse, status_code=201)
def create_charge(charge: ChargeRequest, db: Session = Depends(get_db)):
    """Create a pending transaction; its id goes into the charge request's custom fields"""
    try:
        transaction = initiate_charge(
            db,
            payer_id=charge.payer_id,
            creator_id=charge.creator_id,
            amount=charge.amount,
            kind=charge.kind,
            target_id=charge.target_id,
            currency=charge.currency,
            subscription_id=charge.subscription_id
        )
    except ValueError as e:
        raise HTTPException(400, str(e))
    return ChargeResponse(transaction_id=transaction.id, status=transaction.status)


@router.get("/{transaction_id}", response_model=TransactionResponse)
def read_transaction(transaction_id: int, db: Session = Depends(get_db)):
    transaction = get_transaction(db, transaction_id)
    if not transaction:
        raise TransactionNotFound(transaction_id)
    return transaction
