"""Subscription signup, reactivation and lookup (internal callers only)"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from paycore.core.exceptions import SubscriptionNotFound
from paycore.core.security import require_internal_token
from paycore.db.session import get_db
from paycore.schemas.subscriptions import SubscriptionCreateRequest, SubscriptionResponse
from paycore.services import subscription_service

router = APIRouter(
    prefix="/api/subscriptions",
    tags=["subscriptions"],
    dependencies=[Depends(require_internal_token)]
)
logger = logging.getLogger(__name__)


@router.post("", response_model=SubscriptionResponse, status_code=201)
def create_subscription(request: SubscriptionCreateRequest, db: Session = Depends(get_db)):
    """Record a signup (pending until the first successful charge)"""
    try:
        return subscription_service.create_subscription(
            db,
            payer_id=request.payer_id,
            creator_id=request.creator_id,
            tier=request.tier,
            amount=request.amount,
            processor_subscription_id=request.processor_subscription_id,
            billing_cycle=request.billing_cycle,
            cycle_length_days=request.cycle_length_days,
            currency=request.currency
        )
    except ValueError as e:
        raise HTTPException(400, str(e))


@router.post("/{subscription_id}/reactivate", response_model=SubscriptionResponse)
def reactivate_subscription(subscription_id: int, db: Session = Depends(get_db)):
    """Explicit path back from suspended; renewals are rejected until this is called"""
    return subscription_service.reactivate_subscription(db, subscription_id)


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
def read_subscription(subscription_id: int, db: Session = Depends(get_db)):
    subscription = subscription_service.get_subscription(db, subscription_id)
    if not subscription:
        raise SubscriptionNotFound(subscription_id)
    return subscription
