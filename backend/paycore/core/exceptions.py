"""
Error taxonomy for payment event reconciliation.

Every failure the core can produce is a PaymentCoreError with a stable
error code. Only AuthenticationFailure ever reaches the payment processor
as a non-2xx response; the rest are absorbed by the webhook endpoint and
recorded in the anomaly queue.
"""

from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse


class PaymentCoreError(Exception):
    """Base payment core exception."""

    error_code = "ERR_PAYMENT_CORE"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    # Retryable errors are replayed by the anomaly drain task
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class AuthenticationFailure(PaymentCoreError):
    """Inbound event could not be attributed to the payment processor."""

    error_code = "ERR_AUTH_001"
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str = "Invalid webhook credentials"):
        super().__init__(message)


class MalformedEvent(PaymentCoreError):
    """Payload cannot be parsed into a processor event."""

    error_code = "ERR_EVENT_MALFORMED"
    status_code = status.HTTP_400_BAD_REQUEST


class DuplicateEvent(PaymentCoreError):
    """Processor event was already applied."""

    error_code = "ERR_EVENT_DUPLICATE"
    status_code = status.HTTP_200_OK

    def __init__(self, processor_event_id: str, previous_result: Optional[Dict[str, Any]] = None):
        self.processor_event_id = processor_event_id
        self.previous_result = previous_result or {}
        super().__init__(
            f"Event {processor_event_id} already applied",
            details={"processor_event_id": processor_event_id, "result": self.previous_result}
        )


class InvalidTransition(PaymentCoreError):
    """Requested state edge is not allowed from the current state."""

    error_code = "ERR_STATE_TRANSITION"
    status_code = status.HTTP_409_CONFLICT
    retryable = True

    def __init__(self, entity: str, entity_id: Any, current: str, requested: str):
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"{entity} {entity_id} cannot move from '{current}' to '{requested}'",
            details={"entity": entity, "id": entity_id, "current": current, "requested": requested}
        )


class AlreadyApplied(PaymentCoreError):
    """A concurrent writer already moved the record to the requested state."""

    error_code = "ERR_STATE_ALREADY_APPLIED"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, entity: str, entity_id: Any, state: str):
        super().__init__(
            f"{entity} {entity_id} is already '{state}'",
            details={"entity": entity, "id": entity_id, "state": state}
        )


class LedgerUnderflow(PaymentCoreError):
    """A reversal took a creator balance below zero (alert only, never blocks)."""

    error_code = "ERR_LEDGER_UNDERFLOW"
    status_code = status.HTTP_200_OK


class NotFound(PaymentCoreError):
    """Referenced record does not exist locally."""

    error_code = "ERR_NOT_FOUND_001"
    status_code = status.HTTP_404_NOT_FOUND
    retryable = True

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(message, details={"resource": resource, "id": resource_id})


class TransactionNotFound(NotFound):
    def __init__(self, transaction_ref: Any = None):
        super().__init__("Transaction", transaction_ref)


class SubscriptionNotFound(NotFound):
    def __init__(self, subscription_ref: Any = None):
        super().__init__("Subscription", subscription_ref)


class SubscriptionConflict(PaymentCoreError):
    """Payer already has an active subscription to this creator."""

    error_code = "ERR_SUBSCRIPTION_CONFLICT"
    status_code = status.HTTP_409_CONFLICT


async def payment_core_exception_handler(request: Request, exc: PaymentCoreError) -> JSONResponse:
    """Handler for payment core exceptions raised from internal API routes."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )
