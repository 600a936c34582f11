"""Canonical processor event produced by the normalizer"""
import enum
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventKind(str, enum.Enum):
    """Closed set of processor event kinds. Nothing downstream sees raw strings."""
    NEW_SALE_SUCCESS = "new_sale_success"
    NEW_SALE_FAILURE = "new_sale_failure"
    RENEWAL_SUCCESS = "renewal_success"
    RENEWAL_FAILURE = "renewal_failure"
    CANCELLATION = "cancellation"
    EXPIRATION = "expiration"
    REFUND = "refund"
    CHARGEBACK = "chargeback"
    VOID = "void"
    UNRECOGNIZED = "unrecognized"


class CustomFieldsEncoding(str, enum.Enum):
    """How the correlation bag arrived on the wire"""
    MAPPING = "mapping"  # Already an object
    JSON = "json"  # JSON object encoded as a string
    QUERY_STRING = "query_string"  # a=1&b=2
    ABSENT = "absent"


class NormalizedEvent(BaseModel):
    """One processor notification after field-name and encoding cleanup"""
    model_config = ConfigDict(frozen=True)

    kind: EventKind
    raw_kind: str
    processor_event_id: str
    # True when the processor sent no event ID and one was derived
    derived_event_id: bool = False
    processor_transaction_id: Optional[str] = None
    processor_subscription_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    # Local Transaction.id round-tripped through the custom fields
    local_transaction_id: Optional[int] = None
    custom_fields: Dict[str, str] = Field(default_factory=dict)
    custom_fields_encoding: CustomFieldsEncoding = CustomFieldsEncoding.ABSENT
    reason: Optional[str] = None  # Decline / cancellation reason
    timestamp: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)
