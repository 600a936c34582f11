"""
Event normalizer.

Turns the processor's heterogeneous wire payloads (camelCase or snake_case
field names, JSON or form encoded bodies, custom fields sent as an object,
a JSON string or a query string) into a single NormalizedEvent.
"""
import hashlib
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import parse_qsl

from paycore.core.exceptions import MalformedEvent
from paycore.schemas.events import CustomFieldsEncoding, EventKind, NormalizedEvent

logger = logging.getLogger(__name__)

# Field name variants seen on the wire, in lookup order
KIND_FIELDS = ("eventType", "event_type", "eventtype", "type")
EVENT_ID_FIELDS = ("eventId", "event_id", "processorEventId", "webhookId", "id")
TRANSACTION_ID_FIELDS = ("transactionId", "transaction_id", "processorTransactionId")
SUBSCRIPTION_ID_FIELDS = ("subscriptionId", "subscription_id", "processorSubscriptionId")
AMOUNT_FIELDS = ("accountingAmount", "accounting_amount", "amount", "billedAmount")
CURRENCY_FIELDS = ("currencyCode", "currency_code", "accountingCurrency", "currency")
REASON_FIELDS = ("declineReason", "decline_reason", "reason", "cancellationReason", "failureReason")
TIMESTAMP_FIELDS = ("timestamp", "eventTime", "event_time")
CUSTOM_FIELDS_FIELDS = ("customFields", "custom_fields", "X-customFields")
# Where the local Transaction.id comes back
LOCAL_ID_CUSTOM_FIELDS = ("transactionId", "transaction_id", "localTransactionId")
LOCAL_ID_TOP_LEVEL_FIELDS = ("merchantInvoiceId", "merchant_invoice_id")

# ISO 4217 numeric codes the processor uses in currencyCode
NUMERIC_CURRENCY_CODES = {
    "840": "USD",
    "978": "EUR",
    "826": "GBP",
    "124": "CAD",
    "036": "AUD",
    "392": "JPY",
}


def _alias_key(value: str) -> str:
    return "".join(ch for ch in value.lower() if ch.isalnum())


# NewSaleSuccess, new_sale_success and new-sale-success all map to one key
KIND_ALIASES: Dict[str, EventKind] = {
    _alias_key(kind.value): kind for kind in EventKind if kind is not EventKind.UNRECOGNIZED
}
KIND_ALIASES.update({
    _alias_key("Chargeback"): EventKind.CHARGEBACK,
    _alias_key("ChargebackReceived"): EventKind.CHARGEBACK,
    _alias_key("Return"): EventKind.REFUND,
    _alias_key("Expire"): EventKind.EXPIRATION,
    _alias_key("Cancel"): EventKind.CANCELLATION,
})


def classify_kind(raw_kind: str) -> EventKind:
    return KIND_ALIASES.get(_alias_key(raw_kind), EventKind.UNRECOGNIZED)


def _first(payload: Mapping[str, Any], names) -> Optional[Any]:
    for name in names:
        value = payload.get(name)
        if value is not None and value != "":
            return value
    return None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip() or None


# Custom fields: tagged union, one decoder per encoding

def detect_custom_fields_encoding(value: Any) -> CustomFieldsEncoding:
    if value is None:
        return CustomFieldsEncoding.ABSENT
    if isinstance(value, Mapping):
        return CustomFieldsEncoding.MAPPING
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return CustomFieldsEncoding.ABSENT
        if stripped.startswith("{"):
            return CustomFieldsEncoding.JSON
        return CustomFieldsEncoding.QUERY_STRING
    raise MalformedEvent(
        "Unsupported custom fields type",
        details={"type": type(value).__name__}
    )


def _decode_mapping(value: Any) -> Dict[str, str]:
    return {str(k): str(v) for k, v in value.items() if v is not None}


def _decode_json(value: Any) -> Dict[str, str]:
    try:
        decoded = json.loads(value)
    except json.JSONDecodeError as e:
        raise MalformedEvent(f"Custom fields are not valid JSON: {e}")
    if not isinstance(decoded, dict):
        raise MalformedEvent("Custom fields JSON must be an object")
    return _decode_mapping(decoded)


def _decode_query_string(value: Any) -> Dict[str, str]:
    return dict(parse_qsl(value.strip(), keep_blank_values=False))


def _decode_absent(value: Any) -> Dict[str, str]:
    return {}


CUSTOM_FIELDS_DECODERS: Dict[CustomFieldsEncoding, Callable[[Any], Dict[str, str]]] = {
    CustomFieldsEncoding.MAPPING: _decode_mapping,
    CustomFieldsEncoding.JSON: _decode_json,
    CustomFieldsEncoding.QUERY_STRING: _decode_query_string,
    CustomFieldsEncoding.ABSENT: _decode_absent,
}

_missing_decoders = set(CustomFieldsEncoding) - set(CUSTOM_FIELDS_DECODERS)
if _missing_decoders:
    raise RuntimeError(f"No custom fields decoder for: {sorted(e.value for e in _missing_decoders)}")


def parse_custom_fields(value: Any) -> Tuple[CustomFieldsEncoding, Dict[str, str]]:
    encoding = detect_custom_fields_encoding(value)
    return encoding, CUSTOM_FIELDS_DECODERS[encoding](value)


# Body parsing

def parse_payload(raw_body: bytes, content_type: Optional[str] = None) -> Dict[str, Any]:
    """Decode a webhook body into a flat mapping.

    JSON bodies must be objects. Anything else is treated as
    application/x-www-form-urlencoded, which is how DataLink posts.
    """
    if not raw_body or not raw_body.strip():
        raise MalformedEvent("Empty webhook body")

    try:
        text = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        raise MalformedEvent("Webhook body is not UTF-8")

    content_type = (content_type or "").lower()
    looks_like_json = text.lstrip().startswith(("{", "["))

    if "json" in content_type or looks_like_json:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedEvent(f"Invalid JSON body: {e}")
        if not isinstance(payload, dict):
            raise MalformedEvent("JSON body must be an object")
        return payload

    pairs = parse_qsl(text, keep_blank_values=True)
    if not pairs:
        raise MalformedEvent("Unrecognized webhook body encoding")
    return dict(pairs)


def derive_event_id(
    raw_kind: str,
    processor_transaction_id: Optional[str],
    processor_subscription_id: Optional[str],
    timestamp: Optional[str]
) -> str:
    """Deterministic ID for processors that do not send one"""
    material = "|".join([
        _alias_key(raw_kind),
        processor_transaction_id or "",
        processor_subscription_id or "",
        timestamp or "",
    ])
    return "derived:" + hashlib.sha256(material.encode()).hexdigest()[:40]


def _parse_amount(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise MalformedEvent(f"Invalid amount: {value!r}")
    if not amount.is_finite() or amount < 0:
        raise MalformedEvent(f"Invalid amount: {value!r}")
    return amount.quantize(Decimal("0.01"))


def _parse_currency(value: Any) -> Optional[str]:
    text = _as_text(value)
    if text is None:
        return None
    if text.isdigit():
        return NUMERIC_CURRENCY_CODES.get(text.zfill(3), text)
    return text.upper()


def _parse_local_id(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        local_id = int(str(value).strip())
    except ValueError:
        raise MalformedEvent(f"Invalid local transaction reference: {value!r}")
    if local_id <= 0:
        raise MalformedEvent(f"Invalid local transaction reference: {value!r}")
    return local_id


def normalize_event(payload: Mapping[str, Any]) -> NormalizedEvent:
    """Build the canonical event or raise MalformedEvent"""
    if not isinstance(payload, Mapping):
        raise MalformedEvent("Event payload must be a mapping")

    raw_kind = _as_text(_first(payload, KIND_FIELDS))
    if raw_kind is None:
        raise MalformedEvent("Event has no event type")
    kind = classify_kind(raw_kind)

    transaction_id = _as_text(_first(payload, TRANSACTION_ID_FIELDS))
    subscription_id = _as_text(_first(payload, SUBSCRIPTION_ID_FIELDS))
    timestamp = _as_text(_first(payload, TIMESTAMP_FIELDS))

    event_id = _as_text(_first(payload, EVENT_ID_FIELDS))
    derived = event_id is None
    if derived:
        event_id = derive_event_id(raw_kind, transaction_id, subscription_id, timestamp)

    encoding, custom_fields = parse_custom_fields(_first(payload, CUSTOM_FIELDS_FIELDS))

    local_id = _parse_local_id(
        _first(custom_fields, LOCAL_ID_CUSTOM_FIELDS) or _first(payload, LOCAL_ID_TOP_LEVEL_FIELDS)
    )

    event = NormalizedEvent(
        kind=kind,
        raw_kind=raw_kind,
        processor_event_id=event_id,
        derived_event_id=derived,
        processor_transaction_id=transaction_id,
        processor_subscription_id=subscription_id,
        amount=_parse_amount(_first(payload, AMOUNT_FIELDS)),
        currency=_parse_currency(_first(payload, CURRENCY_FIELDS)),
        local_transaction_id=local_id,
        custom_fields=custom_fields,
        custom_fields_encoding=encoding,
        reason=_as_text(_first(payload, REASON_FIELDS)),
        timestamp=timestamp,
        raw=json.loads(json.dumps(dict(payload), default=str))
    )

    if derived:
        logger.info(f"Event {raw_kind} carried no event ID, derived {event_id}")
    return event
