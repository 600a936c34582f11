"""Event normalizer tests"""
import json
from decimal import Decimal

import pytest

from paycore.core.exceptions import MalformedEvent
from paycore.schemas.events import CustomFieldsEncoding, EventKind
from paycore.services.normalizer import (
    classify_kind, derive_event_id, normalize_event, parse_custom_fields, parse_payload
)


@pytest.mark.high
class TestEventKindClassification:
    """Every alias the processor uses collapses to one EventKind"""

    @pytest.mark.parametrize("raw,expected", [
        ("NewSaleSuccess", EventKind.NEW_SALE_SUCCESS),
        ("new_sale_success", EventKind.NEW_SALE_SUCCESS),
        ("new-sale-success", EventKind.NEW_SALE_SUCCESS),
        ("NewSaleFailure", EventKind.NEW_SALE_FAILURE),
        ("RenewalSuccess", EventKind.RENEWAL_SUCCESS),
        ("renewal_failure", EventKind.RENEWAL_FAILURE),
        ("Cancellation", EventKind.CANCELLATION),
        ("Cancel", EventKind.CANCELLATION),
        ("Expiration", EventKind.EXPIRATION),
        ("Refund", EventKind.REFUND),
        ("Return", EventKind.REFUND),
        ("Chargeback", EventKind.CHARGEBACK),
        ("ChargebackReceived", EventKind.CHARGEBACK),
        ("Void", EventKind.VOID),
    ])
    def test_known_aliases(self, raw, expected):
        assert classify_kind(raw) == expected

    def test_unknown_kind_is_unrecognized(self):
        assert classify_kind("UpgradeSuccess") == EventKind.UNRECOGNIZED

    def test_unrecognized_is_not_an_alias(self):
        """The literal string 'unrecognized' must not pose as a handled kind"""
        assert classify_kind("unrecognized") == EventKind.UNRECOGNIZED


@pytest.mark.high
class TestCustomFields:
    """Custom fields arrive as an object, a JSON string or a query string"""

    def test_mapping(self):
        encoding, fields = parse_custom_fields({"transactionId": 42, "note": None})
        assert encoding == CustomFieldsEncoding.MAPPING
        assert fields == {"transactionId": "42"}

    def test_json_string(self):
        encoding, fields = parse_custom_fields('{"transactionId": "42", "source": "web"}')
        assert encoding == CustomFieldsEncoding.JSON
        assert fields == {"transactionId": "42", "source": "web"}

    def test_query_string(self):
        encoding, fields = parse_custom_fields("transactionId=42&source=web")
        assert encoding == CustomFieldsEncoding.QUERY_STRING
        assert fields == {"transactionId": "42", "source": "web"}

    def test_absent(self):
        assert parse_custom_fields(None) == (CustomFieldsEncoding.ABSENT, {})
        assert parse_custom_fields("   ") == (CustomFieldsEncoding.ABSENT, {})

    def test_invalid_json_is_malformed(self):
        with pytest.raises(MalformedEvent):
            parse_custom_fields('{"transactionId": ')

    def test_unsupported_type_is_malformed(self):
        with pytest.raises(MalformedEvent):
            parse_custom_fields(12345)


@pytest.mark.high
class TestParsePayload:
    """Body decoding for JSON and DataLink form posts"""

    def test_json_body(self):
        payload = parse_payload(b'{"eventType": "Refund", "eventId": "e1"}', "application/json")
        assert payload == {"eventType": "Refund", "eventId": "e1"}

    def test_json_detected_without_content_type(self):
        payload = parse_payload(b'  {"eventType": "Void"}')
        assert payload["eventType"] == "Void"

    def test_form_body(self):
        payload = parse_payload(
            b"eventType=NewSaleSuccess&transactionId=0111&accountingAmount=10.00",
            "application/x-www-form-urlencoded"
        )
        assert payload == {
            "eventType": "NewSaleSuccess",
            "transactionId": "0111",
            "accountingAmount": "10.00",
        }

    def test_empty_body(self):
        with pytest.raises(MalformedEvent):
            parse_payload(b"   ")

    def test_json_list_rejected(self):
        with pytest.raises(MalformedEvent):
            parse_payload(b'[{"eventType": "Refund"}]', "application/json")

    def test_broken_json_rejected(self):
        with pytest.raises(MalformedEvent):
            parse_payload(b'{"eventType": ', "application/json")

    def test_non_utf8_rejected(self):
        with pytest.raises(MalformedEvent):
            parse_payload(b"\xff\xfe\xfa", "text/plain")


@pytest.mark.critical
class TestNormalizeEvent:
    """Field name variants end up in one canonical event"""

    def test_camel_case_sale(self):
        event = normalize_event({
            "eventType": "NewSaleSuccess",
            "eventId": "evt-1",
            "transactionId": "0112233",
            "accountingAmount": "10",
            "currencyCode": "840",
            "customFields": json.dumps({"transactionId": "7"}),
        })
        assert event.kind == EventKind.NEW_SALE_SUCCESS
        assert event.raw_kind == "NewSaleSuccess"
        assert event.processor_event_id == "evt-1"
        assert event.derived_event_id is False
        assert event.processor_transaction_id == "0112233"
        assert event.amount == Decimal("10.00")
        assert event.currency == "USD"
        assert event.local_transaction_id == 7
        assert event.custom_fields_encoding == CustomFieldsEncoding.JSON

    def test_snake_case_variant_matches_camel_case(self):
        camel = normalize_event({
            "eventType": "Refund",
            "eventId": "evt-2",
            "transactionId": "abc",
            "customFields": {"transactionId": "9"},
        })
        snake = normalize_event({
            "event_type": "refund",
            "event_id": "evt-2",
            "transaction_id": "abc",
            "custom_fields": "transaction_id=9",
        })
        assert camel.kind == snake.kind == EventKind.REFUND
        assert camel.processor_transaction_id == snake.processor_transaction_id
        assert camel.local_transaction_id == snake.local_transaction_id == 9

    def test_merchant_invoice_id_fallback(self):
        event = normalize_event({"eventType": "NewSaleSuccess", "eventId": "e", "merchantInvoiceId": "15"})
        assert event.local_transaction_id == 15

    def test_missing_event_id_is_derived_deterministically(self):
        payload = {
            "eventType": "RenewalFailure",
            "subscriptionId": "sub-1",
            "transactionId": "t-9",
            "timestamp": "2026-01-01T00:00:00Z",
        }
        first = normalize_event(payload)
        second = normalize_event(dict(payload, eventType="renewal_failure"))
        assert first.derived_event_id is True
        assert first.processor_event_id.startswith("derived:")
        # Alias spelling does not change the derived ID
        assert first.processor_event_id == second.processor_event_id

    def test_derived_id_changes_with_timestamp(self):
        a = derive_event_id("RenewalFailure", None, "sub-1", "2026-01-01")
        b = derive_event_id("RenewalFailure", None, "sub-1", "2026-02-01")
        assert a != b

    def test_unrecognized_kind_keeps_raw_string(self):
        event = normalize_event({"eventType": "UpgradeSuccess", "eventId": "e-up"})
        assert event.kind == EventKind.UNRECOGNIZED
        assert event.raw_kind == "UpgradeSuccess"

    def test_missing_event_type(self):
        with pytest.raises(MalformedEvent):
            normalize_event({"eventId": "e"})

    @pytest.mark.parametrize("amount", ["-1.00", "ten", "NaN"])
    def test_invalid_amount(self, amount):
        with pytest.raises(MalformedEvent):
            normalize_event({"eventType": "Refund", "eventId": "e", "accountingAmount": amount})

    @pytest.mark.parametrize("local_id", ["abc", "0", "-4"])
    def test_invalid_local_reference(self, local_id):
        with pytest.raises(MalformedEvent):
            normalize_event({"eventType": "Refund", "eventId": "e", "customFields": {"transactionId": local_id}})

    def test_raw_payload_is_json_safe(self):
        event = normalize_event({"eventType": "Void", "eventId": "e", "amount": Decimal("1.50")})
        assert event.raw["amount"] == "1.50"
        # Survives the anomaly queue round trip
        restored = type(event).model_validate(event.model_dump(mode="json"))
        assert restored.model_dump() == event.model_dump()
