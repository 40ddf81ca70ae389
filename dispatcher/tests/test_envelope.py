"""
Tests for the event envelope: wire format, decoding failures and round-trip.
"""
import json
from datetime import datetime, timezone

import pytest
from hypothesis import given, settings as hypothesis_settings, strategies as st
from pydantic import ValidationError

from dispatcher.core.events.envelope import (
    EventEnvelope,
    EventKind,
    InvoiceGenerationPayload,
    LowStockAlertPayload,
    NewProductCreationPayload,
    PAYLOAD_MODELS,
)
from dispatcher.core.exceptions import MalformedMessageException


safe_text = st.text(alphabet=st.characters(blacklist_categories=("Cs",)), min_size=1, max_size=30)
optional_text = st.one_of(st.none(), safe_text)
amounts = st.floats(min_value=0, max_value=1e9, allow_nan=False, allow_infinity=False)
timestamps = st.datetimes(
    min_value=datetime(2000, 1, 1),
    max_value=datetime(2100, 1, 1),
    timezones=st.just(timezone.utc),
)
json_values = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(min_value=-(2 ** 53), max_value=2 ** 53),
    safe_text,
)

payload_strategies = {
    EventKind.LOW_STOCK_ALERT: st.fixed_dictionaries({
        "product_id": safe_text,
        "product_name": safe_text,
        "current_stock": st.integers(min_value=0, max_value=10 ** 6),
        "threshold": st.integers(min_value=0, max_value=10 ** 6),
    }),
    EventKind.NEW_CUSTOMER_REGISTRATION: st.fixed_dictionaries({
        "customer_id": safe_text,
        "customer_email": safe_text,
        "customer_name": safe_text,
    }),
    EventKind.NEW_PRODUCT_CREATION: st.fixed_dictionaries({
        "product_id": safe_text,
        "product_name": safe_text,
        "admin_id": safe_text,
    }),
    EventKind.NEW_ORDER_CREATION: st.fixed_dictionaries({
        "order_id": safe_text,
        "order_number": safe_text,
        "customer_email": optional_text,
        "customer_id": optional_text,
        "total": amounts,
    }),
    EventKind.INVOICE_GENERATION: st.fixed_dictionaries({
        "order_id": safe_text,
        "order_number": safe_text,
        "customer_email": optional_text,
        "customer_id": optional_text,
        "order_data": st.dictionaries(safe_text, json_values, max_size=5),
    }),
}


@st.composite
def envelopes(draw):
    kind = draw(st.sampled_from(list(EventKind)))
    payload = PAYLOAD_MODELS[kind](**draw(payload_strategies[kind]))
    return EventEnvelope(
        kind=kind,
        id=draw(safe_text),
        occurred_at=draw(timestamps),
        payload=payload,
    )


class TestEnvelopeRoundTrip:
    @given(envelope=envelopes())
    @hypothesis_settings(max_examples=200)
    def test_serialize_then_deserialize_preserves_every_field(self, envelope):
        decoded = EventEnvelope.deserialize(envelope.serialize())

        assert decoded == envelope
        assert decoded.kind is envelope.kind
        assert type(decoded.payload) is type(envelope.payload)


class TestEnvelopeWireFormat:
    def test_create_assigns_id_and_utc_timestamp(self):
        envelope = EventEnvelope.create(
            EventKind.NEW_PRODUCT_CREATION, product_id="P-1", product_name="Lamp", admin_id="A-1"
        )

        assert envelope.id
        assert envelope.occurred_at.tzinfo is not None
        assert isinstance(envelope.payload, NewProductCreationPayload)

    def test_ids_are_unique(self):
        ids = {
            EventEnvelope.create(EventKind.NEW_PRODUCT_CREATION, product_id="P", product_name="N", admin_id="A").id
            for _ in range(50)
        }
        assert len(ids) == 50

    def test_serialized_keys_are_camel_case(self, sample_invoice):
        data = json.loads(sample_invoice.serialize())

        assert set(data) == {"kind", "id", "occurredAt", "payload"}
        assert data["kind"] == "invoice_generation"
        assert data["payload"]["orderId"] == "O-1001"
        assert data["payload"]["orderData"]["shippingAddress"]["email"] == "buyer@example.com"

    def test_unknown_payload_fields_are_ignored(self):
        body = json.dumps({
            "kind": "low_stock_alert",
            "id": "evt-1",
            "occurredAt": "2024-05-01T10:00:00Z",
            "payload": {
                "productId": "P-1",
                "productName": "Lamp",
                "currentStock": 1,
                "threshold": 3,
                "warehouse": "added-by-newer-producer",
            },
        }).encode()

        envelope = EventEnvelope.deserialize(body)

        assert isinstance(envelope.payload, LowStockAlertPayload)
        assert envelope.payload.product_id == "P-1"

    def test_naive_timestamp_is_read_as_utc(self):
        body = json.dumps({
            "kind": "new_product_creation",
            "id": "evt-2",
            "occurredAt": "2024-05-01T10:00:00",
            "payload": {"productId": "P-1", "productName": "Lamp", "adminId": "A-1"},
        }).encode()

        envelope = EventEnvelope.deserialize(body)

        assert envelope.occurred_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    def test_overlapping_payloads_follow_the_kind(self):
        # An order payload would also satisfy the invoice model; the kind decides.
        body = json.dumps({
            "kind": "invoice_generation",
            "id": "evt-3",
            "occurredAt": "2024-05-01T10:00:00Z",
            "payload": {"orderId": "O-1", "orderNumber": "N-1", "total": 10},
        }).encode()

        envelope = EventEnvelope.deserialize(body)

        assert isinstance(envelope.payload, InvoiceGenerationPayload)
        assert envelope.payload.order_data == {}

    def test_payload_must_match_kind(self):
        with pytest.raises(ValidationError):
            EventEnvelope(
                kind=EventKind.LOW_STOCK_ALERT,
                payload=NewProductCreationPayload(product_id="P", product_name="N", admin_id="A"),
            )

    def test_envelope_is_immutable(self, sample_low_stock):
        with pytest.raises(ValidationError):
            sample_low_stock.id = "other"


class TestMalformedMessages:
    @pytest.mark.parametrize("body", [
        b"not json at all",
        b"\xff\xfe\x00garbage",
        b"[]",
        b'{"kind": "refund_issued", "id": "x", "payload": {}}',
        b'{"kind": "low_stock_alert", "id": "x", "payload": {"productId": "P"}}',
        b'{"kind": "low_stock_alert", "id": "", "payload": {"productId": "P", "productName": "N", "currentStock": 1, "threshold": 2}}',
    ])
    def test_undecodable_bodies_raise_malformed_message(self, body):
        with pytest.raises(MalformedMessageException) as exc_info:
            EventEnvelope.deserialize(body)

        assert exc_info.value.error_code == "MALFORMED_MESSAGE"

    def test_validation_errors_are_reported(self):
        with pytest.raises(MalformedMessageException) as exc_info:
            EventEnvelope.deserialize(b'{"kind": "new_product_creation", "id": "x", "payload": {}}')

        assert exc_info.value.errors
        assert exc_info.value.to_dict()["details"]["errors"]

    def test_deeply_nested_body_raises_malformed_message(self):
        body = b"[" * 200000 + b"]" * 200000

        with pytest.raises(MalformedMessageException):
            EventEnvelope.deserialize(body)
