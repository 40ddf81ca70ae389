"""
Event envelope and the closed registry of event kinds.

Every message on the broker is exactly one ``EventEnvelope`` serialized as UTF-8
JSON with camelCase keys::

    {"kind": "invoice_generation", "id": "...", "occurredAt": "...",
     "payload": {"orderId": "O-1001", "orderNumber": "...", ...}}

Payload shapes are part of the producer/handler contract. They evolve by adding
optional fields only; unknown fields sent by a newer producer are ignored.
"""
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Type, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from dispatcher.core.exceptions import MalformedMessageException


class EventKind(str, Enum):
    LOW_STOCK_ALERT = "low_stock_alert"
    NEW_CUSTOMER_REGISTRATION = "new_customer_registration"
    NEW_PRODUCT_CREATION = "new_product_creation"
    NEW_ORDER_CREATION = "new_order_creation"
    INVOICE_GENERATION = "invoice_generation"


class EventPayload(BaseModel):
    """Base for kind-specific payloads; camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class LowStockAlertPayload(EventPayload):
    product_id: str
    product_name: str
    current_stock: int
    threshold: int


class NewCustomerRegistrationPayload(EventPayload):
    customer_id: str
    customer_email: str
    customer_name: str


class NewProductCreationPayload(EventPayload):
    product_id: str
    product_name: str
    admin_id: str


class NewOrderCreationPayload(EventPayload):
    order_id: str
    order_number: str
    customer_email: Optional[str] = None
    customer_id: Optional[str] = None
    total: float


class InvoiceGenerationPayload(EventPayload):
    order_id: str
    order_number: str
    customer_email: Optional[str] = None
    customer_id: Optional[str] = None
    # Full order snapshot at the time the invoice was requested
    order_data: Dict[str, Any] = Field(default_factory=dict)


PAYLOAD_MODELS: Dict[EventKind, Type[EventPayload]] = {
    EventKind.LOW_STOCK_ALERT: LowStockAlertPayload,
    EventKind.NEW_CUSTOMER_REGISTRATION: NewCustomerRegistrationPayload,
    EventKind.NEW_PRODUCT_CREATION: NewProductCreationPayload,
    EventKind.NEW_ORDER_CREATION: NewOrderCreationPayload,
    EventKind.INVOICE_GENERATION: InvoiceGenerationPayload,
}

AnyPayload = Union[
    LowStockAlertPayload,
    NewCustomerRegistrationPayload,
    NewProductCreationPayload,
    NewOrderCreationPayload,
    InvoiceGenerationPayload,
]


def new_event_id() -> str:
    return str(uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EventEnvelope(BaseModel):
    """Transport wrapper around a domain event: kind, id, timestamp and payload."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    kind: EventKind
    id: str = Field(default_factory=new_event_id, min_length=1)
    occurred_at: datetime = Field(default_factory=utc_now)
    payload: AnyPayload

    @model_validator(mode="before")
    @classmethod
    def _coerce_payload(cls, data: Any) -> Any:
        # Pick the payload model from the kind instead of letting the union guess;
        # new_order_creation and invoice_generation payloads overlap.
        if not isinstance(data, dict):
            return data
        kind = data.get("kind")
        payload = data.get("payload")
        try:
            kind = EventKind(kind)
        except (TypeError, ValueError):
            return data
        model = PAYLOAD_MODELS[kind]
        if isinstance(payload, dict):
            data = {**data, "payload": model.model_validate(payload)}
        return data

    @field_validator("occurred_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _check_payload_matches_kind(self) -> "EventEnvelope":
        expected = PAYLOAD_MODELS[self.kind]
        if type(self.payload) is not expected:
            raise ValueError(
                f"payload for {self.kind.value} must be {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )
        return self

    @classmethod
    def create(cls, kind: EventKind, **payload_fields: Any) -> "EventEnvelope":
        """Builds an envelope with a fresh id and timestamp from snake_case payload fields."""
        payload = PAYLOAD_MODELS[kind](**payload_fields)
        return cls(kind=kind, payload=payload)

    def serialize(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def deserialize(cls, body: bytes) -> "EventEnvelope":
        """
        Decode a message body into an envelope.

        Raises:
            MalformedMessageException: body is not UTF-8 JSON or does not describe a known kind
        """
        try:
            return cls.model_validate(json.loads(body))
        except ValidationError as e:
            raise MalformedMessageException(
                message=f"Undecodable event envelope: {e.error_count()} error(s)",
                errors=e.errors(include_url=False, include_context=False, include_input=False),
            ) from e
        except (UnicodeDecodeError, ValueError, TypeError, RecursionError) as e:
            raise MalformedMessageException(message=f"Undecodable event envelope: {e}") from e
