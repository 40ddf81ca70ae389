"""
Consumer tasks: one handler per event kind, notifying admins or customers via Mailgun
"""
import logging
from abc import abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from dispatcher.core.events.envelope import (
    EventEnvelope,
    EventKind,
    InvoiceGenerationPayload,
    LowStockAlertPayload,
    NewCustomerRegistrationPayload,
    NewOrderCreationPayload,
    NewProductCreationPayload,
)
from dispatcher.core.events.handlers import EventHandler, HandlerRegistry
from dispatcher.core.exceptions import HandlerException
from dispatcher.services.dispatch_records import DispatchRecordService
from dispatcher.services.email import EmailService

logger = logging.getLogger(__name__)


def _format_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime("%B %d, %Y")
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).strftime("%B %d, %Y")
        except ValueError:
            return value
    return ""


class NotificationHandler(EventHandler):
    """
    Shared flow: skip already-recorded ids, send, raise when the send fails,
    record the outcome.
    """

    def __init__(self, email: EmailService, records: DispatchRecordService, admin_email: str):
        self.email = email
        self.records = records
        self.admin_email = admin_email

    async def process(self, envelope: EventEnvelope) -> None:
        log_context = {"event_kind": envelope.kind.value, "event_id": envelope.id}
        if await self.records.is_processed(envelope.id):
            logger.info(f"Event {envelope.id} already processed, skipping", extra=log_context)
            return

        summary = await self.notify(envelope)
        await self.records.mark_processed(envelope, summary)
        logger.info(f"✅ {envelope.kind.value} event {envelope.id} handled", extra=log_context)

    @abstractmethod
    async def notify(self, envelope: EventEnvelope) -> Dict[str, Any]:
        """Send the notification and return the summary stored with the dispatch record."""

    async def _send_admin(self, envelope: EventEnvelope, mail_type: str, context: Dict[str, Any]) -> Dict[str, Any]:
        sent = await self.email.send_admin_notification(self.admin_email, mail_type, context)
        if not sent:
            raise HandlerException(
                f"Failed to send {mail_type} notification to admin",
                kind=envelope.kind.value,
                event_id=envelope.id,
            )
        return {"notified": [self.admin_email], "mail_type": mail_type}


class LowStockAlertHandler(NotificationHandler):
    kind = EventKind.LOW_STOCK_ALERT

    async def notify(self, envelope: EventEnvelope) -> Dict[str, Any]:
        payload: LowStockAlertPayload = envelope.payload
        return await self._send_admin(envelope, "low_stock_alert", {
            "product_id": payload.product_id,
            "product_name": payload.product_name,
            "current_stock": payload.current_stock,
            "threshold": payload.threshold,
        })


class NewCustomerRegistrationHandler(NotificationHandler):
    kind = EventKind.NEW_CUSTOMER_REGISTRATION

    async def notify(self, envelope: EventEnvelope) -> Dict[str, Any]:
        payload: NewCustomerRegistrationPayload = envelope.payload
        return await self._send_admin(envelope, "new_customer", {
            "customer_id": payload.customer_id,
            "customer_email": payload.customer_email,
            "customer_name": payload.customer_name,
            "registered_at": _format_date(envelope.occurred_at),
        })


class NewProductCreationHandler(NotificationHandler):
    kind = EventKind.NEW_PRODUCT_CREATION

    async def notify(self, envelope: EventEnvelope) -> Dict[str, Any]:
        payload: NewProductCreationPayload = envelope.payload
        return await self._send_admin(envelope, "new_product", {
            "product_id": payload.product_id,
            "product_name": payload.product_name,
            "admin_id": payload.admin_id,
            "created_at": _format_date(envelope.occurred_at),
        })


class NewOrderCreationHandler(NotificationHandler):
    kind = EventKind.NEW_ORDER_CREATION

    async def notify(self, envelope: EventEnvelope) -> Dict[str, Any]:
        payload: NewOrderCreationPayload = envelope.payload
        return await self._send_admin(envelope, "new_order", {
            "order_id": payload.order_id,
            "order_number": payload.order_number,
            "customer_email": payload.customer_email,
            "customer_id": payload.customer_id,
            "total": payload.total,
            "placed_at": _format_date(envelope.occurred_at),
        })


class InvoiceGenerationHandler(NotificationHandler):
    """
    Records the invoice request with the order snapshot and mails the customer
    when an address is known. Guest orders without an email are recorded only.
    """
    kind = EventKind.INVOICE_GENERATION

    @staticmethod
    def _items(order_data: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [
            {
                "name": item.get("name", "Item"),
                "variant": item.get("variant"),
                "quantity": item.get("quantity", 1),
                "price": item.get("price"),
            }
            for item in order_data.get("items") or []
            if isinstance(item, dict)
        ]

    async def notify(self, envelope: EventEnvelope) -> Dict[str, Any]:
        payload: InvoiceGenerationPayload = envelope.payload
        order_data = payload.order_data
        shipping = order_data.get("shippingAddress") or {}
        recipient: Optional[str] = payload.customer_email or shipping.get("email")

        summary = {
            "order_id": payload.order_id,
            "order_number": payload.order_number,
            "customer_id": payload.customer_id,
            "order_data": order_data,
            "notified": [],
        }

        if not recipient:
            logger.info(
                f"No customer email for order {payload.order_id}, invoice recorded but not sent",
                extra={"event_kind": envelope.kind.value, "event_id": envelope.id},
            )
            return summary

        context = {
            "customer_name": shipping.get("name"),
            "order_number": payload.order_number,
            "order_date": _format_date(order_data.get("createdAt")) or _format_date(envelope.occurred_at),
            "total": order_data.get("total"),
            "payment_method": order_data.get("paymentMethod"),
            "delivery_type": order_data.get("deliveryType"),
            "items": self._items(order_data),
        }
        if not await self.email.send_invoice_email(recipient, context):
            raise HandlerException(
                f"Failed to send invoice email for order {payload.order_id}",
                kind=envelope.kind.value,
                event_id=envelope.id,
            )
        summary["notified"] = [recipient]
        return summary


HANDLER_CLASSES = [
    LowStockAlertHandler,
    NewCustomerRegistrationHandler,
    NewProductCreationHandler,
    NewOrderCreationHandler,
    InvoiceGenerationHandler,
]


def build_registry(email: EmailService, records: DispatchRecordService, admin_email: str) -> HandlerRegistry:
    """One handler instance per kind; raises ConfigurationException if any kind is left uncovered."""
    registry = HandlerRegistry(cls(email, records, admin_email) for cls in HANDLER_CLASSES)
    registry.validate()
    return registry
