"""
Event Publisher Module - Handles publishing events to the message broker
"""
import logging
from typing import Any, Dict, Optional

from aio_pika import DeliveryMode, Message

from dispatcher.core.events.connection import BrokerConnection
from dispatcher.core.events.envelope import EventEnvelope, EventKind
from dispatcher.core.events.topology import topology_entry_for
from dispatcher.core.exceptions import BrokerConnectionException

logger = logging.getLogger(__name__)


class EventPublisher:
    """
    Event publisher for routing envelopes to their kind's queue through the topic exchange
    """

    def __init__(self, connection: BrokerConnection):
        self.connection = connection

    def build_message(self, envelope: EventEnvelope) -> Message:
        return Message(
            body=envelope.serialize(),
            content_type="application/json",
            content_encoding="utf-8",
            message_id=envelope.id,
            timestamp=envelope.occurred_at,
            type=envelope.kind.value,
            delivery_mode=DeliveryMode.PERSISTENT,
        )

    async def publish(self, envelope: EventEnvelope) -> bool:
        """
        Publish an envelope to the exchange with its kind's routing key.

        Returns:
            bool: True when the broker accepted the hand-off, False otherwise.
            True does not prove the message was durably stored.

        Raises:
            UnknownEventKindException: the kind has no topology entry
            BrokerConnectionException: a lazy connect was needed and failed
        """
        entry = topology_entry_for(envelope.kind)

        if not self.connection.is_ready():
            await self.connection.connect()

        topology = self.connection.topology
        if topology is None:
            raise BrokerConnectionException("Topology not declared on the current channel")

        log_context = {"event_kind": envelope.kind.value, "event_id": envelope.id, "routing_key": entry.routing_key}
        try:
            await topology.exchange.publish(self.build_message(envelope), routing_key=entry.routing_key)
        except Exception as e:
            logger.error(f"Failed to publish event {envelope.kind.value}: {e}", extra=log_context, exc_info=True)
            return False

        logger.info(f"Event published successfully: {envelope.kind.value}", extra=log_context)
        return True

    async def publish_low_stock_alert(
        self,
        product_id: str,
        product_name: str,
        current_stock: int,
        threshold: int
    ) -> bool:
        """
        Publish low stock alert event

        Args:
            product_id: Product that crossed the threshold
            product_name: Display name used in the admin notification
            current_stock: Units left
            threshold: Configured low-stock threshold

        Returns:
            bool: True if handed off to the broker, False otherwise
        """
        return await self.publish(EventEnvelope.create(
            EventKind.LOW_STOCK_ALERT,
            product_id=product_id,
            product_name=product_name,
            current_stock=current_stock,
            threshold=threshold,
        ))

    async def publish_new_customer_registration(
        self,
        customer_id: str,
        customer_email: str,
        customer_name: str
    ) -> bool:
        """Publish new customer registration event"""
        return await self.publish(EventEnvelope.create(
            EventKind.NEW_CUSTOMER_REGISTRATION,
            customer_id=customer_id,
            customer_email=customer_email,
            customer_name=customer_name,
        ))

    async def publish_new_product_creation(self, product_id: str, product_name: str, admin_id: str) -> bool:
        """Publish new product creation event"""
        return await self.publish(EventEnvelope.create(
            EventKind.NEW_PRODUCT_CREATION,
            product_id=product_id,
            product_name=product_name,
            admin_id=admin_id,
        ))

    async def publish_new_order_creation(
        self,
        order_id: str,
        order_number: str,
        total: float,
        customer_email: Optional[str] = None,
        customer_id: Optional[str] = None
    ) -> bool:
        """
        Publish new order creation event

        Args:
            order_id: Order identifier
            order_number: Human-readable order number
            total: Order total
            customer_email: Set for guest or logged-in customers with an address
            customer_id: Set for logged-in customers

        Returns:
            bool: True if handed off to the broker, False otherwise
        """
        return await self.publish(EventEnvelope.create(
            EventKind.NEW_ORDER_CREATION,
            order_id=order_id,
            order_number=order_number,
            total=total,
            customer_email=customer_email,
            customer_id=customer_id,
        ))

    async def publish_invoice_generation(
        self,
        order_id: str,
        order_number: str,
        order_data: Dict[str, Any],
        customer_email: Optional[str] = None,
        customer_id: Optional[str] = None
    ) -> bool:
        """
        Publish invoice generation event

        Args:
            order_id: Order identifier
            order_number: Human-readable order number
            order_data: Full order snapshot the invoice is rendered from
            customer_email: Recipient of the invoice, when known
            customer_id: Set for logged-in customers

        Returns:
            bool: True if handed off to the broker, False otherwise
        """
        return await self.publish(EventEnvelope.create(
            EventKind.INVOICE_GENERATION,
            order_id=order_id,
            order_number=order_number,
            order_data=order_data,
            customer_email=customer_email,
            customer_id=customer_id,
        ))
