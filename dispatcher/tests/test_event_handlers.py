"""
Tests for the notification handlers behind each event kind.
"""
from unittest.mock import AsyncMock

import pytest

from dispatcher.core.events.envelope import EventEnvelope, EventKind
from dispatcher.core.exceptions import ConfigurationException, HandlerException
from dispatcher.tasks.event_handlers import (
    HANDLER_CLASSES,
    InvoiceGenerationHandler,
    LowStockAlertHandler,
    NewCustomerRegistrationHandler,
    NewOrderCreationHandler,
    NewProductCreationHandler,
    NotificationHandler,
    build_registry,
)

ADMIN = "admin@example.com"


@pytest.fixture
def email():
    service = AsyncMock()
    service.send_admin_notification.return_value = True
    service.send_invoice_email.return_value = True
    return service


@pytest.fixture
def records():
    service = AsyncMock()
    service.is_processed.return_value = False
    service.mark_processed.return_value = True
    return service


class TestAdminNotifications:
    @pytest.mark.asyncio
    async def test_low_stock_alert_notifies_admin(self, email, records, sample_low_stock):
        await LowStockAlertHandler(email, records, ADMIN)(sample_low_stock)

        email.send_admin_notification.assert_awaited_once()
        to, mail_type, context = email.send_admin_notification.await_args.args
        assert to == ADMIN
        assert mail_type == "low_stock_alert"
        assert context["product_name"] == "Desk Lamp"
        assert context["current_stock"] == 2
        records.mark_processed.assert_awaited_once()
        envelope, summary = records.mark_processed.await_args.args
        assert envelope is sample_low_stock
        assert summary == {"notified": [ADMIN], "mail_type": "low_stock_alert"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("handler_class, envelope, mail_type", [
        (
            NewCustomerRegistrationHandler,
            EventEnvelope.create(
                EventKind.NEW_CUSTOMER_REGISTRATION,
                customer_id="C-1", customer_email="karim@example.com", customer_name="Karim",
            ),
            "new_customer",
        ),
        (
            NewProductCreationHandler,
            EventEnvelope.create(EventKind.NEW_PRODUCT_CREATION, product_id="P-1", product_name="Chair", admin_id="A-1"),
            "new_product",
        ),
        (
            NewOrderCreationHandler,
            EventEnvelope.create(EventKind.NEW_ORDER_CREATION, order_id="O-1", order_number="NE-1", total=99.5),
            "new_order",
        ),
    ])
    async def test_admin_mail_type_per_kind(self, email, records, handler_class, envelope, mail_type):
        await handler_class(email, records, ADMIN)(envelope)

        assert email.send_admin_notification.await_args.args[1] == mail_type

    @pytest.mark.asyncio
    async def test_failed_send_raises_and_is_not_recorded(self, email, records, sample_low_stock):
        email.send_admin_notification.return_value = False

        with pytest.raises(HandlerException) as exc_info:
            await LowStockAlertHandler(email, records, ADMIN)(sample_low_stock)

        assert exc_info.value.event_id == sample_low_stock.id
        records.mark_processed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_already_processed_event_is_skipped(self, email, records, sample_low_stock):
        records.is_processed.return_value = True

        await LowStockAlertHandler(email, records, ADMIN)(sample_low_stock)

        email.send_admin_notification.assert_not_awaited()
        records.mark_processed.assert_not_awaited()


class TestInvoiceGeneration:
    @pytest.mark.asyncio
    async def test_invoice_is_mailed_to_customer(self, email, records, sample_invoice):
        await InvoiceGenerationHandler(email, records, ADMIN)(sample_invoice)

        to, context = email.send_invoice_email.await_args.args
        assert to == "buyer@example.com"
        assert context["order_number"] == "NE-2024-0001"
        assert context["customer_name"] == "Rahim Uddin"
        assert context["order_date"] == "May 01, 2024"
        assert context["items"] == [{"name": "Desk Lamp", "variant": None, "quantity": 2, "price": 1225}]
        summary = records.mark_processed.await_args.args[1]
        assert summary["notified"] == ["buyer@example.com"]
        assert summary["order_data"]["total"] == 2450
        email.send_admin_notification.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_shipping_address_email_is_the_fallback_recipient(self, email, records):
        envelope = EventEnvelope.create(
            EventKind.INVOICE_GENERATION,
            order_id="O-2",
            order_number="NE-2",
            order_data={"shippingAddress": {"email": "guest@example.com"}},
        )

        await InvoiceGenerationHandler(email, records, ADMIN)(envelope)

        assert email.send_invoice_email.await_args.args[0] == "guest@example.com"

    @pytest.mark.asyncio
    async def test_invoice_without_recipient_is_recorded_only(self, email, records):
        envelope = EventEnvelope.create(
            EventKind.INVOICE_GENERATION, order_id="O-3", order_number="NE-3", order_data={"total": 10}
        )

        await InvoiceGenerationHandler(email, records, ADMIN)(envelope)

        email.send_invoice_email.assert_not_awaited()
        summary = records.mark_processed.await_args.args[1]
        assert summary["notified"] == []
        assert summary["order_data"] == {"total": 10}

    @pytest.mark.asyncio
    async def test_failed_invoice_send_raises(self, email, records, sample_invoice):
        email.send_invoice_email.return_value = False

        with pytest.raises(HandlerException):
            await InvoiceGenerationHandler(email, records, ADMIN)(sample_invoice)

        records.mark_processed.assert_not_awaited()


class TestBuildRegistry:
    def test_every_kind_has_exactly_one_handler(self, email, records):
        registry = build_registry(email, records, ADMIN)

        assert len(registry) == len(EventKind)
        for kind, handler in registry.items():
            assert handler.kind is kind
            assert handler.admin_email == ADMIN

    def test_missing_handler_class_fails_at_build_time(self, email, records, monkeypatch):
        monkeypatch.setattr(
            "dispatcher.tasks.event_handlers.HANDLER_CLASSES",
            [cls for cls in HANDLER_CLASSES if cls is not InvoiceGenerationHandler],
        )

        with pytest.raises(ConfigurationException) as exc_info:
            build_registry(email, records, ADMIN)

        assert exc_info.value.missing == ["invoice_generation"]

    def test_handler_without_notify_cannot_be_built(self, email, records):
        class SilentHandler(NotificationHandler):
            kind = EventKind.LOW_STOCK_ALERT

        with pytest.raises(TypeError):
            SilentHandler(email, records, ADMIN)
