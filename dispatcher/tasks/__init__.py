"""
Tasks package for consumed events
"""
from .event_handlers import (
    LowStockAlertHandler,
    NewCustomerRegistrationHandler,
    NewProductCreationHandler,
    NewOrderCreationHandler,
    InvoiceGenerationHandler,
    HANDLER_CLASSES,
    build_registry
)

__all__ = [
    "LowStockAlertHandler",
    "NewCustomerRegistrationHandler",
    "NewProductCreationHandler",
    "NewOrderCreationHandler",
    "InvoiceGenerationHandler",
    "HANDLER_CLASSES",
    "build_registry"
]
