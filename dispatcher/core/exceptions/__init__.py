from .dispatch_exceptions import (
    DispatchException,
    ConfigurationException,
    BrokerConnectionException,
    TopologyException,
    UnknownEventKindException,
    MalformedMessageException,
    HandlerException,
    DocumentStoreException
)

__all__ = [
    "DispatchException",
    "ConfigurationException",
    "BrokerConnectionException",
    "TopologyException",
    "UnknownEventKindException",
    "MalformedMessageException",
    "HandlerException",
    "DocumentStoreException",
]
