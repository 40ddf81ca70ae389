from datetime import datetime, timezone
from typing import Any, Dict, Optional


class DispatchException(Exception):
    """Base exception for the dispatch service with structured error details"""

    def __init__(
        self,
        message: str = "An unexpected dispatch error occurred",
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code or "DISPATCH_ERROR"
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }


class ConfigurationException(DispatchException):
    """Exception for missing or invalid settings and handler wiring errors"""

    def __init__(self, message: str = "Invalid configuration", missing: Optional[list] = None):
        self.missing = list(missing or [])
        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            details={"missing": self.missing} if self.missing else None,
        )


class BrokerConnectionException(DispatchException):
    """Exception for failures to reach or open a channel on the broker"""

    def __init__(self, message: str = "Could not connect to message broker", url: Optional[str] = None):
        self.url = url
        super().__init__(
            message=message,
            error_code="BROKER_CONNECTION_ERROR",
            details={"url": url} if url else None,
        )


class TopologyException(DispatchException):
    """Exception for conflicting exchange/queue declarations"""

    def __init__(self, message: str = "Topology declaration failed", resource: Optional[str] = None):
        self.resource = resource
        super().__init__(
            message=message,
            error_code="TOPOLOGY_ERROR",
            details={"resource": resource} if resource else None,
        )


class UnknownEventKindException(DispatchException):
    """Exception for publishing an event kind that has no topology entry"""

    def __init__(self, kind: Any):
        self.kind = kind
        super().__init__(
            message=f"Unknown event kind: {kind}",
            error_code="UNKNOWN_EVENT_KIND",
            details={"kind": str(kind)},
        )


class MalformedMessageException(DispatchException):
    """Exception for message bodies that cannot be decoded into an envelope"""

    def __init__(self, message: str = "Malformed message body", errors: Optional[Any] = None):
        self.errors = errors
        super().__init__(
            message=message,
            error_code="MALFORMED_MESSAGE",
            details={"errors": errors} if errors else None,
        )


class HandlerException(DispatchException):
    """Exception raised by handlers when business processing fails"""

    def __init__(self, message: str = "Handler failed", kind: Optional[str] = None, event_id: Optional[str] = None):
        self.kind = kind
        self.event_id = event_id
        super().__init__(
            message=message,
            error_code="HANDLER_ERROR",
            details={"kind": kind, "event_id": event_id},
        )


class DocumentStoreException(DispatchException):
    """Exception for document store failures (uninitialized engine, failed writes)"""

    def __init__(self, message: str = "Document store error", metadata: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="DOCUMENT_STORE_ERROR",
            details=metadata,
        )
