# Models package - Consolidated imports only
from .dispatch_record import DispatchRecord, DispatchStatus

__all__ = [
    "DispatchRecord",
    "DispatchStatus",
]
