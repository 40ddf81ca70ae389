# Services package - Consolidated imports only
from .dispatch_records import DispatchRecordService
from .email import EmailService

__all__ = [
    "DispatchRecordService",
    "EmailService",
]
