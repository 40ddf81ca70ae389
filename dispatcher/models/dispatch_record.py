from sqlalchemy import Column, String, DateTime, JSON
from sqlalchemy.dialects.postgresql import JSONB

from dispatcher.core.database import BaseModel


class DispatchStatus:
    PROCESSED = "processed"
    SKIPPED = "skipped"


class DispatchRecord(BaseModel):
    """One row per event whose handler completed; keyed by the envelope id."""
    __tablename__ = "dispatch_records"

    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_kind = Column(String(100), nullable=False, index=True)
    status = Column(String(50), nullable=False, default=DispatchStatus.PROCESSED)
    occurred_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    # Handler output, e.g. recipients notified or the invoice request snapshot
    summary = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)

    def __repr__(self):
        return f"<DispatchRecord(event_id='{self.event_id}', event_kind='{self.event_kind}', status='{self.status}')>"
