import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from dispatcher.core.database import DatabaseManager
from dispatcher.core.events.envelope import EventEnvelope
from dispatcher.core.exceptions import DocumentStoreException
from dispatcher.models.dispatch_record import DispatchRecord, DispatchStatus

logger = logging.getLogger(__name__)


class DispatchRecordService:
    """
    Remembers which envelope ids have been handled so a redelivered event
    does not repeat its side effects.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def get(self, event_id: str) -> Optional[DispatchRecord]:
        async with self.db.session() as session:
            result = await session.execute(select(DispatchRecord).where(DispatchRecord.event_id == event_id))
            return result.scalars().first()

    async def is_processed(self, event_id: str) -> bool:
        return await self.get(event_id) is not None

    async def mark_processed(
        self,
        envelope: EventEnvelope,
        summary: Optional[Dict[str, Any]] = None,
        status: str = DispatchStatus.PROCESSED,
    ) -> bool:
        """
        Store the outcome of a handled event.

        Returns:
            bool: False when another delivery already recorded the same id

        Raises:
            DocumentStoreException: the write failed for any other reason
        """
        record = DispatchRecord(
            event_id=envelope.id,
            event_kind=envelope.kind.value,
            status=status,
            occurred_at=envelope.occurred_at,
            processed_at=datetime.now(timezone.utc),
            summary=summary or {},
        )
        async with self.db.session() as session:
            try:
                session.add(record)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.warning(
                    f"Event {envelope.id} already recorded",
                    extra={"event_kind": envelope.kind.value, "event_id": envelope.id},
                )
                return False
            except SQLAlchemyError as e:
                await session.rollback()
                raise DocumentStoreException(
                    message=f"Failed to record event {envelope.id}: {e}",
                    metadata={"event_id": envelope.id, "error_type": type(e).__name__},
                ) from e
        return True
