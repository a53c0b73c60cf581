"""Call persistence service."""
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from callbridge.db.models import CallRecord


class CallPersistenceService:
    """Service for persisting call records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_call(
        self,
        call_id: str,
        kind: str = "escalation",
        session_key: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> CallRecord:
        """Create a new call record or return the existing one."""
        existing = await self.get_call(call_id)
        if existing:
            return existing

        record = CallRecord(
            call_id=call_id,
            kind=kind,
            session_key=session_key,
            event_type=event_type,
            status="in_progress",
        )
        self.db.add(record)
        await self.db.commit()
        await self.db.refresh(record)
        return record

    async def get_call(self, call_id: str) -> Optional[CallRecord]:
        result = await self.db.execute(select(CallRecord).where(CallRecord.call_id == call_id))
        return result.scalar_one_or_none()

    async def complete_call(
        self,
        call_id: str,
        status: str,
        transcript: Optional[str] = None,
        final_response: Optional[str] = None,
    ) -> Optional[CallRecord]:
        """Mark a call finished and store what was said."""
        record = await self.get_call(call_id)
        if record:
            record.status = status
            record.ended_at = datetime.utcnow()
            if transcript is not None:
                record.transcript = transcript
            if final_response is not None:
                record.final_response = final_response
            await self.db.commit()
            await self.db.refresh(record)
        return record

    async def get_call_start_times(self, since: datetime) -> List[datetime]:
        """Start times of calls placed after ``since`` (UTC)."""
        result = await self.db.execute(
            select(CallRecord.started_at)
            .where(CallRecord.started_at >= since)
            .order_by(CallRecord.started_at)
        )
        return list(result.scalars().all())

    async def list_recent_calls(self, limit: int = 100) -> List[CallRecord]:
        result = await self.db.execute(
            select(CallRecord).order_by(desc(CallRecord.started_at)).limit(limit)
        )
        return list(result.scalars().all())

    async def last_hour_call_times(self) -> List[datetime]:
        return await self.get_call_start_times(datetime.utcnow() - timedelta(hours=1))
