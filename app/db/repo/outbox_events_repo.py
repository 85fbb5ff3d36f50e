from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.outbox_events import OutboxEvent


class OutboxEventsRepo:
    @staticmethod
    async def record_job(
        session: AsyncSession,
        *,
        job_type: str,
        payload: dict[str, object],
        transition: str | None,
    ) -> OutboxEvent:
        event = OutboxEvent(event_type=job_type, transition=transition, payload=payload, status="PENDING")
        session.add(event)
        await session.flush()
        return event
