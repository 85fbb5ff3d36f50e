from __future__ import annotations

import structlog

from app.db.repo.outbox_events_repo import OutboxEventsRepo
from app.db.session import SessionLocal
from app.services.alerts import send_ops_alert
from app.workers.asyncio_runner import run_async_job
from app.workers.celery_app import celery_app

logger = structlog.get_logger(__name__)

REVIEW_ALERT_EVENTS = {
    "donation_transfer_review": "access_donation_transfer_review_required",
    "access_repaired_review": "access_grants_repaired",
}


def _normalize_job(job: object) -> tuple[str, dict[str, object], str | None] | None:
    if not isinstance(job, dict):
        return None
    job_type = job.get("job_type")
    payload = job.get("payload")
    transition = job.get("transition")
    if not isinstance(job_type, str) or not job_type or not isinstance(payload, dict):
        return None
    return job_type, payload, transition if isinstance(transition, str) else None


async def process_side_effect_job_async(*, job: dict[str, object]) -> dict[str, object]:
    normalized = _normalize_job(job)
    if normalized is None:
        logger.warning("side_effect_job_invalid", job=job)
        return {"status": "invalid"}
    job_type, payload, transition = normalized

    async with SessionLocal.begin() as session:
        event = await OutboxEventsRepo.record_job(
            session,
            job_type=job_type,
            payload=payload,
            transition=transition,
        )
        outbox_event_id = event.id

    alerted = False
    alert_event = REVIEW_ALERT_EVENTS.get(job_type)
    if alert_event is not None:
        alerted = await send_ops_alert(
            event=alert_event,
            payload={"transition": transition, **payload},
        )

    logger.info(
        "side_effect_job_recorded",
        job_type=job_type,
        transition=transition,
        outbox_event_id=outbox_event_id,
        alerted=alerted,
    )
    return {"status": "recorded", "outbox_event_id": outbox_event_id, "alerted": alerted}


@celery_app.task(name="app.workers.tasks.side_effects.process_side_effect_job")
def process_side_effect_job(job: dict[str, object]) -> dict[str, object]:
    return run_async_job(process_side_effect_job_async(job=job))
