from __future__ import annotations

from datetime import datetime, timezone

import structlog

from app.db.repo.reconciliation_runs_repo import ReconciliationRunsRepo
from app.db.session import SessionLocal
from app.entitlements.dispatcher import SideEffectDispatcher
from app.entitlements.reconciliation import reconcile_subscriptions
from app.services.access_reliability import alert_payload, reconciliation_result, should_alert_ops
from app.services.alerts import send_ops_alert
from app.services.side_effect_queue import CeleryJobQueue
from app.services.stripe_webhook import build_entitlement_context
from app.workers.asyncio_runner import run_async_job
from app.workers.celery_app import RECONCILIATION_QUEUE, celery_app
from app.workers.tasks.access_reconciliation_schedule import (
    configure_access_reconciliation_schedule,
)

logger = structlog.get_logger(__name__)


async def run_access_reconciliation_async() -> dict[str, int | str]:
    started_at = datetime.now(timezone.utc)
    dispatcher = SideEffectDispatcher(CeleryJobQueue.from_settings())

    async with SessionLocal.begin() as session:
        ctx = build_entitlement_context(session, dispatcher=dispatcher)
        summary = await reconcile_subscriptions(
            ctx,
            started_at=started_at,
            now_utc=datetime.now(timezone.utc),
        )
        result = reconciliation_result(summary)
        await ReconciliationRunsRepo.record(session, summary=summary)

    await dispatcher.flush()
    if should_alert_ops(summary):
        await send_ops_alert(
            event="access_reconciliation_diff_detected",
            payload=alert_payload(summary),
        )
        logger.warning("access_reconciliation_diff_detected", **result)
    else:
        logger.info("access_reconciliation_run_recorded", **result)
    return result


@celery_app.task(name="app.workers.tasks.access_reconciliation.run_access_reconciliation")
def run_access_reconciliation() -> dict[str, int | str]:
    return run_async_job(run_access_reconciliation_async())


configure_access_reconciliation_schedule(celery_app, queue=RECONCILIATION_QUEUE)
