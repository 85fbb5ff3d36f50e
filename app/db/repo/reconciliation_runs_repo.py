from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.reconciliation_runs import ReconciliationRun
from app.entitlements.types import ReconciliationSummary


class ReconciliationRunsRepo:
    @staticmethod
    async def record(session: AsyncSession, *, summary: ReconciliationSummary) -> ReconciliationRun:
        run = ReconciliationRun(
            started_at=summary.started_at,
            finished_at=summary.finished_at,
            status=summary.status,
            subscriptions_examined=summary.subscriptions_examined,
            grants_repaired=summary.grants_repaired,
            grants_expired=summary.grants_expired,
            errors=summary.errors,
            diff_count=summary.diff_count,
            repaired_subscription_refs=list(summary.repaired_subscription_refs),
        )
        session.add(run)
        await session.flush()
        return run
