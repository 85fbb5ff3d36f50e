from __future__ import annotations

from collections.abc import Awaitable

import structlog

from app.entitlements.ports import JobQueue
from app.entitlements.types import SideEffectJob, SideEffectResult

logger = structlog.get_logger(__name__)

JOB_PURCHASE_CONFIRMATION_EMAIL = "purchase_confirmation_email"
JOB_ADMIN_PURCHASE_NOTICE = "admin_purchase_notice"
JOB_MEMBERSHIP_SYNC = "membership_sync"
JOB_SUBSCRIPTION_CANCEL_SCHEDULED_NOTICE = "subscription_cancel_scheduled_notice"
JOB_SUBSCRIPTION_ENDED_NOTICE = "subscription_ended_notice"
JOB_RENEWAL_RECEIPT_EMAIL = "renewal_receipt_email"
JOB_PAYMENT_FAILED_NOTICE = "payment_failed_notice"
JOB_ACCESS_REVOKED_NOTICE = "access_revoked_notice"
JOB_DONATION_TRANSFER_REVIEW = "donation_transfer_review"
JOB_ACCESS_REPAIRED_REVIEW = "access_repaired_review"


class SideEffectDispatcher:
    """Buffers side-effect jobs until the owning transition commits."""

    def __init__(self, queue: JobQueue) -> None:
        self._queue = queue
        self._pending: list[SideEffectJob] = []

    @property
    def pending(self) -> list[SideEffectJob]:
        return list(self._pending)

    def enqueue(self, job_type: str, payload: dict[str, object], *, transition: str) -> None:
        self._pending.append(
            SideEffectJob(job_type=job_type, payload=payload, transition=transition)
        )

    def discard(self) -> int:
        dropped = len(self._pending)
        self._pending.clear()
        if dropped:
            logger.info("side_effect_jobs_discarded", dropped=dropped)
        return dropped

    async def flush(self) -> list[SideEffectResult]:
        jobs, self._pending = self._pending, []
        results: list[SideEffectResult] = []
        for job in jobs:
            try:
                await self._queue.enqueue(job)
            except Exception as exc:
                logger.warning(
                    "side_effect_enqueue_failed",
                    job_type=job.job_type,
                    transition=job.transition,
                    error_type=type(exc).__name__,
                )
                results.append(SideEffectResult.failure(job.job_type, detail=type(exc).__name__))
                continue
            results.append(SideEffectResult.success(job.job_type))
        return results

    async def isolate(self, effect: str, operation: Awaitable[object]) -> SideEffectResult:
        try:
            await operation
        except Exception as exc:
            logger.warning(
                "side_effect_failed",
                effect=effect,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return SideEffectResult.failure(effect, detail=type(exc).__name__)
        return SideEffectResult.success(effect)
