from __future__ import annotations

import asyncio
from dataclasses import asdict

import structlog

from app.core.config import get_settings
from app.entitlements.types import SideEffectJob
from app.workers.tasks.side_effects import process_side_effect_job

logger = structlog.get_logger(__name__)


def _is_celery_task(task_obj: object) -> bool:
    return type(task_obj).__module__.startswith("celery.")


class CeleryJobQueue:
    def __init__(self, *, timeout_seconds: float) -> None:
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls) -> CeleryJobQueue:
        settings = get_settings()
        timeout_ms = max(1, int(settings.side_effect_enqueue_timeout_ms))
        return cls(timeout_seconds=timeout_ms / 1000.0)

    async def enqueue(self, job: SideEffectJob) -> None:
        def enqueue_call() -> object:
            return process_side_effect_job.delay(job=asdict(job))

        if not _is_celery_task(process_side_effect_job):
            enqueue_call()
            return
        try:
            await asyncio.wait_for(asyncio.to_thread(enqueue_call), timeout=self._timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "side_effect_enqueue_timeout",
                job_type=job.job_type,
                enqueue_timeout_seconds=self._timeout_seconds,
            )
            raise
