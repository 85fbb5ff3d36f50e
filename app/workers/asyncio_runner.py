from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

import structlog

from app.db.session import dispose_engine

T = TypeVar("T")
logger = structlog.get_logger(__name__)


def _job_name(awaitable: Awaitable[object]) -> str:
    code = getattr(awaitable, "cr_code", None)
    return code.co_name if code is not None else type(awaitable).__name__


async def _run_with_fresh_db_pool(awaitable: Awaitable[T]) -> T:
    # Each worker call gets its own event loop; pooled connections cannot cross loops.
    await dispose_engine()
    try:
        return await awaitable
    finally:
        await dispose_engine()


def run_async_job(awaitable: Awaitable[T]) -> T:
    with structlog.contextvars.bound_contextvars(job=_job_name(awaitable)):
        try:
            return asyncio.run(_run_with_fresh_db_pool(awaitable))
        except Exception:
            logger.exception("async_job_failed")
            raise
