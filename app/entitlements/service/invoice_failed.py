from __future__ import annotations

from datetime import datetime

import structlog

from app.entitlements.dispatcher import JOB_PAYMENT_FAILED_NOTICE
from app.entitlements.errors import AlreadyProcessedError, MissingCorrelationError, NotFoundError
from app.entitlements.events import InvoicePaymentFailedEvent
from app.entitlements.service.constants import TRANSITION_PAYMENT_FAILED
from app.entitlements.service.context import EntitlementContext
from app.entitlements.service.grants import _isoformat, _update_metadata
from app.entitlements.types import TransitionResult

logger = structlog.get_logger(__name__)

LAST_PAYMENT_FAILURE_KEY = "last_payment_failure_ref"


async def record_payment_failure(
    ctx: EntitlementContext,
    *,
    event: InvoicePaymentFailedEvent,
    now_utc: datetime,
) -> TransitionResult:
    invoice = event.payload
    if not invoice.subscription:
        raise MissingCorrelationError(f"invoice {invoice.id} has no subscription")

    grants = await ctx.store.list_by_subscription_ref(invoice.subscription)
    if not grants:
        raise NotFoundError(f"no grants for subscription {invoice.subscription}")
    active_grants = [grant for grant in grants if grant.status == "active"]

    failure_ref = f"{invoice.id}:{invoice.attempt_count or 0}"
    pending = [
        grant
        for grant in active_grants
        if (grant.metadata_ or {}).get(LAST_PAYMENT_FAILURE_KEY) != failure_ref
    ]
    if not pending:
        raise AlreadyProcessedError(f"payment failure {failure_ref} already recorded")

    # Status is left alone; the provider keeps retrying until the period ends.
    for grant in pending:
        previous_count = (grant.metadata_ or {}).get("payment_failure_count")
        failure_count = previous_count + 1 if isinstance(previous_count, int) else 1
        _update_metadata(
            grant,
            updates={
                "last_payment_failed_at": _isoformat(event.created or now_utc),
                "payment_failure_count": failure_count,
                LAST_PAYMENT_FAILURE_KEY: failure_ref,
                "next_payment_attempt": _isoformat(invoice.next_payment_attempt),
            },
            now_utc=now_utc,
        )
        await ctx.store.save(grant)

    logger.warning(
        "access_payment_failure_recorded",
        subscription_ref=invoice.subscription,
        invoice_ref=invoice.id,
        attempt_count=invoice.attempt_count,
        grants=len(pending),
    )
    ctx.dispatcher.enqueue(
        JOB_PAYMENT_FAILED_NOTICE,
        {
            "user_id": pending[0].user_id,
            "subscription_ref": invoice.subscription,
            "invoice_ref": invoice.id,
            "next_payment_attempt": _isoformat(invoice.next_payment_attempt),
        },
        transition=TRANSITION_PAYMENT_FAILED,
    )
    return TransitionResult(
        transition=TRANSITION_PAYMENT_FAILED,
        grant_ids=[grant.id for grant in pending],
    )
