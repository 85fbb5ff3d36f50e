from __future__ import annotations

from datetime import datetime

import structlog

from app.entitlements.dispatcher import JOB_SUBSCRIPTION_ENDED_NOTICE
from app.entitlements.errors import AlreadyProcessedError, NotFoundError
from app.entitlements.events import SubscriptionDeletedEvent
from app.entitlements.idempotency import all_terminal
from app.entitlements.service.constants import TRANSITION_SUBSCRIPTION_EXPIRED
from app.entitlements.service.context import EntitlementContext
from app.entitlements.service.grants import _isoformat, _update_metadata
from app.entitlements.types import TransitionResult

logger = structlog.get_logger(__name__)


async def expire_subscription(
    ctx: EntitlementContext,
    *,
    event: SubscriptionDeletedEvent,
    now_utc: datetime,
) -> TransitionResult:
    subscription = event.payload
    grants = await ctx.store.list_by_subscription_ref(subscription.id)
    if not grants:
        raise NotFoundError(f"no grants for subscription {subscription.id}")
    if all_terminal(grants, status="expired"):
        raise AlreadyProcessedError(f"grants for subscription {subscription.id} already ended")

    details = subscription.cancellation_details
    end_reason = details.reason if details is not None and details.reason else "subscription_ended"
    ended_at = subscription.ended_at or now_utc

    expired_ids: list[int] = []
    for grant in grants:
        if grant.status != "active":
            continue
        grant.status = "expired"
        _update_metadata(
            grant,
            updates={
                "subscription_ended_at": _isoformat(ended_at),
                "subscription_end_reason": end_reason,
            },
            now_utc=now_utc,
        )
        await ctx.store.save(grant)
        expired_ids.append(grant.id)

    logger.info(
        "access_subscription_expired",
        subscription_ref=subscription.id,
        reason=end_reason,
        grants=len(expired_ids),
    )
    ctx.dispatcher.enqueue(
        JOB_SUBSCRIPTION_ENDED_NOTICE,
        {
            "user_id": grants[0].user_id,
            "subscription_ref": subscription.id,
            "reason": end_reason,
        },
        transition=TRANSITION_SUBSCRIPTION_EXPIRED,
    )
    return TransitionResult(transition=TRANSITION_SUBSCRIPTION_EXPIRED, grant_ids=expired_ids)
