from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

import structlog

from app.db.models.access_grants import AccessGrant
from app.entitlements.cancellation import CancellationSchedule, strip_cancellation
from app.entitlements.dispatcher import JOB_SUBSCRIPTION_CANCEL_SCHEDULED_NOTICE
from app.entitlements.errors import AlreadyProcessedError, NotFoundError
from app.entitlements.events import Subscription, SubscriptionUpdatedEvent
from app.entitlements.service.constants import (
    ACTIVE_PROVIDER_SUBSCRIPTION_STATUSES,
    CANCELLATION_CARRY_OVER_EFFECT,
    TRANSITION_CANCELLATION_SCHEDULED,
    TRANSITION_REACTIVATED,
    TRANSITION_SUBSCRIPTION_STATUS_OBSERVED,
)
from app.entitlements.service.context import EntitlementContext
from app.entitlements.types import ProviderSubscription, SideEffectResult, TransitionResult

logger = structlog.get_logger(__name__)


def pending_cancellation(
    subscription: Subscription | ProviderSubscription,
    *,
    now_utc: datetime,
) -> CancellationSchedule | None:
    if not subscription.cancel_at_period_end and subscription.cancel_at is None:
        return None
    if subscription.cancel_at is not None:
        effective_at = subscription.cancel_at
        default_reason = "cancel_at"
    else:
        effective_at = subscription.current_period_end
        default_reason = "cancel_at_period_end"
    return CancellationSchedule(
        scheduled_at=subscription.canceled_at or now_utc,
        effective_at=effective_at,
        reason=subscription.cancellation_reason or default_reason,
    )


def _enqueue_cancel_notice(
    ctx: EntitlementContext,
    *,
    user_id: int,
    subscription_ref: str,
    schedule: CancellationSchedule,
) -> None:
    ctx.dispatcher.enqueue(
        JOB_SUBSCRIPTION_CANCEL_SCHEDULED_NOTICE,
        {
            "user_id": user_id,
            "subscription_ref": subscription_ref,
            "effective_at": schedule.effective_at.isoformat() if schedule.effective_at else None,
        },
        transition=TRANSITION_CANCELLATION_SCHEDULED,
    )


async def carry_pending_cancellation(
    ctx: EntitlementContext,
    *,
    grants: Sequence[AccessGrant],
    subscription_ref: str,
    account: str | None,
    now_utc: datetime,
    current: ProviderSubscription | None = None,
) -> SideEffectResult | None:
    """Copy a cancellation the provider already holds onto freshly created grants.

    An update that schedules the cancellation can arrive before the grants exist,
    in which case it was skipped and the provider state is the only record left.
    """
    if not grants:
        return None
    if current is None:
        try:
            current = await ctx.billing.get_subscription(subscription_ref, account=account)
        except Exception as exc:
            logger.warning(
                "access_cancellation_state_unavailable",
                subscription_ref=subscription_ref,
                error_type=type(exc).__name__,
            )
            return SideEffectResult.failure(CANCELLATION_CARRY_OVER_EFFECT, detail=type(exc).__name__)

    schedule = pending_cancellation(current, now_utc=now_utc)
    if schedule is None:
        return None
    for grant in grants:
        grant.metadata_ = schedule.apply_to(grant.metadata_)
        grant.updated_at = now_utc
        await ctx.store.save(grant)
    logger.info(
        "access_cancellation_carried_over",
        subscription_ref=subscription_ref,
        effective_at=schedule.effective_at.isoformat() if schedule.effective_at else None,
        reason=schedule.reason,
        grants=len(grants),
    )
    _enqueue_cancel_notice(
        ctx,
        user_id=grants[0].user_id,
        subscription_ref=subscription_ref,
        schedule=schedule,
    )
    return SideEffectResult.success(CANCELLATION_CARRY_OVER_EFFECT)


async def apply_subscription_update(
    ctx: EntitlementContext,
    *,
    event: SubscriptionUpdatedEvent,
    now_utc: datetime,
) -> TransitionResult:
    subscription = event.payload
    grants = await ctx.store.list_by_subscription_ref(subscription.id)
    if not grants:
        raise NotFoundError(f"no grants for subscription {subscription.id}")
    active_grants = [grant for grant in grants if grant.status == "active"]
    if not active_grants:
        raise AlreadyProcessedError(f"grants for subscription {subscription.id} are terminal")

    if subscription.status not in ACTIVE_PROVIDER_SUBSCRIPTION_STATUSES:
        # Payment retries and terminal deletion are handled by their own events.
        logger.info(
            "access_subscription_status_observed",
            subscription_ref=subscription.id,
            provider_status=subscription.status,
        )
        return TransitionResult(transition=TRANSITION_SUBSCRIPTION_STATUS_OBSERVED, changed=False)

    schedule = pending_cancellation(subscription, now_utc=now_utc)
    if schedule is not None:
        changed_ids: list[int] = []
        for grant in active_grants:
            current = CancellationSchedule.from_metadata(grant.metadata_)
            if current is not None and current.same_window(schedule):
                continue
            grant.metadata_ = schedule.apply_to(grant.metadata_)
            grant.updated_at = now_utc
            await ctx.store.save(grant)
            changed_ids.append(grant.id)
        if not changed_ids:
            raise AlreadyProcessedError("cancellation already recorded")

        logger.info(
            "access_cancellation_scheduled",
            subscription_ref=subscription.id,
            effective_at=schedule.effective_at.isoformat() if schedule.effective_at else None,
            reason=schedule.reason,
            grants=len(changed_ids),
        )
        _enqueue_cancel_notice(
            ctx,
            user_id=active_grants[0].user_id,
            subscription_ref=subscription.id,
            schedule=schedule,
        )
        return TransitionResult(transition=TRANSITION_CANCELLATION_SCHEDULED, grant_ids=changed_ids)

    reactivated_ids: list[int] = []
    for grant in active_grants:
        stripped = strip_cancellation(grant.metadata_)
        if stripped is None:
            continue
        grant.metadata_ = stripped
        grant.updated_at = now_utc
        await ctx.store.save(grant)
        reactivated_ids.append(grant.id)
    if not reactivated_ids:
        raise AlreadyProcessedError("no scheduled cancellation to clear")

    logger.info(
        "access_subscription_reactivated",
        subscription_ref=subscription.id,
        grants=len(reactivated_ids),
    )
    return TransitionResult(transition=TRANSITION_REACTIVATED, grant_ids=reactivated_ids)
