from __future__ import annotations

from datetime import datetime

import structlog

from app.entitlements.dispatcher import JOB_ACCESS_REPAIRED_REVIEW
from app.entitlements.errors import (
    AlreadyProcessedError,
    MissingCorrelationError,
    NotFoundError,
    OfferingNotFoundError,
)
from app.entitlements.events import Subscription
from app.entitlements.idempotency import ensure_not_granted
from app.entitlements.service.constants import (
    ACCESS_KIND_SUBSCRIPTION,
    CORRELATION_SESSION_KEY,
    TRANSITION_SUBSCRIPTION_REPAIRED,
    TRANSITION_SUPPORT_ONLY_SUBSCRIPTION,
)
from app.entitlements.service.context import EntitlementContext
from app.entitlements.service.grants import (
    _build_grants,
    _correlation_ids,
    _isoformat,
    _sync_memberships,
)
from app.entitlements.service.subscription_updated import carry_pending_cancellation
from app.entitlements.targets import compute_expires_at, resolve_access_targets, target_group_ids
from app.entitlements.types import ProviderSubscription, TransitionResult

logger = structlog.get_logger(__name__)


async def repair_subscription_grants(
    ctx: EntitlementContext,
    *,
    subscription: Subscription | ProviderSubscription,
    account: str | None,
    now_utc: datetime,
    source: str = "webhook",
) -> TransitionResult:
    existing = await ctx.store.list_by_subscription_ref(subscription.id)
    if existing:
        raise AlreadyProcessedError(f"subscription {subscription.id} already has grants")

    correlation = _correlation_ids(subscription.metadata)
    session_ref = subscription.metadata.get(CORRELATION_SESSION_KEY) or None
    payment_intent_ref: str | None = None
    if correlation is None or session_ref is None:
        checkout = await ctx.billing.find_checkout_session_for_subscription(
            subscription.id,
            account=account,
        )
        if checkout is not None:
            session_ref = checkout.id
            payment_intent_ref = checkout.payment_intent_ref
            if correlation is None:
                correlation = _correlation_ids(checkout.metadata)
    if correlation is None:
        raise MissingCorrelationError(f"no correlation ids for subscription {subscription.id}")
    user_id, group_id, offering_id = correlation

    offering = await ctx.offerings.get(offering_id)
    if offering is None:
        raise OfferingNotFoundError(f"offering {offering_id} not found")
    if offering.group_id != group_id:
        raise NotFoundError(f"offering {offering_id} does not belong to group {group_id}")

    targets = resolve_access_targets(offering)
    if not targets:
        logger.info(
            "access_repair_support_only_subscription",
            subscription_ref=subscription.id,
            offering_id=offering.id,
        )
        return TransitionResult(transition=TRANSITION_SUPPORT_ONLY_SUBSCRIPTION, changed=False)

    # Grants from the checkout may carry only the session ref.
    await ensure_not_granted(ctx.store, subscription_ref=None, session_ref=session_ref)

    logger.warning(
        "access_repair_missing_grants",
        subscription_ref=subscription.id,
        session_ref=session_ref,
        user_id=user_id,
        offering_id=offering.id,
        source=source,
    )
    expires_at = subscription.current_period_end or compute_expires_at(
        offering.duration,
        start_utc=now_utc,
    )
    metadata: dict[str, object] = {
        "access_kind": ACCESS_KIND_SUBSCRIPTION,
        "provider_account": account,
        "repaired_at": _isoformat(now_utc),
        "repair_source": source,
        "subscription_period_start": _isoformat(subscription.current_period_start),
        "subscription_period_end": _isoformat(subscription.current_period_end),
    }
    if payment_intent_ref is not None:
        metadata["payment_intent_ref"] = payment_intent_ref
    grants = _build_grants(
        user_id=user_id,
        offering_id=offering.id,
        targets=targets,
        lineage=subscription.id,
        access_type="purchase",
        subscription_ref=subscription.id,
        session_ref=session_ref,
        expires_at=expires_at,
        metadata=metadata,
        now_utc=now_utc,
    )
    inserted = await ctx.store.add_many(grants)
    if not inserted:
        raise AlreadyProcessedError("grants were created by a concurrent delivery")

    side_effects = await _sync_memberships(
        ctx,
        user_id=user_id,
        group_ids=target_group_ids(targets),
        now_utc=now_utc,
        transition=TRANSITION_SUBSCRIPTION_REPAIRED,
    )
    # Listed subscriptions are current; webhook payloads may predate a later update.
    carry_result = await carry_pending_cancellation(
        ctx,
        grants=inserted,
        subscription_ref=subscription.id,
        account=account,
        now_utc=now_utc,
        current=subscription if isinstance(subscription, ProviderSubscription) else None,
    )
    if carry_result is not None:
        side_effects.append(carry_result)
    ctx.dispatcher.enqueue(
        JOB_ACCESS_REPAIRED_REVIEW,
        {
            "user_id": user_id,
            "offering_id": offering.id,
            "subscription_ref": subscription.id,
            "session_ref": session_ref,
            "source": source,
        },
        transition=TRANSITION_SUBSCRIPTION_REPAIRED,
    )
    return TransitionResult(
        transition=TRANSITION_SUBSCRIPTION_REPAIRED,
        grant_ids=[grant.id for grant in inserted],
        side_effects=side_effects,
    )
