from __future__ import annotations

from datetime import datetime

import structlog

from app.entitlements.errors import EntitlementError, ErrorKind
from app.entitlements.service import EntitlementContext, EntitlementService
from app.entitlements.service.constants import (
    ACTIVE_PROVIDER_SUBSCRIPTION_STATUSES,
    ELAPSED_GRANTS_BATCH_LIMIT,
    TRANSITION_ONE_TIME_EXPIRED,
)
from app.entitlements.service.grants import _isoformat, _update_metadata
from app.entitlements.targets import has_entitlements
from app.entitlements.types import ReconciliationSummary

logger = structlog.get_logger(__name__)


async def expire_elapsed_one_time_grants(
    ctx: EntitlementContext,
    *,
    now_utc: datetime,
    limit: int = ELAPSED_GRANTS_BATCH_LIMIT,
) -> int:
    grants = await ctx.store.list_elapsed_one_time(now_utc=now_utc, limit=limit)
    for grant in grants:
        grant.status = "expired"
        _update_metadata(
            grant,
            updates={"expired_at": _isoformat(now_utc), "expire_reason": "duration_elapsed"},
            now_utc=now_utc,
        )
        await ctx.store.save(grant)
    if grants:
        logger.info(
            "access_one_time_grants_expired",
            transition=TRANSITION_ONE_TIME_EXPIRED,
            grants=len(grants),
        )
    return len(grants)


async def reconcile_subscriptions(
    ctx: EntitlementContext,
    *,
    started_at: datetime,
    now_utc: datetime,
) -> ReconciliationSummary:
    examined = 0
    repaired = 0
    errors = 0
    repaired_refs: list[str] = []

    for offering in await ctx.offerings.list_billable():
        if not has_entitlements(offering):
            continue
        try:
            subscriptions = await ctx.billing.list_active_subscriptions(
                account=offering.provider_account_ref or "",
                price_ref=offering.provider_price_ref or "",
            )
        except Exception as exc:
            errors += 1
            logger.warning(
                "access_reconciliation_listing_failed",
                offering_id=offering.id,
                error_type=type(exc).__name__,
            )
            continue

        for subscription in subscriptions:
            if subscription.status not in ACTIVE_PROVIDER_SUBSCRIPTION_STATUSES:
                continue
            examined += 1
            existing = await ctx.store.list_by_subscription_ref(subscription.id)
            if existing:
                continue
            try:
                result = await EntitlementService.repair_subscription_grants(
                    ctx,
                    subscription=subscription,
                    account=offering.provider_account_ref,
                    now_utc=now_utc,
                    source="reconciliation",
                )
            except EntitlementError as exc:
                if exc.kind is ErrorKind.ALREADY_PROCESSED:
                    continue
                errors += 1
                logger.warning(
                    "access_reconciliation_repair_skipped",
                    subscription_ref=subscription.id,
                    offering_id=offering.id,
                    error_kind=exc.kind.value,
                    detail=str(exc),
                )
                continue
            if result.changed:
                repaired += len(result.grant_ids)
                repaired_refs.append(subscription.id)

    expired = await expire_elapsed_one_time_grants(ctx, now_utc=now_utc)
    summary = ReconciliationSummary(
        started_at=started_at,
        finished_at=now_utc,
        subscriptions_examined=examined,
        grants_repaired=repaired,
        grants_expired=expired,
        errors=errors,
        repaired_subscription_refs=repaired_refs,
    )
    logger.info(
        "access_reconciliation_finished",
        status=summary.status,
        subscriptions_examined=examined,
        grants_repaired=repaired,
        grants_expired=expired,
        errors=errors,
    )
    return summary
