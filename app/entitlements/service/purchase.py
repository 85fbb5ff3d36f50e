from __future__ import annotations

from datetime import datetime

import structlog

from app.db.models.access_grants import AccessGrant
from app.entitlements.dispatcher import (
    JOB_ADMIN_PURCHASE_NOTICE,
    JOB_DONATION_TRANSFER_REVIEW,
    JOB_PURCHASE_CONFIRMATION_EMAIL,
)
from app.entitlements.donations import (
    DONATION_TRANSFER_EFFECT,
    checkout_donation_keyword,
    transfer_donation,
)
from app.entitlements.errors import AlreadyProcessedError, NotFoundError, OfferingNotFoundError
from app.entitlements.events import CheckoutSessionCompletedEvent
from app.entitlements.idempotency import find_purchase_lineage, lineage_key
from app.entitlements.service.constants import (
    ACCESS_KIND_ONE_TIME,
    ACCESS_KIND_SUBSCRIPTION,
    PURCHASE_RECEIPT_KEY,
    TRANSITION_PURCHASE_AWAITING_PAYMENT,
    TRANSITION_PURCHASE_COMPLETED,
)
from app.entitlements.service.context import EntitlementContext
from app.entitlements.service.grants import (
    _build_grants,
    _isoformat,
    _require_correlation_ids,
    _sync_memberships,
    _update_metadata,
)
from app.entitlements.service.subscription_updated import carry_pending_cancellation
from app.entitlements.targets import compute_expires_at, resolve_access_targets, target_group_ids
from app.entitlements.types import SideEffectResult, TransitionResult

logger = structlog.get_logger(__name__)


async def _transfer_checkout_donation(
    ctx: EntitlementContext,
    *,
    event: CheckoutSessionCompletedEvent,
) -> SideEffectResult | None:
    checkout = event.payload
    try:
        items = await ctx.billing.list_checkout_line_items(checkout.id, account=event.account)
    except Exception as exc:
        logger.warning(
            "donation_line_items_unavailable",
            session_ref=checkout.id,
            error_type=type(exc).__name__,
        )
        ctx.dispatcher.enqueue(
            JOB_DONATION_TRANSFER_REVIEW,
            {
                "session_ref": checkout.id,
                "payment_intent_ref": checkout.payment_intent,
                "provider_account": event.account,
                "error_type": type(exc).__name__,
            },
            transition=TRANSITION_PURCHASE_COMPLETED,
        )
        return SideEffectResult.failure(DONATION_TRANSFER_EFFECT, detail=type(exc).__name__)

    return await transfer_donation(
        billing=ctx.billing,
        dispatcher=ctx.dispatcher,
        settings=ctx.donations,
        items=items,
        keyword=checkout_donation_keyword(ctx.donations.recipient_name),
        payment_intent_ref=checkout.payment_intent,
        currency=checkout.currency,
        account=event.account,
        transition=TRANSITION_PURCHASE_COMPLETED,
    )


async def _complete_repaired_lineage(
    ctx: EntitlementContext,
    *,
    grants: list[AccessGrant],
    session_ref: str,
    metadata: dict[str, object],
    now_utc: datetime,
) -> list[AccessGrant]:
    for grant in grants:
        _update_metadata(grant, updates=metadata, now_utc=now_utc)
        if grant.external_session_ref is None:
            grant.external_session_ref = session_ref
        await ctx.store.save(grant)
    logger.info(
        "access_purchase_completed_after_repair",
        session_ref=session_ref,
        subscription_ref=grants[0].external_subscription_ref,
        grants=len(grants),
    )
    return grants


async def complete_purchase(
    ctx: EntitlementContext,
    *,
    event: CheckoutSessionCompletedEvent,
    now_utc: datetime,
) -> TransitionResult:
    checkout = event.payload
    if checkout.payment_status != "paid":
        logger.info(
            "access_purchase_awaiting_payment",
            session_ref=checkout.id,
            payment_status=checkout.payment_status,
        )
        return TransitionResult(transition=TRANSITION_PURCHASE_AWAITING_PAYMENT, changed=False)

    user_id, group_id, offering_id = _require_correlation_ids(checkout.metadata)
    offering = await ctx.offerings.get(offering_id)
    if offering is None:
        raise OfferingNotFoundError(f"offering {offering_id} not found")
    if offering.group_id != group_id:
        raise NotFoundError(f"offering {offering_id} does not belong to group {group_id}")

    # A subscription event may have repaired the grants before this checkout arrived.
    existing = await find_purchase_lineage(
        ctx.store,
        subscription_ref=checkout.subscription,
        session_ref=checkout.id,
    )
    if any(PURCHASE_RECEIPT_KEY in (grant.metadata_ or {}) for grant in existing):
        raise AlreadyProcessedError(f"purchase {checkout.id} already completed")

    targets = resolve_access_targets(offering)
    metadata: dict[str, object] = {
        "access_kind": ACCESS_KIND_SUBSCRIPTION if checkout.subscription else ACCESS_KIND_ONE_TIME,
        "provider_account": event.account,
        "payment_intent_ref": checkout.payment_intent,
        "payment_amount": checkout.amount_total,
        "currency": checkout.currency,
        PURCHASE_RECEIPT_KEY: _isoformat(now_utc),
        "provider_event_id": event.id,
    }
    side_effects: list[SideEffectResult] = []
    if existing:
        granted = await _complete_repaired_lineage(
            ctx,
            grants=existing,
            session_ref=checkout.id,
            metadata=metadata,
            now_utc=now_utc,
        )
    else:
        grants = _build_grants(
            user_id=user_id,
            offering_id=offering.id,
            targets=targets,
            lineage=lineage_key(subscription_ref=checkout.subscription, session_ref=checkout.id),
            access_type="purchase",
            subscription_ref=checkout.subscription,
            session_ref=checkout.id,
            expires_at=compute_expires_at(offering.duration, start_utc=now_utc),
            metadata=metadata,
            now_utc=now_utc,
        )
        granted = await ctx.store.add_many(grants)
        if targets and not granted:
            raise AlreadyProcessedError("grants were created by a concurrent delivery")

        if targets:
            logger.info(
                "access_purchase_granted",
                user_id=user_id,
                group_id=group_id,
                offering_id=offering.id,
                session_ref=checkout.id,
                subscription_ref=checkout.subscription,
                grants=len(granted),
            )
        else:
            logger.info(
                "access_purchase_support_only",
                user_id=user_id,
                offering_id=offering.id,
                session_ref=checkout.id,
            )

        side_effects.extend(
            await _sync_memberships(
                ctx,
                user_id=user_id,
                group_ids=target_group_ids(targets),
                now_utc=now_utc,
                transition=TRANSITION_PURCHASE_COMPLETED,
            )
        )
        if checkout.subscription:
            carry_result = await carry_pending_cancellation(
                ctx,
                grants=granted,
                subscription_ref=checkout.subscription,
                account=event.account,
                now_utc=now_utc,
            )
            if carry_result is not None:
                side_effects.append(carry_result)

    notice_payload: dict[str, object] = {
        "user_id": user_id,
        "group_id": group_id,
        "offering_id": offering.id,
        "session_ref": checkout.id,
        "subscription_ref": checkout.subscription,
        "amount_total": checkout.amount_total,
        "currency": checkout.currency,
    }
    ctx.dispatcher.enqueue(
        JOB_PURCHASE_CONFIRMATION_EMAIL,
        notice_payload,
        transition=TRANSITION_PURCHASE_COMPLETED,
    )
    ctx.dispatcher.enqueue(
        JOB_ADMIN_PURCHASE_NOTICE,
        notice_payload,
        transition=TRANSITION_PURCHASE_COMPLETED,
    )

    donation_result = await _transfer_checkout_donation(ctx, event=event)
    if donation_result is not None:
        side_effects.append(donation_result)

    return TransitionResult(
        transition=TRANSITION_PURCHASE_COMPLETED,
        grant_ids=[grant.id for grant in granted],
        side_effects=side_effects,
    )
