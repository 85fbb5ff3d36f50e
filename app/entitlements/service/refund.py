from __future__ import annotations

from datetime import datetime

import structlog

from app.db.models.access_grants import AccessGrant
from app.entitlements.dispatcher import JOB_ACCESS_REVOKED_NOTICE
from app.entitlements.errors import AlreadyProcessedError, MissingCorrelationError, NotFoundError
from app.entitlements.events import ChargeRefundedEvent
from app.entitlements.idempotency import all_terminal
from app.entitlements.service.constants import (
    LIVE_PROVIDER_SUBSCRIPTION_STATUSES,
    PAYMENT_INTENT_SESSION_KEYS,
    TRANSITION_REFUND_REVOKED,
)
from app.entitlements.service.context import EntitlementContext
from app.entitlements.service.grants import _isoformat, _provider_account, _update_metadata
from app.entitlements.types import SideEffectResult, TransitionResult

logger = structlog.get_logger(__name__)

DEFAULT_REFUND_REASON = "payment_refunded"


def _session_ref_from(metadata: dict[str, str]) -> str | None:
    for key in PAYMENT_INTENT_SESSION_KEYS:
        value = metadata.get(key)
        if value:
            return value
    return None


async def _grants_for_charge(
    ctx: EntitlementContext,
    *,
    event: ChargeRefundedEvent,
) -> list[AccessGrant]:
    charge = event.payload
    session_ref = _session_ref_from(charge.metadata)
    subscription_ref: str | None = None
    invoice_ref = charge.invoice

    if session_ref is None:
        if not charge.payment_intent:
            raise MissingCorrelationError(f"charge {charge.id} has no payment intent")
        payment_intent = await ctx.billing.get_payment_intent(
            charge.payment_intent,
            account=event.account,
        )
        session_ref = _session_ref_from(payment_intent.metadata)
        invoice_ref = invoice_ref or payment_intent.invoice_ref
        if session_ref is None:
            checkout = await ctx.billing.find_checkout_session_for_payment_intent(
                payment_intent.id,
                account=event.account,
            )
            if checkout is not None:
                session_ref = checkout.id
                subscription_ref = checkout.subscription_ref

    if session_ref is not None:
        grants = await ctx.store.list_by_session_ref(session_ref)
        if grants:
            return grants

    if subscription_ref is None and invoice_ref:
        subscription_ref = await ctx.billing.get_invoice_subscription_ref(
            invoice_ref,
            account=event.account,
        )
    if subscription_ref is not None:
        grants = await ctx.store.list_by_subscription_ref(subscription_ref)
        if grants:
            return grants

    if session_ref is None and subscription_ref is None:
        raise MissingCorrelationError(f"charge {charge.id} has no session correlation")
    raise NotFoundError(f"no grants for refunded charge {charge.id}")


async def _cancel_live_subscription(
    ctx: EntitlementContext,
    *,
    subscription_ref: str,
    account: str | None,
) -> None:
    subscription = await ctx.billing.get_subscription(subscription_ref, account=account)
    if subscription.status not in LIVE_PROVIDER_SUBSCRIPTION_STATUSES:
        return
    await ctx.billing.cancel_subscription(subscription_ref, account=account, immediately=True)
    logger.info("access_refund_subscription_cancelled", subscription_ref=subscription_ref)


async def cancel_live_subscriptions(
    ctx: EntitlementContext,
    *,
    grants: list[AccessGrant],
    fallback_account: str | None = None,
) -> list[SideEffectResult]:
    results: list[SideEffectResult] = []
    seen: set[str] = set()
    for grant in grants:
        subscription_ref = grant.external_subscription_ref
        if not subscription_ref or subscription_ref in seen:
            continue
        seen.add(subscription_ref)
        results.append(
            await ctx.dispatcher.isolate(
                "cancel_subscription",
                _cancel_live_subscription(
                    ctx,
                    subscription_ref=subscription_ref,
                    account=_provider_account(grant) or fallback_account,
                ),
            )
        )
    return results


async def revoke_refunded_charge(
    ctx: EntitlementContext,
    *,
    event: ChargeRefundedEvent,
    now_utc: datetime,
) -> TransitionResult:
    charge = event.payload
    grants = await _grants_for_charge(ctx, event=event)
    if all_terminal(grants, status="revoked"):
        raise AlreadyProcessedError(f"grants for charge {charge.id} already revoked")

    refund_reason = charge.refund_reason or DEFAULT_REFUND_REASON
    revoked: list[AccessGrant] = []
    for grant in grants:
        if grant.status == "revoked":
            continue
        grant.status = "revoked"
        _update_metadata(
            grant,
            updates={
                "refunded_at": _isoformat(now_utc),
                "refund_amount": charge.amount_refunded,
                "refund_reason": refund_reason,
                "refund_charge_ref": charge.id,
            },
            now_utc=now_utc,
        )
        await ctx.store.save(grant)
        revoked.append(grant)

    logger.info(
        "access_refund_revoked",
        charge_ref=charge.id,
        amount_refunded=charge.amount_refunded,
        reason=refund_reason,
        grants=len(revoked),
    )
    side_effects = await cancel_live_subscriptions(
        ctx,
        grants=revoked,
        fallback_account=event.account,
    )
    ctx.dispatcher.enqueue(
        JOB_ACCESS_REVOKED_NOTICE,
        {
            "user_id": revoked[0].user_id,
            "grant_ids": [grant.id for grant in revoked],
            "reason": refund_reason,
            "charge_ref": charge.id,
        },
        transition=TRANSITION_REFUND_REVOKED,
    )
    return TransitionResult(
        transition=TRANSITION_REFUND_REVOKED,
        grant_ids=[grant.id for grant in revoked],
        side_effects=side_effects,
    )
