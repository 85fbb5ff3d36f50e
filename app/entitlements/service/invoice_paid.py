from __future__ import annotations

from datetime import datetime

import structlog

from app.db.models.access_grants import AccessGrant
from app.entitlements.dispatcher import JOB_RENEWAL_RECEIPT_EMAIL
from app.entitlements.donations import renewal_donation_keyword, transfer_donation
from app.entitlements.errors import (
    AlreadyProcessedError,
    MissingCorrelationError,
    NotFoundError,
    OfferingNotFoundError,
)
from app.entitlements.events import InvoicePaidEvent
from app.entitlements.idempotency import renewal_already_applied
from app.entitlements.service.constants import (
    TRANSITION_INITIAL_INVOICE_SKIPPED,
    TRANSITION_RENEWAL_BLOCKED,
    TRANSITION_RENEWED,
)
from app.entitlements.service.context import EntitlementContext
from app.entitlements.service.grants import _isoformat, _update_metadata
from app.entitlements.types import ProviderLineItem, TransitionResult

logger = structlog.get_logger(__name__)

INITIAL_INVOICE_BILLING_REASON = "subscription_create"
RENEWAL_BLOCKED_INVOICE_KEY = "renewal_blocked_invoice_ref"


def _offering_id_for(grants: list[AccessGrant]) -> int | None:
    for grant in grants:
        if grant.offering_id is not None:
            return grant.offering_id
    return None


async def _block_manual_renewal(
    ctx: EntitlementContext,
    *,
    event: InvoicePaidEvent,
    grants: list[AccessGrant],
    now_utc: datetime,
) -> TransitionResult:
    invoice = event.payload
    if all(
        (grant.metadata_ or {}).get(RENEWAL_BLOCKED_INVOICE_KEY) == invoice.id for grant in grants
    ):
        raise AlreadyProcessedError(f"renewal already blocked for invoice {invoice.id}")

    # Provider failures propagate before any grant is touched.
    await ctx.billing.cancel_subscription(
        invoice.subscription or "",
        account=event.account,
        immediately=False,
    )
    for grant in grants:
        _update_metadata(
            grant,
            updates={
                "renewal_blocked_at": _isoformat(now_utc),
                RENEWAL_BLOCKED_INVOICE_KEY: invoice.id,
            },
            now_utc=now_utc,
        )
        await ctx.store.save(grant)

    logger.warning(
        "access_renewal_blocked_manual_policy",
        subscription_ref=invoice.subscription,
        invoice_ref=invoice.id,
        grants=len(grants),
    )
    return TransitionResult(
        transition=TRANSITION_RENEWAL_BLOCKED,
        grant_ids=[grant.id for grant in grants],
    )


async def apply_invoice_paid(
    ctx: EntitlementContext,
    *,
    event: InvoicePaidEvent,
    now_utc: datetime,
) -> TransitionResult:
    invoice = event.payload
    if invoice.billing_reason == INITIAL_INVOICE_BILLING_REASON:
        return TransitionResult(transition=TRANSITION_INITIAL_INVOICE_SKIPPED, changed=False)
    if not invoice.subscription:
        raise MissingCorrelationError(f"invoice {invoice.id} has no subscription")

    grants = await ctx.store.list_by_subscription_ref(invoice.subscription)
    if not grants:
        raise NotFoundError(f"no grants for subscription {invoice.subscription}")
    active_grants = [grant for grant in grants if grant.status == "active"]
    if not active_grants:
        raise AlreadyProcessedError(f"grants for subscription {invoice.subscription} are terminal")

    offering_id = _offering_id_for(grants)
    offering = await ctx.offerings.get(offering_id) if offering_id is not None else None
    if offering is None:
        raise OfferingNotFoundError(f"no offering for subscription {invoice.subscription}")

    if offering.renewal_policy != "auto":
        return await _block_manual_renewal(
            ctx,
            event=event,
            grants=active_grants,
            now_utc=now_utc,
        )

    if renewal_already_applied(active_grants, invoice.id):
        raise AlreadyProcessedError(f"invoice {invoice.id} already applied")

    period_start = invoice.period_start
    period_end = invoice.period_end
    if period_end is None:
        provider_subscription = await ctx.billing.get_subscription(
            invoice.subscription,
            account=event.account,
        )
        period_start = period_start or provider_subscription.current_period_start
        period_end = provider_subscription.current_period_end
    if period_end is None:
        raise MissingCorrelationError(f"invoice {invoice.id} has no billing period")

    for grant in active_grants:
        if grant.expires_at is not None and grant.expires_at < period_end:
            grant.expires_at = period_end
        _update_metadata(
            grant,
            updates={
                "renewed_at": _isoformat(now_utc),
                "last_renewal_invoice_ref": invoice.id,
                "subscription_period_start": _isoformat(period_start),
                "subscription_period_end": _isoformat(period_end),
            },
            now_utc=now_utc,
        )
        await ctx.store.save(grant)

    logger.info(
        "access_subscription_renewed",
        subscription_ref=invoice.subscription,
        invoice_ref=invoice.id,
        period_end=_isoformat(period_end),
        grants=len(active_grants),
    )
    ctx.dispatcher.enqueue(
        JOB_RENEWAL_RECEIPT_EMAIL,
        {
            "user_id": active_grants[0].user_id,
            "offering_id": offering.id,
            "subscription_ref": invoice.subscription,
            "invoice_ref": invoice.id,
            "amount_paid": invoice.amount_paid,
            "currency": invoice.currency,
            "period_end": _isoformat(period_end),
        },
        transition=TRANSITION_RENEWED,
    )

    side_effects = []
    donation_result = await transfer_donation(
        billing=ctx.billing,
        dispatcher=ctx.dispatcher,
        settings=ctx.donations,
        items=[
            ProviderLineItem(amount_total=line.amount, description=line.description)
            for line in invoice.lines
        ],
        keyword=renewal_donation_keyword(ctx.donations.recipient_name),
        payment_intent_ref=invoice.payment_intent,
        currency=invoice.currency,
        account=event.account,
        transition=TRANSITION_RENEWED,
    )
    if donation_result is not None:
        side_effects.append(donation_result)

    return TransitionResult(
        transition=TRANSITION_RENEWED,
        grant_ids=[grant.id for grant in active_grants],
        side_effects=side_effects,
    )
