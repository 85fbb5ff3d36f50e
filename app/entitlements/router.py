from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import structlog

from app.entitlements import events
from app.entitlements.errors import EntitlementError, ErrorKind
from app.entitlements.events import ProviderEvent, UnhandledEvent
from app.entitlements.service import EntitlementContext, EntitlementService
from app.entitlements.types import RouteOutcome, RouteResult, TransitionResult

logger = structlog.get_logger(__name__)

Handler = Callable[[EntitlementContext, Any, datetime], Awaitable[TransitionResult]]

_OUTCOME_BY_KIND: dict[ErrorKind, RouteOutcome] = {
    ErrorKind.ALREADY_PROCESSED: "noop",
    ErrorKind.MISSING_CORRELATION: "skipped",
    ErrorKind.NOT_FOUND: "skipped",
    ErrorKind.UPSTREAM_TRANSIENT: "deferred",
    ErrorKind.SIDE_EFFECT_FAILURE: "applied",
    ErrorKind.MALFORMED_PAYLOAD: "skipped",
    ErrorKind.SIGNATURE_INVALID: "skipped",
}


async def _complete_purchase(
    ctx: EntitlementContext,
    event: events.CheckoutSessionCompletedEvent,
    now_utc: datetime,
) -> TransitionResult:
    return await EntitlementService.complete_purchase(ctx, event=event, now_utc=now_utc)


async def _repair_subscription(
    ctx: EntitlementContext,
    event: events.SubscriptionCreatedEvent,
    now_utc: datetime,
) -> TransitionResult:
    return await EntitlementService.repair_subscription_grants(
        ctx,
        subscription=event.payload,
        account=event.account,
        now_utc=now_utc,
    )


async def _update_subscription(
    ctx: EntitlementContext,
    event: events.SubscriptionUpdatedEvent,
    now_utc: datetime,
) -> TransitionResult:
    return await EntitlementService.apply_subscription_update(ctx, event=event, now_utc=now_utc)


async def _expire_subscription(
    ctx: EntitlementContext,
    event: events.SubscriptionDeletedEvent,
    now_utc: datetime,
) -> TransitionResult:
    return await EntitlementService.expire_subscription(ctx, event=event, now_utc=now_utc)


async def _invoice_paid(
    ctx: EntitlementContext,
    event: events.InvoicePaidEvent,
    now_utc: datetime,
) -> TransitionResult:
    return await EntitlementService.apply_invoice_paid(ctx, event=event, now_utc=now_utc)


async def _invoice_payment_failed(
    ctx: EntitlementContext,
    event: events.InvoicePaymentFailedEvent,
    now_utc: datetime,
) -> TransitionResult:
    return await EntitlementService.record_payment_failure(ctx, event=event, now_utc=now_utc)


async def _charge_refunded(
    ctx: EntitlementContext,
    event: events.ChargeRefundedEvent,
    now_utc: datetime,
) -> TransitionResult:
    return await EntitlementService.revoke_refunded_charge(ctx, event=event, now_utc=now_utc)


async def _product_updated(
    ctx: EntitlementContext,
    event: events.ProductUpdatedEvent,
    now_utc: datetime,
) -> TransitionResult:
    return await EntitlementService.sync_offering_from_product(ctx, event=event, now_utc=now_utc)


HANDLERS: dict[str, Handler] = {
    events.CHECKOUT_SESSION_COMPLETED: _complete_purchase,
    events.SUBSCRIPTION_CREATED: _repair_subscription,
    events.SUBSCRIPTION_UPDATED: _update_subscription,
    events.SUBSCRIPTION_DELETED: _expire_subscription,
    events.INVOICE_PAID: _invoice_paid,
    events.INVOICE_PAYMENT_FAILED: _invoice_payment_failed,
    events.CHARGE_REFUNDED: _charge_refunded,
    events.PRODUCT_UPDATED: _product_updated,
}


class EventRouter:
    def __init__(
        self,
        ctx: EntitlementContext,
        *,
        handlers: dict[str, Handler] | None = None,
    ) -> None:
        self._ctx = ctx
        self._handlers = HANDLERS if handlers is None else handlers

    async def route(self, event: ProviderEvent, *, now_utc: datetime) -> RouteResult:
        handler = None if isinstance(event, UnhandledEvent) else self._handlers.get(event.type)
        if handler is None:
            logger.info("provider_event_ignored", event_id=event.id, event_type=event.type)
            return RouteResult(event_id=event.id, event_type=event.type, outcome="ignored")

        try:
            result = await handler(self._ctx, event, now_utc)
        except EntitlementError as exc:
            outcome = _OUTCOME_BY_KIND[exc.kind]
            log = logger.warning if outcome in {"skipped", "deferred"} else logger.info
            log(
                "provider_event_not_applied",
                event_id=event.id,
                event_type=event.type,
                outcome=outcome,
                error_kind=exc.kind.value,
                detail=str(exc),
            )
            return RouteResult(
                event_id=event.id,
                event_type=event.type,
                outcome=outcome,
                error_kind=exc.kind,
                detail=str(exc),
            )
        except Exception:
            logger.exception("provider_event_failed", event_id=event.id, event_type=event.type)
            return RouteResult(event_id=event.id, event_type=event.type, outcome="failed")

        failed_effects = [effect.effect for effect in result.side_effects if not effect.ok]
        if failed_effects:
            logger.warning(
                "provider_event_side_effects_failed",
                event_id=event.id,
                event_type=event.type,
                transition=result.transition,
                effects=failed_effects,
            )
        outcome: RouteOutcome = "applied" if result.changed else "noop"
        logger.info(
            "provider_event_routed",
            event_id=event.id,
            event_type=event.type,
            transition=result.transition,
            outcome=outcome,
            grants=len(result.grant_ids),
        )
        return RouteResult(
            event_id=event.id,
            event_type=event.type,
            outcome=outcome,
            transition=result.transition,
        )
