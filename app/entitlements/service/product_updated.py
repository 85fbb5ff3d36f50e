from __future__ import annotations

from datetime import datetime

import structlog

from app.entitlements.errors import AlreadyProcessedError, OfferingNotFoundError
from app.entitlements.events import ProductUpdatedEvent
from app.entitlements.service.constants import TRANSITION_OFFERING_SYNCED
from app.entitlements.service.context import EntitlementContext
from app.entitlements.types import TransitionResult

logger = structlog.get_logger(__name__)


async def sync_offering_from_product(
    ctx: EntitlementContext,
    *,
    event: ProductUpdatedEvent,
    now_utc: datetime,
) -> TransitionResult:
    product_ref = event.payload.id
    offering = await ctx.offerings.get_by_provider_product(product_ref)
    if offering is None:
        raise OfferingNotFoundError(f"no offering for product {product_ref}")

    product = await ctx.billing.get_product(product_ref, account=event.account)
    desired: dict[str, object] = {
        "name": product.name,
        "description": product.description,
        "price_in_cents": product.unit_amount,
        "currency": product.currency.lower() if product.currency else None,
        "provider_price_ref": product.default_price_ref,
    }
    changed_fields: list[str] = []
    for field_name, value in desired.items():
        if value is None or getattr(offering, field_name) == value:
            continue
        setattr(offering, field_name, value)
        changed_fields.append(field_name)
    if not changed_fields:
        raise AlreadyProcessedError(f"offering {offering.id} already matches product {product_ref}")

    offering.updated_at = now_utc
    await ctx.offerings.save(offering)
    logger.info(
        "offering_drift_corrected",
        offering_id=offering.id,
        product_ref=product_ref,
        fields=changed_fields,
    )
    return TransitionResult(transition=TRANSITION_OFFERING_SYNCED, changed=True)
