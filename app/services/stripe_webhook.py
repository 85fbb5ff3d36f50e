from __future__ import annotations

import json
from datetime import datetime, timezone

import stripe
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.db.session import SessionLocal
from app.entitlements.adapters import (
    SqlEntitlementStore,
    SqlMembershipGateway,
    SqlOfferingRepository,
)
from app.entitlements.dispatcher import SideEffectDispatcher
from app.entitlements.donations import DonationSettings
from app.entitlements.events import ProviderEvent
from app.entitlements.ports import BillingGateway
from app.entitlements.router import EventRouter
from app.entitlements.service import EntitlementContext
from app.entitlements.types import RouteResult
from app.services.side_effect_queue import CeleryJobQueue
from app.services.stripe_billing import StripeBillingGateway

logger = structlog.get_logger(__name__)


def is_valid_stripe_signature(
    *,
    payload: bytes,
    signature_header: str | None,
    secret: str,
    tolerance_seconds: int,
) -> bool:
    if not secret or not signature_header:
        return False
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            signature_header,
            secret,
            tolerance=tolerance_seconds,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError):
        return False
    return True


def decode_event_payload(payload: bytes) -> object | None:
    try:
        return json.loads(payload)
    except (ValueError, UnicodeDecodeError):
        return None


def donation_settings() -> DonationSettings:
    settings = get_settings()
    return DonationSettings(
        recipient_name=settings.donation_recipient_name,
        destination_account_id=settings.donation_destination_account_id or None,
    )


def build_entitlement_context(
    session: AsyncSession,
    *,
    dispatcher: SideEffectDispatcher,
    billing: BillingGateway | None = None,
) -> EntitlementContext:
    return EntitlementContext(
        store=SqlEntitlementStore(session),
        offerings=SqlOfferingRepository(session),
        memberships=SqlMembershipGateway(session),
        billing=billing or StripeBillingGateway.from_settings(),
        dispatcher=dispatcher,
        donations=donation_settings(),
    )


async def process_stripe_event_async(
    event: ProviderEvent,
    *,
    now_utc: datetime | None = None,
) -> RouteResult:
    now_utc = now_utc or datetime.now(timezone.utc)
    dispatcher = SideEffectDispatcher(CeleryJobQueue.from_settings())

    async with SessionLocal() as session:
        router = EventRouter(build_entitlement_context(session, dispatcher=dispatcher))
        result = await router.route(event, now_utc=now_utc)
        if result.outcome == "failed":
            await session.rollback()
            dispatcher.discard()
            return result
        await session.commit()

    side_effects = await dispatcher.flush()
    failed = [effect.effect for effect in side_effects if not effect.ok]
    if failed:
        logger.warning(
            "stripe_event_side_effects_not_enqueued",
            event_id=event.id,
            event_type=event.type,
            effects=failed,
        )
    return result
