from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

import structlog

from app.entitlements.dispatcher import JOB_DONATION_TRANSFER_REVIEW, SideEffectDispatcher
from app.entitlements.ports import BillingGateway
from app.entitlements.types import ProviderLineItem, SideEffectResult

logger = structlog.get_logger(__name__)

DONATION_TRANSFER_EFFECT = "donation_transfer"


@dataclass(frozen=True, slots=True)
class DonationSettings:
    recipient_name: str = "Hylo"
    destination_account_id: str | None = None


def checkout_donation_keyword(recipient_name: str) -> str:
    return f"donation to {recipient_name}".lower()


def renewal_donation_keyword(recipient_name: str) -> str:
    return f"recurring donation to {recipient_name}".lower()


def _matches(item: ProviderLineItem, keyword: str) -> bool:
    for text in (item.description, item.product_name):
        if text and keyword in text.lower():
            return True
    return False


def sum_donation_amount(items: Iterable[ProviderLineItem], keyword: str) -> int:
    return sum(max(0, item.amount_total) for item in items if _matches(item, keyword))


def donation_transfer_idempotency_key(payment_intent_ref: str) -> str:
    return f"donation_transfer:{payment_intent_ref}"


async def transfer_donation(
    *,
    billing: BillingGateway,
    dispatcher: SideEffectDispatcher,
    settings: DonationSettings,
    items: list[ProviderLineItem],
    keyword: str,
    payment_intent_ref: str | None,
    currency: str | None,
    account: str | None,
    transition: str,
) -> SideEffectResult | None:
    amount = sum_donation_amount(items, keyword)
    if amount <= 0:
        return None

    review_payload: dict[str, object] = {
        "amount": amount,
        "currency": (currency or "usd").lower(),
        "payment_intent_ref": payment_intent_ref,
        "provider_account": account,
    }
    try:
        if not payment_intent_ref or not account:
            raise ValueError("donation transfer needs a payment intent and connected account")
        payment_intent = await billing.get_payment_intent(payment_intent_ref, account=account)
        if payment_intent.latest_charge_ref is None:
            raise ValueError("payment intent has no charge")
        transfer_ref = await billing.create_transfer(
            amount=amount,
            currency=(currency or "usd").lower(),
            source_charge_ref=payment_intent.latest_charge_ref,
            destination=settings.destination_account_id or None,
            description=f"Donation to {settings.recipient_name}",
            idempotency_key=donation_transfer_idempotency_key(payment_intent_ref),
        )
    except Exception as exc:
        logger.error(
            "donation_transfer_failed",
            transition=transition,
            amount=amount,
            payment_intent_ref=payment_intent_ref,
            provider_account=account,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        dispatcher.enqueue(
            JOB_DONATION_TRANSFER_REVIEW,
            {**review_payload, "error_type": type(exc).__name__},
            transition=transition,
        )
        return SideEffectResult.failure(DONATION_TRANSFER_EFFECT, detail=type(exc).__name__)

    logger.info(
        "donation_transferred",
        transition=transition,
        amount=amount,
        payment_intent_ref=payment_intent_ref,
        transfer_ref=transfer_ref,
    )
    return SideEffectResult.success(DONATION_TRANSFER_EFFECT, detail=transfer_ref)
