from __future__ import annotations

import pytest

from app.entitlements.dispatcher import JOB_DONATION_TRANSFER_REVIEW, SideEffectDispatcher
from app.entitlements.donations import (
    DonationSettings,
    checkout_donation_keyword,
    renewal_donation_keyword,
    sum_donation_amount,
    transfer_donation,
)
from app.entitlements.errors import UpstreamTransientError
from app.entitlements.types import ProviderLineItem, ProviderPaymentIntent
from tests.entitlements.entitlement_fixtures import ACCOUNT, FakeBilling, FakeQueue

ITEMS = [
    ProviderLineItem(amount_total=2000, description="Supporter membership"),
    ProviderLineItem(amount_total=500, description="Donation to Hylo"),
    ProviderLineItem(amount_total=300, product_name="Recurring donation to Hylo"),
]


def test_checkout_keyword_matches_one_time_and_recurring_donations() -> None:
    assert sum_donation_amount(ITEMS, checkout_donation_keyword("Hylo")) == 800


def test_renewal_keyword_only_matches_recurring_donations() -> None:
    assert sum_donation_amount(ITEMS, renewal_donation_keyword("Hylo")) == 300


def _billing() -> FakeBilling:
    return FakeBilling(
        payment_intents={
            "pi_1": ProviderPaymentIntent(id="pi_1", latest_charge_ref="ch_1", invoice_ref=None)
        }
    )


@pytest.mark.asyncio
async def test_transfer_donation_keys_transfer_by_payment_intent() -> None:
    billing = _billing()
    dispatcher = SideEffectDispatcher(FakeQueue())

    result = await transfer_donation(
        billing=billing,
        dispatcher=dispatcher,
        settings=DonationSettings(destination_account_id="acct_platform"),
        items=ITEMS,
        keyword=checkout_donation_keyword("Hylo"),
        payment_intent_ref="pi_1",
        currency="USD",
        account=ACCOUNT,
        transition="purchase_completed",
    )

    assert result is not None and result.ok is True
    assert billing.transfers == [
        {
            "amount": 800,
            "currency": "usd",
            "source_charge_ref": "ch_1",
            "destination": "acct_platform",
            "idempotency_key": "donation_transfer:pi_1",
        }
    ]
    assert dispatcher.pending == []


@pytest.mark.asyncio
async def test_transfer_donation_skips_when_nothing_was_donated() -> None:
    billing = _billing()

    result = await transfer_donation(
        billing=billing,
        dispatcher=SideEffectDispatcher(FakeQueue()),
        settings=DonationSettings(),
        items=ITEMS[:1],
        keyword=checkout_donation_keyword("Hylo"),
        payment_intent_ref="pi_1",
        currency="usd",
        account=ACCOUNT,
        transition="purchase_completed",
    )

    assert result is None
    assert billing.transfers == []


@pytest.mark.asyncio
async def test_transfer_failure_is_flagged_for_review_instead_of_raising() -> None:
    billing = _billing()
    billing.failures["create_transfer"] = UpstreamTransientError("stripe timeout")
    dispatcher = SideEffectDispatcher(FakeQueue())

    result = await transfer_donation(
        billing=billing,
        dispatcher=dispatcher,
        settings=DonationSettings(),
        items=ITEMS,
        keyword=checkout_donation_keyword("Hylo"),
        payment_intent_ref="pi_1",
        currency="usd",
        account=ACCOUNT,
        transition="purchase_completed",
    )

    assert result is not None and result.ok is False
    assert [job.job_type for job in dispatcher.pending] == [JOB_DONATION_TRANSFER_REVIEW]
    assert dispatcher.pending[0].payload["amount"] == 800
