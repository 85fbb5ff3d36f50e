from __future__ import annotations

from datetime import datetime

import pytest

from app.entitlements.dispatcher import JOB_DONATION_TRANSFER_REVIEW, JOB_RENEWAL_RECEIPT_EMAIL
from app.entitlements.errors import ErrorKind, UpstreamTransientError
from app.entitlements.router import EventRouter
from app.entitlements.types import ProviderPaymentIntent, ProviderSubscription
from tests.entitlements.entitlement_fixtures import (
    NOW,
    UTC,
    FakeBilling,
    Harness,
    checkout_completed,
    invoice_event,
    make_harness,
    make_offering,
)

FEB_1 = datetime(2025, 2, 1, tzinfo=UTC)
MAR_1 = datetime(2025, 3, 1, tzinfo=UTC)


async def _harness(*, renewal_policy: str, billing: FakeBilling | None = None) -> Harness:
    harness = make_harness(
        make_offering(renewal_policy=renewal_policy, duration="month"),
        billing=billing,
    )
    await EventRouter(harness.ctx).route(
        checkout_completed(subscription_ref="sub_test_1"),
        now_utc=NOW,
    )
    for grant in harness.store.grants.values():
        grant.expires_at = FEB_1
    harness.dispatcher.discard()
    return harness


@pytest.mark.asyncio
async def test_auto_renewal_extends_expiry_to_new_period_end() -> None:
    harness = await _harness(renewal_policy="auto")

    result = await EventRouter(harness.ctx).route(invoice_event("invoice.paid"), now_utc=NOW)

    (grant,) = harness.store.grants.values()
    assert result.outcome == "applied"
    assert grant.expires_at == MAR_1
    assert grant.metadata_["last_renewal_invoice_ref"] == "in_test_1"
    assert grant.metadata_["subscription_period_end"] == MAR_1.isoformat()
    assert len(harness.store.grants) == 1
    assert harness.pending_job_types() == [JOB_RENEWAL_RECEIPT_EMAIL]
    assert harness.billing.cancellations == []


@pytest.mark.asyncio
async def test_replayed_renewal_invoice_is_a_noop() -> None:
    harness = await _harness(renewal_policy="auto")
    router = EventRouter(harness.ctx)

    await router.route(invoice_event("invoice.paid"), now_utc=NOW)
    replay = await router.route(invoice_event("invoice.paid"), now_utc=NOW)

    assert replay.outcome == "noop"
    assert harness.pending_job_types() == [JOB_RENEWAL_RECEIPT_EMAIL]


@pytest.mark.asyncio
async def test_initial_invoice_is_skipped() -> None:
    harness = await _harness(renewal_policy="auto")

    result = await EventRouter(harness.ctx).route(
        invoice_event("invoice.paid", billing_reason="subscription_create"),
        now_utc=NOW,
    )

    (grant,) = harness.store.grants.values()
    assert result.outcome == "noop"
    assert grant.expires_at == FEB_1


@pytest.mark.asyncio
async def test_manual_renewal_requests_cancellation_and_keeps_expiry() -> None:
    harness = await _harness(renewal_policy="manual")
    router = EventRouter(harness.ctx)

    result = await router.route(invoice_event("invoice.paid"), now_utc=NOW)
    replay = await router.route(invoice_event("invoice.paid"), now_utc=NOW)

    (grant,) = harness.store.grants.values()
    assert result.outcome == "applied"
    assert result.transition == "renewal_blocked"
    assert replay.outcome == "noop"
    assert grant.expires_at == FEB_1
    assert grant.metadata_["renewal_blocked_invoice_ref"] == "in_test_1"
    assert harness.billing.cancellations == [
        {"subscription_ref": "sub_test_1", "account": "acct_merchant_1", "immediately": False}
    ]


@pytest.mark.asyncio
async def test_manual_renewal_cancel_timeout_defers_without_touching_grants() -> None:
    billing = FakeBilling(failures={"cancel_subscription": UpstreamTransientError("timeout")})
    harness = await _harness(renewal_policy="manual", billing=billing)

    result = await EventRouter(harness.ctx).route(invoice_event("invoice.paid"), now_utc=NOW)

    (grant,) = harness.store.grants.values()
    assert result.outcome == "deferred"
    assert result.error_kind is ErrorKind.UPSTREAM_TRANSIENT
    assert "renewal_blocked_invoice_ref" not in grant.metadata_


@pytest.mark.asyncio
async def test_missing_invoice_period_falls_back_to_provider_subscription() -> None:
    billing = FakeBilling(
        subscriptions={
            "sub_test_1": ProviderSubscription(
                id="sub_test_1",
                status="active",
                current_period_start=FEB_1,
                current_period_end=MAR_1,
            )
        }
    )
    harness = await _harness(renewal_policy="auto", billing=billing)

    await EventRouter(harness.ctx).route(
        invoice_event("invoice.paid", lines=[{"amount": 2000, "description": "Supporter"}]),
        now_utc=NOW,
    )

    (grant,) = harness.store.grants.values()
    assert grant.expires_at == MAR_1


@pytest.mark.asyncio
async def test_renewal_donation_uses_recurring_keyword() -> None:
    billing = FakeBilling(
        payment_intents={
            "pi_renewal_1": ProviderPaymentIntent(
                id="pi_renewal_1",
                latest_charge_ref="ch_renewal_1",
                invoice_ref="in_test_1",
            )
        }
    )
    harness = await _harness(renewal_policy="auto", billing=billing)
    period = {"start": int(FEB_1.timestamp()), "end": int(MAR_1.timestamp())}

    await EventRouter(harness.ctx).route(
        invoice_event(
            "invoice.paid",
            lines=[
                {"amount": 2000, "description": "1 x Supporter", "period": period},
                {"amount": 300, "description": "1 x Recurring donation to Hylo", "period": period},
                {"amount": 500, "description": "1 x Donation to Hylo", "period": period},
            ],
        ),
        now_utc=NOW,
    )

    assert [transfer["amount"] for transfer in billing.transfers] == [300]
    assert billing.transfers[0]["idempotency_key"] == "donation_transfer:pi_renewal_1"


@pytest.mark.asyncio
async def test_renewal_donation_failure_does_not_block_extension() -> None:
    harness = await _harness(renewal_policy="auto")
    period = {"start": int(FEB_1.timestamp()), "end": int(MAR_1.timestamp())}

    result = await EventRouter(harness.ctx).route(
        invoice_event(
            "invoice.paid",
            lines=[{"amount": 300, "description": "Recurring donation to Hylo", "period": period}],
        ),
        now_utc=NOW,
    )

    (grant,) = harness.store.grants.values()
    assert result.outcome == "applied"
    assert grant.expires_at == MAR_1
    assert JOB_DONATION_TRANSFER_REVIEW in harness.pending_job_types()
