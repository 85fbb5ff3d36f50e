from __future__ import annotations

from datetime import datetime

import pytest

from app.entitlements.dispatcher import (
    JOB_ACCESS_REPAIRED_REVIEW,
    JOB_ADMIN_PURCHASE_NOTICE,
    JOB_PAYMENT_FAILED_NOTICE,
    JOB_PURCHASE_CONFIRMATION_EMAIL,
    JOB_SUBSCRIPTION_CANCEL_SCHEDULED_NOTICE,
    JOB_SUBSCRIPTION_ENDED_NOTICE,
)
from app.entitlements.errors import ErrorKind
from app.entitlements.router import EventRouter
from app.entitlements.types import (
    ProviderCheckoutSession,
    ProviderLineItem,
    ProviderPaymentIntent,
    ProviderSubscription,
)
from tests.entitlements.entitlement_fixtures import (
    NOW,
    UTC,
    FakeBilling,
    Harness,
    checkout_completed,
    correlation_metadata,
    invoice_event,
    make_harness,
    make_offering,
    subscription_event,
)

PERIOD_END = datetime(2025, 3, 1, tzinfo=UTC)


def _billing_with_checkout() -> FakeBilling:
    return FakeBilling(
        checkout_sessions={
            "cs_test_1": ProviderCheckoutSession(
                id="cs_test_1",
                payment_status="paid",
                amount_total=2000,
                currency="usd",
                subscription_ref="sub_test_1",
                payment_intent_ref="pi_test_1",
                metadata=correlation_metadata(),
            )
        }
    )


async def _subscribed_harness() -> Harness:
    harness = make_harness(make_offering(duration="month"), billing=_billing_with_checkout())
    result = await EventRouter(harness.ctx).route(
        checkout_completed(subscription_ref="sub_test_1"),
        now_utc=NOW,
    )
    assert result.outcome == "applied"
    harness.dispatcher.discard()
    return harness


def _grant_snapshot(harness: Harness) -> list[tuple[object, ...]]:
    return sorted(
        (
            grant.idempotency_key,
            grant.user_id,
            grant.group_id,
            grant.status,
            grant.external_subscription_ref,
            grant.external_session_ref,
        )
        for grant in harness.store.grants.values()
    )


@pytest.mark.asyncio
async def test_subscription_created_before_checkout_converges_to_same_grants() -> None:
    checkout_first = make_harness(billing=_billing_with_checkout())
    created_first = make_harness(billing=_billing_with_checkout())

    first_router = EventRouter(checkout_first.ctx)
    first_outcomes = [
        (await first_router.route(checkout_completed(subscription_ref="sub_test_1"), now_utc=NOW)).outcome,
        (await first_router.route(subscription_event("customer.subscription.created"), now_utc=NOW)).outcome,
    ]
    second_router = EventRouter(created_first.ctx)
    second_outcomes = [
        (await second_router.route(subscription_event("customer.subscription.created"), now_utc=NOW)).outcome,
        (await second_router.route(checkout_completed(subscription_ref="sub_test_1"), now_utc=NOW)).outcome,
    ]

    assert first_outcomes == ["applied", "noop"]
    assert second_outcomes == ["applied", "applied"]
    assert _grant_snapshot(checkout_first) == _grant_snapshot(created_first)
    assert len(created_first.store.grants) == 1
    assert JOB_ACCESS_REPAIRED_REVIEW in created_first.pending_job_types()
    assert created_first.pending_job_types()[-2:] == [
        JOB_PURCHASE_CONFIRMATION_EMAIL,
        JOB_ADMIN_PURCHASE_NOTICE,
    ]


@pytest.mark.asyncio
async def test_repaired_grant_expires_at_provider_period_end() -> None:
    harness = make_harness(billing=_billing_with_checkout())

    await EventRouter(harness.ctx).route(
        subscription_event("customer.subscription.created"),
        now_utc=NOW,
    )

    (grant,) = harness.store.grants.values()
    assert grant.expires_at == PERIOD_END
    assert grant.external_session_ref == "cs_test_1"
    assert grant.metadata_["repair_source"] == "webhook"


@pytest.mark.asyncio
async def test_checkout_after_repair_sends_receipts_and_transfers_donation() -> None:
    billing = _billing_with_checkout()
    billing.line_items["cs_test_1"] = [
        ProviderLineItem(amount_total=2000, description="Supporter"),
        ProviderLineItem(amount_total=500, description="Donation to Hylo"),
    ]
    billing.payment_intents["pi_test_1"] = ProviderPaymentIntent(
        id="pi_test_1",
        latest_charge_ref="ch_test_1",
        invoice_ref=None,
    )
    harness = make_harness(billing=billing)
    router = EventRouter(harness.ctx)
    await router.route(subscription_event("customer.subscription.created"), now_utc=NOW)
    harness.dispatcher.discard()

    completed = await router.route(checkout_completed(subscription_ref="sub_test_1"), now_utc=NOW)
    replay = await router.route(checkout_completed(subscription_ref="sub_test_1"), now_utc=NOW)

    (grant,) = harness.store.grants.values()
    assert (completed.outcome, replay.outcome) == ("applied", "noop")
    assert [(transfer["amount"], transfer["idempotency_key"]) for transfer in billing.transfers] == [
        (500, "donation_transfer:pi_test_1")
    ]
    assert harness.pending_job_types() == [
        JOB_PURCHASE_CONFIRMATION_EMAIL,
        JOB_ADMIN_PURCHASE_NOTICE,
    ]
    assert grant.metadata_["payment_intent_ref"] == "pi_test_1"
    assert grant.metadata_["purchased_at"] == NOW.isoformat()
    assert grant.metadata_["repair_source"] == "webhook"


@pytest.mark.asyncio
async def test_repaired_grant_records_checkout_payment_intent() -> None:
    harness = make_harness(billing=_billing_with_checkout())

    await EventRouter(harness.ctx).route(
        subscription_event("customer.subscription.created"),
        now_utc=NOW,
    )

    (grant,) = harness.store.grants.values()
    assert grant.metadata_["payment_intent_ref"] == "pi_test_1"
    assert "purchased_at" not in grant.metadata_


@pytest.mark.asyncio
async def test_cancellation_delivered_before_checkout_reaches_the_grants() -> None:
    billing = _billing_with_checkout()
    billing.subscriptions["sub_test_1"] = ProviderSubscription(
        id="sub_test_1",
        status="active",
        current_period_start=None,
        current_period_end=PERIOD_END,
        cancel_at_period_end=True,
        canceled_at=NOW,
        cancellation_reason="cancellation_requested",
    )
    harness = make_harness(billing=billing)
    router = EventRouter(harness.ctx)

    early = await router.route(
        subscription_event(
            "customer.subscription.updated",
            cancel_at_period_end=True,
            canceled_at=int(NOW.timestamp()),
            cancellation_details={"reason": "cancellation_requested"},
        ),
        now_utc=NOW,
    )
    completed = await router.route(checkout_completed(subscription_ref="sub_test_1"), now_utc=NOW)

    (grant,) = harness.store.grants.values()
    assert early.outcome == "skipped"
    assert completed.outcome == "applied"
    assert grant.status == "active"
    assert grant.metadata_["cancel_effective_at"] == PERIOD_END.isoformat()
    assert grant.metadata_["cancel_reason"] == "cancellation_requested"
    assert JOB_SUBSCRIPTION_CANCEL_SCHEDULED_NOTICE in harness.pending_job_types()


@pytest.mark.asyncio
async def test_subscription_without_correlation_is_skipped() -> None:
    harness = make_harness()

    result = await EventRouter(harness.ctx).route(
        subscription_event("customer.subscription.created"),
        now_utc=NOW,
    )

    assert result.outcome == "skipped"
    assert result.error_kind is ErrorKind.MISSING_CORRELATION
    assert harness.store.grants == {}


@pytest.mark.asyncio
async def test_scheduled_cancellation_keeps_access_until_deletion() -> None:
    harness = await _subscribed_harness()
    router = EventRouter(harness.ctx)
    scheduled = subscription_event(
        "customer.subscription.updated",
        cancel_at_period_end=True,
        canceled_at=int(NOW.timestamp()),
        cancellation_details={"reason": "cancellation_requested"},
    )

    first = await router.route(scheduled, now_utc=NOW)
    replay = await router.route(scheduled, now_utc=NOW)

    (grant,) = harness.store.grants.values()
    assert first.outcome == "applied"
    assert replay.outcome == "noop"
    assert grant.status == "active"
    assert grant.metadata_["cancel_effective_at"] == PERIOD_END.isoformat()
    assert grant.metadata_["cancel_reason"] == "cancellation_requested"
    assert harness.pending_job_types() == [JOB_SUBSCRIPTION_CANCEL_SCHEDULED_NOTICE]

    deleted = await router.route(
        subscription_event(
            "customer.subscription.deleted",
            status="canceled",
            ended_at=int(PERIOD_END.timestamp()),
            cancellation_details={"reason": "cancellation_requested"},
        ),
        now_utc=PERIOD_END,
    )

    assert deleted.outcome == "applied"
    assert grant.status == "expired"
    assert grant.metadata_["subscription_ended_at"] == PERIOD_END.isoformat()
    assert grant.metadata_["subscription_end_reason"] == "cancellation_requested"
    assert harness.pending_job_types()[-1] == JOB_SUBSCRIPTION_ENDED_NOTICE


@pytest.mark.asyncio
async def test_clearing_cancel_at_period_end_reactivates() -> None:
    harness = await _subscribed_harness()
    router = EventRouter(harness.ctx)
    await router.route(
        subscription_event("customer.subscription.updated", cancel_at_period_end=True),
        now_utc=NOW,
    )

    result = await router.route(
        subscription_event("customer.subscription.updated", event_id="evt_reactivate"),
        now_utc=NOW,
    )

    (grant,) = harness.store.grants.values()
    assert result.outcome == "applied"
    assert result.transition == "subscription_reactivated"
    assert "cancel_effective_at" not in grant.metadata_
    assert grant.status == "active"


@pytest.mark.asyncio
async def test_past_due_update_does_not_revoke() -> None:
    harness = await _subscribed_harness()

    result = await EventRouter(harness.ctx).route(
        subscription_event("customer.subscription.updated", status="past_due"),
        now_utc=NOW,
    )

    assert result.outcome == "noop"
    assert [grant.status for grant in harness.store.grants.values()] == ["active"]


@pytest.mark.asyncio
async def test_payment_failures_are_recorded_without_revoking() -> None:
    harness = await _subscribed_harness()
    router = EventRouter(harness.ctx)
    first_attempt = invoice_event("invoice.payment_failed", attempt_count=1)

    outcomes = [
        (await router.route(first_attempt, now_utc=NOW)).outcome,
        (await router.route(first_attempt, now_utc=NOW)).outcome,
        (
            await router.route(
                invoice_event("invoice.payment_failed", attempt_count=2, event_id="evt_retry"),
                now_utc=NOW,
            )
        ).outcome,
    ]

    (grant,) = harness.store.grants.values()
    assert outcomes == ["applied", "noop", "applied"]
    assert grant.status == "active"
    assert grant.metadata_["payment_failure_count"] == 2
    assert grant.metadata_["last_payment_failure_ref"] == "in_test_1:2"
    assert harness.pending_job_types() == [JOB_PAYMENT_FAILED_NOTICE, JOB_PAYMENT_FAILED_NOTICE]


@pytest.mark.asyncio
async def test_deletion_for_unknown_subscription_is_skipped() -> None:
    harness = make_harness()

    result = await EventRouter(harness.ctx).route(
        subscription_event("customer.subscription.deleted", status="canceled"),
        now_utc=NOW,
    )

    assert result.outcome == "skipped"
    assert result.error_kind is ErrorKind.NOT_FOUND
