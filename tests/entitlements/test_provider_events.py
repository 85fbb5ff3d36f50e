from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.entitlements.errors import ErrorKind, MalformedPayloadError
from app.entitlements.events import (
    ChargeRefundedEvent,
    CheckoutSessionCompletedEvent,
    InvoicePaidEvent,
    SubscriptionUpdatedEvent,
    UnhandledEvent,
    parse_provider_event,
)


def _raw(event_type: str, payload: dict[str, object], **envelope: object) -> dict[str, object]:
    return {
        "id": "evt_1",
        "type": event_type,
        "account": "acct_1",
        "created": 1738411200,
        "data": {"object": payload},
        **envelope,
    }


def test_checkout_event_flattens_envelope_and_coerces_metadata() -> None:
    event = parse_provider_event(
        _raw(
            "checkout.session.completed",
            {
                "id": "cs_1",
                "payment_status": "paid",
                "subscription": {"id": "sub_1", "object": "subscription"},
                "payment_intent": "pi_1",
                "metadata": {"userId": 42, "groupId": "7", "note": None},
            },
        )
    )

    assert isinstance(event, CheckoutSessionCompletedEvent)
    assert event.account == "acct_1"
    assert event.created == datetime(2025, 2, 1, 12, 0, tzinfo=timezone.utc)
    assert event.payload.subscription == "sub_1"
    assert event.payload.metadata == {"userId": "42", "groupId": "7"}


def test_subscription_event_lifts_period_and_price_from_first_item() -> None:
    event = parse_provider_event(
        _raw(
            "customer.subscription.updated",
            {
                "id": "sub_1",
                "status": "active",
                "cancel_at_period_end": True,
                "items": {
                    "data": [
                        {
                            "current_period_start": 1738368000,
                            "current_period_end": 1740787200,
                            "price": {"id": "price_1"},
                        }
                    ]
                },
            },
        )
    )

    assert isinstance(event, SubscriptionUpdatedEvent)
    assert event.payload.cancel_at_period_end is True
    assert event.payload.price_ref == "price_1"
    assert event.payload.current_period_end == datetime(2025, 3, 1, tzinfo=timezone.utc)


def test_invoice_event_reads_subscription_from_parent_and_latest_line_end() -> None:
    event = parse_provider_event(
        _raw(
            "invoice.paid",
            {
                "id": "in_1",
                "billing_reason": "subscription_cycle",
                "parent": {"subscription_details": {"subscription": "sub_9"}},
                "lines": {
                    "data": [
                        {"amount": 100, "period": {"start": 1738368000, "end": 1740787200}},
                        {"amount": 50, "period": {"start": 1738368000, "end": 1740700800}},
                    ]
                },
            },
        )
    )

    assert isinstance(event, InvoicePaidEvent)
    assert event.payload.subscription == "sub_9"
    assert len(event.payload.lines) == 2
    assert event.payload.period_end == datetime(2025, 3, 1, tzinfo=timezone.utc)


def test_charge_event_unwraps_refund_list() -> None:
    event = parse_provider_event(
        _raw(
            "charge.refunded",
            {
                "id": "ch_1",
                "amount_refunded": 500,
                "refunds": {"data": [{"id": "re_1", "reason": "fraudulent"}]},
            },
        )
    )

    assert isinstance(event, ChargeRefundedEvent)
    assert event.payload.refund_reason == "fraudulent"
    assert event.payload.amount_refunded == 500


def test_unknown_event_type_parses_as_unhandled() -> None:
    event = parse_provider_event(_raw("customer.created", {"id": "cus_1"}))

    assert isinstance(event, UnhandledEvent)
    assert event.type == "customer.created"


@pytest.mark.parametrize(
    "raw",
    [
        [],
        {"id": "evt_1", "type": "invoice.paid"},
        {"id": "evt_1", "data": {"object": {"id": "in_1"}}},
        _raw("customer.subscription.updated", {"id": "sub_1"}),
        {"type": "invoice.paid", "data": {"object": {"id": "in_1"}}},
    ],
)
def test_malformed_envelopes_are_rejected(raw: object) -> None:
    with pytest.raises(MalformedPayloadError) as exc_info:
        parse_provider_event(raw)

    assert exc_info.value.kind is ErrorKind.MALFORMED_PAYLOAD
