from __future__ import annotations

from datetime import timedelta

import pytest

from app.entitlements.dispatcher import JOB_ACCESS_REVOKED_NOTICE, JOB_MEMBERSHIP_SYNC
from app.entitlements.errors import (
    AccessGrantNotFoundError,
    InvalidGrantRequestError,
    OfferingNotFoundError,
)
from app.entitlements.router import EventRouter
from app.entitlements.service import EntitlementService
from app.entitlements.types import ProviderSubscription
from tests.entitlements.entitlement_fixtures import (
    NOW,
    FakeBilling,
    checkout_completed,
    make_harness,
    make_offering,
)


@pytest.mark.asyncio
async def test_admin_grant_from_offering_is_idempotent_per_request_key() -> None:
    harness = make_harness(make_offering(access_grants={"groupIds": [7], "roleIds": [3]}))

    first = await EntitlementService.grant_access(
        harness.ctx,
        user_id=42,
        granted_by_id=1,
        request_key="grant-req-0001",
        now_utc=NOW,
        offering_id=11,
        reason="comp access",
    )
    replay = await EntitlementService.grant_access(
        harness.ctx,
        user_id=42,
        granted_by_id=1,
        request_key="grant-req-0001",
        now_utc=NOW,
        offering_id=11,
    )

    assert first.idempotent_replay is False
    assert len(first.grant_ids) == 2
    assert replay.idempotent_replay is True
    assert sorted(replay.grant_ids) == sorted(first.grant_ids)
    assert len(harness.store.grants) == 2
    for grant in harness.store.grants.values():
        assert grant.access_type == "admin_grant"
        assert grant.granted_by_id == 1
        assert grant.metadata_["grant_reason"] == "comp access"
    assert (42, 7) in harness.memberships.members
    assert harness.pending_job_types() == [JOB_MEMBERSHIP_SYNC]


@pytest.mark.asyncio
async def test_admin_grant_to_track_without_offering() -> None:
    harness = make_harness()

    result = await EntitlementService.grant_access(
        harness.ctx,
        user_id=42,
        granted_by_id=1,
        request_key="grant-req-0002",
        now_utc=NOW,
        group_id=7,
        track_id=21,
        expires_at=NOW + timedelta(days=7),
    )

    grant = harness.store.grants[result.grant_ids[0]]
    assert (grant.group_id, grant.track_id, grant.offering_id) == (7, 21, None)
    assert grant.expires_at == NOW + timedelta(days=7)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {},
        {"track_id": 21},
        {"group_id": 7, "expires_at": NOW - timedelta(seconds=1)},
    ],
)
async def test_admin_grant_rejects_invalid_requests(kwargs) -> None:
    harness = make_harness()

    with pytest.raises(InvalidGrantRequestError):
        await EntitlementService.grant_access(
            harness.ctx,
            user_id=42,
            granted_by_id=1,
            request_key="grant-req-0003",
            now_utc=NOW,
            **kwargs,
        )
    assert harness.store.grants == {}


@pytest.mark.asyncio
async def test_admin_grant_with_unknown_offering_is_rejected() -> None:
    harness = make_harness()

    with pytest.raises(OfferingNotFoundError):
        await EntitlementService.grant_access(
            harness.ctx,
            user_id=42,
            granted_by_id=1,
            request_key="grant-req-0004",
            now_utc=NOW,
            offering_id=999,
        )


@pytest.mark.asyncio
async def test_admin_revoke_cancels_live_subscription_once() -> None:
    billing = FakeBilling(
        subscriptions={
            "sub_test_1": ProviderSubscription(
                id="sub_test_1",
                status="active",
                current_period_start=None,
                current_period_end=None,
            )
        }
    )
    harness = make_harness(billing=billing)
    await EventRouter(harness.ctx).route(checkout_completed(subscription_ref="sub_test_1"), now_utc=NOW)
    harness.dispatcher.discard()
    (grant,) = harness.store.grants.values()

    result = await EntitlementService.revoke_access(
        harness.ctx,
        grant_id=grant.id,
        revoked_by_id=1,
        now_utc=NOW,
        reason="chargeback",
    )
    replay = await EntitlementService.revoke_access(
        harness.ctx,
        grant_id=grant.id,
        revoked_by_id=1,
        now_utc=NOW,
    )

    assert result.status == "revoked"
    assert result.idempotent_replay is False
    assert replay.idempotent_replay is True
    assert grant.metadata_["revoke_reason"] == "chargeback"
    assert grant.metadata_["revoked_by"] == 1
    assert len(billing.cancellations) == 1
    assert billing.cancellations[0]["immediately"] is True
    assert harness.pending_job_types() == [JOB_ACCESS_REVOKED_NOTICE]


@pytest.mark.asyncio
async def test_admin_revoke_unknown_grant() -> None:
    harness = make_harness()

    with pytest.raises(AccessGrantNotFoundError):
        await EntitlementService.revoke_access(harness.ctx, grant_id=404, revoked_by_id=1, now_utc=NOW)


@pytest.mark.asyncio
async def test_check_access_ignores_elapsed_and_revoked_grants() -> None:
    harness = make_harness(make_offering(duration="day"))
    await EntitlementService.complete_purchase(harness.ctx, event=checkout_completed(), now_utc=NOW)

    active = await EntitlementService.check_access(harness.ctx, user_id=42, group_id=7, now_utc=NOW)
    elapsed = await EntitlementService.check_access(
        harness.ctx,
        user_id=42,
        group_id=7,
        now_utc=NOW + timedelta(days=2),
    )
    other_group = await EntitlementService.check_access(harness.ctx, user_id=42, group_id=8, now_utc=NOW)

    assert active is not None and active.user_id == 42
    assert elapsed is None
    assert other_group is None
