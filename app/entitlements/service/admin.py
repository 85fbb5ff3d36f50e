from __future__ import annotations

from datetime import datetime

import structlog

from app.db.models.access_grants import AccessGrant
from app.entitlements.dispatcher import JOB_ACCESS_REVOKED_NOTICE
from app.entitlements.errors import (
    AccessGrantNotFoundError,
    InvalidGrantRequestError,
    OfferingNotFoundError,
)
from app.entitlements.service.constants import TRANSITION_ADMIN_GRANTED, TRANSITION_ADMIN_REVOKED
from app.entitlements.service.context import EntitlementContext
from app.entitlements.service.grants import (
    _build_grants,
    _isoformat,
    _sync_memberships,
    _update_metadata,
)
from app.entitlements.service.refund import cancel_live_subscriptions
from app.entitlements.targets import compute_expires_at, resolve_access_targets, target_group_ids
from app.entitlements.types import AccessTarget, AdminGrantResult, AdminRevokeResult

logger = structlog.get_logger(__name__)


def _direct_targets(
    *,
    group_id: int | None,
    track_id: int | None,
    role_id: int | None,
) -> list[AccessTarget]:
    if group_id is None:
        raise InvalidGrantRequestError("group_id is required without an offering")
    if track_id is not None:
        return [AccessTarget(kind="track", target_id=track_id, group_id=group_id)]
    if role_id is not None:
        return [AccessTarget(kind="role", target_id=role_id, group_id=group_id)]
    return [AccessTarget(kind="group", target_id=group_id, group_id=group_id)]


async def grant_access(
    ctx: EntitlementContext,
    *,
    user_id: int,
    granted_by_id: int,
    request_key: str,
    now_utc: datetime,
    offering_id: int | None = None,
    group_id: int | None = None,
    track_id: int | None = None,
    role_id: int | None = None,
    expires_at: datetime | None = None,
    reason: str | None = None,
) -> AdminGrantResult:
    if offering_id is None and group_id is None and track_id is None and role_id is None:
        raise InvalidGrantRequestError("an offering, group, track or role target is required")

    if offering_id is not None:
        offering = await ctx.offerings.get(offering_id)
        if offering is None:
            raise OfferingNotFoundError(f"offering {offering_id} not found")
        targets = resolve_access_targets(offering)
        if not targets:
            raise InvalidGrantRequestError(f"offering {offering_id} grants no access")
        if expires_at is None:
            expires_at = compute_expires_at(offering.duration, start_utc=now_utc)
    else:
        targets = _direct_targets(group_id=group_id, track_id=track_id, role_id=role_id)

    if expires_at is not None and expires_at <= now_utc:
        raise InvalidGrantRequestError("expires_at must be in the future")

    grants = _build_grants(
        user_id=user_id,
        offering_id=offering_id,
        targets=targets,
        lineage=f"admin:{request_key}",
        access_type="admin_grant",
        subscription_ref=None,
        session_ref=None,
        expires_at=expires_at,
        metadata={
            "access_kind": "admin_grant",
            "granted_at": _isoformat(now_utc),
            "grant_reason": reason,
        },
        now_utc=now_utc,
        granted_by_id=granted_by_id,
    )
    inserted = await ctx.store.add_many(grants)
    if not inserted:
        wanted_keys = {grant.idempotency_key for grant in grants}
        existing = [
            grant
            for grant in await ctx.store.list_for_user(user_id)
            if grant.idempotency_key in wanted_keys
        ]
        return AdminGrantResult(
            grant_ids=[grant.id for grant in existing],
            idempotent_replay=True,
        )

    logger.info(
        "access_admin_granted",
        user_id=user_id,
        granted_by_id=granted_by_id,
        offering_id=offering_id,
        grants=len(inserted),
    )
    await _sync_memberships(
        ctx,
        user_id=user_id,
        group_ids=target_group_ids(targets),
        now_utc=now_utc,
        transition=TRANSITION_ADMIN_GRANTED,
    )
    return AdminGrantResult(grant_ids=[grant.id for grant in inserted], idempotent_replay=False)


async def revoke_access(
    ctx: EntitlementContext,
    *,
    grant_id: int,
    revoked_by_id: int,
    now_utc: datetime,
    reason: str | None = None,
) -> AdminRevokeResult:
    grant = await ctx.store.get(grant_id)
    if grant is None:
        raise AccessGrantNotFoundError(f"grant {grant_id} not found")
    if grant.status == "revoked":
        return AdminRevokeResult(grant_id=grant.id, status=grant.status, idempotent_replay=True)

    grant.status = "revoked"
    _update_metadata(
        grant,
        updates={
            "revoked_at": _isoformat(now_utc),
            "revoked_by": revoked_by_id,
            "revoke_reason": reason or "admin_revoked",
        },
        now_utc=now_utc,
    )
    await ctx.store.save(grant)
    logger.info(
        "access_admin_revoked",
        grant_id=grant.id,
        user_id=grant.user_id,
        revoked_by_id=revoked_by_id,
    )

    side_effects = await cancel_live_subscriptions(ctx, grants=[grant])
    ctx.dispatcher.enqueue(
        JOB_ACCESS_REVOKED_NOTICE,
        {"user_id": grant.user_id, "grant_ids": [grant.id], "reason": reason or "admin_revoked"},
        transition=TRANSITION_ADMIN_REVOKED,
    )
    return AdminRevokeResult(
        grant_id=grant.id,
        status=grant.status,
        idempotent_replay=False,
        side_effects=side_effects,
    )


async def check_access(
    ctx: EntitlementContext,
    *,
    user_id: int,
    group_id: int,
    now_utc: datetime,
    offering_id: int | None = None,
    track_id: int | None = None,
    role_id: int | None = None,
) -> AccessGrant | None:
    return await ctx.store.find_active(
        user_id=user_id,
        group_id=group_id,
        now_utc=now_utc,
        offering_id=offering_id,
        track_id=track_id,
        role_id=role_id,
    )
