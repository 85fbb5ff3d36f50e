from __future__ import annotations

from datetime import datetime

from app.db.models.access_grants import AccessGrant
from app.entitlements.dispatcher import JOB_MEMBERSHIP_SYNC
from app.entitlements.errors import MissingCorrelationError
from app.entitlements.idempotency import grant_idempotency_key
from app.entitlements.service.constants import (
    CORRELATION_GROUP_KEY,
    CORRELATION_OFFERING_KEY,
    CORRELATION_USER_KEY,
    DEFAULT_MEMBER_ROLE,
)
from app.entitlements.service.context import EntitlementContext
from app.entitlements.types import AccessTarget, SideEffectResult


def _parse_positive_int(raw: object) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw > 0 else None
    if isinstance(raw, str) and raw.strip().isdigit():
        value = int(raw.strip())
        return value if value > 0 else None
    return None


def _correlation_ids(metadata: dict[str, str] | None) -> tuple[int, int, int] | None:
    metadata = metadata or {}
    user_id = _parse_positive_int(metadata.get(CORRELATION_USER_KEY))
    group_id = _parse_positive_int(metadata.get(CORRELATION_GROUP_KEY))
    offering_id = _parse_positive_int(metadata.get(CORRELATION_OFFERING_KEY))
    if user_id is None or group_id is None or offering_id is None:
        return None
    return user_id, group_id, offering_id


def _require_correlation_ids(metadata: dict[str, str] | None) -> tuple[int, int, int]:
    correlation = _correlation_ids(metadata)
    if correlation is None:
        raise MissingCorrelationError("userId, groupId and offeringId are required in metadata")
    return correlation


def _build_grants(
    *,
    user_id: int,
    offering_id: int | None,
    targets: list[AccessTarget],
    lineage: str,
    access_type: str,
    subscription_ref: str | None,
    session_ref: str | None,
    expires_at: datetime | None,
    metadata: dict[str, object],
    now_utc: datetime,
    granted_by_id: int | None = None,
) -> list[AccessGrant]:
    grants: list[AccessGrant] = []
    for target in targets:
        grants.append(
            AccessGrant(
                user_id=user_id,
                offering_id=offering_id,
                group_id=target.group_id,
                track_id=target.target_id if target.kind == "track" else None,
                role_id=target.target_id if target.kind == "role" else None,
                access_type=access_type,
                status="active",
                external_subscription_ref=subscription_ref,
                external_session_ref=session_ref,
                expires_at=expires_at,
                granted_by_id=granted_by_id,
                idempotency_key=grant_idempotency_key(lineage=lineage, target=target),
                metadata_=dict(metadata),
                created_at=now_utc,
                updated_at=now_utc,
            )
        )
    return grants


def _update_metadata(
    grant: AccessGrant,
    *,
    updates: dict[str, object],
    now_utc: datetime,
) -> None:
    # JSONB columns are not mutation-tracked, so the dict is replaced wholesale.
    metadata = dict(grant.metadata_ or {})
    metadata.update(updates)
    grant.metadata_ = metadata
    grant.updated_at = now_utc


async def _sync_memberships(
    ctx: EntitlementContext,
    *,
    user_id: int,
    group_ids: list[int],
    now_utc: datetime,
    transition: str,
) -> list[SideEffectResult]:
    results: list[SideEffectResult] = []
    for group_id in group_ids:
        results.append(
            await ctx.dispatcher.isolate(
                "ensure_membership",
                ctx.memberships.ensure_membership(user_id, group_id, DEFAULT_MEMBER_ROLE),
            )
        )
        results.append(
            await ctx.dispatcher.isolate(
                "pin_to_nav",
                ctx.memberships.pin_to_nav(user_id, group_id),
            )
        )
        results.append(
            await ctx.dispatcher.isolate(
                "accept_agreements",
                ctx.memberships.accept_agreements(user_id, group_id, accepted_at=now_utc),
            )
        )
    if group_ids:
        ctx.dispatcher.enqueue(
            JOB_MEMBERSHIP_SYNC,
            {"user_id": user_id, "group_ids": list(group_ids)},
            transition=transition,
        )
    return results


def _provider_account(grant: AccessGrant) -> str | None:
    account = (grant.metadata_ or {}).get("provider_account")
    return account if isinstance(account, str) and account else None


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
