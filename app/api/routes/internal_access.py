from __future__ import annotations

from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from app.core.config import get_settings
from app.db.session import SessionLocal
from app.entitlements.dispatcher import SideEffectDispatcher
from app.entitlements.errors import (
    AccessGrantNotFoundError,
    InvalidGrantRequestError,
    OfferingNotFoundError,
)
from app.entitlements.service import EntitlementService
from app.services.internal_auth import internal_access_denial
from app.services.side_effect_queue import CeleryJobQueue
from app.services.stripe_webhook import build_entitlement_context

router = APIRouter(tags=["internal", "access"])
logger = structlog.get_logger(__name__)


class AccessGrantCreateRequest(BaseModel):
    user_id: int = Field(ge=1)
    granted_by_id: int = Field(ge=1)
    request_key: str = Field(min_length=8, max_length=128)
    offering_id: int | None = Field(default=None, ge=1)
    group_id: int | None = Field(default=None, ge=1)
    track_id: int | None = Field(default=None, ge=1)
    role_id: int | None = Field(default=None, ge=1)
    expires_at: datetime | None = None
    reason: str | None = Field(default=None, max_length=256)


class AccessGrantCreateResponse(BaseModel):
    grant_ids: list[int]
    idempotent_replay: bool


class AccessGrantRevokeRequest(BaseModel):
    revoked_by_id: int = Field(ge=1)
    reason: str | None = Field(default=None, max_length=256)


class AccessGrantRevokeResponse(BaseModel):
    grant_id: int
    status: str
    idempotent_replay: bool
    subscription_cancel_failed: bool


class AccessCheckResponse(BaseModel):
    has_access: bool
    grant_id: int | None = None
    access_type: str | None = None
    expires_at: datetime | None = None


def _assert_internal_access(request: Request) -> None:
    settings = get_settings()
    reason, client_ip = internal_access_denial(
        request,
        expected_token=settings.internal_api_token,
        allowlist=settings.internal_api_allowlist,
        trusted_proxies=getattr(settings, "internal_api_trusted_proxies", ""),
    )
    if reason is not None:
        logger.warning("internal_access_auth_failed", reason=reason, client_ip=client_ip)
        raise HTTPException(status_code=403, detail={"code": "E_FORBIDDEN"})


@router.post("/internal/access/grants", response_model=AccessGrantCreateResponse)
async def create_access_grant(
    payload: AccessGrantCreateRequest,
    request: Request,
) -> AccessGrantCreateResponse:
    _assert_internal_access(request)
    now_utc = datetime.now(timezone.utc)
    dispatcher = SideEffectDispatcher(CeleryJobQueue.from_settings())

    async with SessionLocal.begin() as session:
        ctx = build_entitlement_context(session, dispatcher=dispatcher)
        try:
            result = await EntitlementService.grant_access(
                ctx,
                user_id=payload.user_id,
                granted_by_id=payload.granted_by_id,
                request_key=payload.request_key,
                now_utc=now_utc,
                offering_id=payload.offering_id,
                group_id=payload.group_id,
                track_id=payload.track_id,
                role_id=payload.role_id,
                expires_at=payload.expires_at,
                reason=payload.reason,
            )
        except OfferingNotFoundError as exc:
            raise HTTPException(status_code=404, detail={"code": "E_OFFERING_NOT_FOUND"}) from exc
        except InvalidGrantRequestError as exc:
            raise HTTPException(
                status_code=422,
                detail={"code": "E_INVALID_GRANT_REQUEST", "message": str(exc)},
            ) from exc

    await dispatcher.flush()
    return AccessGrantCreateResponse(
        grant_ids=result.grant_ids,
        idempotent_replay=result.idempotent_replay,
    )


@router.post(
    "/internal/access/grants/{grant_id}/revoke",
    response_model=AccessGrantRevokeResponse,
)
async def revoke_access_grant(
    grant_id: int,
    payload: AccessGrantRevokeRequest,
    request: Request,
) -> AccessGrantRevokeResponse:
    _assert_internal_access(request)
    now_utc = datetime.now(timezone.utc)
    dispatcher = SideEffectDispatcher(CeleryJobQueue.from_settings())

    async with SessionLocal.begin() as session:
        ctx = build_entitlement_context(session, dispatcher=dispatcher)
        try:
            result = await EntitlementService.revoke_access(
                ctx,
                grant_id=grant_id,
                revoked_by_id=payload.revoked_by_id,
                now_utc=now_utc,
                reason=(payload.reason or "").strip() or None,
            )
        except AccessGrantNotFoundError as exc:
            raise HTTPException(status_code=404, detail={"code": "E_GRANT_NOT_FOUND"}) from exc

    await dispatcher.flush()
    return AccessGrantRevokeResponse(
        grant_id=result.grant_id,
        status=result.status,
        idempotent_replay=result.idempotent_replay,
        subscription_cancel_failed=any(not effect.ok for effect in result.side_effects),
    )


@router.get("/internal/access/check", response_model=AccessCheckResponse)
async def check_access(
    request: Request,
    user_id: int = Query(ge=1),
    group_id: int = Query(ge=1),
    offering_id: int | None = Query(default=None, ge=1),
    track_id: int | None = Query(default=None, ge=1),
    role_id: int | None = Query(default=None, ge=1),
) -> AccessCheckResponse:
    _assert_internal_access(request)
    now_utc = datetime.now(timezone.utc)

    async with SessionLocal.begin() as session:
        ctx = build_entitlement_context(
            session,
            dispatcher=SideEffectDispatcher(CeleryJobQueue.from_settings()),
        )
        grant = await EntitlementService.check_access(
            ctx,
            user_id=user_id,
            group_id=group_id,
            now_utc=now_utc,
            offering_id=offering_id,
            track_id=track_id,
            role_id=role_id,
        )

    if grant is None:
        return AccessCheckResponse(has_access=False)
    return AccessCheckResponse(
        has_access=True,
        grant_id=grant.id,
        access_type=grant.access_type,
        expires_at=grant.expires_at,
    )
