from __future__ import annotations

import structlog
from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from app.entitlements.errors import BillingRequestError, UpstreamTransientError
from app.services.stripe_billing import StripeBillingGateway

router = APIRouter(tags=["stripe", "checkout"])
logger = structlog.get_logger(__name__)


class CheckoutSuccessResponse(BaseModel):
    session_id: str
    payment_status: str | None
    amount_total: int | None
    currency: str | None


class CheckoutCancelResponse(BaseModel):
    status: str
    message: str


@router.get("/stripe/checkout/success", response_model=CheckoutSuccessResponse)
async def checkout_success(
    session_id: str | None = Query(default=None),
    account_id: str | None = Query(default=None),
) -> CheckoutSuccessResponse:
    if not session_id or not account_id:
        raise HTTPException(status_code=400, detail={"code": "E_MISSING_SESSION"})

    billing = StripeBillingGateway.from_settings()
    try:
        session = await billing.get_checkout_session(session_id, account=account_id)
    except BillingRequestError:
        logger.warning("checkout_success_session_not_found", session_ref=session_id)
        raise HTTPException(status_code=404, detail={"code": "E_SESSION_NOT_FOUND"}) from None
    except UpstreamTransientError:
        logger.warning("checkout_success_provider_unavailable", session_ref=session_id)
        raise HTTPException(status_code=502, detail={"code": "E_PROVIDER_UNAVAILABLE"}) from None

    return CheckoutSuccessResponse(
        session_id=session.id,
        payment_status=session.payment_status,
        amount_total=session.amount_total,
        currency=session.currency,
    )


@router.get("/stripe/checkout/cancel", response_model=CheckoutCancelResponse)
async def checkout_cancel() -> CheckoutCancelResponse:
    return CheckoutCancelResponse(
        status="cancelled",
        message="Checkout was cancelled. No payment was taken.",
    )
