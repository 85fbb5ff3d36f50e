from __future__ import annotations

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from app.core.config import get_settings
from app.entitlements.errors import MalformedPayloadError
from app.entitlements.events import parse_provider_event
from app.services.stripe_webhook import (
    decode_event_payload,
    is_valid_stripe_signature,
    process_stripe_event_async,
)

router = APIRouter(tags=["stripe"])
logger = structlog.get_logger(__name__)


def _rejected(reason: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"received": False, "error": reason},
    )


@router.post("/webhook/stripe")
async def stripe_webhook(request: Request) -> JSONResponse:
    settings = get_settings()
    payload = await request.body()
    if not is_valid_stripe_signature(
        payload=payload,
        signature_header=request.headers.get("Stripe-Signature"),
        secret=settings.stripe_webhook_secret,
        tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
    ):
        logger.warning("stripe_webhook_invalid_signature")
        return _rejected("invalid_signature")

    raw_event = decode_event_payload(payload)
    if raw_event is None:
        logger.warning("stripe_webhook_invalid_json")
        return _rejected("invalid_json")

    try:
        event = parse_provider_event(raw_event)
    except MalformedPayloadError as exc:
        logger.warning("stripe_webhook_malformed_event", detail=str(exc))
        return _rejected("malformed_event")

    try:
        result = await process_stripe_event_async(event)
    except Exception:
        logger.exception("stripe_webhook_processing_failed", event_id=event.id, event_type=event.type)
        outcome = "failed"
    else:
        outcome = result.outcome

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"received": True, "outcome": outcome},
    )
