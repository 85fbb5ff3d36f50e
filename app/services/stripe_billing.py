from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from datetime import datetime, timezone
from functools import partial
from typing import Any

import stripe
import structlog

from app.core.config import get_settings
from app.entitlements.errors import BillingRequestError, UpstreamTransientError
from app.entitlements.service.constants import ACTIVE_PROVIDER_SUBSCRIPTION_STATUSES
from app.entitlements.types import (
    ProviderCheckoutSession,
    ProviderLineItem,
    ProviderPaymentIntent,
    ProviderProduct,
    ProviderSubscription,
)

logger = structlog.get_logger(__name__)

TRANSIENT_STRIPE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


def _as_dict(resource: object) -> dict[str, Any]:
    if resource is None:
        return {}
    if isinstance(resource, dict) and not isinstance(resource, stripe.StripeObject):
        return resource
    return json.loads(str(resource))


def _ref(value: object) -> str | None:
    if isinstance(value, dict):
        value = value.get("id")
    return value if isinstance(value, str) and value else None


def _timestamp(value: object) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _metadata(value: object) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(key): str(item) for key, item in value.items() if item is not None}


def _checkout_session(data: dict[str, Any]) -> ProviderCheckoutSession:
    return ProviderCheckoutSession(
        id=str(data["id"]),
        payment_status=data.get("payment_status"),
        amount_total=data.get("amount_total"),
        currency=data.get("currency"),
        subscription_ref=_ref(data.get("subscription")),
        payment_intent_ref=_ref(data.get("payment_intent")),
        metadata=_metadata(data.get("metadata")),
    )


def _subscription(data: dict[str, Any]) -> ProviderSubscription:
    items = (data.get("items") or {}).get("data") or []
    first_item = items[0] if items and isinstance(items[0], dict) else {}
    price = first_item.get("price")
    return ProviderSubscription(
        id=str(data["id"]),
        status=str(data.get("status") or ""),
        current_period_start=_timestamp(
            data.get("current_period_start") or first_item.get("current_period_start")
        ),
        current_period_end=_timestamp(
            data.get("current_period_end") or first_item.get("current_period_end")
        ),
        metadata=_metadata(data.get("metadata")),
        price_ref=_ref(price),
        cancel_at_period_end=bool(data.get("cancel_at_period_end")),
        cancel_at=_timestamp(data.get("cancel_at")),
        canceled_at=_timestamp(data.get("canceled_at")),
        cancellation_reason=(data.get("cancellation_details") or {}).get("reason"),
    )


def _latest_charge_ref(data: dict[str, Any]) -> str | None:
    latest = _ref(data.get("latest_charge"))
    if latest is not None:
        return latest
    charges = (data.get("charges") or {}).get("data") or []
    return _ref(charges[0]) if charges else None


class StripeBillingGateway:
    def __init__(self, *, api_key: str, timeout_seconds: float) -> None:
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls) -> StripeBillingGateway:
        settings = get_settings()
        return cls(
            api_key=settings.stripe_secret_key,
            timeout_seconds=max(0.001, settings.billing_request_timeout_ms / 1000),
        )

    async def _call(
        self,
        operation: str,
        func: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        call = partial(func, *args, api_key=self._api_key, **kwargs)
        try:
            return await asyncio.wait_for(asyncio.to_thread(call), timeout=self._timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.warning("stripe_call_timeout", operation=operation)
            raise UpstreamTransientError(f"stripe {operation} timed out") from exc
        except TRANSIENT_STRIPE_ERRORS as exc:
            logger.warning(
                "stripe_call_transient_error",
                operation=operation,
                error_type=type(exc).__name__,
            )
            raise UpstreamTransientError(f"stripe {operation} unavailable") from exc
        except stripe.StripeError as exc:
            logger.warning(
                "stripe_call_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error_code=getattr(exc, "code", None),
            )
            raise BillingRequestError(f"stripe {operation} failed: {exc}") from exc

    async def get_checkout_session(
        self,
        session_ref: str,
        *,
        account: str | None,
    ) -> ProviderCheckoutSession:
        session = await self._call(
            "checkout_session_retrieve",
            stripe.checkout.Session.retrieve,
            session_ref,
            stripe_account=account,
        )
        return _checkout_session(_as_dict(session))

    async def _first_checkout_session(
        self,
        operation: str,
        *,
        account: str | None,
        **filters: str,
    ) -> ProviderCheckoutSession | None:
        page = await self._call(
            operation,
            stripe.checkout.Session.list,
            limit=1,
            stripe_account=account,
            **filters,
        )
        sessions = _as_dict(page).get("data") or []
        return _checkout_session(sessions[0]) if sessions else None

    async def find_checkout_session_for_subscription(
        self,
        subscription_ref: str,
        *,
        account: str | None,
    ) -> ProviderCheckoutSession | None:
        return await self._first_checkout_session(
            "checkout_session_list_by_subscription",
            account=account,
            subscription=subscription_ref,
        )

    async def find_checkout_session_for_payment_intent(
        self,
        payment_intent_ref: str,
        *,
        account: str | None,
    ) -> ProviderCheckoutSession | None:
        return await self._first_checkout_session(
            "checkout_session_list_by_payment_intent",
            account=account,
            payment_intent=payment_intent_ref,
        )

    async def get_payment_intent(
        self,
        payment_intent_ref: str,
        *,
        account: str | None,
    ) -> ProviderPaymentIntent:
        intent = _as_dict(
            await self._call(
                "payment_intent_retrieve",
                stripe.PaymentIntent.retrieve,
                payment_intent_ref,
                stripe_account=account,
            )
        )
        return ProviderPaymentIntent(
            id=str(intent["id"]),
            latest_charge_ref=_latest_charge_ref(intent),
            invoice_ref=_ref(intent.get("invoice")),
            metadata=_metadata(intent.get("metadata")),
        )

    async def get_invoice_subscription_ref(
        self,
        invoice_ref: str,
        *,
        account: str | None,
    ) -> str | None:
        invoice = _as_dict(
            await self._call(
                "invoice_retrieve",
                stripe.Invoice.retrieve,
                invoice_ref,
                stripe_account=account,
            )
        )
        subscription_ref = _ref(invoice.get("subscription"))
        if subscription_ref is None:
            details = (invoice.get("parent") or {}).get("subscription_details") or {}
            subscription_ref = _ref(details.get("subscription"))
        return subscription_ref

    async def list_checkout_line_items(
        self,
        session_ref: str,
        *,
        account: str | None,
    ) -> list[ProviderLineItem]:
        page = _as_dict(
            await self._call(
                "checkout_session_line_items",
                stripe.checkout.Session.list_line_items,
                session_ref,
                limit=100,
                expand=["data.price.product"],
                stripe_account=account,
            )
        )
        items: list[ProviderLineItem] = []
        for item in page.get("data") or []:
            product = (item.get("price") or {}).get("product")
            items.append(
                ProviderLineItem(
                    amount_total=int(item.get("amount_total") or 0),
                    description=item.get("description"),
                    product_name=product.get("name") if isinstance(product, dict) else None,
                )
            )
        return items

    async def get_subscription(
        self,
        subscription_ref: str,
        *,
        account: str | None,
    ) -> ProviderSubscription:
        subscription = await self._call(
            "subscription_retrieve",
            stripe.Subscription.retrieve,
            subscription_ref,
            stripe_account=account,
        )
        return _subscription(_as_dict(subscription))

    async def cancel_subscription(
        self,
        subscription_ref: str,
        *,
        account: str | None,
        immediately: bool,
    ) -> None:
        if immediately:
            await self._call(
                "subscription_cancel",
                stripe.Subscription.cancel,
                subscription_ref,
                stripe_account=account,
            )
        else:
            await self._call(
                "subscription_cancel_at_period_end",
                stripe.Subscription.modify,
                subscription_ref,
                cancel_at_period_end=True,
                stripe_account=account,
            )
        logger.info(
            "stripe_subscription_cancel_requested",
            subscription_ref=subscription_ref,
            immediately=immediately,
        )

    async def get_product(self, product_ref: str, *, account: str | None) -> ProviderProduct:
        product = _as_dict(
            await self._call(
                "product_retrieve",
                stripe.Product.retrieve,
                product_ref,
                expand=["default_price"],
                stripe_account=account,
            )
        )
        default_price = product.get("default_price")
        price = default_price if isinstance(default_price, dict) else {}
        return ProviderProduct(
            id=str(product["id"]),
            name=product.get("name"),
            description=product.get("description"),
            default_price_ref=_ref(default_price),
            unit_amount=price.get("unit_amount"),
            currency=price.get("currency"),
        )

    async def create_transfer(
        self,
        *,
        amount: int,
        currency: str,
        source_charge_ref: str,
        destination: str | None,
        description: str,
        idempotency_key: str,
    ) -> str:
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "source_transaction": source_charge_ref,
            "description": description,
        }
        if destination:
            params["destination"] = destination
        transfer = _as_dict(
            await self._call(
                "transfer_create",
                stripe.Transfer.create,
                idempotency_key=idempotency_key,
                **params,
            )
        )
        return str(transfer["id"])

    async def list_active_subscriptions(
        self,
        *,
        account: str,
        price_ref: str,
    ) -> list[ProviderSubscription]:
        # The list endpoint filters on a single status, so trialing is a second walk.
        def _collect(**kwargs: Any) -> list[dict[str, Any]]:
            collected: list[dict[str, Any]] = []
            for status in sorted(ACTIVE_PROVIDER_SUBSCRIPTION_STATUSES):
                page = stripe.Subscription.list(status=status, **kwargs)
                collected.extend(_as_dict(item) for item in page.auto_paging_iter())
            return collected

        subscriptions = await self._call(
            "subscription_list_active",
            _collect,
            price=price_ref,
            limit=100,
            stripe_account=account,
        )
        return [_subscription(item) for item in subscriptions]
