from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from app.entitlements.errors import MalformedPayloadError

CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
CHARGE_REFUNDED = "charge.refunded"
PRODUCT_UPDATED = "product.updated"

HANDLED_EVENT_TYPES = frozenset(
    {
        CHECKOUT_SESSION_COMPLETED,
        SUBSCRIPTION_CREATED,
        SUBSCRIPTION_UPDATED,
        SUBSCRIPTION_DELETED,
        INVOICE_PAID,
        INVOICE_PAYMENT_FAILED,
        CHARGE_REFUNDED,
        PRODUCT_UPDATED,
    }
)


def _expandable_id(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("id")
    return value


def _string_metadata(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(key): str(item) for key, item in value.items() if item is not None}


class _ProviderObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("metadata", mode="before", check_fields=False)
    @classmethod
    def coerce_metadata(cls, value: Any) -> dict[str, str]:
        return _string_metadata(value)


class CheckoutSession(_ProviderObject):
    id: str
    mode: str | None = None
    payment_status: str | None = None
    amount_total: int | None = None
    currency: str | None = None
    subscription: str | None = None
    payment_intent: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("subscription", "payment_intent", mode="before")
    @classmethod
    def collapse_expanded(cls, value: Any) -> Any:
        return _expandable_id(value)


class CancellationDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reason: str | None = None
    comment: str | None = None
    feedback: str | None = None


class Subscription(_ProviderObject):
    id: str
    status: str
    cancel_at_period_end: bool = False
    cancel_at: datetime | None = None
    canceled_at: datetime | None = None
    ended_at: datetime | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancellation_details: CancellationDetails | None = None
    price_ref: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def lift_item_fields(cls, data: Any) -> Any:
        # Newer API versions moved the billing period onto subscription items.
        if not isinstance(data, dict):
            return data
        items = data.get("items")
        first_item = None
        if isinstance(items, dict) and isinstance(items.get("data"), list) and items["data"]:
            first_item = items["data"][0]
        if not isinstance(first_item, dict):
            return data
        lifted = dict(data)
        for key in ("current_period_start", "current_period_end"):
            if lifted.get(key) is None and first_item.get(key) is not None:
                lifted[key] = first_item[key]
        price = first_item.get("price")
        if lifted.get("price_ref") is None and isinstance(price, dict):
            lifted["price_ref"] = price.get("id")
        return lifted

    @property
    def cancellation_reason(self) -> str | None:
        details = self.cancellation_details
        return details.reason if details is not None and details.reason else None


class InvoiceLinePeriod(BaseModel):
    model_config = ConfigDict(extra="ignore")

    start: datetime | None = None
    end: datetime | None = None


class InvoiceLine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    amount: int = 0
    description: str | None = None
    period: InvoiceLinePeriod | None = None


class Invoice(_ProviderObject):
    id: str
    billing_reason: str | None = None
    subscription: str | None = None
    payment_intent: str | None = None
    charge: str | None = None
    amount_paid: int | None = None
    currency: str | None = None
    attempt_count: int | None = None
    next_payment_attempt: datetime | None = None
    lines: list[InvoiceLine] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def normalize_shape(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        normalized = dict(data)
        if normalized.get("subscription") is None:
            parent = normalized.get("parent")
            if isinstance(parent, dict):
                details = parent.get("subscription_details")
                if isinstance(details, dict):
                    normalized["subscription"] = details.get("subscription")
        lines = normalized.get("lines")
        if isinstance(lines, dict):
            normalized["lines"] = lines.get("data") or []
        return normalized

    @field_validator("subscription", "payment_intent", "charge", mode="before")
    @classmethod
    def collapse_expanded(cls, value: Any) -> Any:
        return _expandable_id(value)

    @property
    def period_start(self) -> datetime | None:
        for line in self.lines:
            if line.period is not None and line.period.start is not None:
                return line.period.start
        return None

    @property
    def period_end(self) -> datetime | None:
        ends = [
            line.period.end
            for line in self.lines
            if line.period is not None and line.period.end is not None
        ]
        return max(ends) if ends else None


class Refund(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    amount: int | None = None
    reason: str | None = None


class Charge(_ProviderObject):
    id: str
    payment_intent: str | None = None
    invoice: str | None = None
    amount: int | None = None
    amount_refunded: int = 0
    currency: str | None = None
    refunded: bool = False
    refunds: list[Refund] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("refunds", mode="before")
    @classmethod
    def unwrap_refunds(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return value.get("data") or []
        return value or []

    @field_validator("payment_intent", "invoice", mode="before")
    @classmethod
    def collapse_expanded(cls, value: Any) -> Any:
        return _expandable_id(value)

    @property
    def refund_reason(self) -> str | None:
        for refund in self.refunds:
            if refund.reason:
                return refund.reason
        return None


class Product(_ProviderObject):
    id: str
    name: str | None = None
    description: str | None = None
    active: bool = True
    default_price: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("default_price", mode="before")
    @classmethod
    def collapse_expanded(cls, value: Any) -> Any:
        return _expandable_id(value)


class _EventEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    account: str | None = None
    created: datetime | None = None


class CheckoutSessionCompletedEvent(_EventEnvelope):
    type: Literal["checkout.session.completed"]
    payload: CheckoutSession


class SubscriptionCreatedEvent(_EventEnvelope):
    type: Literal["customer.subscription.created"]
    payload: Subscription


class SubscriptionUpdatedEvent(_EventEnvelope):
    type: Literal["customer.subscription.updated"]
    payload: Subscription


class SubscriptionDeletedEvent(_EventEnvelope):
    type: Literal["customer.subscription.deleted"]
    payload: Subscription


class InvoicePaidEvent(_EventEnvelope):
    type: Literal["invoice.paid"]
    payload: Invoice


class InvoicePaymentFailedEvent(_EventEnvelope):
    type: Literal["invoice.payment_failed"]
    payload: Invoice


class ChargeRefundedEvent(_EventEnvelope):
    type: Literal["charge.refunded"]
    payload: Charge


class ProductUpdatedEvent(_EventEnvelope):
    type: Literal["product.updated"]
    payload: Product


class UnhandledEvent(_EventEnvelope):
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)


HandledEvent = Annotated[
    Union[
        CheckoutSessionCompletedEvent,
        SubscriptionCreatedEvent,
        SubscriptionUpdatedEvent,
        SubscriptionDeletedEvent,
        InvoicePaidEvent,
        InvoicePaymentFailedEvent,
        ChargeRefundedEvent,
        ProductUpdatedEvent,
    ],
    Field(discriminator="type"),
]
ProviderEvent = Union[HandledEvent, UnhandledEvent]

_HANDLED_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(HandledEvent)


def parse_provider_event(raw: object) -> ProviderEvent:
    if not isinstance(raw, dict):
        raise MalformedPayloadError("event envelope must be an object")

    event_type = raw.get("type")
    data = raw.get("data")
    payload = data.get("object") if isinstance(data, dict) else None
    if not isinstance(event_type, str) or not event_type or not isinstance(payload, dict):
        raise MalformedPayloadError("event envelope is missing type or data.object")

    flattened = {
        "id": raw.get("id"),
        "type": event_type,
        "account": raw.get("account"),
        "created": raw.get("created"),
        "payload": payload,
    }
    try:
        if event_type not in HANDLED_EVENT_TYPES:
            return UnhandledEvent.model_validate(flattened)
        return _HANDLED_EVENT_ADAPTER.validate_python(flattened)
    except ValidationError as exc:
        raise MalformedPayloadError(f"invalid {event_type} payload") from exc
