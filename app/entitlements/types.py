from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from app.entitlements.errors import ErrorKind

RouteOutcome = Literal["applied", "noop", "skipped", "deferred", "ignored", "failed"]


@dataclass(slots=True)
class SideEffectResult:
    effect: str
    ok: bool
    error_kind: ErrorKind | None = None
    detail: str | None = None

    @classmethod
    def success(cls, effect: str, detail: str | None = None) -> SideEffectResult:
        return cls(effect=effect, ok=True, detail=detail)

    @classmethod
    def failure(cls, effect: str, detail: str | None = None) -> SideEffectResult:
        return cls(
            effect=effect,
            ok=False,
            error_kind=ErrorKind.SIDE_EFFECT_FAILURE,
            detail=detail,
        )


@dataclass(slots=True)
class SideEffectJob:
    job_type: str
    payload: dict[str, object]
    transition: str


@dataclass(slots=True)
class TransitionResult:
    transition: str
    grant_ids: list[int] = field(default_factory=list)
    changed: bool = True
    side_effects: list[SideEffectResult] = field(default_factory=list)


@dataclass(slots=True)
class RouteResult:
    event_id: str
    event_type: str
    outcome: RouteOutcome
    transition: str | None = None
    error_kind: ErrorKind | None = None
    detail: str | None = None


@dataclass(slots=True)
class AdminGrantResult:
    grant_ids: list[int]
    idempotent_replay: bool


@dataclass(slots=True)
class AdminRevokeResult:
    grant_id: int
    status: str
    idempotent_replay: bool
    side_effects: list[SideEffectResult] = field(default_factory=list)


@dataclass(slots=True)
class AccessTarget:
    kind: Literal["group", "track", "role"]
    target_id: int
    group_id: int


@dataclass(slots=True)
class ProviderLineItem:
    amount_total: int
    description: str | None = None
    product_name: str | None = None


@dataclass(slots=True)
class ProviderSubscription:
    id: str
    status: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    metadata: dict[str, str] = field(default_factory=dict)
    price_ref: str | None = None
    cancel_at_period_end: bool = False
    cancel_at: datetime | None = None
    canceled_at: datetime | None = None
    cancellation_reason: str | None = None


@dataclass(slots=True)
class ProviderCheckoutSession:
    id: str
    payment_status: str | None
    amount_total: int | None
    currency: str | None
    subscription_ref: str | None
    payment_intent_ref: str | None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ProviderPaymentIntent:
    id: str
    latest_charge_ref: str | None
    invoice_ref: str | None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ProviderProduct:
    id: str
    name: str | None
    description: str | None
    default_price_ref: str | None
    unit_amount: int | None
    currency: str | None


@dataclass(slots=True)
class ReconciliationSummary:
    started_at: datetime
    finished_at: datetime
    subscriptions_examined: int
    grants_repaired: int
    grants_expired: int
    errors: int
    repaired_subscription_refs: list[str] = field(default_factory=list)

    @property
    def diff_count(self) -> int:
        return self.grants_repaired + self.grants_expired + self.errors

    @property
    def status(self) -> str:
        return "DIFF" if self.diff_count > 0 else "OK"
