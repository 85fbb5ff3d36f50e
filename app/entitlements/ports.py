from __future__ import annotations

from datetime import datetime
from typing import Protocol

from app.db.models.access_grants import AccessGrant
from app.db.models.offerings import Offering
from app.entitlements.types import (
    ProviderCheckoutSession,
    ProviderLineItem,
    ProviderPaymentIntent,
    ProviderProduct,
    ProviderSubscription,
    SideEffectJob,
)


class EntitlementStore(Protocol):
    async def list_by_subscription_ref(self, subscription_ref: str) -> list[AccessGrant]: ...

    async def list_by_session_ref(self, session_ref: str) -> list[AccessGrant]: ...

    async def list_for_user(
        self,
        user_id: int,
        *,
        group_id: int | None = None,
    ) -> list[AccessGrant]: ...

    async def get(self, grant_id: int) -> AccessGrant | None: ...

    async def add_many(self, grants: list[AccessGrant]) -> list[AccessGrant]: ...

    async def save(self, grant: AccessGrant) -> None: ...

    async def list_elapsed_one_time(
        self,
        *,
        now_utc: datetime,
        limit: int,
    ) -> list[AccessGrant]: ...

    async def find_active(
        self,
        *,
        user_id: int,
        group_id: int,
        now_utc: datetime,
        offering_id: int | None = None,
        track_id: int | None = None,
        role_id: int | None = None,
    ) -> AccessGrant | None: ...


class OfferingRepository(Protocol):
    async def get(self, offering_id: int) -> Offering | None: ...

    async def get_by_provider_product(self, product_ref: str) -> Offering | None: ...

    async def list_billable(self) -> list[Offering]: ...

    async def save(self, offering: Offering) -> None: ...


class MembershipGateway(Protocol):
    async def ensure_membership(self, user_id: int, group_id: int, role: str) -> bool: ...

    async def pin_to_nav(self, user_id: int, group_id: int) -> None: ...

    async def accept_agreements(
        self,
        user_id: int,
        group_id: int,
        *,
        accepted_at: datetime,
    ) -> None: ...


class BillingGateway(Protocol):
    async def get_checkout_session(
        self,
        session_ref: str,
        *,
        account: str | None,
    ) -> ProviderCheckoutSession: ...

    async def find_checkout_session_for_subscription(
        self,
        subscription_ref: str,
        *,
        account: str | None,
    ) -> ProviderCheckoutSession | None: ...

    async def find_checkout_session_for_payment_intent(
        self,
        payment_intent_ref: str,
        *,
        account: str | None,
    ) -> ProviderCheckoutSession | None: ...

    async def get_payment_intent(
        self,
        payment_intent_ref: str,
        *,
        account: str | None,
    ) -> ProviderPaymentIntent: ...

    async def get_invoice_subscription_ref(
        self,
        invoice_ref: str,
        *,
        account: str | None,
    ) -> str | None: ...

    async def list_checkout_line_items(
        self,
        session_ref: str,
        *,
        account: str | None,
    ) -> list[ProviderLineItem]: ...

    async def get_subscription(
        self,
        subscription_ref: str,
        *,
        account: str | None,
    ) -> ProviderSubscription: ...

    async def cancel_subscription(
        self,
        subscription_ref: str,
        *,
        account: str | None,
        immediately: bool,
    ) -> None: ...

    async def get_product(self, product_ref: str, *, account: str | None) -> ProviderProduct: ...

    async def create_transfer(
        self,
        *,
        amount: int,
        currency: str,
        source_charge_ref: str,
        destination: str | None,
        description: str,
        idempotency_key: str,
    ) -> str: ...

    async def list_active_subscriptions(
        self,
        *,
        account: str,
        price_ref: str,
    ) -> list[ProviderSubscription]: ...


class JobQueue(Protocol):
    async def enqueue(self, job: SideEffectJob) -> None: ...
