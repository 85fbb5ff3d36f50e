from __future__ import annotations

from dataclasses import dataclass, field

from app.entitlements.dispatcher import SideEffectDispatcher
from app.entitlements.donations import DonationSettings
from app.entitlements.ports import (
    BillingGateway,
    EntitlementStore,
    MembershipGateway,
    OfferingRepository,
)


@dataclass(slots=True)
class EntitlementContext:
    store: EntitlementStore
    offerings: OfferingRepository
    memberships: MembershipGateway
    billing: BillingGateway
    dispatcher: SideEffectDispatcher
    donations: DonationSettings = field(default_factory=DonationSettings)
