from __future__ import annotations

from .admin import check_access, grant_access, revoke_access
from .context import EntitlementContext
from .grants import _build_grants, _correlation_ids, _sync_memberships, _update_metadata
from .invoice_failed import record_payment_failure
from .invoice_paid import apply_invoice_paid
from .product_updated import sync_offering_from_product
from .purchase import complete_purchase
from .refund import cancel_live_subscriptions, revoke_refunded_charge
from .subscription_created import repair_subscription_grants
from .subscription_deleted import expire_subscription
from .subscription_updated import apply_subscription_update


class EntitlementService:
    _build_grants = staticmethod(_build_grants)
    _correlation_ids = staticmethod(_correlation_ids)
    _sync_memberships = staticmethod(_sync_memberships)
    _update_metadata = staticmethod(_update_metadata)
    complete_purchase = staticmethod(complete_purchase)
    repair_subscription_grants = staticmethod(repair_subscription_grants)
    apply_subscription_update = staticmethod(apply_subscription_update)
    expire_subscription = staticmethod(expire_subscription)
    apply_invoice_paid = staticmethod(apply_invoice_paid)
    record_payment_failure = staticmethod(record_payment_failure)
    revoke_refunded_charge = staticmethod(revoke_refunded_charge)
    cancel_live_subscriptions = staticmethod(cancel_live_subscriptions)
    sync_offering_from_product = staticmethod(sync_offering_from_product)
    grant_access = staticmethod(grant_access)
    revoke_access = staticmethod(revoke_access)
    check_access = staticmethod(check_access)


__all__ = [
    "EntitlementContext",
    "EntitlementService",
]
