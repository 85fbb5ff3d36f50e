from __future__ import annotations

from app.db.models.access_grants import AccessGrant
from app.entitlements.errors import AlreadyProcessedError, MissingCorrelationError
from app.entitlements.ports import EntitlementStore
from app.entitlements.types import AccessTarget

LAST_RENEWAL_INVOICE_KEY = "last_renewal_invoice_ref"


def lineage_key(*, subscription_ref: str | None, session_ref: str | None) -> str:
    lineage = subscription_ref or session_ref
    if not lineage:
        raise MissingCorrelationError("purchase has neither subscription nor session ref")
    return lineage


def grant_idempotency_key(*, lineage: str, target: AccessTarget) -> str:
    return f"grant:{lineage}:{target.kind}:{target.target_id}"


async def find_purchase_lineage(
    store: EntitlementStore,
    *,
    subscription_ref: str | None,
    session_ref: str | None,
) -> list[AccessGrant]:
    if subscription_ref:
        grants = await store.list_by_subscription_ref(subscription_ref)
        if grants:
            return grants
    if session_ref:
        return await store.list_by_session_ref(session_ref)
    return []


async def ensure_not_granted(
    store: EntitlementStore,
    *,
    subscription_ref: str | None,
    session_ref: str | None,
) -> None:
    existing = await find_purchase_lineage(
        store,
        subscription_ref=subscription_ref,
        session_ref=session_ref,
    )
    if existing:
        raise AlreadyProcessedError(f"{len(existing)} grants already exist for this purchase")


def renewal_already_applied(grants: list[AccessGrant], invoice_ref: str) -> bool:
    return bool(grants) and all(
        (grant.metadata_ or {}).get(LAST_RENEWAL_INVOICE_KEY) == invoice_ref for grant in grants
    )


def all_terminal(grants: list[AccessGrant], *, status: str) -> bool:
    return all(grant.status in {status, "revoked"} for grant in grants)
