from __future__ import annotations

TRANSITION_PURCHASE_COMPLETED = "purchase_completed"
TRANSITION_PURCHASE_AWAITING_PAYMENT = "purchase_awaiting_payment"
TRANSITION_SUBSCRIPTION_REPAIRED = "subscription_repaired"
TRANSITION_SUPPORT_ONLY_SUBSCRIPTION = "support_only_subscription"
TRANSITION_CANCELLATION_SCHEDULED = "cancellation_scheduled"
TRANSITION_REACTIVATED = "subscription_reactivated"
TRANSITION_SUBSCRIPTION_STATUS_OBSERVED = "subscription_status_observed"
TRANSITION_SUBSCRIPTION_EXPIRED = "subscription_expired"
TRANSITION_INITIAL_INVOICE_SKIPPED = "initial_invoice_skipped"
TRANSITION_RENEWED = "subscription_renewed"
TRANSITION_RENEWAL_BLOCKED = "renewal_blocked"
TRANSITION_PAYMENT_FAILED = "payment_failure_recorded"
TRANSITION_REFUND_REVOKED = "refund_revoked"
TRANSITION_OFFERING_SYNCED = "offering_synced"
TRANSITION_ADMIN_GRANTED = "admin_granted"
TRANSITION_ADMIN_REVOKED = "admin_revoked"
TRANSITION_ONE_TIME_EXPIRED = "one_time_expired"

ACCESS_KIND_ONE_TIME = "one_time"
ACCESS_KIND_SUBSCRIPTION = "subscription"

# Set only by a completed checkout; its presence means the receipts went out.
PURCHASE_RECEIPT_KEY = "purchased_at"
CANCELLATION_CARRY_OVER_EFFECT = "cancellation_carry_over"

ACTIVE_PROVIDER_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})
LIVE_PROVIDER_SUBSCRIPTION_STATUSES = frozenset(
    {"active", "trialing", "past_due", "unpaid", "incomplete", "paused"}
)

CORRELATION_USER_KEY = "userId"
CORRELATION_GROUP_KEY = "groupId"
CORRELATION_OFFERING_KEY = "offeringId"
CORRELATION_SESSION_KEY = "sessionId"
PAYMENT_INTENT_SESSION_KEYS = ("session_id", "sessionId")

DEFAULT_MEMBER_ROLE = "member"
ELAPSED_GRANTS_BATCH_LIMIT = 500
