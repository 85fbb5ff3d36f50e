from __future__ import annotations

from app.entitlements.types import ReconciliationSummary

MAX_REPORTED_SUBSCRIPTION_REFS = 20


def reconciliation_status(diff_count: int) -> str:
    return "OK" if diff_count == 0 else "DIFF"


def reconciliation_result(summary: ReconciliationSummary) -> dict[str, int | str]:
    return {
        "subscriptions_examined": summary.subscriptions_examined,
        "grants_repaired": summary.grants_repaired,
        "grants_expired": summary.grants_expired,
        "errors": summary.errors,
        "diff_count": summary.diff_count,
        "status": reconciliation_status(summary.diff_count),
    }


def should_alert_ops(summary: ReconciliationSummary) -> bool:
    return summary.grants_repaired > 0 or summary.errors > 0


def alert_payload(summary: ReconciliationSummary) -> dict[str, object]:
    payload: dict[str, object] = dict(reconciliation_result(summary))
    payload["repaired_subscription_refs"] = summary.repaired_subscription_refs[
        :MAX_REPORTED_SUBSCRIPTION_REFS
    ]
    return payload
