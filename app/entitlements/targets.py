from __future__ import annotations

from datetime import datetime, timedelta

from app.db.models.offerings import Offering
from app.entitlements.types import AccessTarget

DURATION_DAYS: dict[str, int] = {
    "day": 1,
    "month": 30,
    "season": 90,
    "annual": 365,
}

_TARGET_KEYS = (
    ("group", "groupIds"),
    ("track", "trackIds"),
    ("role", "roleIds"),
)


def _coerce_ids(raw: object) -> list[int]:
    if not isinstance(raw, (list, tuple)):
        return []
    ids: list[int] = []
    for item in raw:
        if isinstance(item, bool):
            continue
        if isinstance(item, int):
            candidate = item
        elif isinstance(item, str) and item.strip().isdigit():
            candidate = int(item.strip())
        else:
            continue
        if candidate > 0 and candidate not in ids:
            ids.append(candidate)
    return ids


def resolve_access_targets(offering: Offering) -> list[AccessTarget]:
    access_grants = offering.access_grants
    if access_grants is None:
        return [AccessTarget(kind="group", target_id=offering.group_id, group_id=offering.group_id)]

    # An explicitly empty mapping is a support-only offering.
    targets: list[AccessTarget] = []
    for kind, key in _TARGET_KEYS:
        for target_id in _coerce_ids(access_grants.get(key)):
            group_id = target_id if kind == "group" else offering.group_id
            targets.append(AccessTarget(kind=kind, target_id=target_id, group_id=group_id))
    return targets


def has_entitlements(offering: Offering) -> bool:
    return bool(resolve_access_targets(offering))


def target_group_ids(targets: list[AccessTarget]) -> list[int]:
    group_ids: list[int] = []
    for target in targets:
        if target.group_id not in group_ids:
            group_ids.append(target.group_id)
    return group_ids


def compute_expires_at(duration: str | None, *, start_utc: datetime) -> datetime | None:
    days = DURATION_DAYS.get(duration or "")
    if days is None:
        return None
    return start_utc + timedelta(days=days)
