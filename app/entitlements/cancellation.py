from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

CANCEL_SCHEDULED_AT_KEY = "cancel_scheduled_at"
CANCEL_EFFECTIVE_AT_KEY = "cancel_effective_at"
CANCEL_REASON_KEY = "cancel_reason"
CANCELLATION_KEYS = (CANCEL_SCHEDULED_AT_KEY, CANCEL_EFFECTIVE_AT_KEY, CANCEL_REASON_KEY)


def _parse_timestamp(raw: object) -> datetime | None:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


@dataclass(frozen=True, slots=True)
class CancellationSchedule:
    """Cancellation state of a grant, derived from its metadata audit keys."""

    scheduled_at: datetime | None
    effective_at: datetime | None
    reason: str | None

    @classmethod
    def from_metadata(cls, metadata: dict[str, object] | None) -> CancellationSchedule | None:
        if not metadata or not any(key in metadata for key in CANCELLATION_KEYS):
            return None
        reason = metadata.get(CANCEL_REASON_KEY)
        return cls(
            scheduled_at=_parse_timestamp(metadata.get(CANCEL_SCHEDULED_AT_KEY)),
            effective_at=_parse_timestamp(metadata.get(CANCEL_EFFECTIVE_AT_KEY)),
            reason=str(reason) if reason is not None else None,
        )

    def same_window(self, other: CancellationSchedule) -> bool:
        return self.effective_at == other.effective_at and self.reason == other.reason

    def apply_to(self, metadata: dict[str, object] | None) -> dict[str, object]:
        updated = dict(metadata or {})
        updated[CANCEL_SCHEDULED_AT_KEY] = (
            self.scheduled_at.isoformat() if self.scheduled_at is not None else None
        )
        updated[CANCEL_EFFECTIVE_AT_KEY] = (
            self.effective_at.isoformat() if self.effective_at is not None else None
        )
        updated[CANCEL_REASON_KEY] = self.reason
        return updated


def strip_cancellation(metadata: dict[str, object] | None) -> dict[str, object] | None:
    """Returns metadata without cancellation keys, or None when none were present."""
    if not metadata or not any(key in metadata for key in CANCELLATION_KEYS):
        return None
    return {key: value for key, value in metadata.items() if key not in CANCELLATION_KEYS}
