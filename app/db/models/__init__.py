from app.db.models.access_grants import AccessGrant
from app.db.models.group_memberships import GroupMembership
from app.db.models.offerings import Offering
from app.db.models.outbox_events import OutboxEvent
from app.db.models.reconciliation_runs import ReconciliationRun

__all__ = [
    "AccessGrant",
    "GroupMembership",
    "Offering",
    "OutboxEvent",
    "ReconciliationRun",
]
