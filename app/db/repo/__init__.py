from app.db.repo.access_grants_repo import AccessGrantsRepo
from app.db.repo.group_memberships_repo import GroupMembershipsRepo
from app.db.repo.offerings_repo import OfferingsRepo
from app.db.repo.outbox_events_repo import OutboxEventsRepo
from app.db.repo.reconciliation_runs_repo import ReconciliationRunsRepo

__all__ = [
    "AccessGrantsRepo",
    "GroupMembershipsRepo",
    "OfferingsRepo",
    "OutboxEventsRepo",
    "ReconciliationRunsRepo",
]
