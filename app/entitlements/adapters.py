from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.access_grants import AccessGrant
from app.db.models.offerings import Offering
from app.db.repo.access_grants_repo import AccessGrantsRepo
from app.db.repo.group_memberships_repo import GroupMembershipsRepo
from app.db.repo.offerings_repo import OfferingsRepo


class SqlEntitlementStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_by_subscription_ref(self, subscription_ref: str) -> list[AccessGrant]:
        return await AccessGrantsRepo.list_by_subscription_ref(self._session, subscription_ref)

    async def list_by_session_ref(self, session_ref: str) -> list[AccessGrant]:
        return await AccessGrantsRepo.list_by_session_ref(self._session, session_ref)

    async def list_for_user(
        self,
        user_id: int,
        *,
        group_id: int | None = None,
    ) -> list[AccessGrant]:
        return await AccessGrantsRepo.list_for_user(
            self._session,
            user_id=user_id,
            group_id=group_id,
        )

    async def get(self, grant_id: int) -> AccessGrant | None:
        return await AccessGrantsRepo.get_by_id_for_update(self._session, grant_id)

    async def add_many(self, grants: list[AccessGrant]) -> list[AccessGrant]:
        inserted: list[AccessGrant] = []
        for grant in grants:
            row = await AccessGrantsRepo.insert_if_absent(self._session, grant=grant)
            if row is not None:
                inserted.append(row)
        return inserted

    async def save(self, grant: AccessGrant) -> None:
        await self._session.flush()

    async def list_elapsed_one_time(
        self,
        *,
        now_utc: datetime,
        limit: int,
    ) -> list[AccessGrant]:
        return await AccessGrantsRepo.list_elapsed_one_time(
            self._session,
            now_utc=now_utc,
            limit=limit,
        )

    async def find_active(
        self,
        *,
        user_id: int,
        group_id: int,
        now_utc: datetime,
        offering_id: int | None = None,
        track_id: int | None = None,
        role_id: int | None = None,
    ) -> AccessGrant | None:
        return await AccessGrantsRepo.find_active_for_target(
            self._session,
            user_id=user_id,
            group_id=group_id,
            now_utc=now_utc,
            offering_id=offering_id,
            track_id=track_id,
            role_id=role_id,
        )


class SqlOfferingRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, offering_id: int) -> Offering | None:
        return await OfferingsRepo.get_by_id(self._session, offering_id)

    async def get_by_provider_product(self, product_ref: str) -> Offering | None:
        return await OfferingsRepo.get_by_provider_product_ref(self._session, product_ref)

    async def list_billable(self) -> list[Offering]:
        return await OfferingsRepo.list_billable(self._session)

    async def save(self, offering: Offering) -> None:
        await self._session.flush()


class SqlMembershipGateway:
    """Each call runs in a savepoint so a failure leaves the outer transaction usable."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def ensure_membership(self, user_id: int, group_id: int, role: str) -> bool:
        async with self._session.begin_nested():
            return await GroupMembershipsRepo.ensure(
                self._session,
                user_id=user_id,
                group_id=group_id,
                role=role,
            )

    async def pin_to_nav(self, user_id: int, group_id: int) -> None:
        async with self._session.begin_nested():
            await GroupMembershipsRepo.set_nav_pinned(
                self._session,
                user_id=user_id,
                group_id=group_id,
            )

    async def accept_agreements(
        self,
        user_id: int,
        group_id: int,
        *,
        accepted_at: datetime,
    ) -> None:
        async with self._session.begin_nested():
            await GroupMembershipsRepo.mark_agreements_accepted(
                self._session,
                user_id=user_id,
                group_id=group_id,
                accepted_at=accepted_at,
            )
