from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, or_, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.access_grants import AccessGrant


def _insert_row(grant: AccessGrant) -> dict[str, object]:
    return {
        "user_id": grant.user_id,
        "offering_id": grant.offering_id,
        "group_id": grant.group_id,
        "track_id": grant.track_id,
        "role_id": grant.role_id,
        "access_type": grant.access_type,
        "status": grant.status,
        "external_subscription_ref": grant.external_subscription_ref,
        "external_session_ref": grant.external_session_ref,
        "expires_at": grant.expires_at,
        "granted_by_id": grant.granted_by_id,
        "idempotency_key": grant.idempotency_key,
        "metadata": grant.metadata_ or {},
        "created_at": grant.created_at,
        "updated_at": grant.updated_at,
    }


class AccessGrantsRepo:
    @staticmethod
    async def get_by_id(session: AsyncSession, grant_id: int) -> AccessGrant | None:
        return await session.get(AccessGrant, grant_id)

    @staticmethod
    async def get_by_id_for_update(session: AsyncSession, grant_id: int) -> AccessGrant | None:
        stmt = select(AccessGrant).where(AccessGrant.id == grant_id).with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_by_subscription_ref(
        session: AsyncSession,
        subscription_ref: str,
    ) -> list[AccessGrant]:
        stmt = (
            select(AccessGrant)
            .where(AccessGrant.external_subscription_ref == subscription_ref)
            .order_by(AccessGrant.id.asc())
            .with_for_update()
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_by_session_ref(session: AsyncSession, session_ref: str) -> list[AccessGrant]:
        stmt = (
            select(AccessGrant)
            .where(AccessGrant.external_session_ref == session_ref)
            .order_by(AccessGrant.id.asc())
            .with_for_update()
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_for_user(
        session: AsyncSession,
        *,
        user_id: int,
        group_id: int | None = None,
    ) -> list[AccessGrant]:
        stmt = select(AccessGrant).where(AccessGrant.user_id == user_id)
        if group_id is not None:
            stmt = stmt.where(AccessGrant.group_id == group_id)
        result = await session.execute(stmt.order_by(AccessGrant.id.asc()))
        return list(result.scalars().all())

    @staticmethod
    async def insert_if_absent(session: AsyncSession, *, grant: AccessGrant) -> AccessGrant | None:
        stmt = (
            postgresql_insert(AccessGrant.__table__)
            .values(**_insert_row(grant))
            .on_conflict_do_nothing(index_elements=["idempotency_key"])
            .returning(AccessGrant.__table__.c.id)
        )
        result = await session.execute(stmt)
        inserted_id = result.scalar_one_or_none()
        if inserted_id is None:
            return None
        return await session.get(AccessGrant, inserted_id)

    @staticmethod
    async def list_elapsed_one_time(
        session: AsyncSession,
        *,
        now_utc: datetime,
        limit: int,
    ) -> list[AccessGrant]:
        stmt = (
            select(AccessGrant)
            .where(
                and_(
                    AccessGrant.status == "active",
                    AccessGrant.expires_at.is_not(None),
                    AccessGrant.expires_at <= now_utc,
                    AccessGrant.external_subscription_ref.is_(None),
                )
            )
            .order_by(AccessGrant.expires_at.asc(), AccessGrant.id.asc())
            .limit(max(1, int(limit)))
            .with_for_update(skip_locked=True)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def find_active_for_target(
        session: AsyncSession,
        *,
        user_id: int,
        group_id: int,
        now_utc: datetime,
        offering_id: int | None = None,
        track_id: int | None = None,
        role_id: int | None = None,
    ) -> AccessGrant | None:
        stmt = select(AccessGrant).where(
            and_(
                AccessGrant.user_id == user_id,
                AccessGrant.group_id == group_id,
                AccessGrant.status == "active",
                or_(AccessGrant.expires_at.is_(None), AccessGrant.expires_at > now_utc),
            )
        )
        if offering_id is not None:
            stmt = stmt.where(AccessGrant.offering_id == offering_id)
        if track_id is not None:
            stmt = stmt.where(AccessGrant.track_id == track_id)
        if role_id is not None:
            stmt = stmt.where(AccessGrant.role_id == role_id)
        result = await session.execute(stmt.order_by(AccessGrant.id.asc()).limit(1))
        return result.scalar_one_or_none()
