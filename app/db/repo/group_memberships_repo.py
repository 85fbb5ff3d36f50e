from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.group_memberships import GroupMembership


class GroupMembershipsRepo:
    @staticmethod
    async def ensure(
        session: AsyncSession,
        *,
        user_id: int,
        group_id: int,
        role: str,
    ) -> bool:
        stmt = (
            postgresql_insert(GroupMembership)
            .values(user_id=user_id, group_id=group_id, role=role)
            .on_conflict_do_nothing(
                index_elements=[GroupMembership.user_id, GroupMembership.group_id]
            )
            .returning(GroupMembership.id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def set_nav_pinned(session: AsyncSession, *, user_id: int, group_id: int) -> int:
        stmt = (
            update(GroupMembership)
            .where(
                GroupMembership.user_id == user_id,
                GroupMembership.group_id == group_id,
                GroupMembership.nav_pinned.is_(False),
            )
            .values(nav_pinned=True, updated_at=func.now())
            .returning(GroupMembership.id)
        )
        result = await session.execute(stmt)
        return len(list(result.scalars()))

    @staticmethod
    async def mark_agreements_accepted(
        session: AsyncSession,
        *,
        user_id: int,
        group_id: int,
        accepted_at: datetime,
    ) -> int:
        stmt = (
            update(GroupMembership)
            .where(
                GroupMembership.user_id == user_id,
                GroupMembership.group_id == group_id,
                GroupMembership.agreements_accepted_at.is_(None),
            )
            .values(agreements_accepted_at=accepted_at, updated_at=func.now())
            .returning(GroupMembership.id)
        )
        result = await session.execute(stmt)
        return len(list(result.scalars()))
