from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.offerings import Offering


class OfferingsRepo:
    @staticmethod
    async def get_by_id(session: AsyncSession, offering_id: int) -> Offering | None:
        return await session.get(Offering, offering_id)

    @staticmethod
    async def get_by_provider_product_ref(
        session: AsyncSession,
        provider_product_ref: str,
    ) -> Offering | None:
        stmt = select(Offering).where(Offering.provider_product_ref == provider_product_ref)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_billable(session: AsyncSession) -> list[Offering]:
        stmt = (
            select(Offering)
            .where(
                Offering.publish_status != "archived",
                Offering.provider_price_ref.is_not(None),
                Offering.provider_account_ref.is_not(None),
            )
            .order_by(Offering.id.asc())
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
