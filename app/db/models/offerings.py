from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base


class Offering(Base):
    __tablename__ = "offerings"
    __table_args__ = (
        CheckConstraint(
            "duration IS NULL OR duration IN ('day','month','season','annual','lifetime')",
            name="ck_offerings_duration",
        ),
        CheckConstraint(
            "renewal_policy IN ('auto','manual')",
            name="ck_offerings_renewal_policy",
        ),
        CheckConstraint(
            "publish_status IN ('unpublished','unlisted','published','archived')",
            name="ck_offerings_publish_status",
        ),
        CheckConstraint("price_in_cents >= 0", name="ck_offerings_price_non_negative"),
        Index("idx_offerings_group", "group_id"),
        Index("uq_offerings_provider_product", "provider_product_ref", unique=True),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    group_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price_in_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, server_default=text("'usd'"))
    access_grants: Mapped[dict[str, object] | None] = mapped_column(JSONB, nullable=True)
    duration: Mapped[str | None] = mapped_column(String(16), nullable=True)
    renewal_policy: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        server_default=text("'manual'"),
    )
    publish_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        server_default=text("'unpublished'"),
    )
    provider_product_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    provider_price_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    provider_account_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
