from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, ForeignKey, Index, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base


class AccessGrant(Base):
    __tablename__ = "access_grants"
    __table_args__ = (
        CheckConstraint(
            "access_type IN ('purchase','admin_grant')",
            name="ck_access_grants_access_type",
        ),
        CheckConstraint(
            "status IN ('active','expired','revoked')",
            name="ck_access_grants_status",
        ),
        Index("idx_access_grants_user_group", "user_id", "group_id"),
        Index("idx_access_grants_subscription", "external_subscription_ref"),
        Index("idx_access_grants_session", "external_session_ref"),
        Index("idx_access_grants_offering", "offering_id"),
        Index(
            "idx_access_grants_active_expiry",
            "expires_at",
            postgresql_where=text("status = 'active' AND expires_at IS NOT NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    offering_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("offerings.id"),
        nullable=True,
    )
    group_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    track_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    role_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    access_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    external_subscription_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    external_session_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    granted_by_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(192), unique=True, nullable=False)
    metadata_: Mapped[dict[str, object]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        server_default=text("'{}'::jsonb"),
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
