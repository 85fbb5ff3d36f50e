from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Index, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base

OUTBOX_STATUSES = ("PENDING", "DELIVERED", "FAILED")


class OutboxEvent(Base):
    """Side-effect job handed over by the entitlement engine for delivery."""

    __tablename__ = "outbox_events"
    __table_args__ = (
        CheckConstraint(
            "status IN ({})".format(",".join(f"'{status}'" for status in OUTBOX_STATUSES)),
            name="ck_outbox_events_status",
        ),
        Index("idx_outbox_events_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    # Job type, e.g. purchase_confirmation_email or membership_sync.
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    # Entitlement transition that produced the job; null for manual enqueues.
    transition: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload: Mapped[dict[str, object]] = mapped_column(JSONB, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, server_default=text("'PENDING'"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
