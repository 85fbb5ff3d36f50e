"""m1_paid_access_core

Revision ID: 3a9c5e7d1b20
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "3a9c5e7d1b20"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "offerings",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("group_id", sa.BigInteger(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price_in_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'usd'")),
        sa.Column("access_grants", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("duration", sa.String(16), nullable=True),
        sa.Column("renewal_policy", sa.String(16), nullable=False, server_default=sa.text("'manual'")),
        sa.Column(
            "publish_status",
            sa.String(16),
            nullable=False,
            server_default=sa.text("'unpublished'"),
        ),
        sa.Column("provider_product_ref", sa.String(128), nullable=True),
        sa.Column("provider_price_ref", sa.String(128), nullable=True),
        sa.Column("provider_account_ref", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "duration IS NULL OR duration IN ('day','month','season','annual','lifetime')",
            name="ck_offerings_duration",
        ),
        sa.CheckConstraint("renewal_policy IN ('auto','manual')", name="ck_offerings_renewal_policy"),
        sa.CheckConstraint(
            "publish_status IN ('unpublished','unlisted','published','archived')",
            name="ck_offerings_publish_status",
        ),
        sa.CheckConstraint("price_in_cents >= 0", name="ck_offerings_price_non_negative"),
    )
    op.create_index("idx_offerings_group", "offerings", ["group_id"])
    op.create_index("uq_offerings_provider_product", "offerings", ["provider_product_ref"], unique=True)

    op.create_table(
        "access_grants",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("offering_id", sa.BigInteger(), nullable=True),
        sa.Column("group_id", sa.BigInteger(), nullable=True),
        sa.Column("track_id", sa.BigInteger(), nullable=True),
        sa.Column("role_id", sa.BigInteger(), nullable=True),
        sa.Column("access_type", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("external_subscription_ref", sa.String(128), nullable=True),
        sa.Column("external_session_ref", sa.String(128), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("granted_by_id", sa.BigInteger(), nullable=True),
        sa.Column("idempotency_key", sa.String(192), nullable=False),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("access_type IN ('purchase','admin_grant')", name="ck_access_grants_access_type"),
        sa.CheckConstraint("status IN ('active','expired','revoked')", name="ck_access_grants_status"),
        sa.ForeignKeyConstraint(["offering_id"], ["offerings.id"]),
        sa.UniqueConstraint("idempotency_key", name="uq_access_grants_idempotency_key"),
    )
    op.create_index("idx_access_grants_user_group", "access_grants", ["user_id", "group_id"])
    op.create_index("idx_access_grants_subscription", "access_grants", ["external_subscription_ref"])
    op.create_index("idx_access_grants_session", "access_grants", ["external_session_ref"])
    op.create_index("idx_access_grants_offering", "access_grants", ["offering_id"])
    op.create_index(
        "idx_access_grants_active_expiry",
        "access_grants",
        ["expires_at"],
        postgresql_where=sa.text("status = 'active' AND expires_at IS NOT NULL"),
    )

    op.create_table(
        "group_memberships",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("group_id", sa.BigInteger(), nullable=False),
        sa.Column("role", sa.String(32), nullable=False, server_default=sa.text("'member'")),
        sa.Column("nav_pinned", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("agreements_accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index(
        "uq_group_memberships_user_group",
        "group_memberships",
        ["user_id", "group_id"],
        unique=True,
    )

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("transition", sa.String(64), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("status IN ('PENDING','DELIVERED','FAILED')", name="ck_outbox_events_status"),
    )
    op.create_index("idx_outbox_events_status_created", "outbox_events", ["status", "created_at"])

    op.create_table(
        "reconciliation_runs",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(8), nullable=False),
        sa.Column("subscriptions_examined", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("grants_repaired", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("grants_expired", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("errors", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("diff_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "repaired_subscription_refs",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.CheckConstraint("status IN ('OK','DIFF')", name="ck_reconciliation_runs_status"),
    )


def downgrade() -> None:
    op.drop_table("reconciliation_runs")
    op.drop_index("idx_outbox_events_status_created", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("uq_group_memberships_user_group", table_name="group_memberships")
    op.drop_table("group_memberships")
    op.drop_index("idx_access_grants_active_expiry", table_name="access_grants")
    op.drop_index("idx_access_grants_offering", table_name="access_grants")
    op.drop_index("idx_access_grants_session", table_name="access_grants")
    op.drop_index("idx_access_grants_subscription", table_name="access_grants")
    op.drop_index("idx_access_grants_user_group", table_name="access_grants")
    op.drop_table("access_grants")
    op.drop_index("uq_offerings_provider_product", table_name="offerings")
    op.drop_index("idx_offerings_group", table_name="offerings")
    op.drop_table("offerings")
