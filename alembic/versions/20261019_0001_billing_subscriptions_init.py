"""Initialize subscription state and webhook audit schema.

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind: sa.engine.Connection, table_name: str) -> bool:
    inspector = sa.inspect(bind)
    return table_name in set(inspector.get_table_names())


def _has_index(bind: sa.engine.Connection, table_name: str, index_name: str) -> bool:
    inspector = sa.inspect(bind)
    if table_name not in set(inspector.get_table_names()):
        return False
    return any(item.get("name") == index_name for item in inspector.get_indexes(table_name))


def upgrade() -> None:
    bind = op.get_bind()

    if not _table_exists(bind, "billing_subscriptions"):
        op.create_table(
            "billing_subscriptions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("provider_subscription_id", sa.String(length=128), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("provider", sa.String(length=16), nullable=False, server_default=sa.text("'POLAR'")),
            sa.Column("plan", sa.String(length=16), nullable=False, server_default=sa.text("'FREE'")),
            sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'ACTIVE'")),
            sa.Column("amount", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default=sa.text("'usd'")),
            sa.Column("product_id", sa.String(length=128), nullable=False),
            sa.Column("provider_customer_id", sa.String(length=128), nullable=True),
            sa.Column("interval", sa.String(length=16), nullable=False, server_default=sa.text("'MONTH'")),
            sa.Column("interval_count", sa.Integer(), nullable=False, server_default=sa.text("1")),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
            sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    if not _has_index(bind, "billing_subscriptions", op.f("ix_billing_subscriptions_provider_subscription_id")):
        op.create_index(
            op.f("ix_billing_subscriptions_provider_subscription_id"),
            "billing_subscriptions",
            ["provider_subscription_id"],
            unique=True,
        )
    if not _has_index(bind, "billing_subscriptions", op.f("ix_billing_subscriptions_user_id")):
        op.create_index(op.f("ix_billing_subscriptions_user_id"), "billing_subscriptions", ["user_id"], unique=False)
    if not _has_index(bind, "billing_subscriptions", op.f("ix_billing_subscriptions_last_event_at")):
        op.create_index(
            op.f("ix_billing_subscriptions_last_event_at"),
            "billing_subscriptions",
            ["last_event_at"],
            unique=False,
        )
    if not _has_index(bind, "billing_subscriptions", "ix_billing_subscriptions_user_status"):
        op.create_index(
            "ix_billing_subscriptions_user_status",
            "billing_subscriptions",
            ["user_id", "status"],
            unique=False,
        )

    if not _table_exists(bind, "billing_webhook_audit_logs"):
        op.create_table(
            "billing_webhook_audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default=sa.text("'polar'")),
            sa.Column("event_type", sa.String(length=64), nullable=False),
            sa.Column("webhook_id", sa.String(length=128), nullable=True),
            sa.Column("provider_subscription_id", sa.String(length=128), nullable=True),
            sa.Column("signature_valid", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("raw_payload", sa.Text(), nullable=False),
            sa.Column("outcome", sa.String(length=32), nullable=False),
            sa.Column("detail", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    for column in ("occurred_at", "provider", "event_type", "webhook_id", "provider_subscription_id", "outcome"):
        index_name = op.f(f"ix_billing_webhook_audit_logs_{column}")
        if not _has_index(bind, "billing_webhook_audit_logs", index_name):
            op.create_index(index_name, "billing_webhook_audit_logs", [column], unique=False)


def downgrade() -> None:
    op.drop_table("billing_webhook_audit_logs")
    op.drop_table("billing_subscriptions")
