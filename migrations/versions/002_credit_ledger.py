"""Credit ledger tables and the default action cost catalog

Revision ID: 002
Revises: 001
Create Date: 2026-09-01 00:00:01.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from src.services.credit_costs import DEFAULT_CREDIT_COSTS

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # One balance row per tenant
    op.create_table(
        "credit_accounts",
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("balance", sa.Integer, nullable=False, server_default="0"),
        sa.Column("lifetime_earned", sa.Integer, nullable=False, server_default="0"),
        sa.Column("lifetime_spent", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_free_tier", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("last_free_grant_at", sa.DateTime(timezone=True)),
        sa.Column("next_free_grant_at", sa.DateTime(timezone=True)),
        sa.Column("credits_used_today", sa.Integer, nullable=False, server_default="0"),
        sa.Column("credits_used_this_week", sa.Integer, nullable=False, server_default="0"),
        sa.Column("credits_used_this_month", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_daily_reset", sa.DateTime(timezone=True)),
        sa.Column("last_weekly_reset", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.CheckConstraint("balance >= 0", name="credit_balance_non_negative"),
        sa.CheckConstraint("lifetime_earned >= 0 AND lifetime_spent >= 0", name="credit_lifetime_non_negative"),
        sa.CheckConstraint("balance = lifetime_earned - lifetime_spent", name="credit_balance_reconciles"),
        sa.CheckConstraint(
            "credits_used_today >= 0 AND credits_used_this_week >= 0 AND credits_used_this_month >= 0",
            name="credit_usage_non_negative",
        ),
    )
    op.create_index("idx_credit_accounts_next_grant", "credit_accounts", ["next_free_grant_at"])

    # Append-only transaction log
    op.create_table(
        "credit_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("uuid_generate_v4()")),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("balance_after", sa.Integer, nullable=False),
        sa.Column("transaction_type", sa.String(20), nullable=False),
        sa.Column("action_type", sa.String(100)),
        sa.Column("reference_id", sa.String(255)),
        sa.Column("reference_type", sa.String(50)),
        sa.Column("description", sa.Text),
        sa.Column("details", postgresql.JSONB, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.CheckConstraint("amount <> 0", name="credit_transaction_non_zero"),
        sa.CheckConstraint("balance_after >= 0", name="credit_transaction_balance_non_negative"),
        sa.CheckConstraint(
            "transaction_type IN ('purchase', 'usage', 'refund', 'free_grant', 'bonus', 'adjustment')",
            name="valid_credit_transaction_type",
        ),
    )
    op.create_index("idx_credit_transactions_tenant_created", "credit_transactions", ["tenant_id", "created_at"])

    # Idempotency keys: the real guarantee beneath the application-level lookups
    op.create_index(
        "uq_credit_transactions_reference",
        "credit_transactions",
        ["tenant_id", "action_type", "reference_id"],
        unique=True,
        postgresql_where=sa.text("reference_id IS NOT NULL"),
    )
    op.create_index(
        "uq_credit_transactions_purchase_reference",
        "credit_transactions",
        ["reference_id"],
        unique=True,
        postgresql_where=sa.text("transaction_type = 'purchase'"),
    )

    # The log is append-only even for the table owner
    op.execute("""
        CREATE OR REPLACE FUNCTION reject_credit_transaction_change()
        RETURNS TRIGGER AS $$
        BEGIN
            RAISE EXCEPTION 'credit_transactions is append-only';
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER credit_transactions_append_only
        BEFORE UPDATE OR DELETE ON credit_transactions
        FOR EACH ROW EXECUTE FUNCTION reject_credit_transaction_change();
    """)

    # Action cost catalog
    credit_costs = op.create_table(
        "credit_costs",
        sa.Column("action_key", sa.String(100), primary_key=True),
        sa.Column("action_name", sa.String(255), nullable=False),
        sa.Column("credits", sa.Integer, nullable=False, server_default="0"),
        sa.Column("category", sa.String(50), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("credits >= 0", name="credit_cost_non_negative"),
    )
    op.bulk_insert(credit_costs, DEFAULT_CREDIT_COSTS)

    # Advisory abuse signals
    op.create_table(
        "credit_abuse_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("uuid_generate_v4()")),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("rule", sa.String(50), nullable=False),
        sa.Column("action_type", sa.String(100)),
        sa.Column("observed_count", sa.Integer, nullable=False),
        sa.Column("threshold", sa.Integer, nullable=False),
        sa.Column("window_seconds", sa.Integer, nullable=False),
        sa.Column("acknowledged", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_credit_abuse_events_tenant_created", "credit_abuse_events", ["tenant_id", "created_at"])


def downgrade() -> None:
    op.drop_table("credit_abuse_events")
    op.drop_table("credit_costs")

    op.execute("DROP TRIGGER IF EXISTS credit_transactions_append_only ON credit_transactions")
    op.execute("DROP FUNCTION IF EXISTS reject_credit_transaction_change()")

    op.drop_index("uq_credit_transactions_purchase_reference", table_name="credit_transactions")
    op.drop_index("uq_credit_transactions_reference", table_name="credit_transactions")
    op.drop_table("credit_transactions")
    op.drop_table("credit_accounts")
