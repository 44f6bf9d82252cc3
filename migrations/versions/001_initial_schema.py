"""Initial schema: tenants, memberships, super-admins and customers

Revision ID: 001
Revises:
Create Date: 2026-09-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Enable required PostgreSQL extensions
    op.execute("CREATE EXTENSION IF NOT EXISTS \"uuid-ossp\"")

    # Request-facing role (read paths) and the service role that performs ledger writes
    op.execute("DO $$ BEGIN CREATE ROLE ledger_app_role; EXCEPTION WHEN duplicate_object THEN NULL; END $$")
    op.execute("DO $$ BEGIN CREATE ROLE ledger_service_role; EXCEPTION WHEN duplicate_object THEN NULL; END $$")

    # Create tenants table
    op.create_table(
        "tenants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("uuid_generate_v4()")),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(63), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("plan_type", sa.String(50), nullable=False, server_default="free"),
        sa.Column("is_free_tier", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("limits", postgresql.JSONB, server_default=sa.text("'{}'::jsonb")),
        sa.Column("usage", postgresql.JSONB, server_default=sa.text("'{}'::jsonb")),
        sa.Column("features", postgresql.JSONB, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("slug"),
        sa.CheckConstraint("status IN ('active', 'trial', 'suspended', 'cancelled')", name="valid_tenant_status"),
        sa.CheckConstraint("plan_type IN ('free', 'starter', 'professional', 'enterprise')", name="valid_plan_type"),
        sa.CheckConstraint("slug ~ '^[a-z0-9]([a-z0-9-]*[a-z0-9])?$'", name="valid_tenant_slug"),
    )
    op.create_index("idx_tenants_status", "tenants", ["status"])

    # Create tenant memberships table
    op.create_table(
        "tenant_memberships",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("uuid_generate_v4()")),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("role", sa.String(20), nullable=False, server_default="member"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("invited_by", postgresql.UUID(as_uuid=True)),
        sa.Column("joined_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("tenant_id", "user_id", name="uq_tenant_memberships_tenant_user"),
        sa.CheckConstraint("role IN ('owner', 'admin', 'member', 'viewer')", name="valid_membership_role"),
        sa.CheckConstraint("status IN ('pending', 'active', 'suspended', 'deleted')", name="valid_membership_status"),
    )
    op.create_index("idx_tenant_memberships_user_status", "tenant_memberships", ["user_id", "status"])

    # Create super admins table
    op.create_table(
        "super_admins",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("uuid_generate_v4()")),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id"),
        sa.CheckConstraint("status IN ('active', 'disabled')", name="valid_super_admin_status"),
    )

    # Create super admin audit table
    op.create_table(
        "super_admin_actions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("uuid_generate_v4()")),
        sa.Column("super_admin_user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True)),
        sa.Column("resource_type", sa.String(100)),
        sa.Column("resource_id", sa.String(255)),
        sa.Column("details", postgresql.JSONB, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_super_admin_actions_tenant_created", "super_admin_actions", ["tenant_id", "created_at"])
    op.create_index("idx_super_admin_actions_admin", "super_admin_actions", ["super_admin_user_id"])

    # Create customers table
    op.create_table(
        "customers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("uuid_generate_v4()")),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("phone", sa.String(50)),
        sa.Column("customer_type", sa.String(20), nullable=False, server_default="retail"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("notes", sa.Text),
        sa.Column("additional_data", postgresql.JSONB, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("created_by", postgresql.UUID(as_uuid=True)),
        sa.Column("updated_by", postgresql.UUID(as_uuid=True)),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.CheckConstraint("customer_type IN ('retail', 'wholesale', 'medical')", name="valid_customer_type"),
        sa.CheckConstraint("status IN ('active', 'inactive', 'blocked')", name="valid_customer_status"),
    )
    op.create_index("ix_customers_tenant_id", "customers", ["tenant_id"])
    op.create_index("idx_customers_tenant_name", "customers", ["tenant_id", "name"])


def downgrade() -> None:
    op.drop_table("customers")
    op.drop_table("super_admin_actions")
    op.drop_table("super_admins")
    op.drop_table("tenant_memberships")
    op.drop_table("tenants")

    op.execute("DROP ROLE IF EXISTS ledger_service_role")
    op.execute("DROP ROLE IF EXISTS ledger_app_role")
