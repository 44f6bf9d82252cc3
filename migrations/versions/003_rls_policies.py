"""Row-Level Security policies for multi-tenant isolation

Every tenant-owned table gets policies that are a pure function of the caller
(``app.current_user_id``) and the row's tenant. Membership and super-admin
lookups go through SECURITY DEFINER helpers so that a policy on
``tenant_memberships`` never re-enters itself.

Revision ID: 003
Revises: 002
Create Date: 2026-09-01 00:00:02.000000

"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ROLES = "ledger_app_role, ledger_service_role"

TENANT_TABLES = ["tenants", "tenant_memberships", "customers"]
LEDGER_TABLES = ["credit_accounts", "credit_transactions", "credit_abuse_events"]
AUDIT_TABLES = ["super_admins", "super_admin_actions"]

CAN_READ = "(tenant_id IN (SELECT app_current_user_tenant_ids()) OR app_current_user_is_super_admin())"
CAN_WRITE = "(app_current_user_role(tenant_id) IN ('owner', 'admin', 'member') OR app_current_user_is_super_admin())"
CAN_DELETE = "(app_current_user_role(tenant_id) IN ('owner', 'admin') OR app_current_user_is_super_admin())"


def upgrade() -> None:
    # Request sessions log in as a member of ledger_app_role and switch to
    # ledger_service_role (SET LOCAL ROLE) only for ledger writes. NOINHERIT keeps
    # the service privileges out of the request role until it switches.
    op.execute("""
        DO $$
        BEGIN
            IF NOT EXISTS (SELECT 1 FROM pg_roles WHERE rolname = 'ledger_app_role') THEN
                CREATE ROLE ledger_app_role NOLOGIN NOINHERIT;
            END IF;
            IF NOT EXISTS (SELECT 1 FROM pg_roles WHERE rolname = 'ledger_service_role') THEN
                CREATE ROLE ledger_service_role NOLOGIN;
            END IF;
        END
        $$;
    """)
    op.execute("ALTER ROLE ledger_app_role NOINHERIT")
    op.execute("GRANT ledger_service_role TO ledger_app_role")

    # Helper functions; SECURITY DEFINER bypasses the policies they serve
    op.execute("""
        CREATE OR REPLACE FUNCTION app_current_user_id()
        RETURNS uuid AS $$
            SELECT NULLIF(current_setting('app.current_user_id', true), '')::uuid
        $$ LANGUAGE sql STABLE;
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION app_current_user_tenant_ids()
        RETURNS SETOF uuid AS $$
            SELECT m.tenant_id
            FROM tenant_memberships m
            JOIN tenants t ON t.id = m.tenant_id
            WHERE m.user_id = app_current_user_id()
              AND m.status = 'active'
              AND t.status IN ('active', 'trial')
        $$ LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public;
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION app_current_user_is_super_admin()
        RETURNS boolean AS $$
            SELECT EXISTS (
                SELECT 1 FROM super_admins
                WHERE user_id = app_current_user_id() AND status = 'active'
            )
        $$ LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public;
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION app_current_user_role(target_tenant uuid)
        RETURNS text AS $$
            SELECT m.role
            FROM tenant_memberships m
            JOIN tenants t ON t.id = m.tenant_id
            WHERE m.tenant_id = target_tenant
              AND m.user_id = app_current_user_id()
              AND m.status = 'active'
              AND t.status IN ('active', 'trial')
        $$ LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public;
    """)

    # Signup: the first membership of a tenant may be the caller's own owner row
    op.execute("""
        CREATE OR REPLACE FUNCTION app_tenant_has_members(target_tenant uuid)
        RETURNS boolean AS $$
            SELECT EXISTS (SELECT 1 FROM tenant_memberships WHERE tenant_id = target_tenant)
        $$ LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public;
    """)

    for table in TENANT_TABLES + LEDGER_TABLES + AUDIT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")

    # Tenants: keyed on id rather than tenant_id
    op.execute(f"""
        CREATE POLICY tenants_select ON tenants FOR SELECT TO {ROLES}
        USING (id IN (SELECT app_current_user_tenant_ids()) OR app_current_user_is_super_admin())
    """)
    op.execute(f"""
        CREATE POLICY tenants_insert ON tenants FOR INSERT TO {ROLES}
        WITH CHECK (app_current_user_id() IS NOT NULL)
    """)
    op.execute(f"""
        CREATE POLICY tenants_update ON tenants FOR UPDATE TO {ROLES}
        USING (app_current_user_role(id) IN ('owner', 'admin') OR app_current_user_is_super_admin())
        WITH CHECK (app_current_user_role(id) IN ('owner', 'admin') OR app_current_user_is_super_admin())
    """)
    op.execute(f"""
        CREATE POLICY tenants_delete ON tenants FOR DELETE TO {ROLES}
        USING (app_current_user_is_super_admin())
    """)

    # Memberships: members see their tenant's roster; owners/admins manage it
    op.execute(f"""
        CREATE POLICY tenant_memberships_select ON tenant_memberships FOR SELECT TO {ROLES}
        USING (user_id = app_current_user_id() OR {CAN_READ})
    """)
    op.execute(f"""
        CREATE POLICY tenant_memberships_insert ON tenant_memberships FOR INSERT TO {ROLES}
        WITH CHECK (
            {CAN_DELETE}
            OR (user_id = app_current_user_id() AND role = 'owner' AND NOT app_tenant_has_members(tenant_id))
        )
    """)
    op.execute(f"""
        CREATE POLICY tenant_memberships_update ON tenant_memberships FOR UPDATE TO {ROLES}
        USING {CAN_DELETE} WITH CHECK {CAN_DELETE}
    """)
    op.execute(f"""
        CREATE POLICY tenant_memberships_delete ON tenant_memberships FOR DELETE TO {ROLES}
        USING {CAN_DELETE}
    """)

    # Customers: the policy matrix for a regular tenant-owned table
    op.execute(f"CREATE POLICY customers_select ON customers FOR SELECT TO {ROLES} USING {CAN_READ}")
    op.execute(f"CREATE POLICY customers_insert ON customers FOR INSERT TO {ROLES} WITH CHECK {CAN_WRITE}")
    op.execute(f"CREATE POLICY customers_update ON customers FOR UPDATE TO {ROLES} USING {CAN_WRITE} WITH CHECK {CAN_WRITE}")
    op.execute(f"CREATE POLICY customers_delete ON customers FOR DELETE TO {ROLES} USING {CAN_DELETE}")

    # Ledger: readable by members, writable only through the service role
    for table in LEDGER_TABLES:
        op.execute(f"CREATE POLICY {table}_select ON {table} FOR SELECT TO {ROLES} USING {CAN_READ}")
        op.execute(f"""
            CREATE POLICY {table}_service_write ON {table} FOR ALL TO ledger_service_role
            USING {CAN_WRITE} WITH CHECK {CAN_WRITE}
        """)

    # Super-admin tables: callers see their own status; only super-admins see the audit trail
    op.execute(f"""
        CREATE POLICY super_admins_select ON super_admins FOR SELECT TO {ROLES}
        USING (user_id = app_current_user_id())
    """)
    op.execute(f"""
        CREATE POLICY super_admin_actions_select ON super_admin_actions FOR SELECT TO {ROLES}
        USING (app_current_user_is_super_admin())
    """)
    op.execute(f"""
        CREATE POLICY super_admin_actions_insert ON super_admin_actions FOR INSERT TO {ROLES}
        WITH CHECK (app_current_user_is_super_admin() AND super_admin_user_id = app_current_user_id())
    """)

    # Table privileges
    for table in TENANT_TABLES:
        op.execute(f"GRANT SELECT, INSERT, UPDATE, DELETE ON {table} TO {ROLES}")
    for table in LEDGER_TABLES:
        op.execute(f"GRANT SELECT ON {table} TO ledger_app_role")
    op.execute("GRANT SELECT, INSERT, UPDATE ON credit_accounts TO ledger_service_role")
    op.execute("GRANT SELECT, INSERT ON credit_transactions, credit_abuse_events TO ledger_service_role")
    op.execute(f"GRANT SELECT ON super_admins, credit_costs TO {ROLES}")
    op.execute(f"GRANT SELECT, INSERT ON super_admin_actions TO {ROLES}")

    # Create updated_at trigger function
    op.execute("""
        CREATE OR REPLACE FUNCTION update_updated_at_column()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = NOW();
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
    """)

    for table in ["tenants", "tenant_memberships", "customers", "credit_accounts", "credit_costs", "super_admins"]:
        op.execute(f"""
            CREATE TRIGGER {table}_updated_at
            BEFORE UPDATE ON {table}
            FOR EACH ROW EXECUTE FUNCTION update_updated_at_column();
        """)


def downgrade() -> None:
    op.execute("REVOKE ledger_service_role FROM ledger_app_role")
    for table in ["tenants", "tenant_memberships", "customers", "credit_accounts", "credit_costs", "super_admins"]:
        op.execute(f"DROP TRIGGER IF EXISTS {table}_updated_at ON {table}")
    op.execute("DROP FUNCTION IF EXISTS update_updated_at_column()")

    policy_names = [
        ("tenants", "tenants_select"),
        ("tenants", "tenants_insert"),
        ("tenants", "tenants_update"),
        ("tenants", "tenants_delete"),
        ("tenant_memberships", "tenant_memberships_select"),
        ("tenant_memberships", "tenant_memberships_insert"),
        ("tenant_memberships", "tenant_memberships_update"),
        ("tenant_memberships", "tenant_memberships_delete"),
        ("customers", "customers_select"),
        ("customers", "customers_insert"),
        ("customers", "customers_update"),
        ("customers", "customers_delete"),
        ("super_admins", "super_admins_select"),
        ("super_admin_actions", "super_admin_actions_select"),
        ("super_admin_actions", "super_admin_actions_insert"),
    ]
    for table in LEDGER_TABLES:
        policy_names.append((table, f"{table}_select"))
        policy_names.append((table, f"{table}_service_write"))

    for table, policy in policy_names:
        op.execute(f"DROP POLICY IF EXISTS {policy} ON {table}")

    for table in TENANT_TABLES + LEDGER_TABLES + AUDIT_TABLES:
        op.execute(f"ALTER TABLE {table} NO FORCE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")

    op.execute("DROP FUNCTION IF EXISTS app_tenant_has_members(uuid)")
    op.execute("DROP FUNCTION IF EXISTS app_current_user_role(uuid)")
    op.execute("DROP FUNCTION IF EXISTS app_current_user_is_super_admin()")
    op.execute("DROP FUNCTION IF EXISTS app_current_user_tenant_ids()")
    op.execute("DROP FUNCTION IF EXISTS app_current_user_id()")
