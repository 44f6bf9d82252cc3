"""Tenant isolation policy: caller identity resolution and the read/write matrix.

Every tenant-owned access path asks two questions of an ``AuthorizationContext``:
may this caller read rows of tenant X, and may it perform operation Y on them.
The answers depend only on ``(caller, row.tenant_id)``.

Unauthorized reads surface as ``TenantNotFoundError`` so that callers cannot
learn about the existence of other tenants' data. Unauthorized writes raise
``TenantWriteDeniedError`` before anything is mutated.
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.super_admin import SuperAdmin, SuperAdminAction
from src.models.tenant import Tenant
from src.models.tenant_membership import TenantMembership

logger = logging.getLogger(__name__)


class MembershipRole(str, Enum):
    """Tenant membership roles, most to least privileged."""
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


class WriteOperation(str, Enum):
    """Mutating operations subject to per-role restrictions."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


ROLE_WRITE_OPERATIONS: Dict[str, FrozenSet[WriteOperation]] = {
    MembershipRole.OWNER.value: frozenset(WriteOperation),
    MembershipRole.ADMIN.value: frozenset(WriteOperation),
    MembershipRole.MEMBER.value: frozenset({WriteOperation.INSERT, WriteOperation.UPDATE}),
    MembershipRole.VIEWER.value: frozenset(),
}

MANAGER_ROLES = frozenset({MembershipRole.OWNER.value, MembershipRole.ADMIN.value})

# Tenants in these states grant no access to their members.
INACCESSIBLE_TENANT_STATUSES = ("suspended", "cancelled")


class TenantAccessError(Exception):
    """Base exception for tenant isolation failures."""
    pass


class TenantNotFoundError(TenantAccessError):
    """The row does not exist, or exists in a tenant the caller cannot see."""
    pass


class TenantWriteDeniedError(TenantAccessError):
    """The caller may see the tenant but lacks write authority for the operation."""
    pass


@dataclass(frozen=True)
class CallerIdentity:
    """Opaque identity handed to the core by the identity provider."""
    user_id: uuid.UUID
    email: Optional[str] = None
    requested_tenant_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class AuthorizationContext:
    """
    Resolved authority of one caller for one request.

    Passed explicitly to every tenant-scoped operation. Super-admins are
    ``unrestricted`` instead of carrying an enumerated tenant list.
    """
    user_id: uuid.UUID
    memberships: Mapping[uuid.UUID, str] = field(default_factory=dict)
    is_super_admin: bool = False
    active_tenant_id: Optional[uuid.UUID] = None

    @property
    def unrestricted(self) -> bool:
        return self.is_super_admin

    @property
    def tenant_ids(self) -> FrozenSet[uuid.UUID]:
        return frozenset(self.memberships)

    def role_for(self, tenant_id: uuid.UUID) -> Optional[str]:
        return self.memberships.get(tenant_id)


async def resolve_caller_tenants(
    session: AsyncSession,
    identity: CallerIdentity,
) -> AuthorizationContext:
    """
    Resolve the tenants ``identity`` may act on.

    Both lookups read ``super_admins`` and ``tenant_memberships`` directly
    rather than through ``TenantScopedRepository``; membership resolution must
    never depend on the policy it feeds.
    """
    super_admin_query = select(SuperAdmin.id).where(
        and_(
            SuperAdmin.user_id == identity.user_id,
            SuperAdmin.status == "active",
        )
    )
    is_super_admin = (await session.execute(super_admin_query)).first() is not None

    if is_super_admin:
        logger.debug(f"Caller {identity.user_id} resolved as super admin")
        return AuthorizationContext(
            user_id=identity.user_id,
            is_super_admin=True,
            active_tenant_id=identity.requested_tenant_id,
        )

    membership_query = (
        select(TenantMembership.tenant_id, TenantMembership.role)
        .join(Tenant, Tenant.id == TenantMembership.tenant_id)
        .where(
            and_(
                TenantMembership.user_id == identity.user_id,
                TenantMembership.status == "active",
                Tenant.status.notin_(INACCESSIBLE_TENANT_STATUSES),
            )
        )
    )
    rows = (await session.execute(membership_query)).all()
    memberships = {row.tenant_id: row.role for row in rows}

    active_tenant_id = identity.requested_tenant_id
    if active_tenant_id is not None and active_tenant_id not in memberships:
        logger.warning(
            f"Caller {identity.user_id} requested tenant {active_tenant_id} without membership"
        )
        raise TenantNotFoundError("Tenant not found")

    logger.debug(f"Caller {identity.user_id} resolved to {len(memberships)} tenant(s)")
    return AuthorizationContext(
        user_id=identity.user_id,
        memberships=memberships,
        active_tenant_id=active_tenant_id,
    )


def authorize_read(ctx: AuthorizationContext, tenant_id: uuid.UUID) -> bool:
    """True iff the caller may observe rows of ``tenant_id``."""
    if ctx.unrestricted:
        return True
    return tenant_id in ctx.tenant_ids


def authorize_write(
    ctx: AuthorizationContext,
    tenant_id: uuid.UUID,
    operation: WriteOperation,
) -> bool:
    """True iff the caller may perform ``operation`` on rows of ``tenant_id``."""
    if ctx.unrestricted:
        return True
    role = ctx.role_for(tenant_id)
    if role is None:
        return False
    return WriteOperation(operation) in ROLE_WRITE_OPERATIONS.get(role, frozenset())


def require_read(ctx: AuthorizationContext, tenant_id: uuid.UUID, resource: str = "Resource") -> None:
    if not authorize_read(ctx, tenant_id):
        raise TenantNotFoundError(f"{resource} not found")


def require_write(
    ctx: AuthorizationContext,
    tenant_id: uuid.UUID,
    operation: WriteOperation,
    resource: str = "Resource",
) -> None:
    """Reject a write; callers outside the tenant see the same error as for a missing row."""
    if not authorize_read(ctx, tenant_id):
        raise TenantNotFoundError(f"{resource} not found")
    if not authorize_write(ctx, tenant_id, operation):
        raise TenantWriteDeniedError(
            f"Role '{ctx.role_for(tenant_id)}' may not {WriteOperation(operation).value} {resource.lower()}"
        )


def require_tenant_role(
    ctx: AuthorizationContext,
    tenant_id: uuid.UUID,
    roles: Iterable[str] = MANAGER_ROLES,
) -> None:
    """Require one of ``roles`` in ``tenant_id`` (super-admins always pass)."""
    if ctx.unrestricted:
        return
    role = ctx.role_for(tenant_id)
    if role is None:
        raise TenantNotFoundError("Tenant not found")
    if role not in set(roles):
        raise TenantWriteDeniedError(f"Role '{role}' may not manage this tenant")


def require_super_admin(ctx: AuthorizationContext) -> None:
    """Platform operations are invisible to everyone else."""
    if not ctx.is_super_admin:
        raise TenantNotFoundError("Resource not found")


def record_super_admin_action(
    session: AsyncSession,
    ctx: AuthorizationContext,
    action: str,
    tenant_id: Optional[uuid.UUID] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[Any] = None,
    details: Optional[Dict[str, Any]] = None,
) -> Optional[SuperAdminAction]:
    """
    Stage an audit row for a super-admin action.

    The row is only added to the session; it commits or rolls back together
    with the mutation it describes. Returns None for ordinary callers.
    """
    if not ctx.is_super_admin:
        return None

    entry = SuperAdminAction(
        super_admin_user_id=ctx.user_id,
        action=action,
        tenant_id=tenant_id,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details or {},
    )
    session.add(entry)
    logger.info(
        f"Super admin {ctx.user_id} performed {action} on tenant {tenant_id}"
    )
    return entry
