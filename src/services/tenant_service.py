"""Tenant lifecycle and membership management.

Signup creates the tenant, its owner membership and its credit account in one
transaction. Plan changes keep the tenant's and the credit account's free-tier
flag in sync, since the ledger meters on the account flag.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database import assume_ledger_writer
from src.models.base import utcnow
from src.models.credit import CreditAccount
from src.models.tenant import PLAN_TYPES, TENANT_STATUSES, Tenant
from src.models.tenant_membership import MEMBERSHIP_ROLES, TenantMembership
from src.services.authorization import (
    MANAGER_ROLES,
    AuthorizationContext,
    MembershipRole,
    TenantNotFoundError,
    TenantWriteDeniedError,
    record_super_admin_action,
    require_read,
    require_super_admin,
    require_tenant_role,
)
from src.services.events import EventPublisher, EventType
from src.utils.validators import SlugValidator, ValidationError

logger = logging.getLogger(__name__)


class TenantServiceError(Exception):
    """Base exception for tenant service errors."""
    pass


class TenantValidationError(TenantServiceError):
    """Raised when tenant or membership data is invalid."""

    def __init__(self, message: str, validation_errors: List[ValidationError] = None):
        super().__init__(message)
        self.validation_errors = validation_errors or []


class TenantConflictError(TenantServiceError):
    """Raised when a slug or membership already exists, or the last owner would be removed."""
    pass


class TenantService:
    """
    Tenant signup, plan and status changes, and membership administration.

    Args:
        db_session: Async database session
        event_publisher: Optional event publisher notified after commit
    """

    def __init__(self, db_session: AsyncSession, event_publisher: Optional[EventPublisher] = None):
        self.db = db_session
        self.events = event_publisher

    # Tenants

    async def create_tenant(
        self,
        name: str,
        slug: str,
        owner_user_id: uuid.UUID,
        plan_type: str = "free",
    ) -> Tenant:
        """
        Create a tenant with its owner membership and credit account.

        Raises:
            TenantValidationError: If the name, slug or plan is invalid
            TenantConflictError: If the slug is taken
        """
        logger.info(f"Creating tenant '{slug}' for owner {owner_user_id}")

        errors = SlugValidator.validate(slug)
        if not name or not name.strip():
            errors.append(ValidationError(field="name", code="NAME_REQUIRED", message="Name is required"))
        if plan_type not in PLAN_TYPES:
            errors.append(ValidationError(
                field="plan_type",
                code="INVALID_PLAN_TYPE",
                message=f"Plan must be one of: {', '.join(PLAN_TYPES)}",
                details={"provided": plan_type}
            ))
        if errors:
            raise TenantValidationError("Tenant validation failed", errors)

        if await self._is_slug_taken(slug):
            raise TenantConflictError(f"Slug '{slug}' is already taken")

        is_free_tier = plan_type == "free"
        try:
            tenant = Tenant(
                name=name.strip(),
                slug=slug,
                status="active",
                plan_type=plan_type,
                is_free_tier=is_free_tier,
                limits={},
                usage={},
                features={},
            )
            self.db.add(tenant)
            await self.db.flush()

            self.db.add(TenantMembership(
                tenant_id=tenant.id,
                user_id=owner_user_id,
                role=MembershipRole.OWNER.value,
                status="active",
                joined_at=utcnow(),
            ))
            # The ledger write policy checks the owner membership, so it must exist first
            await self.db.flush()
            await assume_ledger_writer(self.db)
            self.db.add(CreditAccount(
                tenant_id=tenant.id,
                balance=0,
                lifetime_earned=0,
                lifetime_spent=0,
                is_free_tier=is_free_tier,
            ))
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            logger.error(f"Integrity error creating tenant '{slug}': {e}")
            raise TenantConflictError(f"Slug '{slug}' is already taken")

        await self._publish(EventType.TENANT_CREATED, tenant.id, {"slug": slug, "plan_type": plan_type}, owner_user_id)
        logger.info(f"Created tenant {tenant.id} ('{slug}')")
        return tenant

    async def get_tenant(self, ctx: AuthorizationContext, tenant_id: uuid.UUID) -> Tenant:
        require_read(ctx, tenant_id, "Tenant")
        tenant = await self._load(tenant_id)
        if tenant is None:
            raise TenantNotFoundError("Tenant not found")
        return tenant

    async def list_my_tenants(self, ctx: AuthorizationContext, offset: int = 0, limit: int = 100) -> List[Tenant]:
        """Tenants visible to the caller; super-admins see every tenant."""
        query = select(Tenant)
        if ctx.active_tenant_id is not None:
            query = query.where(Tenant.id == ctx.active_tenant_id)
        if not ctx.unrestricted:
            query = query.where(Tenant.id.in_(list(ctx.tenant_ids)))
        query = query.order_by(Tenant.created_at.desc()).offset(offset).limit(limit)
        return list((await self.db.execute(query)).scalars().all())

    async def change_plan(self, ctx: AuthorizationContext, tenant_id: uuid.UUID, plan_type: str) -> Tenant:
        """Change the subscription plan; only the ``free`` plan is metered."""
        require_tenant_role(ctx, tenant_id, MANAGER_ROLES)
        if plan_type not in PLAN_TYPES:
            raise TenantValidationError(f"Plan must be one of: {', '.join(PLAN_TYPES)}")

        tenant = await self.get_tenant(ctx, tenant_id)
        previous = tenant.plan_type
        is_free_tier = plan_type == "free"

        try:
            tenant.plan_type = plan_type
            tenant.is_free_tier = is_free_tier
            await assume_ledger_writer(self.db)
            await self.db.execute(
                update(CreditAccount)
                .where(CreditAccount.tenant_id == tenant_id)
                .values(is_free_tier=is_free_tier, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            record_super_admin_action(
                self.db, ctx, "tenants.change_plan",
                tenant_id=tenant_id, resource_type="tenants", resource_id=tenant_id,
                details={"from": previous, "to": plan_type},
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Error changing plan for tenant {tenant_id}: {e}")
            raise TenantServiceError(f"Failed to change plan: {e}")

        await self._publish(
            EventType.TENANT_PLAN_CHANGED, tenant_id, {"from": previous, "to": plan_type}, ctx.user_id
        )
        logger.info(f"Tenant {tenant_id} plan changed from {previous} to {plan_type}")
        return tenant

    async def set_status(
        self,
        ctx: AuthorizationContext,
        tenant_id: uuid.UUID,
        status: str,
        reason: Optional[str] = None,
    ) -> Tenant:
        """Suspend, cancel or reactivate a tenant (platform operation)."""
        require_super_admin(ctx)
        if status not in TENANT_STATUSES:
            raise TenantValidationError(f"Status must be one of: {', '.join(TENANT_STATUSES)}")

        tenant = await self.get_tenant(ctx, tenant_id)
        previous = tenant.status
        tenant.status = status
        record_super_admin_action(
            self.db, ctx, "tenants.set_status",
            tenant_id=tenant_id, resource_type="tenants", resource_id=tenant_id,
            details={"from": previous, "to": status, "reason": reason},
        )
        await self.db.commit()

        await self._publish(
            EventType.TENANT_STATUS_CHANGED, tenant_id, {"from": previous, "to": status}, ctx.user_id
        )
        logger.info(f"Tenant {tenant_id} status changed from {previous} to {status}")
        return tenant

    # Memberships

    async def list_members(self, ctx: AuthorizationContext, tenant_id: uuid.UUID) -> List[TenantMembership]:
        require_read(ctx, tenant_id, "Tenant")
        query = (
            select(TenantMembership)
            .where(TenantMembership.tenant_id == tenant_id)
            .order_by(TenantMembership.created_at)
        )
        return list((await self.db.execute(query)).scalars().all())

    async def get_member(self, ctx: AuthorizationContext, tenant_id: uuid.UUID, user_id: uuid.UUID) -> TenantMembership:
        require_read(ctx, tenant_id, "Tenant")
        return await self._require_membership(tenant_id, user_id)

    async def add_member(
        self,
        ctx: AuthorizationContext,
        tenant_id: uuid.UUID,
        user_id: uuid.UUID,
        role: str = MembershipRole.MEMBER.value,
        status: str = "active",
    ) -> TenantMembership:
        """Add a user to the tenant, or reinstate a suspended or deleted membership."""
        require_tenant_role(ctx, tenant_id, MANAGER_ROLES)
        self._check_role(role)
        self._check_may_grant(ctx, tenant_id, role)

        membership = await self._get_membership(tenant_id, user_id)
        if membership is not None and membership.status in ("active", "pending"):
            raise TenantConflictError("User is already a member of this tenant")

        if membership is None:
            membership = TenantMembership(
                tenant_id=tenant_id,
                user_id=user_id,
                role=role,
                status=status,
                invited_by=ctx.user_id,
            )
            self.db.add(membership)
        else:
            membership.change_role(role)
            membership.status = status
            membership.invited_by = ctx.user_id
        if status == "active":
            membership.activate()

        try:
            await self.db.flush()
            record_super_admin_action(
                self.db, ctx, "tenant_memberships.insert",
                tenant_id=tenant_id, resource_type="tenant_memberships", resource_id=membership.id,
                details={"user_id": str(user_id), "role": role},
            )
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            logger.error(f"Integrity error adding member {user_id} to tenant {tenant_id}: {e}")
            raise TenantConflictError("User is already a member of this tenant")

        logger.info(f"Added user {user_id} to tenant {tenant_id} as {role}")
        return membership

    async def change_member_role(
        self,
        ctx: AuthorizationContext,
        tenant_id: uuid.UUID,
        user_id: uuid.UUID,
        role: str,
    ) -> TenantMembership:
        require_tenant_role(ctx, tenant_id, MANAGER_ROLES)
        self._check_role(role)
        membership = await self._require_membership(tenant_id, user_id)
        self._check_may_grant(ctx, tenant_id, role)
        self._check_may_grant(ctx, tenant_id, membership.role)

        if membership.role == MembershipRole.OWNER.value and role != MembershipRole.OWNER.value:
            await self._ensure_not_last_owner(tenant_id, membership)

        previous = membership.role
        membership.change_role(role)
        record_super_admin_action(
            self.db, ctx, "tenant_memberships.update",
            tenant_id=tenant_id, resource_type="tenant_memberships", resource_id=membership.id,
            details={"from": previous, "to": role},
        )
        await self.db.commit()
        logger.info(f"Changed role of user {user_id} in tenant {tenant_id} from {previous} to {role}")
        return membership

    async def suspend_member(
        self,
        ctx: AuthorizationContext,
        tenant_id: uuid.UUID,
        user_id: uuid.UUID,
    ) -> TenantMembership:
        """Soft-remove a member; their access ends with their next request."""
        require_tenant_role(ctx, tenant_id, MANAGER_ROLES)
        membership = await self._require_membership(tenant_id, user_id)
        self._check_may_grant(ctx, tenant_id, membership.role)

        if membership.role == MembershipRole.OWNER.value:
            await self._ensure_not_last_owner(tenant_id, membership)

        membership.suspend()
        record_super_admin_action(
            self.db, ctx, "tenant_memberships.suspend",
            tenant_id=tenant_id, resource_type="tenant_memberships", resource_id=membership.id,
        )
        await self.db.commit()
        logger.info(f"Suspended user {user_id} in tenant {tenant_id}")
        return membership

    async def reinstate_member(
        self,
        ctx: AuthorizationContext,
        tenant_id: uuid.UUID,
        user_id: uuid.UUID,
        role: Optional[str] = None,
    ) -> TenantMembership:
        """Reactivate a suspended or pending membership, optionally with a new role."""
        require_tenant_role(ctx, tenant_id, MANAGER_ROLES)
        membership = await self._require_membership(tenant_id, user_id)
        role = role or membership.role
        self._check_role(role)
        self._check_may_grant(ctx, tenant_id, role)

        if membership.is_active:
            if role != membership.role:
                return await self.change_member_role(ctx, tenant_id, user_id, role)
            return membership

        membership.change_role(role)
        membership.activate()
        record_super_admin_action(
            self.db, ctx, "tenant_memberships.reinstate",
            tenant_id=tenant_id, resource_type="tenant_memberships", resource_id=membership.id,
            details={"role": role},
        )
        await self.db.commit()
        logger.info(f"Reinstated user {user_id} in tenant {tenant_id} as {role}")
        return membership

    # Helper methods

    async def _load(self, tenant_id: uuid.UUID) -> Optional[Tenant]:
        query = select(Tenant).where(Tenant.id == tenant_id).execution_options(populate_existing=True)
        return (await self.db.execute(query)).scalar_one_or_none()

    async def _is_slug_taken(self, slug: str) -> bool:
        query = select(Tenant.id).where(Tenant.slug == slug)
        return (await self.db.execute(query)).first() is not None

    async def _get_membership(self, tenant_id: uuid.UUID, user_id: uuid.UUID) -> Optional[TenantMembership]:
        query = select(TenantMembership).where(
            and_(TenantMembership.tenant_id == tenant_id, TenantMembership.user_id == user_id)
        )
        return (await self.db.execute(query)).scalar_one_or_none()

    async def _require_membership(self, tenant_id: uuid.UUID, user_id: uuid.UUID) -> TenantMembership:
        membership = await self._get_membership(tenant_id, user_id)
        if membership is None or membership.status == "deleted":
            raise TenantNotFoundError("Member not found")
        return membership

    async def _ensure_not_last_owner(self, tenant_id: uuid.UUID, membership: TenantMembership) -> None:
        query = select(func.count()).select_from(TenantMembership).where(
            and_(
                TenantMembership.tenant_id == tenant_id,
                TenantMembership.role == MembershipRole.OWNER.value,
                TenantMembership.status == "active",
                TenantMembership.id != membership.id,
            )
        )
        if int((await self.db.execute(query)).scalar_one()) == 0:
            raise TenantConflictError("A tenant must keep at least one active owner")

    def _check_role(self, role: str) -> None:
        if role not in MEMBERSHIP_ROLES:
            raise TenantValidationError(f"Role must be one of: {', '.join(MEMBERSHIP_ROLES)}")

    def _check_may_grant(self, ctx: AuthorizationContext, tenant_id: uuid.UUID, role: str) -> None:
        """Only owners (and super-admins) may grant, revoke or touch the owner role."""
        if role != MembershipRole.OWNER.value or ctx.unrestricted:
            return
        if ctx.role_for(tenant_id) != MembershipRole.OWNER.value:
            raise TenantWriteDeniedError("Only an owner may manage owner memberships")

    async def _publish(
        self,
        event_type: EventType,
        tenant_id: uuid.UUID,
        data: Dict[str, Any],
        user_id: Optional[uuid.UUID] = None,
    ) -> None:
        if not self.events:
            return
        await self.events.publish(
            event_type,
            tenant_id=tenant_id,
            resource_id=tenant_id,
            resource_type="tenant",
            data=data,
            user_id=user_id,
        )
